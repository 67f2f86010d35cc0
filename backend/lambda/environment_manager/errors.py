"""errors.py — Error taxonomy shared by every environment_manager component.

Each error carries the HTTP status the API layer maps it to, and backend
errors carry a ``retryable`` flag so callers can tell a not-yet-ready stack
from a hard failure.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class BranchBoxError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, retryable: Optional[bool] = None, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        self.detail = dict(detail or {})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error_type": type(self).__name__, "retryable": self.retryable}
        payload.update(self.detail)
        return payload


class ValidationError(BranchBoxError):
    """Bad or missing input; rejected before any side effect."""

    status_code = 400


class AuthError(BranchBoxError):
    """GitHub App credential or token failure."""

    status_code = 401


class NotFoundError(BranchBoxError):
    status_code = 404


class ConflictError(BranchBoxError):
    """A conditional registry write lost a race or hit an existing record."""

    status_code = 409
    retryable = True


class ProvisionError(BranchBoxError):
    """CloudFormation rejected or failed a stack operation."""

    status_code = 502


class DeployError(BranchBoxError):
    """Source download or artifact upload failed."""

    status_code = 502


class PartialFailure(BranchBoxError):
    """Some services in a batch succeeded and some did not."""

    status_code = 207

    def __init__(self, message: str, result: Any):
        super().__init__(message, retryable=True)
        self.result = result

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["result"] = self.result.to_dict()
        return payload


class SourceHostError(BranchBoxError):
    """GitHub API call failed for a reason other than authentication."""

    status_code = 502
    retryable = True
