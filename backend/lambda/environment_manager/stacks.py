"""stacks.py — CloudFormation provisioning backend.

submit / describe / delete for environment stacks. botocore failures are
translated to ProvisionError at this boundary; throttling and timeouts are
flagged retryable.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from branchbox_shared.aws_clients import _get_cloudformation
from config import CFN_ROLE_ARN, logger
from errors import ProvisionError

__all__ = [
    "READY_STACK_STATUSES",
    "StackBackend",
    "StackDescription",
    "SubmittedStack",
]

READY_STACK_STATUSES = frozenset({"CREATE_COMPLETE", "UPDATE_COMPLETE"})
_RETRYABLE_CODES = frozenset({"Throttling", "ThrottlingException", "RequestLimitExceeded", "ServiceUnavailable"})
_MANAGED_TAG = {"Key": "BranchBoxManaged", "Value": "true"}


@dataclass(frozen=True)
class SubmittedStack:
    stack_id: str
    stack_name: str


@dataclass
class StackDescription:
    status: str
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return self.status in READY_STACK_STATUSES


def _is_missing_stack(exc: ClientError) -> bool:
    err = exc.response.get("Error", {})
    return err.get("Code") == "ValidationError" and "does not exist" in str(err.get("Message", ""))


def _provision_error(action: str, exc: Exception) -> ProvisionError:
    retryable = True
    if isinstance(exc, ClientError):
        retryable = exc.response.get("Error", {}).get("Code") in _RETRYABLE_CODES
    return ProvisionError(f"CloudFormation {action} failed: {exc}", retryable=retryable)


class StackBackend:
    def __init__(self, cfn: Any = None, role_arn: str = CFN_ROLE_ARN):
        self._cfn = cfn
        self.role_arn = role_arn

    @property
    def cfn(self):
        if self._cfn is None:
            self._cfn = _get_cloudformation()
        return self._cfn

    def submit(self, stack_name: str, template_body: str) -> SubmittedStack:
        params: Dict[str, Any] = {
            "StackName": stack_name,
            "TemplateBody": template_body,
            "Capabilities": ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"],
            "Tags": [dict(_MANAGED_TAG)],
        }
        # Production accounts provision through a dedicated service role.
        if self.role_arn:
            params["RoleARN"] = self.role_arn
        try:
            resp = self.cfn.create_stack(**params)
        except (ClientError, BotoCoreError) as exc:
            logger.error("[ERROR] create_stack %s failed: %s", stack_name, exc)
            raise _provision_error("create_stack", exc) from exc
        logger.info("[INFO] Submitted stack %s (%s)", stack_name, resp.get("StackId"))
        return SubmittedStack(stack_id=resp["StackId"], stack_name=stack_name)

    def describe(self, stack_name: str) -> Optional[StackDescription]:
        """Stack status and outputs; None when the stack does not exist.

        Outputs are only populated once the stack reached a ready status.
        """
        try:
            resp = self.cfn.describe_stacks(StackName=stack_name)
        except ClientError as exc:
            if _is_missing_stack(exc):
                return None
            raise _provision_error("describe_stacks", exc) from exc
        except BotoCoreError as exc:
            raise _provision_error("describe_stacks", exc) from exc

        stacks = resp.get("Stacks") or []
        if not stacks:
            return None
        stack = stacks[0]
        description = StackDescription(status=str(stack.get("StackStatus") or ""))
        if description.ready:
            description.outputs = {
                o["OutputKey"]: o.get("OutputValue", "")
                for o in stack.get("Outputs") or []
                if o.get("OutputKey")
            }
        return description

    def outputs(self, stack_name: str) -> Dict[str, str]:
        description = self.describe(stack_name)
        return description.outputs if description else {}

    def delete(self, stack_name_or_id: str) -> None:
        try:
            self.cfn.delete_stack(StackName=stack_name_or_id)
        except (ClientError, BotoCoreError) as exc:
            logger.error("[ERROR] delete_stack %s failed: %s", stack_name_or_id, exc)
            raise _provision_error("delete_stack", exc) from exc
        logger.info("[INFO] Deleting stack %s", stack_name_or_id)
