"""deployment.py — Source staging that triggers environment pipelines.

Each service's pipeline Source stage polls ``sources/<uid>.zip`` in the
environment's artifact bucket, so uploading a fresh archive to that key is
the whole trigger; there is no StartPipelineExecution call. Re-uploading the
same key re-runs the same pipeline.

Downloads run in list order and stop at the first failure. Uploads of the
downloaded archives run on a small thread pool. Services uploaded before a
failure are not rolled back; their pipelines still run.
"""
from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from branchbox_shared.serialization import _emit_structured_observability
from artifacts import ArtifactStore
from config import DEPLOY_MAX_WORKERS, logger
from errors import AuthError, BranchBoxError, DeployError
from github_app import GitHubClient
from models import ServiceDescriptor, source_object_key
from stacks import StackBackend
from templates import OUTPUT_BUCKET

__all__ = [
    "DeployResult",
    "DeploymentTrigger",
    "OUTCOME_FAILED",
    "OUTCOME_NOT_ATTEMPTED",
    "OUTCOME_UPLOADED",
    "ServiceOutcome",
]

OUTCOME_UPLOADED = "uploaded"
OUTCOME_FAILED = "failed"
OUTCOME_NOT_ATTEMPTED = "not_attempted"


@dataclass
class ServiceOutcome:
    index: int
    repo: str
    branch: str
    unique_id: str
    key: str
    status: str = OUTCOME_NOT_ATTEMPTED
    error: str = ""
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "index": self.index,
            "repo": self.repo,
            "branch": self.branch,
            "uniqueId": self.unique_id,
            "key": self.key,
            "status": self.status,
        }
        if self.error:
            out["error"] = self.error
            out["retryable"] = self.retryable
        return out


@dataclass
class DeployResult:
    stack_name: str
    bucket: str
    outcomes: List[ServiceOutcome] = field(default_factory=list)

    @property
    def uploaded_ids(self) -> List[str]:
        return [o.unique_id for o in self.outcomes if o.status == OUTCOME_UPLOADED]

    @property
    def succeeded(self) -> bool:
        return all(o.status == OUTCOME_UPLOADED for o in self.outcomes)

    @property
    def partial(self) -> bool:
        return bool(self.uploaded_ids) and not self.succeeded

    @property
    def failed(self) -> Optional[ServiceOutcome]:
        for outcome in self.outcomes:
            if outcome.status == OUTCOME_FAILED:
                return outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stackName": self.stack_name,
            "bucket": self.bucket,
            "uploaded": self.uploaded_ids,
            "services": [o.to_dict() for o in self.outcomes],
        }


class DeploymentTrigger:
    def __init__(
        self,
        stacks: Optional[StackBackend] = None,
        artifacts: Optional[ArtifactStore] = None,
        github: Optional[GitHubClient] = None,
        max_workers: int = DEPLOY_MAX_WORKERS,
    ):
        self.stacks = stacks or StackBackend()
        self.artifacts = artifacts or ArtifactStore()
        self.github = github or GitHubClient()
        self.max_workers = max(1, max_workers)

    def resolve_bucket(self, stack_name: str) -> str:
        """Artifact bucket from the stack outputs.

        Raises a retryable DeployError while the stack is still provisioning.
        """
        bucket = self.stacks.outputs(stack_name).get(OUTPUT_BUCKET)
        if not bucket:
            raise DeployError(
                f"{OUTPUT_BUCKET} not available for stack {stack_name}; "
                "the environment may still be provisioning",
                retryable=True,
            )
        return bucket

    def _upload(self, result: DeployResult, outcome: ServiceOutcome, archive: bytes) -> None:
        started = time.monotonic()
        self.artifacts.put(result.bucket, outcome.key, archive)
        outcome.status = OUTCOME_UPLOADED
        _emit_structured_observability(
            component="deployment_trigger",
            event="source_uploaded",
            environment=result.stack_name,
            latency_ms=int((time.monotonic() - started) * 1000),
            extra={"unique_id": outcome.unique_id, "key": outcome.key, "bytes": len(archive)},
        )

    @staticmethod
    def _mark_failed(outcome: ServiceOutcome, exc: Exception) -> None:
        outcome.status = OUTCOME_FAILED
        outcome.error = str(exc)
        outcome.retryable = getattr(exc, "retryable", True)

    def deploy(
        self,
        stack_name: str,
        services: Sequence[ServiceDescriptor],
        access_token: str,
        *,
        deadline: Optional[float] = None,
    ) -> DeployResult:
        """Stage every service's source archive for ``stack_name``.

        ``deadline`` is a ``time.monotonic()`` value; once passed, remaining
        services are abandoned as not attempted.

        Returns a DeployResult with one outcome per service. Only failures
        that affect the whole call (no token, bucket not ready) raise.
        """
        if not access_token:
            raise AuthError("An access token is required to download sources")
        if not services:
            raise DeployError("Environment has no services to deploy")

        result = DeployResult(stack_name=stack_name, bucket=self.resolve_bucket(stack_name))
        for index, svc in enumerate(services):
            unique_id = svc.unique_id(index)
            result.outcomes.append(ServiceOutcome(
                index=index,
                repo=svc.repo,
                branch=svc.branch,
                unique_id=unique_id,
                key=source_object_key(unique_id),
            ))

        pending: Dict[Future, ServiceOutcome] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(services))) as pool:
            for svc, outcome in zip(services, result.outcomes):
                if any(o.status == OUTCOME_FAILED for o in result.outcomes):
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    logger.warning("[WARNING] Deploy of %s abandoned at service %d: deadline reached",
                                   stack_name, outcome.index)
                    break
                owner, repo = svc.owner_and_name
                logger.info("Downloading %s/%s@%s...", owner, repo, svc.branch)
                try:
                    archive = self.github.download_archive(access_token, owner, repo, svc.branch)
                except BranchBoxError as exc:
                    logger.error("[ERROR] Download of %s@%s failed: %s", svc.repo, svc.branch, exc)
                    self._mark_failed(outcome, exc)
                    break
                logger.info("Uploading to s3://%s/%s...", result.bucket, outcome.key)
                pending[pool.submit(self._upload, result, outcome, archive)] = outcome

            for future, outcome in pending.items():
                try:
                    future.result()
                except BranchBoxError as exc:
                    self._mark_failed(outcome, exc)

        failed = result.failed
        _emit_structured_observability(
            component="deployment_trigger",
            event="deploy_finished",
            environment=stack_name,
            error_code="partial_failure" if failed else "",
            extra={
                "uploaded": len(result.uploaded_ids),
                "services": len(result.outcomes),
                "failed_index": failed.index if failed else None,
            },
        )
        return result
