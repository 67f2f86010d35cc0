"""push_dispatch.py — GitHub push → environment redeploy.

A push to any service of an environment redeploys every service of that
environment, since services of one environment may depend on each other.
Pushes to unmanaged repositories are expected and are a no-op.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from config import logger
from deployment import DeployResult, DeploymentTrigger
from models import Environment
from registry import EnvironmentRegistry

__all__ = [
    "DispatchOutcome",
    "PushDispatcher",
    "branch_from_ref",
]

_BRANCH_REF_PREFIX = "refs/heads/"


def branch_from_ref(ref: str) -> Optional[str]:
    """Branch name of a push ref; None for tags and other refs."""
    if not ref or not ref.startswith(_BRANCH_REF_PREFIX):
        return None
    return ref[len(_BRANCH_REF_PREFIX):] or None


@dataclass
class DispatchOutcome:
    action: str
    environment: Optional[str] = None
    result: Optional[DeployResult] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"action": self.action, "environment": self.environment}
        if self.result is not None:
            out["deploy"] = self.result.to_dict()
        out.update(self.detail)
        return out


class PushDispatcher:
    def __init__(self, registry: EnvironmentRegistry, trigger: DeploymentTrigger,
                 token_provider: Callable[[], Optional[str]]):
        self.registry = registry
        self.trigger = trigger
        self.token_provider = token_provider

    def on_push(self, repo: str, branch: str) -> DispatchOutcome:
        logger.info("Push detected: %s/%s", repo, branch)
        env: Optional[Environment] = self.registry.find_by_service_ref(repo, branch)
        if env is None:
            logger.info("No environment configuration found for this repo/branch.")
            return DispatchOutcome(action="no_environment")

        logger.info("Found environment: %s. Triggering deploy.", env.stack_name)
        token = self.token_provider()
        if not token:
            logger.error("No access token available for deploy of %s.", env.stack_name)
            return DispatchOutcome(action="no_token", environment=env.stack_name)

        result = self.trigger.deploy(env.stack_name, env.services, token)
        if result.succeeded:
            logger.info("Deploy triggered successfully.")
        else:
            logger.warning("[WARNING] Deploy of %s finished with failures: %s",
                           env.stack_name, result.to_dict())
        return DispatchOutcome(action="deployed", environment=env.stack_name, result=result)
