"""handlers.py — HTTP route handlers for the environment management API.

Each handler receives the API Gateway event and a per-invocation
``AppContext``; nothing is shared between invocations except the boto3
client singletons.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from branchbox_shared.http_utils import _error, _parse_body, _query_params, _response
from config import logger
from credentials import CredentialStore
from deployment import DeploymentTrigger
from errors import AuthError, NotFoundError, PartialFailure, ValidationError
from github_app import CredentialBroker, GitHubClient, TokenCache
from models import services_from_payload
from provisioning import OMITTED, ProvisioningController
from registry import EnvironmentRegistry
from stacks import StackBackend

__all__ = [
    "AppContext",
    "_build_context",
    "_handle_create_env",
    "_handle_delete_env",
    "_handle_deploy",
    "_handle_get_config",
    "_handle_list_branches",
    "_handle_list_envs",
    "_handle_list_repos",
    "_handle_mark_ready",
    "_handle_save_config",
]

# Leave this much of the Lambda budget for writing the response.
_DEADLINE_MARGIN_SECONDS = 5.0


@dataclass
class AppContext:
    registry: EnvironmentRegistry
    credentials: CredentialStore
    broker: CredentialBroker
    github: GitHubClient
    stacks: StackBackend
    trigger: DeploymentTrigger
    provisioning: ProvisioningController

    def require_token(self) -> str:
        """Installation token or AuthError (401) when GitHub is not usable."""
        credentials = self.credentials.get()
        if not credentials.configured:
            raise AuthError("GitHub App not configured")
        return self.broker.token_for(credentials)

    def optional_token(self) -> Optional[str]:
        return self.broker.try_token(self.credentials)


def _build_context() -> AppContext:
    registry = EnvironmentRegistry()
    stacks = StackBackend()
    github = GitHubClient()
    return AppContext(
        registry=registry,
        credentials=CredentialStore(),
        broker=CredentialBroker(cache=TokenCache()),
        github=github,
        stacks=stacks,
        trigger=DeploymentTrigger(stacks=stacks, github=github),
        provisioning=ProvisioningController(registry, stacks),
    )


def _json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _deadline(context: Any) -> Optional[float]:
    remaining = getattr(context, "get_remaining_time_in_millis", None)
    if remaining is None:
        return None
    return time.monotonic() + max(0.0, remaining() / 1000.0 - _DEADLINE_MARGIN_SECONDS)


# ---------------------------------------------------------------------------
# /config
# ---------------------------------------------------------------------------


def _handle_save_config(event: Dict[str, Any], ctx: AppContext) -> Dict[str, Any]:
    """POST /config"""
    body = _json_body(event)
    ctx.credentials.put(
        body.get("appId"),
        body.get("installationId"),
        body.get("privateKey"),
        body.get("clientSecret"),
    )
    return _response(200, {"message": "Configuration saved"})


def _handle_get_config(event: Dict[str, Any], ctx: AppContext) -> Dict[str, Any]:
    """GET /config (never returns key material)"""
    try:
        credentials = ctx.credentials.get()
    except (ClientError, BotoCoreError) as exc:
        logger.warning("[WARNING] Reading GitHub configuration failed: %s", exc)
        return _response(200, {"configured": False})
    return _response(200, credentials.summary())


# ---------------------------------------------------------------------------
# GitHub browsing
# ---------------------------------------------------------------------------


def _handle_list_repos(event: Dict[str, Any], ctx: AppContext) -> Dict[str, Any]:
    """GET /repos"""
    token = ctx.require_token()
    return _response(200, ctx.github.list_installation_repositories(token))


def _handle_list_branches(event: Dict[str, Any], ctx: AppContext) -> Dict[str, Any]:
    """GET /branches?owner=&repo="""
    qs = _query_params(event)
    owner = (qs.get("owner") or "").strip()
    repo = (qs.get("repo") or "").strip()
    if not owner and "/" in repo:
        owner, _, repo = repo.partition("/")
    if not owner or not repo:
        raise ValidationError("owner and repo query parameters are required")
    token = ctx.require_token()
    return _response(200, ctx.github.list_branches(token, owner, repo))


# ---------------------------------------------------------------------------
# /envs
# ---------------------------------------------------------------------------


def _handle_list_envs(event: Dict[str, Any], ctx: AppContext) -> Dict[str, Any]:
    """GET /envs"""
    return _response(200, [env.to_item() for env in ctx.registry.list_all()])


def _handle_create_env(event: Dict[str, Any], ctx: AppContext) -> Dict[str, Any]:
    """POST /envs

    ``stopTime`` omitted → default (18:00); ``stopTime: ""`` → disabled.
    A legacy ``{repo, branch}`` body is accepted as a one-service list.
    """
    body = _json_body(event)
    services = body.get("services")
    if not services and body.get("repo") and body.get("branch"):
        services = [{"repo": body["repo"], "branch": body["branch"]}]

    ctx.require_token()

    env = ctx.provisioning.create(
        services or [],
        alias=body.get("name") or body.get("alias") or "",
        stop_time=body.get("stopTime", OMITTED),
        start_time=body.get("startTime", OMITTED),
    )
    return _response(201, env.to_item())


def _handle_delete_env(event: Dict[str, Any], ctx: AppContext) -> Dict[str, Any]:
    """DELETE /envs?stackId= or ?repo=&branch="""
    qs = _query_params(event)
    stack_id = (qs.get("stackId") or "").strip() or None
    key = ((qs.get("repo") or "").strip(), (qs.get("branch") or "").strip())
    if not stack_id and not all(key):
        raise NotFoundError("Environment not found")
    env = ctx.provisioning.delete(key=key, stack_id=stack_id)
    return _response(200, {"message": "Environment deleting", "environment": env.to_item()})


def _handle_mark_ready(event: Dict[str, Any], ctx: AppContext) -> Dict[str, Any]:
    """POST /envs/ready with ``{repo, branch, refresh?}``.

    With ``refresh`` the stack status is checked first; otherwise the caller
    asserts readiness.
    """
    body = _json_body(event)
    key = (str(body.get("repo") or "").strip(), str(body.get("branch") or "").strip())
    if not all(key):
        raise ValidationError("repo and branch are required")
    if body.get("refresh"):
        env = ctx.provisioning.refresh_status(key)
    else:
        env = ctx.provisioning.mark_ready(key)
    return _response(200, env.to_item())


# ---------------------------------------------------------------------------
# /deploy
# ---------------------------------------------------------------------------


def _handle_deploy(event: Dict[str, Any], ctx: AppContext, lambda_context: Any = None) -> Dict[str, Any]:
    """POST /deploy with ``{stackName, services}`` or ``{repo, branch}``."""
    body = _json_body(event)
    stack_name = str(body.get("stackName") or "").strip()
    raw_services = body.get("services")

    if body.get("repo") and body.get("branch"):
        env = ctx.registry.require((str(body["repo"]), str(body["branch"])))
        stack_name, services = env.stack_name, env.services
    elif stack_name and raw_services:
        try:
            services = services_from_payload(raw_services)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
    elif stack_name:
        env = ctx.registry.find_by_stack_name(stack_name)
        if env is None:
            raise NotFoundError(f"Environment {stack_name} not found")
        services = env.services
    else:
        raise ValidationError("Provide stackName (with optional services) or repo and branch")

    token = ctx.require_token()
    result = ctx.trigger.deploy(stack_name, services, token, deadline=_deadline(lambda_context))

    if result.succeeded:
        return _response(200, {"message": "Deployment triggered", **result.to_dict()})
    if result.partial:
        raise PartialFailure("Deployment partially triggered", result)
    failed = result.failed
    return _error(
        502,
        f"Deployment failed: {failed.error}" if failed else "Deployment not attempted",
        retryable=failed.retryable if failed else True,
        result=result.to_dict(),
    )
