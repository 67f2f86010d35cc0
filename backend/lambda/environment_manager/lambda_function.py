"""lambda_function.py — BranchBox environment manager Lambda entry points.

Three handlers share this module:

``lambda_handler``
    HTTP API (API Gateway v2) for GitHub configuration, repository browsing
    and environment create/list/delete/deploy.

    Routes:
        POST   /config          save GitHub App credentials
        GET    /config          configuration summary (no secrets)
        GET    /repos           repositories visible to the installation
        GET    /branches        branches of ?owner=&repo=
        GET    /envs            list environments
        POST   /envs            create an environment (201)
        DELETE /envs            delete by ?stackId= or ?repo=&branch=
        POST   /envs/ready      record stack readiness
        POST   /deploy          stage sources for every service

``webhook_handler``
    GitHub ``push`` webhook → redeploy the environment owning the pushed
    repo/branch.

``scheduler_handler``
    Hourly EventBridge rule → auto-stop / auto-start sweep.

Environment variables: see config.py.
"""
from __future__ import annotations

import json
from typing import Any, Callable, Dict

from botocore.exceptions import BotoCoreError, ClientError

from branchbox_shared.http_utils import (
    CORS_HEADERS,
    _error,
    _header,
    _parse_body,
    _path_method,
    _raw_body,
    _response,
    _route_key,
)
from config import GITHUB_WEBHOOK_SECRET, logger
from errors import BranchBoxError
from github_app import verify_webhook_signature
from handlers import (
    AppContext,
    _build_context,
    _handle_create_env,
    _handle_delete_env,
    _handle_deploy,
    _handle_get_config,
    _handle_list_branches,
    _handle_list_envs,
    _handle_list_repos,
    _handle_mark_ready,
    _handle_save_config,
)
from push_dispatch import PushDispatcher, branch_from_ref
from registry import EnvironmentRegistry
from scheduler import ScheduleReconciler, current_schedule_hour

__all__ = ["lambda_handler", "scheduler_handler", "webhook_handler"]

_ROUTES: Dict[str, Callable[..., Dict[str, Any]]] = {
    "POST /config": _handle_save_config,
    "GET /config": _handle_get_config,
    "GET /repos": _handle_list_repos,
    "GET /branches": _handle_list_branches,
    "GET /envs": _handle_list_envs,
    "POST /envs": _handle_create_env,
    "DELETE /envs": _handle_delete_env,
    "POST /envs/ready": _handle_mark_ready,
}


def _branchbox_error_response(exc: BranchBoxError) -> Dict[str, Any]:
    return _error(exc.status_code, exc.message, **exc.to_payload())


# ---------------------------------------------------------------------------
# Management API
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict, context: Any) -> Dict:
    method, path = _path_method(event)
    if method == "OPTIONS":
        return {"statusCode": 204, "headers": dict(CORS_HEADERS), "body": ""}

    route = _route_key(event)
    logger.info("[INFO] route=%s", route)

    try:
        ctx: AppContext = _build_context()
        if route == "POST /deploy":
            return _handle_deploy(event, ctx, context)
        handler = _ROUTES.get(route)
        if handler is None:
            return _error(404, f"Route not found: {method} {path}")
        return handler(event, ctx)
    except BranchBoxError as exc:
        logger.warning("[WARNING] %s failed: %s %s", route, type(exc).__name__, exc.message)
        return _branchbox_error_response(exc)
    except (ClientError, BotoCoreError) as exc:
        logger.exception("[ERROR] AWS call failed during %s", route)
        return _error(502, f"AWS request failed: {exc}", retryable=True)
    except Exception as exc:
        logger.exception("[ERROR] Unhandled error during %s", route)
        return _error(500, str(exc))


# ---------------------------------------------------------------------------
# GitHub webhook
# ---------------------------------------------------------------------------


def webhook_handler(event: Dict, context: Any) -> Dict:
    """Handle a GitHub webhook delivery.

    The signature is verified when ``GITHUB_WEBHOOK_SECRET`` is set. Events
    other than ``push``, tag pushes and branch deletions are acknowledged
    and ignored.
    """
    logger.info("Received GitHub event")
    if GITHUB_WEBHOOK_SECRET:
        signature = _header(event, "x-hub-signature-256")
        if not verify_webhook_signature(_raw_body(event), signature, GITHUB_WEBHOOK_SECRET):
            logger.warning("[WARNING] Webhook signature verification failed")
            return _error(401, "Invalid webhook signature")

    github_event = (_header(event, "x-github-event") or "").lower()
    if github_event != "push":
        return _response(200, {"message": f"Ignored event: {github_event or 'unknown'}"})

    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Invalid JSON")

    repo = ((body.get("repository") or {}).get("full_name") or "").strip()
    branch = branch_from_ref(body.get("ref") or "")
    if not repo or not branch:
        return _response(200, {"message": "Ignored ref", "ref": body.get("ref")})
    if body.get("deleted"):
        return _response(200, {"message": "Ignored branch deletion", "branch": branch})

    try:
        ctx = _build_context()
        dispatcher = PushDispatcher(
            ctx.registry,
            ctx.trigger,
            token_provider=ctx.optional_token,
        )
        outcome = dispatcher.on_push(repo, branch)
    except BranchBoxError as exc:
        logger.warning("[WARNING] Push dispatch for %s@%s failed: %s", repo, branch, exc.message)
        return _branchbox_error_response(exc)
    except (ClientError, BotoCoreError) as exc:
        logger.exception("[ERROR] AWS call failed handling push for %s@%s", repo, branch)
        return _error(502, f"AWS request failed: {exc}", retryable=True)

    result = outcome.result
    if result is not None and not result.succeeded:
        return _error(207 if result.partial else 502, "Deploy finished with failures", **outcome.to_dict())
    return _response(200, {"message": "Processed", **outcome.to_dict()})


# ---------------------------------------------------------------------------
# Schedule sweep
# ---------------------------------------------------------------------------


def scheduler_handler(event: Dict, context: Any) -> Dict:
    """Run one stop/start sweep.

    ``event["hour"]`` overrides the current schedule hour for manual runs.
    """
    hour = (event or {}).get("hour")
    if hour is None:
        hour = current_schedule_hour()
    try:
        hour = int(hour)
    except (TypeError, ValueError):
        hour = -1
    if not 0 <= hour <= 23:
        logger.warning("[WARNING] Rejected schedule hour override: %r", (event or {}).get("hour"))
        return _error(400, "hour must be an integer between 0 and 23")
    report = ScheduleReconciler(EnvironmentRegistry()).sweep(hour)
    logger.info("[INFO] Sweep report: %s", json.dumps(report.to_dict()))
    return {"statusCode": 200, "body": json.dumps(report.to_dict())}
