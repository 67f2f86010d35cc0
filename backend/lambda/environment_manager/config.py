"""config.py — Central configuration — environment variables, constants, logging.

Every value is read once at import time. Tests override module attributes
directly (``patch.object(config, "...")``) rather than mutating os.environ.
"""
from __future__ import annotations

import logging
import os

__all__ = [
    "ARCHIVE_ON_DELETE",
    "AWS_REGION_NAME",
    "CFN_ROLE_ARN",
    "DEFAULT_APPSPEC",
    "DEFAULT_BUILDSPEC",
    "DEFAULT_START_TIME",
    "DEFAULT_STOP_TIME",
    "DEPLOY_MAX_WORKERS",
    "GITHUB_API_BASE",
    "GITHUB_API_VERSION",
    "GITHUB_APP_ID",
    "GITHUB_ARCHIVE_TIMEOUT_SECONDS",
    "GITHUB_CONFIG_PREFIX",
    "GITHUB_HTTP_TIMEOUT_SECONDS",
    "GITHUB_INSTALLATION_ID",
    "GITHUB_PRIVATE_KEY",
    "GITHUB_WEBHOOK_SECRET",
    "PIPELINE_POLL_FOR_SOURCE_CHANGES",
    "SCHEDULE_UTC_OFFSET_HOURS",
    "SOURCE_KEY_PREFIX",
    "STACK_NAME_PREFIX",
    "SUSPEND_COMPUTE_ON_SCHEDULE",
    "TABLE_NAME",
    "TOKEN_CACHE_TTL_SECONDS",
    "logger",
]


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

TABLE_NAME = os.environ.get("TABLE_NAME", "branchbox-environments")
AWS_REGION_NAME = os.environ.get("AWS_REGION_NAME", os.environ.get("AWS_REGION", "ap-northeast-2"))

# GitHub App credentials live in SSM; env values are fallbacks only.
GITHUB_CONFIG_PREFIX = os.environ.get("GITHUB_CONFIG_PREFIX", "/branchbox/config/github")
GITHUB_APP_ID = os.environ.get("GITHUB_APP_ID", "")
GITHUB_INSTALLATION_ID = os.environ.get("GITHUB_INSTALLATION_ID", "")
GITHUB_PRIVATE_KEY = os.environ.get("GITHUB_PRIVATE_KEY", "")
GITHUB_WEBHOOK_SECRET = os.environ.get("GITHUB_WEBHOOK_SECRET", "")
GITHUB_API_BASE = os.environ.get("GITHUB_API_BASE", "https://api.github.com").rstrip("/")
GITHUB_API_VERSION = "2022-11-28"
GITHUB_HTTP_TIMEOUT_SECONDS = float(os.environ.get("GITHUB_HTTP_TIMEOUT_SECONDS", "15"))
GITHUB_ARCHIVE_TIMEOUT_SECONDS = float(os.environ.get("GITHUB_ARCHIVE_TIMEOUT_SECONDS", "60"))
# Installation tokens expire after 60 minutes.
TOKEN_CACHE_TTL_SECONDS = float(os.environ.get("TOKEN_CACHE_TTL_SECONDS", "3000"))

CFN_ROLE_ARN = os.environ.get("CFN_ROLE_ARN", "")
STACK_NAME_PREFIX = os.environ.get("STACK_NAME_PREFIX", "BB-Env")
SOURCE_KEY_PREFIX = "sources"
DEFAULT_BUILDSPEC = "buildspec.yml"
DEFAULT_APPSPEC = "appspec.yml"
# Source stage relies on S3 polling to pick up uploads; see DeploymentTrigger.
PIPELINE_POLL_FOR_SOURCE_CHANGES = _env_flag("PIPELINE_POLL_FOR_SOURCE_CHANGES", "true")

DEFAULT_STOP_TIME = os.environ.get("DEFAULT_STOP_TIME", "18:00")
DEFAULT_START_TIME = os.environ.get("DEFAULT_START_TIME", "")
SCHEDULE_UTC_OFFSET_HOURS = int(os.environ.get("SCHEDULE_UTC_OFFSET_HOURS", "9"))
SUSPEND_COMPUTE_ON_SCHEDULE = _env_flag("SUSPEND_COMPUTE_ON_SCHEDULE", "false")
ARCHIVE_ON_DELETE = _env_flag("ARCHIVE_ON_DELETE", "false")

DEPLOY_MAX_WORKERS = max(1, int(os.environ.get("DEPLOY_MAX_WORKERS", "3")))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
