"""branchbox_shared.aws_clients — Lazy-singleton AWS service clients.

Provides factory functions that create boto3 clients on first call and
cache them for subsequent invocations. This avoids paying the boto3 client
construction cost on cold starts until the client is actually needed.

Every client carries explicit connect/read timeouts so that no backend call
can block a Lambda invocation indefinitely.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config

# ---------------------------------------------------------------------------
# Defaults (overridable via env)
# ---------------------------------------------------------------------------

AWS_REGION_NAME: str = os.environ.get(
    "AWS_REGION_NAME", os.environ.get("AWS_REGION", "ap-northeast-2")
)
CONNECT_TIMEOUT_SECONDS: float = float(os.environ.get("BACKEND_CONNECT_TIMEOUT_SECONDS", "5"))
READ_TIMEOUT_SECONDS: float = float(os.environ.get("BACKEND_READ_TIMEOUT_SECONDS", "30"))

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_clients: Dict[str, Any] = {}


def _client_config(max_attempts: int) -> Config:
    return Config(
        retries={"max_attempts": max_attempts, "mode": "standard"},
        connect_timeout=CONNECT_TIMEOUT_SECONDS,
        read_timeout=READ_TIMEOUT_SECONDS,
    )


def _get_client(service: str, region: Optional[str] = None, max_attempts: int = 3):
    """Get (or create) the client singleton for ``service``."""
    client = _clients.get(service)
    if client is None:
        client = boto3.client(
            service,
            region_name=region or AWS_REGION_NAME,
            config=_client_config(max_attempts),
        )
        _clients[service] = client
    return client


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    return _get_client("dynamodb", region, max_attempts=5)


def _get_ssm(region: Optional[str] = None):
    """Get (or create) the SSM client singleton."""
    return _get_client("ssm", region, max_attempts=5)


def _get_ec2(region: Optional[str] = None):
    """Get (or create) the EC2 client singleton."""
    return _get_client("ec2", region, max_attempts=5)


def _get_s3(region: Optional[str] = None):
    """Get (or create) the S3 client singleton."""
    return _get_client("s3", region)


def _get_cloudformation(region: Optional[str] = None):
    """Get (or create) the CloudFormation client singleton."""
    return _get_client("cloudformation", region)


def _reset_clients() -> None:
    """Drop cached clients (tests swap regions/credentials between cases)."""
    _clients.clear()
