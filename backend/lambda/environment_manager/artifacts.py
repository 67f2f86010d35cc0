"""artifacts.py — S3 artifact store for source archives."""
from __future__ import annotations

from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from branchbox_shared.aws_clients import _get_s3
from config import logger
from errors import DeployError

__all__ = ["ArtifactStore"]


class ArtifactStore:
    def __init__(self, s3: Any = None):
        self._s3 = s3

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = _get_s3()
        return self._s3

    def put(self, bucket: str, key: str, body: bytes) -> None:
        try:
            self.s3.put_object(Bucket=bucket, Key=key, Body=body)
        except (ClientError, BotoCoreError) as exc:
            logger.error("[ERROR] Upload to s3://%s/%s failed: %s", bucket, key, exc)
            raise DeployError(f"Upload to s3://{bucket}/{key} failed: {exc}", retryable=True) from exc
        logger.info("[INFO] Uploaded s3://%s/%s (%d bytes)", bucket, key, len(body))
