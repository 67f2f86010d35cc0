"""credentials.py — GitHub App credential bundle in SSM Parameter Store.

Parameters live under ``GITHUB_CONFIG_PREFIX``; the private key and client
secret are SecureStrings. The bundle is always read and written as one unit
and never copied into environment records.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from branchbox_shared.aws_clients import _get_ssm
from config import (
    GITHUB_APP_ID,
    GITHUB_CONFIG_PREFIX,
    GITHUB_INSTALLATION_ID,
    GITHUB_PRIVATE_KEY,
    logger,
)
from errors import ValidationError

__all__ = ["CredentialStore", "GithubCredentials"]

_FIELDS = ("appId", "installationId", "privateKey", "clientSecret")
_SECURE_FIELDS = frozenset({"privateKey", "clientSecret"})


@dataclass(frozen=True)
class GithubCredentials:
    app_id: str = ""
    installation_id: str = ""
    private_key: str = ""
    client_secret: str = ""

    @property
    def configured(self) -> bool:
        """True when a token exchange is possible at all."""
        return bool(self.app_id and self.installation_id and self.private_key)

    def summary(self) -> Dict[str, Any]:
        return {
            "configured": bool(self.app_id and self.private_key),
            "appId": self.app_id or None,
            "installationId": self.installation_id or None,
        }


class CredentialStore:
    def __init__(self, ssm: Any = None, prefix: str = GITHUB_CONFIG_PREFIX):
        self._ssm = ssm
        self.prefix = prefix.rstrip("/")

    @property
    def ssm(self):
        if self._ssm is None:
            self._ssm = _get_ssm()
        return self._ssm

    def _name(self, field_name: str) -> str:
        return f"{self.prefix}/{field_name}"

    def get(self) -> GithubCredentials:
        """Stored bundle, with env fallbacks for values SSM does not hold."""
        resp = self.ssm.get_parameters(
            Names=[self._name(f) for f in _FIELDS],
            WithDecryption=True,
        )
        values: Dict[str, str] = {}
        for param in resp.get("Parameters") or []:
            values[param["Name"].rsplit("/", 1)[-1]] = param.get("Value") or ""
        return GithubCredentials(
            app_id=values.get("appId") or GITHUB_APP_ID,
            installation_id=values.get("installationId") or GITHUB_INSTALLATION_ID,
            private_key=values.get("privateKey") or GITHUB_PRIVATE_KEY,
            client_secret=values.get("clientSecret") or "",
        )

    def put(self, app_id: str, installation_id: str, private_key: str, client_secret: Optional[str] = None) -> None:
        values = {
            "appId": str(app_id or "").strip(),
            "installationId": str(installation_id or "").strip(),
            "privateKey": str(private_key or ""),
            "clientSecret": str(client_secret or ""),
        }
        missing = [k for k in ("appId", "installationId", "privateKey") if not values[k]]
        if missing:
            raise ValidationError(f"Missing GitHub App configuration: {', '.join(missing)}")

        for field_name in _FIELDS:
            value = values[field_name]
            if not value:
                # SSM rejects empty parameter values.
                continue
            self.ssm.put_parameter(
                Name=self._name(field_name),
                Value=value,
                Type="SecureString" if field_name in _SECURE_FIELDS else "String",
                Overwrite=True,
            )
        logger.info("[INFO] Saved GitHub App configuration for app %s", values["appId"])
