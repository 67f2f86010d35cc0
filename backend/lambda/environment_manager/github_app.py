"""github_app.py — GitHub App credential broker and source-host client.

Authenticates to GitHub using the RS256 App JWT → installation access token
flow, then lists repositories/branches and downloads zipball archives.

Tokens are never persisted. A ``TokenCache`` instance lives for one Lambda
invocation and is passed explicitly to whoever needs a token; there is no
process-wide token state.
"""
from __future__ import annotations

import hashlib
import hmac
import http.client
import json
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional, Tuple

import jwt
from botocore.exceptions import BotoCoreError, ClientError

from config import (
    GITHUB_API_BASE,
    GITHUB_API_VERSION,
    GITHUB_ARCHIVE_TIMEOUT_SECONDS,
    GITHUB_HTTP_TIMEOUT_SECONDS,
    TOKEN_CACHE_TTL_SECONDS,
    logger,
)
from credentials import CredentialStore, GithubCredentials
from errors import AuthError, SourceHostError

__all__ = [
    "CredentialBroker",
    "GitHubClient",
    "TokenCache",
    "generate_app_jwt",
    "verify_webhook_signature",
]

_MAX_PAGES = 20


def _headers(bearer: str) -> Dict[str, str]:
    return {
        "Accept": "application/vnd.github+json",
        "Authorization": f"Bearer {bearer}",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
        "User-Agent": "branchbox-environment-manager",
    }


def _read_error(exc: urllib.error.HTTPError) -> str:
    try:
        return exc.read().decode("utf-8", errors="replace")
    except (AttributeError, OSError):
        return ""


# ---------------------------------------------------------------------------
# App JWT and installation token
# ---------------------------------------------------------------------------


def generate_app_jwt(app_id: str, private_key: str, now: Optional[int] = None) -> str:
    """Generate a short-lived RS256 JWT for the GitHub App.

    GitHub requires:
    - iat: issued at (max 60s in the past)
    - exp: expiration (max 10 minutes from iat)
    - iss: GitHub App ID
    """
    issued = int(time.time()) if now is None else now
    payload = {
        "iat": issued - 60,  # allow for clock skew
        "exp": issued + (9 * 60),  # 9 minutes (under 10-min max)
        "iss": str(app_id),
    }
    try:
        return jwt.encode(payload, private_key, algorithm="RS256")
    except (ValueError, TypeError, jwt.PyJWTError) as exc:
        raise AuthError(f"GitHub App private key is unusable: {exc}") from exc


class TokenCache:
    """Installation tokens keyed by installation id, with an explicit TTL."""

    def __init__(self, ttl_seconds: float = TOKEN_CACHE_TTL_SECONDS, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    def get(self, installation_id: str) -> Optional[str]:
        entry = self._entries.get(str(installation_id))
        if entry is None:
            return None
        token, fetched_at = entry
        if self._clock() - fetched_at >= self.ttl_seconds:
            self._entries.pop(str(installation_id), None)
            return None
        return token

    def put(self, installation_id: str, token: str) -> None:
        self._entries[str(installation_id)] = (token, self._clock())


class CredentialBroker:
    """Exchanges long-lived App credentials for installation access tokens."""

    def __init__(self, cache: Optional[TokenCache] = None, api_base: str = GITHUB_API_BASE,
                 timeout: float = GITHUB_HTTP_TIMEOUT_SECONDS):
        self.cache = cache if cache is not None else TokenCache()
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    def get_access_token(self, app_id: str, private_key: str, installation_id: str) -> str:
        """POST /app/installations/{installation_id}/access_tokens.

        Raises AuthError when an identifier is missing or GitHub rejects the
        exchange (bad key, revoked installation).
        """
        if not (app_id and private_key and installation_id):
            raise AuthError("GitHub App not configured")

        cached = self.cache.get(installation_id)
        if cached:
            return cached

        app_jwt = generate_app_jwt(app_id, private_key)
        url = f"{self.api_base}/app/installations/{installation_id}/access_tokens"
        req = urllib.request.Request(url, method="POST", headers=_headers(app_jwt))
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                data = json.loads(resp.read())
        except urllib.error.HTTPError as exc:
            body = _read_error(exc)
            logger.error("GitHub installation token exchange failed: %s %s", exc.code, body)
            raise AuthError(f"GitHub token exchange failed ({exc.code}): {body}") from exc
        except (OSError, http.client.HTTPException, ValueError) as exc:
            raise AuthError(f"GitHub token exchange failed: {exc}", retryable=True) from exc

        token = data.get("token")
        if not token:
            raise AuthError("GitHub token exchange returned no token")
        self.cache.put(installation_id, token)
        return token

    def token_for(self, credentials: GithubCredentials) -> str:
        return self.get_access_token(
            credentials.app_id, credentials.private_key, credentials.installation_id
        )

    def try_token(self, store: CredentialStore) -> Optional[str]:
        """Token from the stored credentials, or None when unavailable.

        Used where a token is optional: a missing configuration or rejected
        exchange is logged and the caller proceeds unauthenticated.
        """
        try:
            credentials = store.get()
        except (ClientError, BotoCoreError) as exc:
            logger.warning("[WARNING] Could not read GitHub App configuration: %s", exc)
            return None
        if not credentials.configured:
            logger.info("[INFO] GitHub App not configured; skipping token exchange")
            return None
        try:
            return self.token_for(credentials)
        except AuthError as exc:
            logger.warning("[WARNING] Failed to get GitHub access token: %s", exc)
            return None


# ---------------------------------------------------------------------------
# Source host API
# ---------------------------------------------------------------------------


class GitHubClient:
    def __init__(self, api_base: str = GITHUB_API_BASE, timeout: float = GITHUB_HTTP_TIMEOUT_SECONDS,
                 archive_timeout: float = GITHUB_ARCHIVE_TIMEOUT_SECONDS):
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.archive_timeout = archive_timeout

    def _get(self, token: str, path: str, *, timeout: Optional[float] = None, raw: bool = False) -> Any:
        url = f"{self.api_base}{path}"
        req = urllib.request.Request(url, method="GET", headers=_headers(token))
        try:
            with urllib.request.urlopen(req, timeout=timeout or self.timeout) as resp:
                payload = resp.read()
        except urllib.error.HTTPError as exc:
            body = _read_error(exc)
            logger.error("GitHub GET %s failed: %s %s", path, exc.code, body)
            if exc.code == 401:
                raise AuthError(f"GitHub rejected the access token ({exc.code})") from exc
            raise SourceHostError(
                f"GitHub GET {path} failed ({exc.code}): {body}",
                retryable=exc.code >= 500 or exc.code == 429,
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            # URLError, timeouts and connection resets are all OSError
            raise SourceHostError(f"GitHub GET {path} failed: {exc}", retryable=True) from exc
        if raw:
            return payload
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise SourceHostError(f"GitHub GET {path} returned invalid JSON", retryable=True) from exc

    def list_installation_repositories(self, token: str) -> List[Dict[str, Any]]:
        repos: List[Dict[str, Any]] = []
        for page in range(1, _MAX_PAGES + 1):
            data = self._get(token, f"/installation/repositories?per_page=100&page={page}")
            batch = data.get("repositories") or []
            repos.extend(
                {
                    "id": repo.get("id"),
                    "name": repo.get("name"),
                    "full_name": repo.get("full_name"),
                    "owner": (repo.get("owner") or {}).get("login"),
                    "url": repo.get("html_url"),
                }
                for repo in batch
            )
            if len(batch) < 100:
                break
        return repos

    def list_branches(self, token: str, owner: str, repo: str) -> List[Dict[str, Any]]:
        branches: List[Dict[str, Any]] = []
        base = f"/repos/{urllib.parse.quote(owner)}/{urllib.parse.quote(repo)}/branches"
        for page in range(1, _MAX_PAGES + 1):
            batch = self._get(token, f"{base}?per_page=100&page={page}") or []
            branches.extend(
                {"name": b.get("name"), "sha": (b.get("commit") or {}).get("sha")}
                for b in batch
            )
            if len(batch) < 100:
                break
        return branches

    def download_archive(self, token: str, owner: str, repo: str, ref: str) -> bytes:
        """Zipball of ``owner/repo`` at ``ref`` (follows the codeload redirect)."""
        logger.info("Downloading archive for %s/%s@%s", owner, repo, ref)
        path = (
            f"/repos/{urllib.parse.quote(owner)}/{urllib.parse.quote(repo)}"
            f"/zipball/{urllib.parse.quote(ref, safe='')}"
        )
        return self._get(token, path, timeout=self.archive_timeout, raw=True)


# ---------------------------------------------------------------------------
# Webhook signature verification
# ---------------------------------------------------------------------------


def verify_webhook_signature(raw_body: str, signature_header: Optional[str], secret: str) -> bool:
    """Verify GitHub webhook HMAC-SHA256 signature."""
    signature_header = signature_header or ""
    if not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(
        secret.encode("utf-8"),
        raw_body.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    received = signature_header[len("sha256="):]
    return hmac.compare_digest(expected, received)
