"""test_github_app.py — App JWT, installation token broker, GitHub client, webhook HMAC.

Run: python3 -m pytest test_github_app.py -v
"""
from __future__ import annotations

import hashlib
import hmac
import http.client
import io
import json
import unittest
import urllib.error
from unittest.mock import MagicMock, patch

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

import test_support  # noqa: F401

import github_app
from credentials import GithubCredentials
from errors import AuthError, SourceHostError
from github_app import CredentialBroker, GitHubClient, TokenCache, generate_app_jwt, verify_webhook_signature


def _pem_pair():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def _urlopen_returning(payload, raw=False):
    resp = MagicMock()
    resp.read.return_value = payload if raw else json.dumps(payload).encode()
    cm = MagicMock()
    cm.__enter__.return_value = resp
    cm.__exit__.return_value = False
    return cm


def _http_error(code, body=b"{}"):
    return urllib.error.HTTPError("https://api.github.com/x", code, "error", {}, io.BytesIO(body))


class AppJwtTests(unittest.TestCase):
    def test_claims_and_signature(self):
        private_pem, public_pem = _pem_pair()
        token = generate_app_jwt("12345", private_pem, now=1_700_000_000)
        claims = jwt.decode(token, public_pem, algorithms=["RS256"], options={"verify_exp": False, "verify_iat": False})
        self.assertEqual(claims["iss"], "12345")
        self.assertEqual(claims["iat"], 1_700_000_000 - 60)
        self.assertEqual(claims["exp"], 1_700_000_000 + 540)

    def test_unusable_key_is_auth_error(self):
        with self.assertRaises(AuthError):
            generate_app_jwt("12345", "not-a-pem-key")


class TokenCacheTests(unittest.TestCase):
    def test_entry_expires_after_ttl(self):
        now = [100.0]
        cache = TokenCache(ttl_seconds=50, clock=lambda: now[0])
        cache.put("67890", "tok")
        now[0] = 149.0
        self.assertEqual(cache.get("67890"), "tok")
        now[0] = 150.0
        self.assertIsNone(cache.get("67890"))

    def test_instances_do_not_share_tokens(self):
        first = TokenCache()
        first.put("1", "tok")
        self.assertIsNone(TokenCache().get("1"))


class CredentialBrokerTests(unittest.TestCase):
    def setUp(self):
        jwt_patch = patch.object(github_app, "generate_app_jwt", return_value="app-jwt")
        jwt_patch.start()
        self.addCleanup(jwt_patch.stop)

    def test_missing_identifiers_raise_auth_error(self):
        broker = CredentialBroker()
        with self.assertRaises(AuthError):
            broker.get_access_token("", "key", "67890")
        with self.assertRaises(AuthError):
            broker.get_access_token("12345", "key", "")

    @patch("github_app.urllib.request.urlopen")
    def test_exchange_posts_to_installation_and_caches(self, mock_urlopen):
        mock_urlopen.return_value = _urlopen_returning({"token": "ghs_abc"})
        broker = CredentialBroker(cache=TokenCache(), api_base="https://api.github.com")

        self.assertEqual(broker.get_access_token("12345", "key", "67890"), "ghs_abc")
        self.assertEqual(broker.get_access_token("12345", "key", "67890"), "ghs_abc")

        mock_urlopen.assert_called_once()
        req = mock_urlopen.call_args.args[0]
        self.assertEqual(req.get_method(), "POST")
        self.assertEqual(req.full_url, "https://api.github.com/app/installations/67890/access_tokens")
        self.assertEqual(req.get_header("Authorization"), "Bearer app-jwt")

    @patch("github_app.urllib.request.urlopen")
    def test_rejected_exchange_is_auth_error(self, mock_urlopen):
        mock_urlopen.side_effect = _http_error(401, b'{"message":"Bad credentials"}')
        with self.assertRaises(AuthError) as ctx:
            CredentialBroker().get_access_token("12345", "key", "67890")
        self.assertIn("Bad credentials", ctx.exception.message)
        self.assertFalse(ctx.exception.retryable)

    @patch("github_app.urllib.request.urlopen")
    def test_network_failure_is_retryable(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.URLError("timed out")
        with self.assertRaises(AuthError) as ctx:
            CredentialBroker().get_access_token("12345", "key", "67890")
        self.assertTrue(ctx.exception.retryable)

    @patch("github_app.urllib.request.urlopen")
    def test_connection_reset_during_exchange_is_retryable(self, mock_urlopen):
        mock_urlopen.side_effect = ConnectionResetError(104, "reset")
        with self.assertRaises(AuthError) as ctx:
            CredentialBroker().get_access_token("12345", "key", "67890")
        self.assertTrue(ctx.exception.retryable)

    def test_try_token_returns_none_when_unconfigured(self):
        store = MagicMock()
        store.get.return_value = GithubCredentials()
        self.assertIsNone(CredentialBroker().try_token(store))

    @patch("github_app.urllib.request.urlopen")
    def test_try_token_swallows_rejected_exchange(self, mock_urlopen):
        mock_urlopen.side_effect = _http_error(404)
        store = MagicMock()
        store.get.return_value = GithubCredentials("12345", "67890", "key")
        self.assertIsNone(CredentialBroker().try_token(store))


class GitHubClientTests(unittest.TestCase):
    @patch("github_app.urllib.request.urlopen")
    def test_list_repositories_shapes_entries(self, mock_urlopen):
        mock_urlopen.return_value = _urlopen_returning({"repositories": [{
            "id": 1,
            "name": "api",
            "full_name": "acme/api",
            "owner": {"login": "acme"},
            "html_url": "https://github.com/acme/api",
        }]})
        repos = GitHubClient().list_installation_repositories("tok")
        self.assertEqual(repos, [{
            "id": 1, "name": "api", "full_name": "acme/api", "owner": "acme", "url": "https://github.com/acme/api",
        }])

    @patch("github_app.urllib.request.urlopen")
    def test_list_branches_paginates(self, mock_urlopen):
        first = [{"name": f"b{i}", "commit": {"sha": str(i)}} for i in range(100)]
        second = [{"name": "last", "commit": {"sha": "z"}}]
        mock_urlopen.side_effect = [_urlopen_returning(first), _urlopen_returning(second)]
        branches = GitHubClient().list_branches("tok", "acme", "api")
        self.assertEqual(len(branches), 101)
        self.assertEqual(branches[-1], {"name": "last", "sha": "z"})
        self.assertIn("page=2", mock_urlopen.call_args.args[0].full_url)

    @patch("github_app.urllib.request.urlopen")
    def test_download_archive_quotes_branch(self, mock_urlopen):
        mock_urlopen.return_value = _urlopen_returning(b"PK\x03\x04", raw=True)
        body = GitHubClient(api_base="https://api.github.com").download_archive("tok", "acme", "api", "feature/x")
        self.assertEqual(body, b"PK\x03\x04")
        self.assertEqual(
            mock_urlopen.call_args.args[0].full_url,
            "https://api.github.com/repos/acme/api/zipball/feature%2Fx",
        )

    @patch("github_app.urllib.request.urlopen")
    def test_error_mapping(self, mock_urlopen):
        mock_urlopen.side_effect = _http_error(401)
        with self.assertRaises(AuthError):
            GitHubClient().list_branches("tok", "acme", "api")

        mock_urlopen.side_effect = _http_error(404)
        with self.assertRaises(SourceHostError) as ctx:
            GitHubClient().download_archive("tok", "acme", "api", "gone")
        self.assertFalse(ctx.exception.retryable)

        mock_urlopen.side_effect = _http_error(503)
        with self.assertRaises(SourceHostError) as ctx:
            GitHubClient().download_archive("tok", "acme", "api", "main")
        self.assertTrue(ctx.exception.retryable)

    @patch("github_app.urllib.request.urlopen")
    def test_transport_failures_are_retryable_source_errors(self, mock_urlopen):
        for failure in (ConnectionResetError(104, "reset"), http.client.IncompleteRead(b"PK")):
            mock_urlopen.side_effect = failure
            with self.assertRaises(SourceHostError) as ctx:
                GitHubClient().download_archive("tok", "acme", "api", "main")
            self.assertTrue(ctx.exception.retryable)

    @patch("github_app.urllib.request.urlopen")
    def test_non_json_listing_is_source_error(self, mock_urlopen):
        mock_urlopen.return_value = _urlopen_returning(b"<html>", raw=True)
        with self.assertRaises(SourceHostError):
            GitHubClient().list_branches("tok", "acme", "api")


class WebhookSignatureTests(unittest.TestCase):
    def test_valid_and_invalid_signatures(self):
        body = '{"ref":"refs/heads/main"}'
        digest = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
        self.assertTrue(verify_webhook_signature(body, f"sha256={digest}", "s3cret"))
        self.assertFalse(verify_webhook_signature(body, f"sha256={digest}", "other"))
        self.assertFalse(verify_webhook_signature(body, digest, "s3cret"))
        self.assertFalse(verify_webhook_signature(body, None, "s3cret"))


if __name__ == "__main__":
    unittest.main()
