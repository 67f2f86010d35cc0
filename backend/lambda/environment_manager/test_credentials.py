"""test_credentials.py — GitHub App credential bundle in SSM.

Run: python3 -m pytest test_credentials.py -v
"""
from __future__ import annotations

import unittest
from unittest.mock import MagicMock, patch

import test_support  # noqa: F401

import credentials
from credentials import CredentialStore, GithubCredentials
from errors import ValidationError

PREFIX = "/branchbox/config/github"


def _param(field, value):
    return {"Name": f"{PREFIX}/{field}", "Value": value}


class CredentialStoreTests(unittest.TestCase):
    def setUp(self):
        self.ssm = MagicMock()
        self.store = CredentialStore(ssm=self.ssm, prefix=PREFIX)

    def test_get_reads_bundle_with_decryption(self):
        self.ssm.get_parameters.return_value = {"Parameters": [
            _param("appId", "12345"),
            _param("installationId", "67890"),
            _param("privateKey", "-----BEGIN KEY-----"),
        ]}
        creds = self.store.get()
        self.assertEqual(creds, GithubCredentials("12345", "67890", "-----BEGIN KEY-----", ""))
        self.assertTrue(creds.configured)
        kwargs = self.ssm.get_parameters.call_args.kwargs
        self.assertTrue(kwargs["WithDecryption"])
        self.assertIn(f"{PREFIX}/privateKey", kwargs["Names"])

    def test_get_falls_back_to_environment_values(self):
        self.ssm.get_parameters.return_value = {"Parameters": []}
        with patch.object(credentials, "GITHUB_APP_ID", "999"), \
                patch.object(credentials, "GITHUB_INSTALLATION_ID", ""), \
                patch.object(credentials, "GITHUB_PRIVATE_KEY", ""):
            creds = self.store.get()
        self.assertEqual(creds.app_id, "999")
        self.assertFalse(creds.configured)

    def test_put_stores_secrets_as_secure_strings(self):
        self.store.put("12345", "67890", "pem", "shh")
        types = {c.kwargs["Name"]: c.kwargs["Type"] for c in self.ssm.put_parameter.call_args_list}
        self.assertEqual(types, {
            f"{PREFIX}/appId": "String",
            f"{PREFIX}/installationId": "String",
            f"{PREFIX}/privateKey": "SecureString",
            f"{PREFIX}/clientSecret": "SecureString",
        })

    def test_put_skips_empty_client_secret(self):
        self.store.put("12345", "67890", "pem")
        names = [c.kwargs["Name"] for c in self.ssm.put_parameter.call_args_list]
        self.assertNotIn(f"{PREFIX}/clientSecret", names)

    def test_put_requires_identifiers_and_key(self):
        with self.assertRaises(ValidationError):
            self.store.put("12345", "", "pem")
        self.ssm.put_parameter.assert_not_called()

    def test_summary_never_exposes_key_material(self):
        summary = GithubCredentials("12345", "67890", "pem", "shh").summary()
        self.assertEqual(summary, {"configured": True, "appId": "12345", "installationId": "67890"})


if __name__ == "__main__":
    unittest.main()
