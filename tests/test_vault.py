"""Tests for the credential vault."""

import json

import pytest

from kpisync.core.errors import DecryptionError
from kpisync.services.vault import CredentialVault


SECRETS = json.dumps({"access_token": "EAAB-very-secret", "ad_account_id": "act_123"})


class TestEncryptDecrypt:

    def test_round_trip(self, vault):
        blob = vault.encrypt(SECRETS, 42)
        assert vault.decrypt(blob, 42) == SECRETS

    def test_blob_format(self, vault):
        parsed = json.loads(vault.encrypt(SECRETS, 42))
        assert parsed["algorithm"] == "aes-256-gcm"
        assert len(bytes.fromhex(parsed["iv"])) == 12
        assert len(bytes.fromhex(parsed["authTag"])) == 16
        assert "EAAB" not in parsed["encryptedData"]

    def test_fresh_nonce_per_call(self, vault):
        first = json.loads(vault.encrypt(SECRETS, 42))
        second = json.loads(vault.encrypt(SECRETS, 42))
        assert first["iv"] != second["iv"]
        assert first["encryptedData"] != second["encryptedData"]

    def test_other_tenant_cannot_decrypt(self, vault):
        blob = vault.encrypt(SECRETS, 1)
        with pytest.raises(DecryptionError):
            vault.decrypt(blob, 2)

    def test_tampered_ciphertext_rejected(self, vault):
        parsed = json.loads(vault.encrypt(SECRETS, 42))
        data = bytearray(bytes.fromhex(parsed["encryptedData"]))
        data[0] ^= 0x01
        parsed["encryptedData"] = data.hex()
        with pytest.raises(DecryptionError):
            vault.decrypt(json.dumps(parsed), 42)

    def test_tampered_tag_rejected(self, vault):
        parsed = json.loads(vault.encrypt(SECRETS, 42))
        parsed["authTag"] = "00" * 16
        with pytest.raises(DecryptionError):
            vault.decrypt(json.dumps(parsed), 42)

    @pytest.mark.parametrize("blob", ["not json", "{}", '{"iv": "zz", "authTag": "", "encryptedData": ""}', "[]"])
    def test_malformed_blob_rejected(self, vault, blob):
        with pytest.raises(DecryptionError):
            vault.decrypt(blob, 42)

    def test_different_salt_cannot_decrypt(self, vault):
        blob = vault.encrypt(SECRETS, 42)
        other = CredentialVault("another-salt")
        with pytest.raises(DecryptionError):
            other.decrypt(blob, 42)


class TestConfiguration:

    def test_rejects_weak_iteration_count(self):
        with pytest.raises(ValueError):
            CredentialVault("salt", iterations=1000)

    def test_rejects_empty_salt(self):
        with pytest.raises(ValueError):
            CredentialVault("")
