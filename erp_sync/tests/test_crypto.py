"""Tests for connection-config encryption."""

import pytest

from erp_sync.core.crypto import CredentialCipher, generate_key
from erp_sync.core.errors import ConfigurationError, CredentialDecryptionError

CONNECTION = {"base_url": "https://sap.test", "username": "pm_user", "password": "hunter2"}


class TestCredentialCipher:
    def test_round_trip(self):
        cipher = CredentialCipher(generate_key())
        blob = cipher.encrypt(CONNECTION)
        assert "hunter2" not in blob
        assert cipher.decrypt(blob) == CONNECTION

    def test_wrong_key(self):
        blob = CredentialCipher(generate_key()).encrypt(CONNECTION)
        with pytest.raises(CredentialDecryptionError):
            CredentialCipher(generate_key()).decrypt(blob)

    def test_key_rotation(self):
        old, new = generate_key(), generate_key()
        legacy_blob = CredentialCipher(old).encrypt(CONNECTION)

        rotating = CredentialCipher(f"{new},{old}")
        assert rotating.decrypt(legacy_blob) == CONNECTION

        rotated = rotating.rotate(legacy_blob)
        assert CredentialCipher(new).decrypt(rotated) == CONNECTION
        with pytest.raises(CredentialDecryptionError):
            CredentialCipher(old).decrypt(rotated)

    def test_accepts_key_list(self):
        keys = [generate_key(), generate_key()]
        cipher = CredentialCipher(keys)
        assert CredentialCipher(keys[0]).decrypt(cipher.encrypt(CONNECTION)) == CONNECTION

    def test_no_key(self):
        with pytest.raises(ConfigurationError):
            CredentialCipher("")

    def test_invalid_key(self):
        with pytest.raises(ConfigurationError, match="Invalid encryption key"):
            CredentialCipher("not-a-fernet-key")

    def test_rotate_garbage(self):
        with pytest.raises(CredentialDecryptionError):
            CredentialCipher(generate_key()).rotate("garbage")
