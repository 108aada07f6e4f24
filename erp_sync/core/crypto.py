"""
At-rest encryption for integration connection configs.

Connection configs hold ERP credentials, so they are stored as Fernet
tokens.  Several keys may be configured: the first one encrypts, all of
them decrypt, which lets an operator rotate keys without re-encrypting
every row up front.
"""

from __future__ import annotations

import json
from typing import Any, Sequence

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from erp_sync.core.errors import ConfigurationError, CredentialDecryptionError


def generate_key() -> str:
    """Return a fresh urlsafe-base64 Fernet key."""
    return Fernet.generate_key().decode()


class CredentialCipher:
    """Encrypts connection-config dicts to opaque strings and back."""

    def __init__(self, keys: str | Sequence[str]) -> None:
        if isinstance(keys, str):
            keys = [k.strip() for k in keys.split(",") if k.strip()]
        if not keys:
            raise ConfigurationError("No encryption key configured")
        try:
            self._fernet = MultiFernet([Fernet(k.encode() if isinstance(k, str) else k) for k in keys])
        except ValueError as exc:
            raise ConfigurationError(f"Invalid encryption key: {exc}") from exc

    def encrypt(self, config: dict[str, Any]) -> str:
        payload = json.dumps(config, separators=(",", ":"), sort_keys=True)
        return self._fernet.encrypt(payload.encode()).decode()

    def decrypt(self, blob: str) -> dict[str, Any]:
        try:
            payload = self._fernet.decrypt(blob.encode())
        except InvalidToken:
            raise CredentialDecryptionError(
                "Connection config could not be decrypted with the configured key(s)"
            ) from None
        return json.loads(payload)

    def rotate(self, blob: str) -> str:
        """Re-encrypt *blob* under the primary key."""
        try:
            return self._fernet.rotate(blob.encode()).decode()
        except InvalidToken:
            raise CredentialDecryptionError(
                "Connection config could not be decrypted with the configured key(s)"
            ) from None
