"""
Authentication handlers for ERP connections.

Supports OAuth 2.0 client-credentials, basic auth, and API-key auth.
Connectors pick the strategy from the shape of their connection config
and this module manages token lifecycle (acquisition, caching, refresh).
"""

from __future__ import annotations

import abc
import base64
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

# OAuth tokens are refreshed this long before they actually expire.
REFRESH_MARGIN_SECONDS = 300
DEFAULT_TIMEOUT = 30.0


@dataclass
class TokenInfo:
    """Cached token with expiry tracking."""

    access_token: str
    token_type: str = "Bearer"
    expires_at: float = 0.0  # epoch seconds; 0 → never expires
    refresh_token: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_expired(self) -> bool:
        if self.expires_at == 0.0:
            return False
        return time.time() >= (self.expires_at - REFRESH_MARGIN_SECONDS)


class AuthProvider(abc.ABC):
    """Base class for all auth strategies."""

    def __init__(self) -> None:
        self._cached: TokenInfo | None = None

    @abc.abstractmethod
    async def acquire_token(self) -> TokenInfo:
        """Obtain a fresh token (or credentials wrapper)."""

    async def refresh_token(self, token: TokenInfo) -> TokenInfo:
        return await self.acquire_token()

    async def get_token(self) -> TokenInfo:
        """Return a valid token, refreshing if necessary."""
        if self._cached is None or self._cached.is_expired:
            if self._cached is not None and self._cached.refresh_token:
                self._cached = await self.refresh_token(self._cached)
            else:
                self._cached = await self.acquire_token()
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    def auth_header(self, token: TokenInfo) -> dict[str, str]:
        return {"Authorization": f"{token.token_type} {token.access_token}"}


# ── Concrete strategies ─────────────────────────────────────────────────


class OAuth2ClientCredentials(AuthProvider):
    """Standard OAuth 2.0 client-credentials flow."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: str = "",
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__()
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.timeout = timeout

    async def _request_token(self, payload: dict[str, str]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                self.token_url,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            resp.raise_for_status()
            return resp.json()

    async def acquire_token(self) -> TokenInfo:
        payload = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self.scope:
            payload["scope"] = self.scope

        body = await self._request_token(payload)
        return TokenInfo(
            access_token=body["access_token"],
            token_type=body.get("token_type", "Bearer"),
            expires_at=time.time() + body.get("expires_in", 3600),
            refresh_token=body.get("refresh_token"),
        )

    async def refresh_token(self, token: TokenInfo) -> TokenInfo:
        if not token.refresh_token:
            return await self.acquire_token()

        body = await self._request_token({
            "grant_type": "refresh_token",
            "refresh_token": token.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        })
        return TokenInfo(
            access_token=body["access_token"],
            token_type=body.get("token_type", "Bearer"),
            expires_at=time.time() + body.get("expires_in", 3600),
            refresh_token=body.get("refresh_token", token.refresh_token),
        )


class BasicAuth(AuthProvider):
    """HTTP Basic authentication (username + password encoded as a token)."""

    def __init__(self, username: str, password: str) -> None:
        super().__init__()
        self._token_value = base64.b64encode(
            f"{username}:{password}".encode()
        ).decode()

    async def acquire_token(self) -> TokenInfo:
        return TokenInfo(access_token=self._token_value, token_type="Basic")


class APIKeyAuth(AuthProvider):
    """Static API key sent in its own header (SAP API Business Hub style)."""

    def __init__(self, api_key: str, header_name: str = "X-API-Key") -> None:
        super().__init__()
        self._api_key = api_key
        self._header_name = header_name

    async def acquire_token(self) -> TokenInfo:
        return TokenInfo(access_token=self._api_key, token_type="")

    def auth_header(self, token: TokenInfo) -> dict[str, str]:
        return {self._header_name: token.access_token}


def create_auth_provider(
    connection_config: dict[str, Any],
    default_scope: str = "",
) -> AuthProvider:
    """Build the right AuthProvider from a connection config.

    ``auth.type`` selects the strategy explicitly; without it the shape
    of the config decides: an ``oauth`` block wins over ``api_key``,
    which wins over ``username``/``password``.
    """
    auth = connection_config.get("auth") or {}
    timeout = float(connection_config.get("timeout", DEFAULT_TIMEOUT))
    auth_type = str(auth.get("type", "")).lower()

    if not auth_type:
        if connection_config.get("oauth"):
            auth_type = "oauth2_client_credentials"
            auth = connection_config["oauth"]
        elif connection_config.get("api_key"):
            auth_type = "api_key"
            auth = connection_config
        else:
            auth_type = "basic"
            auth = connection_config

    if auth_type == "oauth2_client_credentials":
        return OAuth2ClientCredentials(
            token_url=auth["token_url"],
            client_id=auth["client_id"],
            client_secret=auth["client_secret"],
            scope=auth.get("scope") or default_scope,
            timeout=timeout,
        )
    elif auth_type == "basic":
        return BasicAuth(
            username=auth["username"],
            password=auth["password"],
        )
    elif auth_type == "api_key":
        return APIKeyAuth(
            api_key=auth["api_key"],
            header_name=auth.get("header_name", "X-API-Key"),
        )
    else:
        raise ValueError(f"Unknown auth type: {auth_type!r}")
