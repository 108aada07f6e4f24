"""Tests for authentication providers."""

import base64
import time
from unittest.mock import AsyncMock

import pytest

from erp_sync.core.auth import (
    APIKeyAuth,
    BasicAuth,
    OAuth2ClientCredentials,
    TokenInfo,
    create_auth_provider,
)


class TestTokenInfo:
    def test_not_expired_when_zero(self):
        token = TokenInfo(access_token="abc", expires_at=0.0)
        assert not token.is_expired

    def test_expired_when_past(self):
        token = TokenInfo(access_token="abc", expires_at=1.0)
        assert token.is_expired

    def test_expired_inside_refresh_margin(self):
        token = TokenInfo(access_token="abc", expires_at=time.time() + 60)
        assert token.is_expired

    def test_not_expired_when_future(self):
        token = TokenInfo(access_token="abc", expires_at=time.time() + 3600)
        assert not token.is_expired


class TestBasicAuth:
    @pytest.mark.asyncio
    async def test_acquire_token(self):
        auth = BasicAuth("user", "pass")
        token = await auth.acquire_token()
        assert token.token_type == "Basic"
        assert token.access_token == base64.b64encode(b"user:pass").decode()

    @pytest.mark.asyncio
    async def test_auth_header(self):
        auth = BasicAuth("user", "pass")
        header = auth.auth_header(await auth.get_token())
        assert header["Authorization"].startswith("Basic ")


class TestAPIKeyAuth:
    @pytest.mark.asyncio
    async def test_default_header(self):
        auth = APIKeyAuth("my-api-key")
        header = auth.auth_header(await auth.get_token())
        assert header == {"X-API-Key": "my-api-key"}

    @pytest.mark.asyncio
    async def test_custom_header(self):
        auth = APIKeyAuth("key123", header_name="APIKey")
        header = auth.auth_header(await auth.get_token())
        assert header == {"APIKey": "key123"}


class TestOAuth2ClientCredentials:
    @pytest.fixture
    def auth(self):
        auth = OAuth2ClientCredentials(
            token_url="https://idp.example.com/oauth/token",
            client_id="cid",
            client_secret="secret",
            scope="urn:opc:resource:consumer::all",
        )
        auth._request_token = AsyncMock(return_value={
            "access_token": "tok-1",
            "expires_in": 3600,
            "refresh_token": "ref-1",
        })
        return auth

    @pytest.mark.asyncio
    async def test_token_is_cached(self, auth):
        first = await auth.get_token()
        second = await auth.get_token()

        assert first is second
        auth._request_token.assert_awaited_once()
        payload = auth._request_token.call_args.args[0]
        assert payload["grant_type"] == "client_credentials"
        assert payload["scope"] == "urn:opc:resource:consumer::all"

    @pytest.mark.asyncio
    async def test_refreshes_ahead_of_expiry(self, auth):
        token = await auth.get_token()
        token.expires_at = time.time() + 30
        auth._request_token.return_value = {"access_token": "tok-2", "expires_in": 3600}

        refreshed = await auth.get_token()

        assert refreshed.access_token == "tok-2"
        assert refreshed.refresh_token == "ref-1"
        payload = auth._request_token.call_args.args[0]
        assert payload["grant_type"] == "refresh_token"
        assert payload["refresh_token"] == "ref-1"

    @pytest.mark.asyncio
    async def test_invalidate_forces_new_token(self, auth):
        await auth.get_token()
        auth.invalidate()
        await auth.get_token()
        assert auth._request_token.await_count == 2

    @pytest.mark.asyncio
    async def test_bearer_header(self, auth):
        header = auth.auth_header(await auth.get_token())
        assert header == {"Authorization": "Bearer tok-1"}


class TestCreateAuthProvider:
    def test_oauth_block_wins(self):
        provider = create_auth_provider(
            {
                "username": "u",
                "password": "p",
                "oauth": {"token_url": "https://t", "client_id": "c", "client_secret": "s"},
            },
            default_scope="api",
        )
        assert isinstance(provider, OAuth2ClientCredentials)
        assert provider.scope == "api"

    def test_api_key(self):
        provider = create_auth_provider({"api_key": "k", "username": "u", "password": "p"})
        assert isinstance(provider, APIKeyAuth)

    def test_basic_fallback(self):
        assert isinstance(create_auth_provider({"username": "u", "password": "p"}), BasicAuth)

    def test_explicit_type(self):
        provider = create_auth_provider({"auth": {"type": "api_key", "api_key": "k", "header_name": "APIKey"}})
        assert isinstance(provider, APIKeyAuth)

    def test_timeout_passed_to_oauth(self):
        provider = create_auth_provider({
            "timeout": 5,
            "oauth": {"token_url": "https://t", "client_id": "c", "client_secret": "s"},
        })
        assert provider.timeout == 5.0

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError, match="Unknown auth type"):
            create_auth_provider({"auth": {"type": "kerberos"}})

    def test_missing_credentials_raise(self):
        with pytest.raises(KeyError):
            create_auth_provider({"base_url": "https://erp.test"})
