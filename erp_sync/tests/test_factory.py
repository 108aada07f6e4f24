"""Tests for the connector factory and cache."""

from __future__ import annotations

import asyncio

import pytest

from erp_sync.connectors import OracleConnector, SAPConnector
from erp_sync.core.errors import CredentialDecryptionError, UnsupportedErpTypeError
from erp_sync.core.factory import ConnectorCache
from erp_sync.core.models import ErpType, IntegrationConfig


def _config(cipher, erp_type: ErpType = ErpType.SAP, **connection) -> IntegrationConfig:
    return IntegrationConfig(
        tenant_id="acme",
        erp_type=erp_type,
        name="plant",
        connection_config=cipher.encrypt({"base_url": "https://erp.test", **connection}),
        mappings={"assets": {"EQUIPMENT": "external_id"}},
    )


class TestConnectorCache:
    @pytest.mark.asyncio
    async def test_get_memoizes_per_config(self, connectors, cipher):
        config = _config(cipher)

        first = await connectors.get(config)
        second = await connectors.get(config)

        assert first is second
        assert config.id in connectors
        assert len(connectors) == 1

    @pytest.mark.asyncio
    async def test_concurrent_gets_build_one_connector(self, connectors, cipher):
        config = _config(cipher)

        results = await asyncio.gather(*(connectors.get(config) for _ in range(10)))

        assert all(result is results[0] for result in results)
        assert len(connectors) == 1

    @pytest.mark.asyncio
    async def test_invalidate_gives_fresh_connector_with_new_credentials(self, connectors, cipher):
        config = _config(cipher, password="old-secret")
        stale = await connectors.get(config)

        config.connection_config = cipher.encrypt({"base_url": "https://erp.test", "password": "new-secret"})
        await connectors.invalidate(config.id)
        fresh = await connectors.get(config)

        assert fresh is not stale
        assert fresh.connection_config["password"] == "new-secret"
        assert stale.disconnects == 0

    @pytest.mark.asyncio
    async def test_invalidate_leaves_connector_in_use_connected(self, connectors, cipher):
        config = _config(cipher)
        in_use = await connectors.get(config)
        await in_use.connect()

        await connectors.invalidate(config.id)

        assert config.id not in connectors
        assert in_use.is_connected
        assert in_use.disconnects == 0

    @pytest.mark.asyncio
    async def test_invalidate_unknown_config_is_noop(self, connectors):
        await connectors.invalidate("missing")
        assert len(connectors) == 0

    @pytest.mark.asyncio
    async def test_clear_disconnects_everything(self, connectors, cipher):
        built = [await connectors.get(_config(cipher)) for _ in range(3)]

        await connectors.clear()

        assert len(connectors) == 0
        assert [c.disconnects for c in built] == [1, 1, 1]


class TestBuild:
    def test_decrypts_credentials_and_merges_mappings(self, cipher):
        cache = ConnectorCache(cipher, default_timeout=12.5)
        connector = cache.build(_config(cipher, username="u", password="p"))

        assert isinstance(connector, SAPConnector)
        assert connector.connection_config["password"] == "p"
        assert connector.connection_config["timeout"] == 12.5
        assert connector.mappings["assets"] == {"EQUIPMENT": "external_id"}
        assert connector.mappings["inventory"]["MATNR"] == "external_id"

    def test_builds_oracle(self, cipher):
        connector = ConnectorCache(cipher).build(_config(cipher, ErpType.ORACLE))
        assert isinstance(connector, OracleConnector)

    def test_unregistered_type(self, cipher, fake_connector_cls):
        cache = ConnectorCache(cipher, registry={ErpType.SAP: fake_connector_cls})
        with pytest.raises(UnsupportedErpTypeError):
            cache.build(_config(cipher, ErpType.ORACLE))

    def test_undecryptable_credentials(self, cipher):
        config = _config(cipher)
        config.connection_config = "not-a-fernet-token"
        with pytest.raises(CredentialDecryptionError):
            ConnectorCache(cipher).build(config)
