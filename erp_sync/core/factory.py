"""
Connector factory and process-wide connector cache.

One connector instance is kept per integration config.  Every access to
the cache goes through a single ``asyncio.Lock`` so two callers can never
build two live connectors for the same config.  Config edits and
deletes must call ``invalidate`` so the next run builds a fresh
connector from the new credentials.  Invalidation only evicts: a run
still holding the old instance keeps using it and disconnects it when
done.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from erp_sync.connectors import CONNECTOR_REGISTRY
from erp_sync.core.connector import BaseConnector
from erp_sync.core.crypto import CredentialCipher
from erp_sync.core.errors import UnsupportedErpTypeError
from erp_sync.core.mapping import merge_mappings
from erp_sync.core.models import ErpType, IntegrationConfig

logger = logging.getLogger(__name__)


class ConnectorCache:
    def __init__(
        self,
        cipher: CredentialCipher,
        registry: Mapping[ErpType, type[BaseConnector]] | None = None,
        default_timeout: float | None = None,
    ) -> None:
        self._cipher = cipher
        self._default_timeout = default_timeout
        self._registry = dict(registry if registry is not None else CONNECTOR_REGISTRY)
        self._connectors: dict[str, BaseConnector] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, config_id: str) -> bool:
        return config_id in self._connectors

    def __len__(self) -> int:
        return len(self._connectors)

    def build(self, config: IntegrationConfig) -> BaseConnector:
        """Construct an uncached connector for *config*."""
        connector_cls = self._registry.get(config.erp_type)
        if connector_cls is None:
            raise UnsupportedErpTypeError(config.erp_type.value)
        connection_config = self._cipher.decrypt(config.connection_config)
        if self._default_timeout is not None:
            connection_config.setdefault("timeout", self._default_timeout)
        mappings = merge_mappings(connector_cls.default_mappings, config.mappings)
        return connector_cls(connection_config, mappings)

    async def get(self, config: IntegrationConfig) -> BaseConnector:
        async with self._lock:
            connector = self._connectors.get(config.id)
            if connector is None:
                connector = self.build(config)
                self._connectors[config.id] = connector
                logger.debug("Built %s connector for integration %s", config.erp_type.value, config.id)
            return connector

    async def invalidate(self, config_id: str) -> None:
        """Evict the cached connector, if any, without disconnecting it."""
        async with self._lock:
            connector = self._connectors.pop(config_id, None)
        if connector is not None:
            logger.debug("Evicted connector for integration %s", config_id)

    async def clear(self) -> None:
        async with self._lock:
            connectors = list(self._connectors.values())
            self._connectors.clear()
        for connector in connectors:
            await connector.disconnect()
