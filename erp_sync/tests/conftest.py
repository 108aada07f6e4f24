"""Shared fixtures: an in-memory store and a scriptable fake ERP connector."""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime
from typing import Any, Sequence

import pytest

from erp_sync.core.connector import BaseConnector
from erp_sync.core.crypto import CredentialCipher, generate_key
from erp_sync.core.factory import ConnectorCache
from erp_sync.core.models import ErpType, IntegrationConfig, SyncSettings
from erp_sync.core.queue import RetryQueue
from erp_sync.core.schema import (
    ConnectionTestResult,
    ErpAsset,
    ErpInventory,
    ErpPurchaseOrder,
    ErpWorkOrder,
    SyncResult,
)
from erp_sync.core.store import MemoryStore
from erp_sync.core.sync import SyncOrchestrator


class FakeConnector(BaseConnector):
    """ERP stand-in whose records and failures are set by the test."""

    connector_name = "fake"

    def __init__(self, connection_config: dict[str, Any], mappings=None) -> None:
        super().__init__(connection_config, mappings)
        self.connect_ok = True
        self.connect_error: str | None = None
        self.assets: list[ErpAsset] = []
        self.inventory: list[ErpInventory] = []
        self.push_failures: dict[str, str] = {}  # internal_id → error text
        self.pushed: list[Any] = []
        self.since: list[datetime | None] = []
        self.connects = 0
        self.disconnects = 0
        self.entered = asyncio.Event()
        self.gate: asyncio.Event | None = None
        self.pulling = asyncio.Event()
        self.pull_gate: asyncio.Event | None = None
        self._ids = itertools.count(1000)

    async def connect(self) -> bool:
        self.connects += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if not self.connect_ok:
            self.last_error = self.connect_error
            self._connected = False
            return False
        self._connected = True
        return True

    async def disconnect(self) -> None:
        self.disconnects += 1
        self._connected = False

    async def test_connection(self) -> ConnectionTestResult:
        return ConnectionTestResult(
            success=self.connect_ok,
            message="ok" if self.connect_ok else (self.connect_error or "down"),
            response_time_ms=1,
        )

    def _fetch(self, records: list[Any]):
        async def fetch() -> list[Any]:
            self.pulling.set()
            if self.pull_gate is not None:
                await self.pull_gate.wait()
            return list(records)

        return fetch

    async def sync_assets(self, since: datetime | None = None) -> SyncResult[ErpAsset]:
        self.since.append(since)
        return await self._pull("assets", self._fetch(self.assets), lambda record: record)

    async def sync_inventory(self, since: datetime | None = None) -> SyncResult[ErpInventory]:
        self.since.append(since)
        return await self._pull("inventory", self._fetch(self.inventory), lambda record: record)

    async def _push(self, item: Any) -> str:
        if item.internal_id in self.push_failures:
            raise RuntimeError(self.push_failures[item.internal_id])
        self.pushed.append(item)
        return item.external_id or f"EXT-{next(self._ids)}"

    async def sync_work_orders(self, work_orders: Sequence[ErpWorkOrder]) -> SyncResult[ErpWorkOrder]:
        return await self._push_batch("work orders", work_orders, self._push)

    async def sync_purchase_orders(
        self, purchase_orders: Sequence[ErpPurchaseOrder]
    ) -> SyncResult[ErpPurchaseOrder]:
        return await self._push_batch("purchase orders", purchase_orders, self._push)


@pytest.fixture
def fake_connector_cls():
    return FakeConnector


@pytest.fixture
def cipher():
    return CredentialCipher(generate_key())


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def connectors(cipher):
    return ConnectorCache(cipher, registry={ErpType.SAP: FakeConnector, ErpType.ORACLE: FakeConnector})


@pytest.fixture
def queue(store):
    return RetryQueue(store)


@pytest.fixture
def orchestrator(store, connectors, queue):
    orch = SyncOrchestrator(store, store, connectors, queue=queue)
    queue.handler = orch.process_queue_item
    return orch


@pytest.fixture
def make_config(store, cipher):
    """Factory persisting an IntegrationConfig with encrypted credentials."""

    async def make(
        tenant_id: str = "acme",
        erp_type: ErpType = ErpType.SAP,
        name: str = "plant",
        connection: dict[str, Any] | None = None,
        sync_settings: dict[str, Any] | None = None,
        **fields: Any,
    ) -> IntegrationConfig:
        config = IntegrationConfig(
            tenant_id=tenant_id,
            erp_type=erp_type,
            name=name,
            connection_config=cipher.encrypt(connection or {"base_url": "https://erp.test"}),
            sync_settings=SyncSettings.from_dict(sync_settings),
            **fields,
        )
        return await store.add_config(config)

    return make

