"""
Connector interface that every ERP adapter implements.

A connector pulls assets and inventory out of the ERP and pushes work
orders and purchase orders into it.  Failures never escape a connector
call: ``connect`` answers False, ``test_connection`` answers an
unsuccessful result, and the ``sync_*`` calls answer a ``SyncResult``
carrying the error text.
"""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Sequence

import httpx

from erp_sync.core.auth import DEFAULT_TIMEOUT, AuthProvider, create_auth_provider
from erp_sync.core.mapping import MappingTable, apply_mapping, apply_reverse_mapping
from erp_sync.core.schema import (
    ConnectionTestResult,
    ErpAsset,
    ErpInventory,
    ErpPurchaseOrder,
    ErpWorkOrder,
    SyncResult,
)


class BaseConnector(abc.ABC):
    """Abstract base class for all ERP connectors."""

    connector_name: str = "generic"
    default_mappings: MappingTable = {}

    def __init__(
        self,
        connection_config: dict[str, Any],
        mappings: MappingTable | None = None,
    ) -> None:
        self.connection_config = dict(connection_config)
        self.mappings: MappingTable = dict(mappings or self.default_mappings)
        self.last_sync_at: datetime | None = None
        self.last_error: str | None = None
        self._connected = False
        self.logger = logging.getLogger(f"erp_sync.connectors.{self.connector_name}")

    @property
    def is_connected(self) -> bool:
        return self._connected

    # -- lifecycle --------------------------------------------------------

    @abc.abstractmethod
    async def connect(self) -> bool:
        """Establish credentials/session state.  Never raises."""

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """Release session state.  Never raises."""

    @abc.abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        """Lightweight liveness/identity check."""

    # -- sync -------------------------------------------------------------

    @abc.abstractmethod
    async def sync_assets(self, since: datetime | None = None) -> SyncResult[ErpAsset]:
        """Pull equipment records changed after *since* (all when None)."""

    @abc.abstractmethod
    async def sync_inventory(self, since: datetime | None = None) -> SyncResult[ErpInventory]:
        """Pull material / spare-part records changed after *since*."""

    @abc.abstractmethod
    async def sync_work_orders(
        self, work_orders: Sequence[ErpWorkOrder]
    ) -> SyncResult[ErpWorkOrder]:
        """Push work orders; items without an external id are created."""

    @abc.abstractmethod
    async def sync_purchase_orders(
        self, purchase_orders: Sequence[ErpPurchaseOrder]
    ) -> SyncResult[ErpPurchaseOrder]:
        """Push purchase orders; items without an external id are created."""

    # -- configuration ----------------------------------------------------

    def update_connection_config(self, config: dict[str, Any]) -> None:
        self.connection_config = {**self.connection_config, **config}

    def update_mappings(self, mappings: MappingTable) -> None:
        self.mappings = {**self.mappings, **mappings}

    # -- helpers ----------------------------------------------------------

    def _apply_mapping(self, record: dict[str, Any], entity_type: str) -> dict[str, Any]:
        return apply_mapping(record, entity_type, self.mappings)

    def _apply_reverse_mapping(self, record: dict[str, Any], entity_type: str) -> dict[str, Any]:
        return apply_reverse_mapping(record, entity_type, self.mappings)

    def _mark_synced(self) -> None:
        self.last_sync_at = datetime.now(timezone.utc)

    @staticmethod
    def _failure_result(
        error_messages: list[str],
        data: list[Any] | None = None,
        created: int = 0,
        updated: int = 0,
        rejected: list[Any] | None = None,
    ) -> SyncResult[Any]:
        return SyncResult(
            success=False,
            data=data or [],
            created=created,
            updated=updated,
            errors=len(error_messages),
            error_messages=error_messages,
            rejected=rejected or [],
        )

    async def _pull(
        self,
        entity_label: str,
        fetch: Callable[[], Awaitable[list[dict[str, Any]]]],
        convert: Callable[[dict[str, Any]], Any],
    ) -> SyncResult[Any]:
        """Fetch raw ERP records and convert them one by one."""
        self.logger.info("Syncing %s from %s...", entity_label, self.connector_name)
        try:
            self._ensure_connected()
            raw_records = await fetch()
        except Exception as exc:
            self.logger.error("%s sync failed: %s", entity_label.capitalize(), exc)
            return self._failure_result([str(exc)])

        data: list[Any] = []
        messages: list[str] = []
        for raw in raw_records:
            try:
                data.append(convert(raw))
            except Exception as exc:
                messages.append(f"Failed to map {entity_label} record: {exc}")

        self._mark_synced()
        if raw_records and len(messages) == len(raw_records):
            return self._failure_result(messages)
        return SyncResult(
            success=True,
            data=data,
            created=len(data),
            errors=len(messages),
            error_messages=messages,
        )

    async def _push_batch(
        self,
        entity_label: str,
        items: Sequence[Any],
        push_one: Callable[[Any], Awaitable[str]],
    ) -> SyncResult[Any]:
        """Push *items* one by one; one bad item never aborts the batch.

        *push_one* returns the ERP's external id for the item.
        """
        self.logger.info(
            "Syncing %d %s to %s...", len(items), entity_label, self.connector_name
        )
        try:
            self._ensure_connected()
        except Exception as exc:
            self.logger.error("%s sync failed: %s", entity_label.capitalize(), exc)
            return self._failure_result([str(exc)], rejected=list(items))

        results: list[Any] = []
        messages: list[str] = []
        rejected: list[Any] = []
        created = updated = 0

        for item in items:
            try:
                external_id = await push_one(item)
            except Exception as exc:
                messages.append(f"Failed to sync {entity_label} {item.internal_id}: {exc}")
                rejected.append(item)
                continue
            if item.external_id:
                updated += 1
            else:
                created += 1
            results.append(replace(item, external_id=external_id or item.external_id))

        self._mark_synced()
        if messages and len(messages) == len(items):
            return self._failure_result(messages, results, created, updated, rejected)
        return SyncResult(
            success=True,
            data=results,
            created=created,
            updated=updated,
            errors=len(messages),
            error_messages=messages,
            rejected=rejected,
        )

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise RuntimeError(f"Not connected to {self.connector_name} system")


class HTTPConnector(BaseConnector):
    """Connector speaking JSON over HTTPS through a shared httpx client."""

    health_path: str = "/"
    default_scope: str = ""

    def __init__(
        self,
        connection_config: dict[str, Any],
        mappings: MappingTable | None = None,
    ) -> None:
        super().__init__(connection_config, mappings)
        self._base_url: str = str(connection_config.get("base_url", "")).rstrip("/")
        self._timeout: float = float(connection_config.get("timeout", DEFAULT_TIMEOUT))
        self._auth: AuthProvider | None = None
        self._client: httpx.AsyncClient | None = None

    # -- transport --------------------------------------------------------

    def _session_headers(self) -> dict[str, str]:
        """ERP-specific headers sent with every request."""
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
            headers.update(self._session_headers())
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
            )
        return self._client

    async def _auth_headers(self) -> dict[str, str]:
        if self._auth is None:
            self._auth = create_auth_provider(self.connection_config, self.default_scope)
        token = await self._auth.get_token()
        return self._auth.auth_header(token)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Authenticated request; the token is refreshed ahead of expiry."""
        if self._client is None:
            raise RuntimeError(f"Not connected to {self.connector_name} system")
        headers = await self._auth_headers()
        headers.update(kwargs.pop("headers", None) or {})
        resp = await self._client.request(method, path, headers=headers, **kwargs)
        resp.raise_for_status()
        return resp

    def _system_details(self, resp: httpx.Response) -> dict[str, Any]:
        return {"host": httpx.URL(self._base_url).host}

    # -- lifecycle --------------------------------------------------------

    async def connect(self) -> bool:
        self.logger.info("Connecting to %s system...", self.connector_name)
        try:
            self._auth = create_auth_provider(self.connection_config, self.default_scope)
            await self._get_client()
            result = await self.test_connection()
        except Exception as exc:
            self.last_error = str(exc)
            self.logger.error("Failed to connect to %s: %s", self.connector_name, exc)
            self._connected = False
            return False

        self._connected = result.success
        if self._connected:
            self.last_error = None
            self.logger.info("Successfully connected to %s system", self.connector_name)
        else:
            self.last_error = result.message
            self.logger.error(
                "Failed to connect to %s: %s", self.connector_name, result.message
            )
        return self._connected

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        self._auth = None
        self._connected = False
        if client is not None and not client.is_closed:
            try:
                await client.aclose()
            except Exception as exc:
                self.logger.warning("Error closing %s client: %s", self.connector_name, exc)
        self.logger.info("Disconnected from %s system", self.connector_name)

    async def test_connection(self) -> ConnectionTestResult:
        if self._client is None:
            return ConnectionTestResult(
                success=False,
                message="HTTP client not initialized. Call connect() first.",
            )

        start = time.monotonic()
        try:
            resp = await self._request("GET", self.health_path)
        except Exception as exc:
            return ConnectionTestResult(
                success=False,
                message=f"Connection test failed: {exc}",
                response_time_ms=int((time.monotonic() - start) * 1000),
            )
        return ConnectionTestResult(
            success=True,
            message=f"Successfully connected to {self.connector_name} system",
            details=self._system_details(resp),
            response_time_ms=int((time.monotonic() - start) * 1000),
        )
