"""
Management surface: tenant-scoped integration CRUD, mappings, connection
tests, manual syncs, queue and log listings.

Every method returns plain dicts.  Config views never carry the
connection config, encrypted or not.
"""

from __future__ import annotations

import logging
from typing import Any

from erp_sync.connectors import ERP_TYPE_LABELS, connector_class_for, default_mappings_for
from erp_sync.core.audit import AuditEvent, AuditSink, emit
from erp_sync.core.crypto import CredentialCipher
from erp_sync.core.errors import ConfigurationError, ErpSyncError, QueueItemError
from erp_sync.core.factory import ConnectorCache
from erp_sync.core.mapping import MappingTable, merge_mappings
from erp_sync.core.models import (
    ErpType,
    IntegrationConfig,
    QueueOperation,
    SyncSettings,
    resolve_entity_type,
)
from erp_sync.core.queue import RetryQueue
from erp_sync.core.store import IntegrationStore
from erp_sync.core.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

QUEUE_LIST_LIMIT = 100
UPDATABLE_FIELDS = {"name", "description", "connection_config", "mappings", "sync_settings", "is_active"}


def _view(config: IntegrationConfig) -> dict[str, Any]:
    return config.to_dict(include_credentials=False)


class IntegrationService:
    def __init__(
        self,
        store: IntegrationStore,
        orchestrator: SyncOrchestrator,
        connectors: ConnectorCache,
        cipher: CredentialCipher,
        queue: RetryQueue,
        audit: AuditSink | None = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.connectors = connectors
        self.cipher = cipher
        self.queue = queue
        self.audit = audit

    async def _get(self, integration_id: str, tenant_id: str) -> IntegrationConfig:
        return await self.orchestrator.load_config(integration_id, tenant_id)

    async def _audit(
        self,
        action: str,
        config: IntegrationConfig,
        user_id: str | None,
        details: dict[str, Any],
    ) -> None:
        await emit(self.audit, AuditEvent(
            action=action,
            entity_type="IntegrationConfig",
            entity_id=config.id,
            tenant_id=config.tenant_id,
            user_id=user_id,
            details=details,
        ))

    # -- configs ----------------------------------------------------------

    async def create(
        self,
        tenant_id: str,
        erp_type: ErpType | str,
        name: str,
        connection_config: dict[str, Any],
        description: str = "",
        mappings: MappingTable | None = None,
        sync_settings: dict[str, Any] | None = None,
        is_active: bool = True,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        connector_class_for(erp_type)
        erp_type = ErpType(erp_type)
        logger.info("Creating %s integration for tenant %s", erp_type.value, tenant_id)

        config = IntegrationConfig(
            tenant_id=tenant_id,
            erp_type=erp_type,
            name=name,
            description=description,
            connection_config=self.cipher.encrypt(connection_config),
            mappings=mappings or default_mappings_for(erp_type),
            sync_settings=SyncSettings.from_dict(sync_settings),
            is_active=is_active,
        )
        config = await self.store.add_config(config)
        await self._audit("CREATE", config, user_id, {"type": erp_type.value, "name": name})
        return _view(config)

    async def list(self, tenant_id: str) -> list[dict[str, Any]]:
        return [_view(config) for config in await self.store.list_configs(tenant_id=tenant_id)]

    async def get(self, integration_id: str, tenant_id: str) -> dict[str, Any]:
        return _view(await self._get(integration_id, tenant_id))

    async def update(
        self,
        integration_id: str,
        tenant_id: str,
        changes: dict[str, Any],
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """Apply *changes*; ``sync_settings`` merges, everything else replaces."""
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ConfigurationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        config = await self._get(integration_id, tenant_id)
        old_name = config.name
        if "name" in changes:
            config.name = changes["name"]
        if "description" in changes:
            config.description = changes["description"] or ""
        if changes.get("connection_config") is not None:
            config.connection_config = self.cipher.encrypt(changes["connection_config"])
        if changes.get("mappings") is not None:
            config.mappings = changes["mappings"]
        if changes.get("sync_settings") is not None:
            config.sync_settings = config.sync_settings.merged(changes["sync_settings"])
        if "is_active" in changes:
            config.is_active = bool(changes["is_active"])

        config = await self.store.save_config(config)
        await self.connectors.invalidate(config.id)
        await self._audit(
            "UPDATE", config, user_id,
            {"before": {"name": old_name}, "after": {"name": config.name}},
        )
        return _view(config)

    async def delete(self, integration_id: str, tenant_id: str, user_id: str | None = None) -> None:
        config = await self._get(integration_id, tenant_id)
        await self.connectors.invalidate(config.id)
        await self.store.delete_config(config.id)
        self.orchestrator.forget(config.id)
        await self._audit("DELETE", config, user_id, {"name": config.name, "type": config.erp_type.value})

    # -- types & mappings -------------------------------------------------

    def list_erp_types(self) -> list[dict[str, str]]:
        return [{"value": erp_type.value, **labels} for erp_type, labels in ERP_TYPE_LABELS.items()]

    def default_mappings(self, erp_type: ErpType | str) -> MappingTable:
        return default_mappings_for(erp_type)

    async def update_mappings(
        self,
        integration_id: str,
        tenant_id: str,
        mappings: MappingTable,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        config = await self._get(integration_id, tenant_id)
        config.mappings = merge_mappings(config.mappings, mappings)
        config = await self.store.save_config(config)
        await self.connectors.invalidate(config.id)
        await self._audit("UPDATE", config, user_id, {"action": "update_mappings"})
        return _view(config)

    # -- connection & sync ------------------------------------------------

    async def test_connection(self, integration_id: str, tenant_id: str) -> dict[str, Any]:
        config = await self._get(integration_id, tenant_id)
        return (await self.orchestrator.test_connection(config)).to_dict()

    async def trigger_sync(
        self,
        integration_id: str,
        tenant_id: str,
        overrides: dict[str, Any] | None = None,
        strict: bool = False,
    ) -> dict[str, Any]:
        """Run one sync now.  With *strict*, record-level errors raise ``PartialSyncError``."""
        outcome = await self.orchestrator.run(integration_id, tenant_id, overrides)
        if strict:
            outcome.raise_for_errors()
        return outcome.to_dict()

    # -- credentials ------------------------------------------------------

    async def rotate_credentials(self, tenant_id: str | None = None) -> list[str]:
        """Re-encrypt stored connection configs under the primary key.

        Run after putting a new key first in the key list; once every
        config is rotated the old key can be dropped.  Returns the ids of
        the rotated configs.
        """
        rotated = []
        for config in await self.store.list_configs(tenant_id=tenant_id):
            config.connection_config = self.cipher.rotate(config.connection_config)
            await self.store.save_config(config)
            await self.connectors.invalidate(config.id)
            rotated.append(config.id)
        logger.info("Re-encrypted credentials for %d integration(s)", len(rotated))
        return rotated

    # -- queue ------------------------------------------------------------

    async def list_queue_items(
        self,
        tenant_id: str,
        integration_id: str | None = None,
        status: str | None = None,
        entity_type: str | None = None,
    ) -> list[dict[str, Any]]:
        owned = {config.id for config in await self.store.list_configs(tenant_id=tenant_id)}
        if integration_id is not None:
            owned &= {integration_id}
        items = await self.store.list_queue_items(
            integration_ids=owned,
            status=status,
            entity_type=entity_type,
            limit=QUEUE_LIST_LIMIT,
        )
        return [item.to_dict() for item in items]

    async def enqueue(
        self,
        integration_id: str,
        tenant_id: str,
        operation: QueueOperation | str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        priority: int = 5,
    ) -> dict[str, Any]:
        config = await self._get(integration_id, tenant_id)
        try:
            entity = resolve_entity_type(entity_type)
            operation = QueueOperation(operation)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        item = await self.queue.enqueue(
            config.id, operation, entity.value, entity_id, payload, priority=priority
        )
        return item.to_dict()

    async def retry_queue_item(self, item_id: str, tenant_id: str) -> dict[str, Any]:
        """Process one PENDING queue item now, outside the drain schedule."""
        item = await self.store.get_queue_item(item_id)
        if item is None:
            raise ErpSyncError(f"Queue item {item_id!r} not found")
        await self._get(item.integration_id, tenant_id)

        outcome = await self.queue.retry(item_id)
        if outcome is None:
            raise ErpSyncError(f"Queue item {item_id!r} is not pending")
        current = await self.store.get_queue_item(item_id)
        view = current.to_dict() if current else {"id": item_id}
        if isinstance(outcome, QueueItemError):
            view["error"] = str(outcome)
        return view

    # -- logs -------------------------------------------------------------

    async def list_logs(
        self,
        integration_id: str,
        tenant_id: str,
        direction: str | None = None,
        entity_type: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        await self._get(integration_id, tenant_id)
        entries = await self.store.list_logs(
            integration_id,
            direction=direction,
            entity_type=entity_type,
            status=status,
            limit=limit or 100,
        )
        return [entry.to_dict() for entry in entries]
