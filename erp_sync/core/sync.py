"""
Sync orchestrator.

Runs the enabled subset of {assets, inventory, work orders, purchase
orders} for one integration config, reconciles pulled records against
the internal record store, pushes changed internal records out, writes
one integration-log entry per entity type, and keeps the config's
status, stats, and watermark (``last_sync_at``) current.

At most one run per config is in flight: a second ``run`` for the same
config fails fast with ``SyncInProgressError``.  Queue items and
connection tests share the same per-config lock and wait their turn; a
``run`` arriving while one of those holds the lock waits as well.

The next watermark is the moment the run started.  Outbound records are
read in pages up to that moment, so nothing changed before it is skipped
and anything changed after it is picked up by the following run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from erp_sync.core.audit import AuditEvent, AuditSink, emit
from erp_sync.core.connector import BaseConnector
from erp_sync.core.errors import (
    ErpConnectionError,
    ErpSyncError,
    IntegrationInactiveError,
    IntegrationNotFoundError,
    PartialSyncError,
    SyncInProgressError,
)
from erp_sync.core.factory import ConnectorCache
from erp_sync.core.models import (
    CONNECTION_TEST,
    EntityType,
    IntegrationConfig,
    IntegrationLogEntry,
    LogStatus,
    QueueOperation,
    SyncDirection,
    SyncQueueItem,
    SyncStatus,
    resolve_entity_type,
    utcnow,
)
from erp_sync.core.queue import RetryQueue
from erp_sync.core.schema import (
    ConnectionTestResult,
    ErpPurchaseOrder,
    ErpWorkOrder,
    SyncResult,
)
from erp_sync.core.store import IntegrationStore, RecordStore

logger = logging.getLogger(__name__)

# Outbound records read and pushed per page.
PUSH_BATCH_LIMIT = 100

_PUSH_RECORD_TYPES = {
    EntityType.WORK_ORDERS: ErpWorkOrder,
    EntityType.PURCHASE_ORDERS: ErpPurchaseOrder,
}


@dataclass
class EntityStats:
    created: int = 0
    updated: int = 0
    errors: int = 0
    processed: int = 0
    success: bool = True
    error_messages: list[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.errors += 1
        self.error_messages.append(message)

    def add(self, other: "EntityStats") -> None:
        self.created += other.created
        self.updated += other.updated
        self.errors += other.errors
        self.processed += other.processed
        self.success = self.success and other.success
        self.error_messages.extend(other.error_messages)

    def to_dict(self) -> dict[str, int]:
        return {"created": self.created, "updated": self.updated, "errors": self.errors}


@dataclass
class SyncOutcome:
    """Result of one orchestration run."""

    integration_id: str
    status: SyncStatus
    stats: dict[str, dict[str, int]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors and self.status == SyncStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "stats": self.stats}

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PartialSyncError(self.integration_id, self.errors)


class SyncOrchestrator:
    def __init__(
        self,
        store: IntegrationStore,
        records: RecordStore,
        connectors: ConnectorCache,
        queue: RetryQueue | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        self.store = store
        self.records = records
        self.connectors = connectors
        self.queue = queue
        self.audit = audit
        self._locks: dict[str, asyncio.Lock] = {}
        self._syncing: set[str] = set()

    def is_running(self, config_id: str) -> bool:
        """True while a sync run for *config_id* is queued or in flight."""
        return config_id in self._syncing

    def _lock_for(self, config_id: str) -> asyncio.Lock:
        return self._locks.setdefault(config_id, asyncio.Lock())

    def forget(self, config_id: str) -> None:
        """Drop the per-config lock of a deleted config.

        A holder keeps its own reference, so an operation already in
        flight finishes normally.
        """
        self._locks.pop(config_id, None)

    async def load_config(self, integration_id: str, tenant_id: str | None = None) -> IntegrationConfig:
        config = await self.store.get_config(integration_id)
        if config is None or (tenant_id is not None and config.tenant_id != tenant_id):
            raise IntegrationNotFoundError(integration_id)
        return config

    # -- orchestration ----------------------------------------------------

    async def run(
        self,
        integration_id: str,
        tenant_id: str | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> SyncOutcome:
        """Run one sync for *integration_id*.

        *overrides* may switch individual ``sync_*`` flags for this run
        only.  Raises ``ErpConnectionError`` when the connector cannot
        connect; any other failure marks the config FAILED and
        propagates.
        """
        config = await self.load_config(integration_id, tenant_id)
        if not config.is_active:
            raise IntegrationInactiveError(integration_id)

        # no await between the check and the add
        if config.id in self._syncing:
            raise SyncInProgressError(config.id)
        self._syncing.add(config.id)
        try:
            async with self._lock_for(config.id):
                # reload: whatever held the lock may have changed the config
                config = await self.load_config(integration_id, tenant_id)
                if not config.is_active:
                    raise IntegrationInactiveError(integration_id)
                return await self._run_locked(config, overrides)
        finally:
            self._syncing.discard(config.id)

    async def _save_status(self, config_id: str, **fields: Any) -> None:
        """Write run bookkeeping onto the stored config.

        The config is re-read first so edits made while the run was in
        flight (name, mappings, credentials) are kept.
        """
        current = await self.store.get_config(config_id)
        if current is None:
            return
        for name, value in fields.items():
            setattr(current, name, value)
        await self.store.save_config(current)

    async def _run_locked(
        self, config: IntegrationConfig, overrides: dict[str, Any] | None
    ) -> SyncOutcome:
        settings = config.sync_settings.merged(overrides)
        run_started = utcnow()
        await self._save_status(config.id, sync_status=SyncStatus.RUNNING)
        logger.info("Starting sync for integration %s (%s)", config.id, config.erp_type.value)

        connector: BaseConnector | None = None
        try:
            connector = await self.connectors.get(config)
            await self._connect(config, connector)

            outcome = SyncOutcome(integration_id=config.id, status=SyncStatus.SUCCESS)
            for entity_type in settings.enabled_entity_types():
                stats = await self._sync_entity(config, connector, entity_type, run_started)
                outcome.stats[entity_type.value] = stats.to_dict()
                outcome.errors.extend(stats.error_messages)
                if stats.errors or not stats.success:
                    outcome.status = SyncStatus.PARTIAL
                    if not stats.error_messages:
                        outcome.errors.append(f"{entity_type.value} sync failed")
        except ErpConnectionError:
            raise
        except Exception as exc:
            logger.error("Sync failed for integration %s: %s", config.id, exc)
            await self._save_status(config.id, sync_status=SyncStatus.FAILED, last_sync_error=str(exc))
            raise
        finally:
            if connector is not None:
                await connector.disconnect()

        await self._save_status(
            config.id,
            sync_status=outcome.status,
            last_sync_at=run_started,
            last_sync_stats=outcome.stats,
            last_sync_error="; ".join(outcome.errors) if outcome.errors else None,
        )
        logger.info(
            "Sync for integration %s finished with status %s", config.id, outcome.status.value
        )
        await emit(self.audit, AuditEvent(
            action="SYNC",
            entity_type="IntegrationConfig",
            entity_id=config.id,
            tenant_id=config.tenant_id,
            details=outcome.to_dict(),
        ))
        return outcome

    async def _connect(self, config: IntegrationConfig, connector: BaseConnector) -> None:
        started = time.monotonic()
        if await connector.connect():
            return

        message = connector.last_error or f"Failed to connect to {config.erp_type.value} system"
        await self._log(
            config.id,
            SyncDirection.OUTBOUND,
            CONNECTION_TEST,
            LogStatus.FAILED,
            error_message=message,
            started=started,
        )
        await self._save_status(config.id, sync_status=SyncStatus.FAILED, last_sync_error=message)
        raise ErpConnectionError(message)

    async def _sync_entity(
        self,
        config: IntegrationConfig,
        connector: BaseConnector,
        entity_type: EntityType,
        until: datetime,
    ) -> EntityStats:
        started = time.monotonic()
        try:
            if entity_type.direction is SyncDirection.INBOUND:
                _, stats = await self._pull(config, connector, entity_type)
            else:
                stats = await self._push_changed(config, connector, entity_type, until)
        except Exception as exc:
            await self._log(
                config.id,
                entity_type.direction,
                entity_type.log_name,
                LogStatus.FAILED,
                error_message=str(exc),
                started=started,
            )
            raise

        await self._log(
            config.id,
            entity_type.direction,
            entity_type.log_name,
            LogStatus.SUCCESS if stats.success else LogStatus.FAILED,
            response={"stats": stats.to_dict()},
            error_message="; ".join(stats.error_messages) or None,
            started=started,
            records_processed=stats.processed,
            records_with_errors=stats.errors,
        )
        return stats

    # -- inbound ----------------------------------------------------------

    async def _pull(
        self,
        config: IntegrationConfig,
        connector: BaseConnector,
        entity_type: EntityType,
    ) -> tuple[SyncResult[Any], EntityStats]:
        if entity_type is EntityType.ASSETS:
            result = await connector.sync_assets(config.last_sync_at)
        else:
            result = await connector.sync_inventory(config.last_sync_at)

        stats = EntityStats(
            errors=result.errors,
            processed=len(result.data),
            success=result.success,
            error_messages=list(result.error_messages),
        )
        if result.success:
            await self._reconcile(config, entity_type, result.data, stats)
        return result, stats

    async def _reconcile(
        self,
        config: IntegrationConfig,
        entity_type: EntityType,
        pulled: Sequence[Any],
        stats: EntityStats,
    ) -> None:
        """Update the internal record holding each external id, or create one."""
        for record in pulled:
            data = record.to_dict()
            try:
                existing = await self.records.find_by_external_id(
                    config.tenant_id, entity_type.value, record.external_id
                )
                if existing is not None:
                    await self.records.update(entity_type.value, existing["id"], data)
                    stats.updated += 1
                else:
                    await self.records.create(config.tenant_id, entity_type.value, data)
                    stats.created += 1
            except Exception as exc:
                stats.fail(f"Failed to store {entity_type.log_name} {record.external_id}: {exc}")

    # -- outbound ---------------------------------------------------------

    async def _push_changed(
        self,
        config: IntegrationConfig,
        connector: BaseConnector,
        entity_type: EntityType,
        until: datetime,
    ) -> EntityStats:
        """Push every record changed after the last sync and up to *until*.

        Records go out in batches of ``PUSH_BATCH_LIMIT``, paged by
        ``(updated_at, id)``.
        """
        total = EntityStats()
        since, after_id = config.last_sync_at, None
        while True:
            page = await self.records.list_changed(
                config.tenant_id, entity_type.value, since, PUSH_BATCH_LIMIT,
                until=until, after_id=after_id,
            )
            if not page:
                break
            _, stats = await self._push(config, connector, entity_type, page)
            total.add(stats)
            if len(page) < PUSH_BATCH_LIMIT:
                break
            since, after_id = page[-1]["updated_at"], page[-1]["id"]
        return total

    async def _push(
        self,
        config: IntegrationConfig,
        connector: BaseConnector,
        entity_type: EntityType,
        records: list[dict[str, Any]],
        *,
        write_back: bool = True,
        requeue: bool = True,
    ) -> tuple[SyncResult[Any], EntityStats]:
        """Push *records* to the ERP.

        Newly assigned external ids are written back to the record store
        when *write_back*, without counting as a change to push again;
        rejected items go to the retry queue when *requeue*.
        """
        record_cls = _PUSH_RECORD_TYPES[entity_type]
        originals: dict[str, dict[str, Any]] = {}
        items: list[Any] = []
        conversion_errors: list[str] = []
        for record in records:
            try:
                items.append(record_cls.from_dict({**record, "internal_id": record["id"]}))
                originals[record["id"]] = record
            except Exception as exc:
                conversion_errors.append(
                    f"Failed to prepare {entity_type.log_name} {record.get('id')}: {exc}"
                )

        if entity_type is EntityType.WORK_ORDERS:
            result = await connector.sync_work_orders(items)
        else:
            result = await connector.sync_purchase_orders(items)

        stats = EntityStats(
            created=result.created,
            updated=result.updated,
            errors=result.errors,
            processed=len(records),
            success=result.success,
            error_messages=list(result.error_messages),
        )
        for message in conversion_errors:
            stats.fail(message)

        for pushed in result.data if write_back else []:
            before = originals.get(pushed.internal_id, {})
            if not pushed.external_id or pushed.external_id == before.get("external_id"):
                continue
            try:
                await self.records.update(
                    entity_type.value, pushed.internal_id, {"external_id": pushed.external_id},
                    touch=False,
                )
            except Exception as exc:
                stats.fail(
                    f"Failed to record external id for {entity_type.log_name} "
                    f"{pushed.internal_id}: {exc}"
                )

        if requeue:
            await self._enqueue_rejected(config, entity_type, result.rejected)
        return result, stats

    async def _enqueue_rejected(
        self,
        config: IntegrationConfig,
        entity_type: EntityType,
        rejected: Sequence[Any],
    ) -> None:
        if self.queue is None or not rejected:
            return
        for item in rejected:
            operation = QueueOperation.UPDATE if item.external_id else QueueOperation.CREATE
            try:
                await self.queue.enqueue(
                    config.id, operation, entity_type.value, item.internal_id, item.to_dict()
                )
            except Exception as exc:
                logger.warning(
                    "Could not queue %s %s for retry: %s", entity_type.log_name, item.internal_id, exc
                )

    # -- connection test --------------------------------------------------

    async def test_connection(self, config: IntegrationConfig) -> ConnectionTestResult:
        """connect → test → disconnect, logged as a ``connection_test`` entry.  Never raises."""
        started = time.monotonic()
        async with self._lock_for(config.id):
            connector: BaseConnector | None = None
            try:
                connector = await self.connectors.get(config)
                if await connector.connect():
                    result = await connector.test_connection()
                else:
                    result = ConnectionTestResult(
                        success=False,
                        message=connector.last_error
                        or f"Failed to connect to {config.erp_type.value} system",
                    )
            except Exception as exc:
                result = ConnectionTestResult(success=False, message=str(exc))
            finally:
                if connector is not None:
                    await connector.disconnect()

        await self._log(
            config.id,
            SyncDirection.OUTBOUND,
            CONNECTION_TEST,
            LogStatus.SUCCESS if result.success else LogStatus.FAILED,
            response=result.to_dict(),
            error_message=None if result.success else result.message,
            duration_ms=result.response_time_ms,
            started=started,
        )
        return result

    # -- retry-queue handler ----------------------------------------------

    async def process_queue_item(self, item: SyncQueueItem) -> None:
        """Perform one queued operation.  Raises on any failure."""
        config = await self.load_config(item.integration_id)
        if not config.is_active:
            raise IntegrationInactiveError(config.id)
        entity_type = resolve_entity_type(item.entity_type)
        if item.operation is QueueOperation.DELETE:
            raise ErpSyncError(
                f"{config.erp_type.value} connectors do not support deleting {entity_type.value}"
            )

        async with self._lock_for(config.id):
            connector = await self.connectors.get(config)
            started = time.monotonic()
            try:
                if not await connector.connect():
                    message = connector.last_error or f"Failed to connect to {config.erp_type.value} system"
                    await self._log(
                        config.id, SyncDirection.OUTBOUND, CONNECTION_TEST, LogStatus.FAILED,
                        error_message=message, started=started,
                    )
                    raise ErpConnectionError(message)

                if entity_type.direction is SyncDirection.INBOUND:
                    result, stats = await self._pull_one(config, connector, entity_type, item.entity_id)
                else:
                    record = await self.records.get(entity_type.value, item.entity_id)
                    stored = record is not None
                    if record is None:
                        record = {**item.payload, "id": item.entity_id}
                    result, stats = await self._push(
                        config, connector, entity_type, [record],
                        write_back=stored, requeue=False,
                    )
            except ErpConnectionError:
                raise
            except Exception as exc:
                await self._log(
                    config.id, entity_type.direction, entity_type.log_name, LogStatus.FAILED,
                    error_message=str(exc), started=started, records_processed=1,
                    records_with_errors=1,
                )
                raise
            finally:
                await connector.disconnect()

        ok = result.success and not stats.errors
        await self._log(
            config.id,
            entity_type.direction,
            entity_type.log_name,
            LogStatus.SUCCESS if ok else LogStatus.FAILED,
            response={"stats": stats.to_dict(), "queue_item_id": item.id},
            error_message="; ".join(stats.error_messages) or None,
            started=started,
            records_processed=stats.processed,
            records_with_errors=stats.errors,
        )
        if not ok:
            raise ErpSyncError("; ".join(stats.error_messages) or f"{entity_type.value} sync failed")

    async def _pull_one(
        self,
        config: IntegrationConfig,
        connector: BaseConnector,
        entity_type: EntityType,
        external_id: str,
    ) -> tuple[SyncResult[Any], EntityStats]:
        if entity_type is EntityType.ASSETS:
            result = await connector.sync_assets(None)
        else:
            result = await connector.sync_inventory(None)

        stats = EntityStats(processed=1, success=result.success)
        if not result.success:
            stats.errors = max(result.errors, 1)
            stats.error_messages = list(result.error_messages)
            return result, stats

        matches = [record for record in result.data if record.external_id == external_id]
        if not matches:
            stats.fail(f"{entity_type.log_name} {external_id} not found in {config.erp_type.value}")
            return result, stats
        await self._reconcile(config, entity_type, matches, stats)
        return result, stats

    # -- log --------------------------------------------------------------

    async def _log(
        self,
        integration_id: str,
        direction: SyncDirection,
        entity_type: str,
        status: LogStatus,
        *,
        response: dict[str, Any] | None = None,
        error_message: str | None = None,
        started: float | None = None,
        duration_ms: int | None = None,
        records_processed: int = 0,
        records_with_errors: int = 0,
    ) -> None:
        if duration_ms is None and started is not None:
            duration_ms = int((time.monotonic() - started) * 1000)
        await self.store.append_log(IntegrationLogEntry(
            integration_id=integration_id,
            direction=direction,
            entity_type=entity_type,
            status=status,
            response=response,
            error_message=error_message,
            duration_ms=duration_ms,
            records_processed=records_processed,
            records_with_errors=records_with_errors,
        ))
