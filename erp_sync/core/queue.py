"""
Persistent retry queue.

Items move PENDING → PROCESSING → COMPLETED, or back to PENDING on a
failure while ``retry_count`` is below ``max_retries``, or to FAILED once
the budget is spent.  COMPLETED and FAILED are terminal.  Every
PENDING → PROCESSING move goes through the store's atomic claim, so a
scheduler tick and a manual retry never process the same item twice.

An item whose handler is cancelled goes back to PENDING with its retry
budget untouched.  An item left in PROCESSING by a worker that died is
handed back to PENDING by the next drain once its claim is older than
``claim_timeout`` seconds.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable

from erp_sync.core.errors import QueueItemError, RetryableOperationError, TerminalQueueError
from erp_sync.core.models import QueueOperation, QueueStatus, SyncQueueItem, utcnow
from erp_sync.core.store import IntegrationStore

logger = logging.getLogger(__name__)

QueueHandler = Callable[[SyncQueueItem], Awaitable[Any]]

DEFAULT_BATCH_SIZE = 50
DEFAULT_MAX_RETRIES = 3
DEFAULT_PRIORITY = 5
DEFAULT_CLAIM_TIMEOUT = 900


@dataclass
class DrainReport:
    """What one drain cycle did."""

    selected: int = 0
    completed: list[str] = field(default_factory=list)
    retried: list[RetryableOperationError] = field(default_factory=list)
    failed: list[TerminalQueueError] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # claimed elsewhere first
    released: list[str] = field(default_factory=list)  # stale claims handed back

    def record(self, outcome: SyncQueueItem | QueueItemError) -> None:
        if isinstance(outcome, RetryableOperationError):
            self.retried.append(outcome)
        elif isinstance(outcome, TerminalQueueError):
            self.failed.append(outcome)
        else:
            self.completed.append(outcome.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected": self.selected,
            "completed": len(self.completed),
            "retried": len(self.retried),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "released": len(self.released),
            "errors": [str(err) for err in [*self.retried, *self.failed]],
        }


class RetryQueue:
    def __init__(
        self,
        store: IntegrationStore,
        handler: QueueHandler | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        claim_timeout: float = DEFAULT_CLAIM_TIMEOUT,
    ) -> None:
        self.store = store
        self.handler = handler
        self.batch_size = batch_size
        self.claim_timeout = claim_timeout

    async def enqueue(
        self,
        integration_id: str,
        operation: QueueOperation | str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        priority: int = DEFAULT_PRIORITY,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> SyncQueueItem:
        item = SyncQueueItem(
            integration_id=integration_id,
            operation=QueueOperation(operation),
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload or {},
            priority=priority,
            max_retries=max_retries,
        )
        item = await self.store.add_queue_item(item)
        logger.debug(
            "Queued %s %s %s for integration %s",
            item.operation.value, entity_type, entity_id, integration_id,
        )
        return item

    async def drain(self) -> DrainReport:
        """Process up to ``batch_size`` pending items, one at a time."""
        report = DrainReport()
        report.released = await self.store.release_stale(
            utcnow() - timedelta(seconds=self.claim_timeout)
        )
        if report.released:
            logger.warning(
                "Returned %d stale sync queue item(s) to pending: %s",
                len(report.released), ", ".join(report.released),
            )
        pending = await self.store.select_pending(self.batch_size)
        report.selected = len(pending)
        if pending:
            logger.info("Processing %d sync queue item(s)...", len(pending))

        for candidate in pending:
            item = await self.store.claim_queue_item(candidate.id)
            if item is None:
                report.skipped.append(candidate.id)
                continue
            report.record(await self._process(item))
        return report

    async def retry(self, item_id: str) -> SyncQueueItem | QueueItemError | None:
        """Run one PENDING item now.

        Returns the completed item, the classified failure, or None when
        the item could not be claimed (not PENDING, or taken by a drain).
        """
        item = await self.store.claim_queue_item(item_id)
        if item is None:
            return None
        return await self._process(item)

    async def _process(self, item: SyncQueueItem) -> SyncQueueItem | QueueItemError:
        if self.handler is None:
            raise RuntimeError("RetryQueue has no handler configured")

        try:
            await self.handler(item)
        except asyncio.CancelledError:
            await self._release(item)
            raise
        except Exception as exc:
            return await self._fail(item, str(exc) or exc.__class__.__name__)

        item.status = QueueStatus.COMPLETED
        item.completed_at = utcnow()
        item.error_message = None
        return await self.store.save_queue_item(item)

    async def _release(self, item: SyncQueueItem) -> None:
        item.status = QueueStatus.PENDING
        item.started_at = None
        await self.store.save_queue_item(item)
        logger.warning("Sync queue item %s interrupted; returned to pending", item.id)

    async def _fail(self, item: SyncQueueItem, message: str) -> QueueItemError:
        item.retry_count += 1
        item.error_message = message
        if item.retry_count < item.max_retries:
            item.status = QueueStatus.PENDING
            error: QueueItemError = RetryableOperationError(
                item.id, message, item.retry_count, item.max_retries
            )
            logger.warning("%s", error)
        else:
            item.status = QueueStatus.FAILED
            item.completed_at = utcnow()
            error = TerminalQueueError(item.id, message, item.retry_count, item.max_retries)
            logger.error("%s", error)
        await self.store.save_queue_item(item)
        return error
