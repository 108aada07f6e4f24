"""
Periodic triggers: retry-queue drain and the scheduled-sync sweep.

Both run as independent asyncio tasks started by ``start()`` and
cancelled by ``stop()``.  Each tick is wrapped so that an exception never
kills its loop, and the sweep isolates every integration config so one
tenant's failure never blocks the others.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from erp_sync.core.errors import SyncInProgressError
from erp_sync.core.models import IntegrationConfig, utcnow
from erp_sync.core.queue import DrainReport, RetryQueue
from erp_sync.core.store import IntegrationStore
from erp_sync.core.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_INTERVAL = 300  # seconds
DEFAULT_SWEEP_INTERVAL = 3600


def is_due(config: IntegrationConfig, now: datetime | None = None) -> bool:
    """True when *config* has never synced or its interval has elapsed."""
    if config.last_sync_at is None:
        return True
    now = now or utcnow()
    interval = timedelta(minutes=config.sync_settings.sync_interval or 60)
    return now - config.last_sync_at >= interval


class SyncScheduler:
    def __init__(
        self,
        store: IntegrationStore,
        orchestrator: SyncOrchestrator,
        queue: RetryQueue,
        queue_interval: float = DEFAULT_QUEUE_INTERVAL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.queue = queue
        self.queue_interval = queue_interval
        self.sweep_interval = sweep_interval
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(
                self._loop("queue drain", self.queue_interval, self.drain_queue_once),
                name="erp-sync-queue-drain",
            ),
            asyncio.create_task(
                self._loop("scheduled sync sweep", self.sweep_interval, self.run_due_syncs),
                name="erp-sync-sweep",
            ),
        ]
        logger.info(
            "Scheduler started (queue every %ss, sweep every %ss)",
            self.queue_interval, self.sweep_interval,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Scheduler stopped")

    async def _loop(
        self, name: str, interval: float, tick: Callable[[], Awaitable[object]]
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduler %s tick failed", name)

    # -- ticks ------------------------------------------------------------

    async def drain_queue_once(self) -> DrainReport:
        report = await self.queue.drain()
        if report.selected:
            logger.info(
                "Queue drain: %d completed, %d re-queued, %d failed, %d skipped",
                len(report.completed), len(report.retried), len(report.failed), len(report.skipped),
            )
        return report

    async def run_due_syncs(self, now: datetime | None = None) -> dict[str, str]:
        """Sync every active auto-sync config that is due.

        Returns ``{config_id: outcome}`` where outcome is the final sync
        status, ``"skipped"`` (a run was already in flight), or
        ``"error"``.
        """
        logger.info("Running scheduled syncs...")
        configs = await self.store.list_configs(active_only=True, auto_sync_only=True)
        results: dict[str, str] = {}
        for config in configs:
            if not is_due(config, now):
                continue
            try:
                outcome = await self.orchestrator.run(config.id, config.tenant_id)
            except SyncInProgressError:
                logger.info("Skipping integration %s: a sync is already running", config.id)
                results[config.id] = "skipped"
            except Exception as exc:
                logger.error("Scheduled sync failed for integration %s: %s", config.id, exc)
                results[config.id] = "error"
            else:
                logger.info("Scheduled sync completed for integration %s", config.id)
                results[config.id] = outcome.status.value
        return results
