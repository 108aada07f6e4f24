"""Tests for the periodic queue drain and scheduled-sync sweep."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from erp_sync.core.models import ErpType, IntegrationConfig, SyncSettings
from erp_sync.core.scheduler import SyncScheduler, is_due

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _config(**fields) -> IntegrationConfig:
    return IntegrationConfig(tenant_id="acme", erp_type=ErpType.SAP, name="plant", connection_config="x", **fields)


class TestIsDue:
    def test_never_synced_is_due(self):
        assert is_due(_config(), NOW)

    def test_interval_elapsed(self):
        config = _config(
            sync_settings=SyncSettings(sync_interval=30),
            last_sync_at=NOW - timedelta(minutes=30),
        )
        assert is_due(config, NOW)

    def test_interval_not_elapsed(self):
        config = _config(
            sync_settings=SyncSettings(sync_interval=30),
            last_sync_at=NOW - timedelta(minutes=29),
        )
        assert not is_due(config, NOW)


class TestSweep:
    @pytest.fixture
    def scheduler(self, store, orchestrator, queue):
        return SyncScheduler(store, orchestrator, queue, queue_interval=0.01, sweep_interval=0.01)

    @pytest.mark.asyncio
    async def test_runs_only_active_auto_sync_configs(self, scheduler, make_config):
        due = await make_config(name="due", sync_settings={"auto_sync": True})
        await make_config(name="manual", sync_settings={"auto_sync": False})
        await make_config(name="inactive", sync_settings={"auto_sync": True}, is_active=False)

        results = await scheduler.run_due_syncs()

        assert results == {due.id: "success"}

    @pytest.mark.asyncio
    async def test_recently_synced_config_is_skipped(self, scheduler, make_config):
        await make_config(
            sync_settings={"auto_sync": True, "sync_interval": 60},
            last_sync_at=datetime.now(timezone.utc) - timedelta(minutes=5),
        )
        assert await scheduler.run_due_syncs() == {}

    @pytest.mark.asyncio
    async def test_one_failing_config_does_not_block_others(self, scheduler, connectors, make_config):
        broken = await make_config(name="broken", sync_settings={"auto_sync": True})
        healthy = await make_config(name="healthy", sync_settings={"auto_sync": True})
        connector = await connectors.get(broken)
        connector.connect_ok = False

        results = await scheduler.run_due_syncs()

        assert results == {broken.id: "error", healthy.id: "success"}

    @pytest.mark.asyncio
    async def test_config_already_syncing_is_skipped(self, scheduler, orchestrator, connectors, make_config):
        config = await make_config(sync_settings={"auto_sync": True})
        connector = await connectors.get(config)
        connector.gate = asyncio.Event()

        manual = asyncio.create_task(orchestrator.run(config.id))
        await connector.entered.wait()
        results = await scheduler.run_due_syncs()
        connector.gate.set()
        await manual

        assert results == {config.id: "skipped"}
        assert connector.connects == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_loops_tick_until_stopped(self, store, orchestrator):
        queue = AsyncMock()
        scheduler = SyncScheduler(store, orchestrator, queue, queue_interval=0.01, sweep_interval=0.01)

        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert not scheduler.running
        assert queue.drain.await_count >= 1

    @pytest.mark.asyncio
    async def test_tick_exception_does_not_kill_loop(self, store, orchestrator):
        queue = AsyncMock()
        queue.drain.side_effect = RuntimeError("database is locked")
        scheduler = SyncScheduler(store, orchestrator, queue, queue_interval=0.01, sweep_interval=10)

        scheduler.start()
        await asyncio.sleep(0.06)
        still_running = scheduler.running
        await scheduler.stop()

        assert still_running
        assert queue.drain.await_count >= 2

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, store, orchestrator, queue):
        scheduler = SyncScheduler(store, orchestrator, queue, queue_interval=10, sweep_interval=10)
        scheduler.start()
        tasks = list(scheduler._tasks)
        scheduler.start()
        assert scheduler._tasks == tasks
        await scheduler.stop()
