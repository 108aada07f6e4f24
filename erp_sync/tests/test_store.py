"""Tests shared by the in-memory and SQLite stores."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from erp_sync.core.models import (
    ErpType,
    IntegrationConfig,
    IntegrationLogEntry,
    LogStatus,
    QueueOperation,
    QueueStatus,
    SyncDirection,
    SyncQueueItem,
    SyncSettings,
    SyncStatus,
)
from erp_sync.core.store import MemoryStore, SQLiteStore


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield MemoryStore()
        return
    store = SQLiteStore(tmp_path / "erp_sync.db")
    yield store
    store.close()


def _config(tenant_id: str = "acme", **fields) -> IntegrationConfig:
    return IntegrationConfig(
        tenant_id=tenant_id,
        erp_type=ErpType.ORACLE,
        name=fields.pop("name", "fusion"),
        connection_config="gAAAA-encrypted",
        **fields,
    )


def _item(integration_id: str, **fields) -> SyncQueueItem:
    return SyncQueueItem(
        integration_id=integration_id,
        operation=fields.pop("operation", QueueOperation.CREATE),
        entity_type=fields.pop("entity_type", "work_orders"),
        entity_id=fields.pop("entity_id", "wo-1"),
        **fields,
    )


def _log(integration_id: str, entity_type: str, status: LogStatus = LogStatus.SUCCESS) -> IntegrationLogEntry:
    return IntegrationLogEntry(
        integration_id=integration_id,
        direction=SyncDirection.INBOUND,
        entity_type=entity_type,
        status=status,
        response={"stats": {"created": 1}},
    )


class TestConfigs:
    @pytest.mark.asyncio
    async def test_round_trip(self, any_store):
        config = _config(
            mappings={"assets": {"ASSET_ID": "external_id"}},
            sync_settings=SyncSettings(sync_purchase_orders=True, auto_sync=True),
            last_sync_at=datetime(2024, 3, 1, 9, 15, tzinfo=timezone.utc),
            last_sync_stats={"assets": {"created": 2, "updated": 0, "errors": 0}},
        )
        await any_store.add_config(config)

        loaded = await any_store.get_config(config.id)

        assert loaded.erp_type is ErpType.ORACLE
        assert loaded.mappings == {"assets": {"ASSET_ID": "external_id"}}
        assert loaded.sync_settings.sync_purchase_orders is True
        assert loaded.last_sync_at == datetime(2024, 3, 1, 9, 15, tzinfo=timezone.utc)
        assert loaded.last_sync_stats == config.last_sync_stats
        assert loaded.connection_config == "gAAAA-encrypted"

    @pytest.mark.asyncio
    async def test_missing_config(self, any_store):
        assert await any_store.get_config("nope") is None

    @pytest.mark.asyncio
    async def test_list_filters(self, any_store):
        active = _config(name="a", sync_settings=SyncSettings(auto_sync=True))
        manual = _config(name="b")
        inactive = _config(name="c", is_active=False, sync_settings=SyncSettings(auto_sync=True))
        other = _config(tenant_id="globex", name="d")
        for config in (active, manual, inactive, other):
            await any_store.add_config(config)

        assert {c.id for c in await any_store.list_configs(tenant_id="acme")} == {active.id, manual.id, inactive.id}
        assert {c.id for c in await any_store.list_configs(active_only=True, auto_sync_only=True)} == {active.id}

    @pytest.mark.asyncio
    async def test_save_updates_status(self, any_store):
        config = await any_store.add_config(_config())
        config.sync_status = SyncStatus.PARTIAL
        config.last_sync_error = "1 record failed"
        await any_store.save_config(config)

        loaded = await any_store.get_config(config.id)
        assert loaded.sync_status is SyncStatus.PARTIAL
        assert loaded.last_sync_error == "1 record failed"

    @pytest.mark.asyncio
    async def test_delete_cascades(self, any_store):
        config = await any_store.add_config(_config())
        await any_store.append_log(_log(config.id, "asset"))
        await any_store.add_queue_item(_item(config.id))

        assert await any_store.delete_config(config.id) is True
        assert await any_store.get_config(config.id) is None
        assert await any_store.list_logs(config.id) == []
        assert await any_store.list_queue_items(integration_ids=[config.id]) == []
        assert await any_store.delete_config(config.id) is False


class TestLogs:
    @pytest.mark.asyncio
    async def test_newest_first_with_limit(self, any_store):
        config = await any_store.add_config(_config())
        for entity_type in ("asset", "inventory", "work_order"):
            await any_store.append_log(_log(config.id, entity_type))

        entries = await any_store.list_logs(config.id, limit=2)

        assert [e.entity_type for e in entries] == ["work_order", "inventory"]
        assert entries[0].response == {"stats": {"created": 1}}

    @pytest.mark.asyncio
    async def test_filters(self, any_store):
        config = await any_store.add_config(_config())
        await any_store.append_log(_log(config.id, "asset"))
        await any_store.append_log(_log(config.id, "asset", LogStatus.FAILED))
        await any_store.append_log(_log(config.id, "inventory", LogStatus.FAILED))

        failed_assets = await any_store.list_logs(config.id, entity_type="asset", status="failed")

        assert len(failed_assets) == 1
        assert failed_assets[0].status is LogStatus.FAILED
        assert await any_store.list_logs(config.id, direction="outbound") == []


class TestQueue:
    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, any_store):
        config = await any_store.add_config(_config())
        item = await any_store.add_queue_item(_item(config.id))

        claimed = await any_store.claim_queue_item(item.id)
        again = await any_store.claim_queue_item(item.id)

        assert claimed.status is QueueStatus.PROCESSING
        assert claimed.started_at is not None
        assert again is None

    @pytest.mark.asyncio
    async def test_concurrent_claims(self, any_store):
        config = await any_store.add_config(_config())
        item = await any_store.add_queue_item(_item(config.id))

        results = await asyncio.gather(*(any_store.claim_queue_item(item.id) for _ in range(5)))

        assert sum(result is not None for result in results) == 1

    @pytest.mark.asyncio
    async def test_claim_missing_item(self, any_store):
        assert await any_store.claim_queue_item("missing") is None

    @pytest.mark.asyncio
    async def test_select_pending(self, any_store):
        config = await any_store.add_config(_config())
        urgent = await any_store.add_queue_item(_item(config.id, entity_id="urgent", priority=1))
        normal = await any_store.add_queue_item(_item(config.id, entity_id="normal"))
        await any_store.add_queue_item(_item(config.id, entity_id="spent", retry_count=3))
        await any_store.add_queue_item(_item(config.id, entity_id="done", status=QueueStatus.COMPLETED))

        pending = await any_store.select_pending(10)

        assert [item.id for item in pending] == [urgent.id, normal.id]

    @pytest.mark.asyncio
    async def test_save_round_trip(self, any_store):
        config = await any_store.add_config(_config())
        item = await any_store.add_queue_item(_item(config.id, payload={"title": "Fix"}))
        item.status = QueueStatus.FAILED
        item.retry_count = 3
        item.error_message = "gave up"
        await any_store.save_queue_item(item)

        loaded = await any_store.get_queue_item(item.id)
        assert loaded.status is QueueStatus.FAILED
        assert loaded.retry_count == 3
        assert loaded.payload == {"title": "Fix"}

    @pytest.mark.asyncio
    async def test_list_filters(self, any_store):
        one = await any_store.add_config(_config(name="one"))
        two = await any_store.add_config(_config(name="two"))
        await any_store.add_queue_item(_item(one.id, entity_type="assets"))
        await any_store.add_queue_item(_item(one.id, entity_type="work_orders"))
        await any_store.add_queue_item(_item(two.id))

        assert len(await any_store.list_queue_items(integration_ids=[one.id])) == 2
        assert len(await any_store.list_queue_items(integration_ids=[one.id], entity_type="assets")) == 1
        assert await any_store.list_queue_items(integration_ids=[]) == []
        assert len(await any_store.list_queue_items(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_release_stale_claims(self, any_store):
        config = await any_store.add_config(_config())
        hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        stale = await any_store.add_queue_item(
            _item(config.id, entity_id="stale", status=QueueStatus.PROCESSING, started_at=hour_ago)
        )
        fresh = await any_store.add_queue_item(_item(config.id, entity_id="fresh"))
        await any_store.claim_queue_item(fresh.id)
        await any_store.add_queue_item(_item(config.id, entity_id="waiting"))

        released = await any_store.release_stale(datetime.now(timezone.utc) - timedelta(minutes=15))

        assert released == [stale.id]
        reloaded = await any_store.get_queue_item(stale.id)
        assert reloaded.status is QueueStatus.PENDING
        assert reloaded.started_at is None
        assert (await any_store.get_queue_item(fresh.id)).status is QueueStatus.PROCESSING
        assert await any_store.claim_queue_item(stale.id) is not None


class TestRecords:
    @pytest.mark.asyncio
    async def test_create_and_find(self, any_store):
        created = await any_store.create("acme", "assets", {"external_id": "EQ-1", "name": "Pump"})

        found = await any_store.find_by_external_id("acme", "assets", "EQ-1")

        assert found["id"] == created["id"]
        assert found["name"] == "Pump"
        assert found["tenant_id"] == "acme"
        assert await any_store.find_by_external_id("globex", "assets", "EQ-1") is None
        assert await any_store.find_by_external_id("acme", "inventory", "EQ-1") is None

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, any_store):
        created = await any_store.create("acme", "work_orders", {"id": "wo-1", "title": "Fix", "priority": "high"})

        updated = await any_store.update("work_orders", created["id"], {"external_id": "4711"})

        assert updated["external_id"] == "4711"
        assert updated["title"] == "Fix"
        assert updated["priority"] == "high"
        assert updated["updated_at"] >= created["updated_at"]

    @pytest.mark.asyncio
    async def test_update_missing_record(self, any_store):
        with pytest.raises(KeyError):
            await any_store.update("work_orders", "missing", {"title": "x"})

    @pytest.mark.asyncio
    async def test_list_changed_since(self, any_store):
        old = await any_store.create("acme", "work_orders", {"id": "wo-old", "title": "Old"})
        await asyncio.sleep(0.01)
        fresh = await any_store.create("acme", "work_orders", {"id": "wo-new", "title": "New"})
        await any_store.create("globex", "work_orders", {"id": "wo-theirs", "title": "Theirs"})

        changed = await any_store.list_changed("acme", "work_orders", since=old["updated_at"])
        everything = await any_store.list_changed("acme", "work_orders")

        assert [r["id"] for r in changed] == [fresh["id"]]
        assert [r["id"] for r in everything] == ["wo-old", "wo-new"]
        assert len(await any_store.list_changed("acme", "work_orders", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_update_without_touch_keeps_updated_at(self, any_store):
        created = await any_store.create("acme", "work_orders", {"id": "wo-1", "title": "Fix"})
        await asyncio.sleep(0.01)

        updated = await any_store.update("work_orders", "wo-1", {"external_id": "4711"}, touch=False)

        assert updated["external_id"] == "4711"
        assert updated["updated_at"] == created["updated_at"]
        assert await any_store.list_changed("acme", "work_orders", since=created["updated_at"]) == []

    @pytest.mark.asyncio
    async def test_list_changed_pages_by_cursor(self, any_store):
        for i in range(5):
            await any_store.create("acme", "work_orders", {"id": f"wo-{i}", "title": f"Job {i}"})
        cutoff = (await any_store.get("work_orders", "wo-4"))["updated_at"]
        await asyncio.sleep(0.01)
        await any_store.create("acme", "work_orders", {"id": "wo-late", "title": "Late"})

        seen = []
        since = after_id = None
        while True:
            page = await any_store.list_changed(
                "acme", "work_orders", since=since, limit=2, until=cutoff, after_id=after_id
            )
            if not page:
                break
            seen.extend(row["id"] for row in page)
            since, after_id = page[-1]["updated_at"], page[-1]["id"]

        assert seen == [f"wo-{i}" for i in range(5)]
