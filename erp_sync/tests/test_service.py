"""Tests for the tenant-scoped management surface."""

from __future__ import annotations

import pytest

from erp_sync.core.audit import AuditSink
from erp_sync.core.crypto import CredentialCipher, generate_key
from erp_sync.core.errors import (
    ConfigurationError,
    ErpSyncError,
    CredentialDecryptionError,
    IntegrationNotFoundError,
    PartialSyncError,
    UnsupportedErpTypeError,
)
from erp_sync.core.models import QueueStatus
from erp_sync.core.schema import ErpAsset
from erp_sync.core.service import IntegrationService

SAP_CONNECTION = {
    "base_url": "https://sap.test",
    "client": "100",
    "oauth": {"token_url": "https://sap.test/oauth/token", "client_id": "cid", "client_secret": "s3cret"},
}


class RecordingSink(AuditSink):
    def __init__(self) -> None:
        self.events = []

    async def record(self, event) -> None:
        self.events.append(event)


class BrokenSink(AuditSink):
    async def record(self, event) -> None:
        raise RuntimeError("audit table missing")


@pytest.fixture
def audit():
    return RecordingSink()


@pytest.fixture
def service(store, orchestrator, connectors, cipher, queue, audit):
    return IntegrationService(store, orchestrator, connectors, cipher, queue, audit)


async def _create(service, tenant_id: str = "acme", **kwargs):
    kwargs.setdefault("sync_settings", {"sync_assets": True, "sync_inventory": False})
    return await service.create(
        tenant_id=tenant_id,
        erp_type=kwargs.pop("erp_type", "sap"),
        name=kwargs.pop("name", "Plant SAP"),
        connection_config=kwargs.pop("connection_config", SAP_CONNECTION),
        **kwargs,
    )


class TestConfigs:
    @pytest.mark.asyncio
    async def test_create_encrypts_and_hides_credentials(self, service, store, cipher, audit):
        view = await _create(service, user_id="u-1")

        assert "connection_config" not in view
        assert view["erp_type"] == "sap"
        assert view["sync_status"] == "idle"
        stored = await store.get_config(view["id"])
        assert "s3cret" not in stored.connection_config
        assert cipher.decrypt(stored.connection_config) == SAP_CONNECTION
        assert audit.events[0].action == "CREATE"
        assert audit.events[0].user_id == "u-1"

    @pytest.mark.asyncio
    async def test_create_defaults_mappings_for_erp_type(self, service):
        view = await _create(service, erp_type="oracle", name="Fusion")
        assert view["mappings"]["assets"]["ASSET_ID"] == "external_id"

    @pytest.mark.asyncio
    async def test_create_unknown_type(self, service):
        with pytest.raises(UnsupportedErpTypeError):
            await _create(service, erp_type="dynamics")

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, service):
        view = await _create(service, tenant_id="acme")
        await _create(service, tenant_id="globex", name="Globex SAP")

        assert [c["id"] for c in await service.list("acme")] == [view["id"]]
        with pytest.raises(IntegrationNotFoundError):
            await service.get(view["id"], "globex")
        with pytest.raises(IntegrationNotFoundError):
            await service.delete(view["id"], "globex")

    @pytest.mark.asyncio
    async def test_update_merges_sync_settings(self, service):
        view = await _create(service)

        updated = await service.update(view["id"], "acme", {"name": "Renamed", "sync_settings": {"auto_sync": True}})

        assert updated["name"] == "Renamed"
        assert updated["sync_settings"]["auto_sync"] is True
        assert updated["sync_settings"]["sync_assets"] is True

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, service):
        view = await _create(service)
        with pytest.raises(ConfigurationError):
            await service.update(view["id"], "acme", {"sync_status": "success"})

    @pytest.mark.asyncio
    async def test_credential_update_reaches_next_sync(self, service, connectors, store):
        view = await _create(service)
        config = await store.get_config(view["id"])
        stale = await connectors.get(config)
        await service.trigger_sync(view["id"], "acme")

        new_connection = {**SAP_CONNECTION, "oauth": {**SAP_CONNECTION["oauth"], "client_secret": "rotated"}}
        await service.update(view["id"], "acme", {"connection_config": new_connection})
        await service.trigger_sync(view["id"], "acme")

        fresh = await connectors.get(await store.get_config(view["id"]))
        assert fresh is not stale
        assert fresh.connection_config["oauth"]["client_secret"] == "rotated"
        assert fresh.connects == 1

    @pytest.mark.asyncio
    async def test_delete_evicts_and_cascades(self, service, orchestrator, connectors, store, queue):
        view = await _create(service)
        await service.test_connection(view["id"], "acme")
        assert view["id"] in orchestrator._locks
        connector = await connectors.get(await store.get_config(view["id"]))
        disconnects = connector.disconnects
        await queue.enqueue(view["id"], "create", "work_orders", "wo-1")

        await service.delete(view["id"], "acme")

        assert view["id"] not in connectors
        assert view["id"] not in orchestrator._locks
        assert connector.disconnects == disconnects
        assert await store.get_config(view["id"]) is None
        assert await store.list_queue_items(integration_ids=[view["id"]]) == []

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_break_create(self, store, orchestrator, connectors, cipher, queue):
        service = IntegrationService(store, orchestrator, connectors, cipher, queue, BrokenSink())
        view = await _create(service)
        assert await store.get_config(view["id"]) is not None


class TestMappings:
    def test_list_erp_types(self, service):
        types = service.list_erp_types()
        assert [t["value"] for t in types] == ["sap", "oracle"]
        assert all(t["label"] and t["description"] for t in types)

    def test_default_mappings_are_copies(self, service):
        mappings = service.default_mappings("sap")
        mappings["assets"]["EQUNR"] = "tampered"
        assert service.default_mappings("sap")["assets"]["EQUNR"] == "external_id"

    @pytest.mark.asyncio
    async def test_update_mappings_replaces_per_entity_type(self, service, connectors, store):
        view = await _create(service)
        await connectors.get(await store.get_config(view["id"]))

        updated = await service.update_mappings(view["id"], "acme", {"assets": {"EQUNR": "external_id", "ZZCOLOR": "color"}})

        assert updated["mappings"]["assets"] == {"EQUNR": "external_id", "ZZCOLOR": "color"}
        assert updated["mappings"]["inventory"]["MATNR"] == "external_id"
        assert view["id"] not in connectors


class TestSyncAndQueue:
    @pytest.mark.asyncio
    async def test_trigger_sync_and_logs(self, service, connectors, store):
        view = await _create(service)
        connector = await connectors.get(await store.get_config(view["id"]))
        connector.assets = [ErpAsset(external_id="EQ-1", name="Pump")]

        result = await service.trigger_sync(view["id"], "acme")
        logs = await service.list_logs(view["id"], "acme", direction="inbound")

        assert result == {"success": True, "stats": {"assets": {"created": 1, "updated": 0, "errors": 0}}}
        assert [entry["entity_type"] for entry in logs] == ["asset"]
        assert (await service.get(view["id"], "acme"))["sync_status"] == "success"

    @pytest.mark.asyncio
    async def test_test_connection(self, service):
        view = await _create(service)
        result = await service.test_connection(view["id"], "acme")
        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_queue_listing_is_tenant_scoped(self, service):
        ours = await _create(service, tenant_id="acme")
        theirs = await _create(service, tenant_id="globex", name="Globex SAP")
        await service.enqueue(ours["id"], "acme", "create", "work_orders", "wo-1")
        await service.enqueue(theirs["id"], "globex", "create", "work_orders", "wo-2")

        items = await service.list_queue_items("acme")

        assert [item["entity_id"] for item in items] == ["wo-1"]
        assert await service.list_queue_items("acme", integration_id=theirs["id"]) == []

    @pytest.mark.asyncio
    async def test_enqueue_normalizes_entity_type(self, service):
        view = await _create(service)
        item = await service.enqueue(view["id"], "acme", "update", "work_order", "wo-1", {"title": "x"}, priority=2)
        assert item["entity_type"] == "work_orders"
        assert item["priority"] == 2

    @pytest.mark.asyncio
    async def test_enqueue_rejects_unknown_operation(self, service):
        view = await _create(service)
        with pytest.raises(ConfigurationError):
            await service.enqueue(view["id"], "acme", "upsert", "work_orders", "wo-1")

    @pytest.mark.asyncio
    async def test_retry_queue_item(self, service, store):
        view = await _create(service)
        await store.create("acme", "work_orders", {"id": "wo-1", "title": "Replace seal"})
        item = await service.enqueue(view["id"], "acme", "create", "work_orders", "wo-1")

        result = await service.retry_queue_item(item["id"], "acme")

        assert result["status"] == QueueStatus.COMPLETED.value
        assert "error" not in result
        with pytest.raises(ErpSyncError):
            await service.retry_queue_item(item["id"], "acme")

    @pytest.mark.asyncio
    async def test_retry_reports_failure(self, service):
        view = await _create(service)
        item = await service.enqueue(view["id"], "acme", "delete", "work_orders", "wo-1")

        result = await service.retry_queue_item(item["id"], "acme")

        assert result["status"] == "pending"
        assert result["retry_count"] == 1
        assert "will retry" in result["error"]

    @pytest.mark.asyncio
    async def test_retry_other_tenants_item(self, service):
        view = await _create(service, tenant_id="globex")
        item = await service.enqueue(view["id"], "globex", "create", "work_orders", "wo-1")
        with pytest.raises(IntegrationNotFoundError):
            await service.retry_queue_item(item["id"], "acme")

    @pytest.mark.asyncio
    async def test_retry_missing_item(self, service):
        with pytest.raises(ErpSyncError):
            await service.retry_queue_item("missing", "acme")

    @pytest.mark.asyncio
    async def test_strict_sync_raises_on_record_errors(self, service, connectors, store):
        view = await _create(service, sync_settings={"sync_assets": False, "sync_inventory": False, "sync_work_orders": True})
        await store.create("acme", "work_orders", {"id": "wo-1", "title": "Replace seal"})
        connector = await connectors.get(await store.get_config(view["id"]))
        connector.push_failures = {"wo-1": "Plant is locked"}

        with pytest.raises(PartialSyncError, match="Plant is locked"):
            await service.trigger_sync(view["id"], "acme", strict=True)

        assert (await service.get(view["id"], "acme"))["sync_status"] == "partial"
        lenient = await service.trigger_sync(view["id"], "acme")
        assert lenient["success"] is True


class TestCredentialRotation:
    @pytest.mark.asyncio
    async def test_rotate_re_encrypts_under_new_key(self, store, orchestrator, connectors, queue, audit):
        old_key, new_key = generate_key(), generate_key()
        before = IntegrationService(store, orchestrator, connectors, CredentialCipher(old_key), queue, audit)
        ours = await _create(before)
        theirs = await _create(before, tenant_id="globex", name="Globex SAP")
        after = IntegrationService(
            store, orchestrator, connectors, CredentialCipher([new_key, old_key]), queue, audit
        )

        rotated = await after.rotate_credentials("acme")

        assert rotated == [ours["id"]]
        blob = (await store.get_config(ours["id"])).connection_config
        assert CredentialCipher(new_key).decrypt(blob) == SAP_CONNECTION
        with pytest.raises(CredentialDecryptionError):
            CredentialCipher(old_key).decrypt(blob)
        untouched = (await store.get_config(theirs["id"])).connection_config
        assert CredentialCipher(old_key).decrypt(untouched) == SAP_CONNECTION

    @pytest.mark.asyncio
    async def test_rotate_evicts_cached_connectors(self, service, connectors, store):
        view = await _create(service)
        await connectors.get(await store.get_config(view["id"]))

        await service.rotate_credentials()

        assert view["id"] not in connectors
