"""
Oracle connector — Enterprise Asset Management, Inventory and
Purchasing through the Oracle Fusion / EBS REST resources
(``/fscmRestApi/resources/{version}/{resource}``).

Collections are paged with ``limit`` / ``offset`` / ``hasMore`` and
filtered with the ``q`` finder syntax.  OAuth tokens are refreshed ahead
of expiry before every call.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Sequence
from urllib.parse import quote

import httpx

from erp_sync.core.connector import HTTPConnector
from erp_sync.core.mapping import MappingTable
from erp_sync.core.schema import (
    ErpAsset,
    ErpInventory,
    ErpPurchaseOrder,
    ErpWorkOrder,
    SyncResult,
)

ORACLE_DEFAULT_MAPPINGS: MappingTable = {
    "assets": {
        "ASSET_ID": "external_id",
        "ASSET_NUMBER": "asset_number",
        "ASSET_DESCRIPTION": "name",
        "ASSET_GROUP": "type",
        "ASSET_CATEGORY": "category",
        "SERIAL_NUMBER": "serial_number",
        "MANUFACTURER": "manufacturer",
        "MODEL_NUMBER": "model",
        "LOCATION": "location",
        "ASSET_STATUS": "status",
        "DATE_PURCHASED": "purchase_date",
        "ORIGINAL_COST": "purchase_price",
        "WARRANTY_EXPIRATION_DATE": "warranty_expiry",
    },
    "inventory": {
        "INVENTORY_ITEM_ID": "external_id",
        "ITEM_NUMBER": "material_number",
        "DESCRIPTION": "name",
        "LONG_DESCRIPTION": "description",
        "ITEM_TYPE": "category",
        "PRIMARY_UOM": "unit",
        "ON_HAND_QUANTITY": "quantity",
        "UNIT_PRICE": "unit_price",
        "MIN_QUANTITY": "min_quantity",
        "MAX_QUANTITY": "max_quantity",
        "SUBINVENTORY_CODE": "location",
        "VENDOR_NAME": "supplier",
        "MANUFACTURER_NAME": "manufacturer",
    },
    "work_orders": {
        "WIP_ENTITY_ID": "external_id",
        "WIP_ENTITY_NAME": "order_number",
        "DESCRIPTION": "title",
        "WORK_ORDER_TYPE": "type",
        "PRIORITY": "priority",
        "STATUS": "status",
        "ASSET_NUMBER": "asset_external_id",
        "SCHEDULED_START_DATE": "scheduled_date",
        "SCHEDULED_COMPLETION_DATE": "due_date",
        "ESTIMATED_COST": "estimated_cost",
        "ACTUAL_COST": "actual_cost",
    },
    "purchase_orders": {
        "PO_HEADER_ID": "external_id",
        "PO_NUMBER": "po_number",
        "VENDOR_ID": "vendor_id",
        "VENDOR_NAME": "vendor_name",
        "STATUS": "status",
        "CREATION_DATE": "order_date",
        "EXPECTED_RECEIPT_DATE": "expected_delivery_date",
        "TOTAL_AMOUNT": "total_amount",
        "CURRENCY_CODE": "currency",
    },
}

ORACLE_ASSET_STATUS = {
    "Active": "active",
    "In Service": "active",
    "Inactive": "inactive",
    "Out of Service": "inactive",
    "Under Construction": "under_maintenance",
    "Retired": "decommissioned",
}

ORACLE_WORK_ORDER_TYPES = {
    "preventive": "Preventive",
    "corrective": "Corrective",
    "emergency": "Emergency",
    "inspection": "Inspection",
}

ORACLE_PRIORITIES = {
    "critical": 1,
    "high": 2,
    "medium": 3,
    "low": 4,
}


def map_oracle_status(status: str | None) -> str:
    return ORACLE_ASSET_STATUS.get((status or "").strip(), "active")


def map_to_oracle_work_order_type(order_type: str | None) -> str:
    return ORACLE_WORK_ORDER_TYPES.get((order_type or "").lower(), "Standard")


def map_to_oracle_priority(priority: str | None) -> int:
    return ORACLE_PRIORITIES.get((priority or "").lower(), 3)


def format_oracle_date(value: date | None) -> str | None:
    return value.isoformat() if value else None


class OracleConnector(HTTPConnector):
    """Connector for Oracle Fusion Cloud and Oracle EBS REST services."""

    connector_name = "Oracle"
    default_mappings = ORACLE_DEFAULT_MAPPINGS
    default_scope = "urn:opc:resource:consumer::all"
    page_size = 200

    def __init__(
        self,
        connection_config: dict[str, Any],
        mappings: MappingTable | None = None,
    ) -> None:
        super().__init__(connection_config, mappings)
        self._api_version: str = connection_config.get("api_version", "latest")
        self._tenant_id: str | None = connection_config.get("tenant_id")
        self.health_path = connection_config.get("health_path", self._rest_base)

    @property
    def _rest_base(self) -> str:
        return f"/fscmRestApi/resources/{self._api_version}"

    # -- helpers ----------------------------------------------------------

    def _session_headers(self) -> dict[str, str]:
        headers = {"REST-Framework-Version": "4"}
        if self._tenant_id:
            headers["X-Oracle-Tenant"] = self._tenant_id
        return headers

    def _system_details(self, resp: httpx.Response) -> dict[str, Any]:
        host = httpx.URL(self._base_url).host
        return {
            "system_type": "Oracle Cloud ERP" if "oraclecloud.com" in host else "Oracle EBS",
            "tenant_id": self._tenant_id,
            "api_version": self._api_version,
            "host": host,
        }

    async def _fetch_all(self, resource: str, since: datetime | None) -> list[dict[str, Any]]:
        params: dict[str, str] = {"limit": str(self.page_size), "onlyData": "true"}
        if since is not None:
            stamp = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            params["q"] = f"LAST_UPDATE_DATE >= '{stamp}'"

        records: list[dict[str, Any]] = []
        offset = 0
        while True:
            params["offset"] = str(offset)
            resp = await self._request("GET", f"{self._rest_base}/{resource}", params=params)
            body = resp.json()
            items = body.get("items", [])
            records.extend(items)
            if not body.get("hasMore") or not items:
                return records
            offset += len(items)

    async def _write(self, method: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        resp = await self._request(method, path, json=payload)
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    def _metadata(self, raw: dict[str, Any]) -> dict[str, Any]:
        return {
            "tenant_id": self._tenant_id,
            "synced_at": datetime.now(timezone.utc).isoformat(),
            "original_data": raw,
        }

    # -- conversion -------------------------------------------------------

    def _to_asset(self, raw: dict[str, Any]) -> ErpAsset:
        mapped = self._apply_mapping(raw, "assets")
        external_id = mapped.get("external_id") or raw.get("ASSET_ID")
        if external_id in (None, ""):
            raise ValueError("asset record has no ASSET_ID")
        return ErpAsset.from_dict({
            **mapped,
            "external_id": str(external_id),
            "name": mapped.get("name") or raw.get("ASSET_DESCRIPTION") or str(external_id),
            "status": map_oracle_status(mapped.get("status")),
            "metadata": self._metadata(raw),
        })

    def _to_inventory(self, raw: dict[str, Any]) -> ErpInventory:
        mapped = self._apply_mapping(raw, "inventory")
        external_id = mapped.get("external_id") or raw.get("INVENTORY_ITEM_ID")
        if external_id in (None, ""):
            raise ValueError("inventory record has no INVENTORY_ITEM_ID")
        return ErpInventory.from_dict({
            **mapped,
            "external_id": str(external_id),
            "name": mapped.get("name") or raw.get("DESCRIPTION") or str(external_id),
            "quantity": mapped.get("quantity") or 0,
            "metadata": self._metadata(raw),
        })

    def to_oracle_work_order(self, wo: ErpWorkOrder) -> dict[str, Any]:
        return self._apply_reverse_mapping({
            "order_number": wo.order_number or wo.internal_id,
            "title": wo.title,
            "type": map_to_oracle_work_order_type(wo.type),
            "priority": map_to_oracle_priority(wo.priority),
            "asset_external_id": wo.asset_external_id,
            "scheduled_date": format_oracle_date(wo.scheduled_date),
            "due_date": format_oracle_date(wo.due_date),
        }, "work_orders")

    def to_oracle_purchase_order(self, po: ErpPurchaseOrder) -> dict[str, Any]:
        payload = self._apply_reverse_mapping({
            "vendor_id": po.vendor_id,
            "order_date": format_oracle_date(po.order_date),
            "expected_delivery_date": format_oracle_date(po.expected_delivery_date),
            "currency": po.currency,
        }, "purchase_orders")
        payload["LINES"] = [
            {
                "LINE_NUMBER": index,
                "ITEM_NUMBER": item.material_number,
                "ITEM_DESCRIPTION": item.description,
                "QUANTITY": item.quantity,
                "UOM_CODE": item.unit,
                "UNIT_PRICE": item.unit_price,
            }
            for index, item in enumerate(po.items, start=1)
        ]
        return payload

    # -- sync -------------------------------------------------------------

    async def sync_assets(self, since: datetime | None = None) -> SyncResult[ErpAsset]:
        return await self._pull(
            "assets",
            lambda: self._fetch_all("maintainableAssets", since),
            self._to_asset,
        )

    async def sync_inventory(self, since: datetime | None = None) -> SyncResult[ErpInventory]:
        return await self._pull(
            "inventory",
            lambda: self._fetch_all("inventoryItems", since),
            self._to_inventory,
        )

    async def sync_work_orders(
        self, work_orders: Sequence[ErpWorkOrder]
    ) -> SyncResult[ErpWorkOrder]:
        path = f"{self._rest_base}/maintenanceWorkOrders"

        async def push(wo: ErpWorkOrder) -> str:
            payload = self.to_oracle_work_order(wo)
            if wo.external_id:
                await self._write("PATCH", f"{path}/{quote(wo.external_id)}", payload)
                return wo.external_id
            body = await self._write("POST", path, payload)
            if body.get("WIP_ENTITY_ID") in (None, ""):
                raise ValueError("Oracle did not return a WIP_ENTITY_ID")
            return str(body["WIP_ENTITY_ID"])

        return await self._push_batch("work orders", work_orders, push)

    async def sync_purchase_orders(
        self, purchase_orders: Sequence[ErpPurchaseOrder]
    ) -> SyncResult[ErpPurchaseOrder]:
        path = f"{self._rest_base}/purchaseOrders"

        async def push(po: ErpPurchaseOrder) -> str:
            payload = self.to_oracle_purchase_order(po)
            if po.external_id:
                await self._write("PATCH", f"{path}/{quote(po.external_id)}", payload)
                return po.external_id
            body = await self._write("POST", path, payload)
            if body.get("PO_HEADER_ID") in (None, ""):
                raise ValueError("Oracle did not return a PO_HEADER_ID")
            return str(body["PO_HEADER_ID"])

        return await self._push_batch("purchase orders", purchase_orders, push)
