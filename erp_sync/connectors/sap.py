"""
SAP connector — Plant Maintenance (PM) and Materials Management (MM)
through SAP Gateway OData services.

Equipment and materials are read with OData V2 queries (``$filter``,
``$top``, ``$skip``); maintenance and purchase orders are written with
POST / PATCH after fetching an X-CSRF-Token.  Records travel with SAP
technical field names (EQUNR, MATNR, AUFNR, EBELN, ...) which the
default mapping table translates to the internal vocabulary.
"""

from __future__ import annotations

import re
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

SAP_DEFAULT_MAPPINGS: MappingTable = {
    "assets": {
        "EQUNR": "external_id",  # equipment number
        "EQKTX": "name",
        "EQTYP": "type",
        "EQART": "category",
        "SERGE": "serial_number",
        "HERST": "manufacturer",
        "TYPBZ": "model",
        "STORT": "location",
        "STATXT": "status",
        "ANSDT": "purchase_date",
        "ANSWRT": "purchase_price",
        "GWLDT": "warranty_expiry",
    },
    "inventory": {
        "MATNR": "external_id",  # material number
        "MAKTX": "name",
        "MATKL": "category",
        "MEINS": "unit",
        "LABST": "quantity",  # unrestricted stock
        "STPRS": "unit_price",
        "MINBE": "min_quantity",
        "MXLBE": "max_quantity",
        "LGORT": "location",
        "LIFNR": "supplier",
        "MFRPN": "manufacturer",
    },
    "work_orders": {
        "AUFNR": "external_id",  # order number
        "KTEXT": "title",
        "LTXA1": "description",
        "AUART": "type",
        "PRIOK": "priority",
        "STAT": "status",
        "EQUNR": "asset_external_id",
        "GSTRP": "scheduled_date",
        "GLTRP": "due_date",
        "KOSTL_PLAN": "estimated_cost",
        "KOSTL_IST": "actual_cost",
    },
    "purchase_orders": {
        "EBELN": "external_id",  # purchasing document
        "LIFNR": "vendor_id",
        "NAME1": "vendor_name",
        "STATU": "status",
        "BEDAT": "order_date",
        "EINDT": "expected_delivery_date",
        "NETWR": "total_amount",
        "WAERS": "currency",
    },
}

# SAP equipment user status → internal asset status
SAP_EQUIPMENT_STATUS = {
    "ACTV": "active",
    "AVLB": "active",
    "INAC": "inactive",
    "DLFL": "decommissioned",
    "MAINT": "under_maintenance",
}

SAP_ORDER_TYPES = {
    "preventive": "PM01",
    "corrective": "PM02",
    "emergency": "PM03",
    "inspection": "PM04",
}

SAP_PRIORITIES = {
    "critical": "1",
    "high": "2",
    "medium": "3",
    "low": "4",
}

_ODATA_DATE = re.compile(r"/Date\((-?\d+)[^)]*\)/")


def map_sap_status(code: str | None) -> str:
    return SAP_EQUIPMENT_STATUS.get((code or "").strip().upper(), "active")


def map_to_sap_order_type(order_type: str | None) -> str:
    return SAP_ORDER_TYPES.get((order_type or "").lower(), "PM01")


def map_to_sap_priority(priority: str | None) -> str:
    return SAP_PRIORITIES.get((priority or "").lower(), "3")


def format_sap_date(value: date | None) -> str | None:
    return value.strftime("%Y%m%d") if value else None


def parse_sap_date(value: Any) -> date | None:
    """Accept ``/Date(ms)/``, ``YYYYMMDD`` and ISO dates."""
    if value in (None, "", "00000000"):
        return None
    if isinstance(value, date):
        return value
    text = str(value)
    match = _ODATA_DATE.match(text)
    if match:
        return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc).date()
    if len(text) == 8 and text.isdigit():
        return datetime.strptime(text, "%Y%m%d").date()
    return date.fromisoformat(text[:10])


def _to_float(value: Any) -> float | None:
    if value in (None, ""):
        return None
    return float(value)


class SAPConnector(HTTPConnector):
    """Connector for SAP ECC / S/4HANA through SAP Gateway OData."""

    connector_name = "SAP"
    default_mappings = SAP_DEFAULT_MAPPINGS
    page_size = 500

    service_root = "/sap/opu/odata/sap"
    equipment_path = "/sap/opu/odata/sap/ZPM_EQUIPMENT_SRV/EquipmentSet"
    material_path = "/sap/opu/odata/sap/ZMM_MATERIAL_STOCK_SRV/MaterialStockSet"
    order_path = "/sap/opu/odata/sap/ZPM_MAINTENANCE_ORDER_SRV/OrderSet"
    purchase_order_path = "/sap/opu/odata/sap/ZMM_PURCHASE_ORDER_SRV/PurchaseOrderSet"

    def __init__(
        self,
        connection_config: dict[str, Any],
        mappings: MappingTable | None = None,
    ) -> None:
        super().__init__(connection_config, mappings)
        self._sap_client: str = str(connection_config.get("client", "100"))
        self._language: str = connection_config.get("language", "EN")
        self._csrf_token: str | None = None
        self.health_path = connection_config.get(
            "health_path", f"{self.service_root}/ZPM_EQUIPMENT_SRV/"
        )

    # -- helpers ----------------------------------------------------------

    def _session_headers(self) -> dict[str, str]:
        return {"sap-client": self._sap_client, "sap-language": self._language}

    def _system_details(self, resp: httpx.Response) -> dict[str, Any]:
        return {
            "system_id": resp.headers.get("sap-system", ""),
            "system_type": "SAP",
            "client": self._sap_client,
            "host": httpx.URL(self._base_url).host,
        }

    async def _fetch_csrf(self) -> str:
        """Fetch an X-CSRF-Token for mutating OData requests."""
        if self._csrf_token:
            return self._csrf_token
        resp = await self._request(
            "GET", f"{self.service_root}/", headers={"X-CSRF-Token": "Fetch"}
        )
        self._csrf_token = resp.headers.get("X-CSRF-Token", "")
        return self._csrf_token or ""

    async def _write(self, method: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        csrf = await self._fetch_csrf()
        resp = await self._request(
            method,
            path,
            json=payload,
            params={"$format": "json"},
            headers={"X-CSRF-Token": csrf},
        )
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json().get("d", {})

    async def _fetch_all(self, path: str, since: datetime | None) -> list[dict[str, Any]]:
        """Page through an OData entity set."""
        params: dict[str, str] = {"$format": "json", "$top": str(self.page_size)}
        if since is not None:
            stamp = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
            params["$filter"] = f"AEDAT ge datetime'{stamp}'"

        records: list[dict[str, Any]] = []
        skip = 0
        while True:
            params["$skip"] = str(skip)
            resp = await self._request("GET", path, params=params)
            body = resp.json().get("d", {})
            page = body.get("results", []) if isinstance(body, dict) else body
            records.extend(page)
            if len(page) < self.page_size:
                return records
            skip += len(page)

    def _metadata(self, raw: dict[str, Any]) -> dict[str, Any]:
        return {
            "sap_client": self._sap_client,
            "synced_at": datetime.now(timezone.utc).isoformat(),
            "original_data": raw,
        }

    # -- conversion -------------------------------------------------------

    def _to_asset(self, raw: dict[str, Any]) -> ErpAsset:
        mapped = self._apply_mapping(raw, "assets")
        external_id = mapped.get("external_id") or raw.get("EQUNR")
        if not external_id:
            raise ValueError("equipment record has no equipment number")
        return ErpAsset.from_dict({
            **mapped,
            "external_id": str(external_id),
            "name": mapped.get("name") or raw.get("EQKTX") or str(external_id),
            "status": map_sap_status(mapped.get("status")),
            "purchase_date": parse_sap_date(mapped.get("purchase_date")),
            "purchase_price": _to_float(mapped.get("purchase_price")),
            "warranty_expiry": parse_sap_date(mapped.get("warranty_expiry")),
            "metadata": self._metadata(raw),
        })

    def _to_inventory(self, raw: dict[str, Any]) -> ErpInventory:
        mapped = self._apply_mapping(raw, "inventory")
        external_id = mapped.get("external_id") or raw.get("MATNR")
        if not external_id:
            raise ValueError("material record has no material number")
        return ErpInventory.from_dict({
            **mapped,
            "external_id": str(external_id),
            "material_number": raw.get("MATNR") or str(external_id),
            "name": mapped.get("name") or raw.get("MAKTX") or str(external_id),
            "description": raw.get("MAKTX"),
            "quantity": _to_float(mapped.get("quantity")) or 0,
            "unit_price": _to_float(mapped.get("unit_price")),
            "min_quantity": _to_float(mapped.get("min_quantity")),
            "max_quantity": _to_float(mapped.get("max_quantity")),
            "metadata": self._metadata(raw),
        })

    def to_sap_work_order(self, wo: ErpWorkOrder) -> dict[str, Any]:
        payload = self._apply_reverse_mapping({
            "external_id": wo.external_id,
            "title": wo.title,
            "description": wo.description,
            "type": map_to_sap_order_type(wo.type),
            "priority": map_to_sap_priority(wo.priority),
            "asset_external_id": wo.asset_external_id,
            "scheduled_date": format_sap_date(wo.scheduled_date),
            "due_date": format_sap_date(wo.due_date),
        }, "work_orders")
        # status and costs are owned by SAP once the order exists
        return payload

    def to_sap_purchase_order(self, po: ErpPurchaseOrder) -> dict[str, Any]:
        payload = self._apply_reverse_mapping({
            "external_id": po.external_id,
            "vendor_id": po.vendor_id,
            "order_date": format_sap_date(po.order_date),
            "expected_delivery_date": format_sap_date(po.expected_delivery_date),
            "currency": po.currency,
        }, "purchase_orders")
        payload["ITEMS"] = [
            {
                "MATNR": item.material_number,
                "TXZ01": item.description,
                "MENGE": item.quantity,
                "MEINS": item.unit,
                "NETPR": item.unit_price,
            }
            for item in po.items
        ]
        return payload

    # -- lifecycle --------------------------------------------------------

    async def disconnect(self) -> None:
        self._csrf_token = None
        await super().disconnect()

    # -- sync -------------------------------------------------------------

    async def sync_assets(self, since: datetime | None = None) -> SyncResult[ErpAsset]:
        return await self._pull(
            "assets",
            lambda: self._fetch_all(self.equipment_path, since),
            self._to_asset,
        )

    async def sync_inventory(self, since: datetime | None = None) -> SyncResult[ErpInventory]:
        return await self._pull(
            "inventory",
            lambda: self._fetch_all(self.material_path, since),
            self._to_inventory,
        )

    async def sync_work_orders(
        self, work_orders: Sequence[ErpWorkOrder]
    ) -> SyncResult[ErpWorkOrder]:
        async def push(wo: ErpWorkOrder) -> str:
            payload = self.to_sap_work_order(wo)
            if wo.external_id:
                await self._write(
                    "PATCH", f"{self.order_path}('{quote(wo.external_id)}')", payload
                )
                return wo.external_id
            body = await self._write("POST", self.order_path, payload)
            if not body.get("AUFNR"):
                raise ValueError("SAP did not return an order number")
            return str(body["AUFNR"])

        return await self._push_batch("work orders", work_orders, push)

    async def sync_purchase_orders(
        self, purchase_orders: Sequence[ErpPurchaseOrder]
    ) -> SyncResult[ErpPurchaseOrder]:
        async def push(po: ErpPurchaseOrder) -> str:
            payload = self.to_sap_purchase_order(po)
            if po.external_id:
                await self._write(
                    "PATCH", f"{self.purchase_order_path}('{quote(po.external_id)}')", payload
                )
                return po.external_id
            body = await self._write("POST", self.purchase_order_path, payload)
            if not body.get("EBELN"):
                raise ValueError("SAP did not return a purchasing document number")
            return str(body["EBELN"])

        return await self._push_batch("purchase orders", purchase_orders, push)
