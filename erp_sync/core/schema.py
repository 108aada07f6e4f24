"""
Record shapes exchanged with ERP connectors.

Pulled records (``ErpAsset``, ``ErpInventory``) arrive already mapped to
the internal vocabulary; pushed records (``ErpWorkOrder``,
``ErpPurchaseOrder``) carry the internal id and, once known, the ERP's
external id.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, timezone
from typing import Any, Generic, TypeVar

T = TypeVar("T")


def _coerce_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _known(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in raw.items() if k in names}


def _to_dict(record: Any) -> dict[str, Any]:
    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, (date, datetime)):
            data[key] = value.isoformat()
    return data


@dataclass
class ErpAsset:
    external_id: str
    name: str
    type: str | None = None
    category: str | None = None
    serial_number: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    location: str | None = None
    status: str = "active"
    purchase_date: date | None = None
    purchase_price: float | None = None
    warranty_expiry: date | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ErpAsset":
        data = _known(cls, raw)
        data["purchase_date"] = _coerce_date(data.get("purchase_date"))
        data["warranty_expiry"] = _coerce_date(data.get("warranty_expiry"))
        return cls(**data)


@dataclass
class ErpInventory:
    external_id: str
    name: str
    material_number: str | None = None
    description: str | None = None
    category: str | None = None
    unit: str | None = None
    quantity: float = 0
    unit_price: float | None = None
    min_quantity: float | None = None
    max_quantity: float | None = None
    location: str | None = None
    manufacturer: str | None = None
    supplier: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ErpInventory":
        return cls(**_known(cls, raw))


@dataclass
class ErpWorkOrder:
    internal_id: str
    title: str
    external_id: str | None = None
    order_number: str | None = None
    description: str | None = None
    type: str | None = None
    priority: str | None = None
    status: str | None = None
    asset_id: str | None = None
    asset_external_id: str | None = None
    scheduled_date: date | None = None
    due_date: date | None = None
    estimated_cost: float | None = None
    actual_cost: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ErpWorkOrder":
        data = _known(cls, raw)
        data["scheduled_date"] = _coerce_date(data.get("scheduled_date"))
        data["due_date"] = _coerce_date(data.get("due_date"))
        return cls(**data)


@dataclass
class ErpPurchaseOrderItem:
    description: str
    quantity: float
    material_number: str | None = None
    unit: str | None = None
    unit_price: float | None = None
    total_price: float | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ErpPurchaseOrderItem":
        return cls(**_known(cls, raw))


@dataclass
class ErpPurchaseOrder:
    internal_id: str
    items: list[ErpPurchaseOrderItem] = field(default_factory=list)
    external_id: str | None = None
    po_number: str | None = None
    vendor_id: str | None = None
    vendor_name: str | None = None
    status: str | None = None
    order_date: date | None = None
    expected_delivery_date: date | None = None
    total_amount: float | None = None
    currency: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ErpPurchaseOrder":
        data = _known(cls, raw)
        data["items"] = [
            item if isinstance(item, ErpPurchaseOrderItem) else ErpPurchaseOrderItem.from_dict(item)
            for item in data.get("items") or []
        ]
        data["order_date"] = _coerce_date(data.get("order_date"))
        data["expected_delivery_date"] = _coerce_date(data.get("expected_delivery_date"))
        return cls(**data)


# ── Result envelopes ─────────────────────────────────────────────────────


@dataclass
class SyncResult(Generic[T]):
    """Outcome of one ``sync_*`` call.

    ``success`` is False only when the whole batch failed; partial
    failure is ``success=True`` with ``errors > 0``.  ``rejected`` holds
    the input items a push could not deliver.
    """

    success: bool
    data: list[T] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)
    rejected: list[T] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "created": self.created,
            "updated": self.updated,
            "errors": self.errors,
            "error_messages": self.error_messages,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    details: dict[str, Any] | None = None
    response_time_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "details": self.details,
            "response_time_ms": self.response_time_ms,
        }
