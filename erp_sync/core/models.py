"""
Persisted records of the sync engine: integration configurations,
retry-queue items, and the append-only integration log.

Every record round-trips through ``to_dict`` / ``from_dict`` so that the
stores can keep them as JSON-friendly rows.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_datetime(value: Any) -> datetime | None:
    """Accept a datetime or an ISO-8601 string; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ── Enums ────────────────────────────────────────────────────────────────


class ErpType(str, Enum):
    SAP = "sap"
    ORACLE = "oracle"


class SyncStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class LogStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class EntityType(str, Enum):
    """Mapping-table keys, in the order a sync processes them."""

    ASSETS = "assets"
    INVENTORY = "inventory"
    WORK_ORDERS = "work_orders"
    PURCHASE_ORDERS = "purchase_orders"

    @property
    def log_name(self) -> str:
        return _LOG_NAMES[self]

    @property
    def direction(self) -> SyncDirection:
        if self in (EntityType.ASSETS, EntityType.INVENTORY):
            return SyncDirection.INBOUND
        return SyncDirection.OUTBOUND


_LOG_NAMES = {
    EntityType.ASSETS: "asset",
    EntityType.INVENTORY: "inventory",
    EntityType.WORK_ORDERS: "work_order",
    EntityType.PURCHASE_ORDERS: "purchase_order",
}

CONNECTION_TEST = "connection_test"


def resolve_entity_type(name: str | EntityType) -> EntityType:
    """Accept both the mapping-table name and the singular log name."""
    if isinstance(name, EntityType):
        return name
    for entity_type in EntityType:
        if name in (entity_type.value, entity_type.log_name):
            return entity_type
    raise ValueError(f"Unknown entity type: {name!r}")


# ── Integration configuration ────────────────────────────────────────────


@dataclass
class SyncSettings:
    sync_assets: bool = True
    sync_inventory: bool = True
    sync_work_orders: bool = False
    sync_purchase_orders: bool = False
    sync_interval: int = 60  # minutes
    auto_sync: bool = False

    def merged(self, overrides: dict[str, Any] | None) -> "SyncSettings":
        if not overrides:
            return replace(self)
        known = {f.name for f in fields(self)}
        return replace(self, **{k: v for k, v in overrides.items() if k in known and v is not None})

    def enabled_entity_types(self) -> list[EntityType]:
        flags = {
            EntityType.ASSETS: self.sync_assets,
            EntityType.INVENTORY: self.sync_inventory,
            EntityType.WORK_ORDERS: self.sync_work_orders,
            EntityType.PURCHASE_ORDERS: self.sync_purchase_orders,
        }
        return [entity_type for entity_type in EntityType if flags[entity_type]]

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "SyncSettings":
        return cls().merged(raw)


@dataclass
class IntegrationConfig:
    """One tenant-configured ERP connection."""

    tenant_id: str
    erp_type: ErpType
    name: str
    connection_config: str  # encrypted blob
    id: str = field(default_factory=new_id)
    description: str = ""
    mappings: dict[str, dict[str, str]] = field(default_factory=dict)
    sync_settings: SyncSettings = field(default_factory=SyncSettings)
    is_active: bool = True
    sync_status: SyncStatus = SyncStatus.IDLE
    last_sync_at: datetime | None = None
    last_sync_stats: dict[str, Any] | None = None
    last_sync_error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self, include_credentials: bool = True) -> dict[str, Any]:
        data = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "erp_type": self.erp_type.value,
            "name": self.name,
            "description": self.description,
            "mappings": self.mappings,
            "sync_settings": self.sync_settings.to_dict(),
            "is_active": self.is_active,
            "sync_status": self.sync_status.value,
            "last_sync_at": format_datetime(self.last_sync_at),
            "last_sync_stats": self.last_sync_stats,
            "last_sync_error": self.last_sync_error,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }
        if include_credentials:
            data["connection_config"] = self.connection_config
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "IntegrationConfig":
        return cls(
            id=raw["id"],
            tenant_id=raw["tenant_id"],
            erp_type=ErpType(raw["erp_type"]),
            name=raw["name"],
            description=raw.get("description") or "",
            connection_config=raw["connection_config"],
            mappings=raw.get("mappings") or {},
            sync_settings=SyncSettings.from_dict(raw.get("sync_settings")),
            is_active=bool(raw.get("is_active", True)),
            sync_status=SyncStatus(raw.get("sync_status", SyncStatus.IDLE.value)),
            last_sync_at=parse_datetime(raw.get("last_sync_at")),
            last_sync_stats=raw.get("last_sync_stats"),
            last_sync_error=raw.get("last_sync_error"),
            created_at=parse_datetime(raw.get("created_at")) or utcnow(),
            updated_at=parse_datetime(raw.get("updated_at")) or utcnow(),
        )


# ── Retry queue ──────────────────────────────────────────────────────────


@dataclass
class SyncQueueItem:
    integration_id: str
    operation: QueueOperation
    entity_type: str
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    priority: int = 5  # lower is served first
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "operation": self.operation.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "priority": self.priority,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "started_at": format_datetime(self.started_at),
            "completed_at": format_datetime(self.completed_at),
            "error_message": self.error_message,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SyncQueueItem":
        return cls(
            id=raw["id"],
            integration_id=raw["integration_id"],
            operation=QueueOperation(raw["operation"]),
            entity_type=raw["entity_type"],
            entity_id=raw["entity_id"],
            payload=raw.get("payload") or {},
            priority=int(raw.get("priority", 5)),
            status=QueueStatus(raw.get("status", QueueStatus.PENDING.value)),
            retry_count=int(raw.get("retry_count", 0)),
            max_retries=int(raw.get("max_retries", 3)),
            started_at=parse_datetime(raw.get("started_at")),
            completed_at=parse_datetime(raw.get("completed_at")),
            error_message=raw.get("error_message"),
            created_at=parse_datetime(raw.get("created_at")) or utcnow(),
            updated_at=parse_datetime(raw.get("updated_at")) or utcnow(),
        )


# ── Integration log ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class IntegrationLogEntry:
    integration_id: str
    direction: SyncDirection
    entity_type: str
    status: LogStatus
    id: str = field(default_factory=new_id)
    response: dict[str, Any] | None = None
    error_message: str | None = None
    duration_ms: int | None = None
    records_processed: int = 0
    records_with_errors: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "direction": self.direction.value,
            "entity_type": self.entity_type,
            "status": self.status.value,
            "response": self.response,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "records_processed": self.records_processed,
            "records_with_errors": self.records_with_errors,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "IntegrationLogEntry":
        return cls(
            id=raw["id"],
            integration_id=raw["integration_id"],
            direction=SyncDirection(raw["direction"]),
            entity_type=raw["entity_type"],
            status=LogStatus(raw["status"]),
            response=raw.get("response"),
            error_message=raw.get("error_message"),
            duration_ms=raw.get("duration_ms"),
            records_processed=int(raw.get("records_processed", 0)),
            records_with_errors=int(raw.get("records_with_errors", 0)),
            created_at=parse_datetime(raw.get("created_at")) or utcnow(),
        )
