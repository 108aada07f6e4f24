"""
Persistence for integration configs, the integration log, the retry
queue, and the internal records the engine reconciles against.

``MemoryStore`` keeps everything in process (tests, embedding).
``SQLiteStore`` persists to a single SQLite file; blocking sqlite3 calls
run in a worker thread so the event loop never stalls on disk I/O.
"""

from __future__ import annotations

import abc
import asyncio
import copy
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

from erp_sync.core.models import (
    IntegrationConfig,
    IntegrationLogEntry,
    QueueStatus,
    SyncQueueItem,
    new_id,
    parse_datetime,
    utcnow,
)

R = TypeVar("R")


class IntegrationStore(abc.ABC):
    """Configs, append-only log, and retry-queue persistence."""

    # -- configs ----------------------------------------------------------

    @abc.abstractmethod
    async def add_config(self, config: IntegrationConfig) -> IntegrationConfig: ...

    @abc.abstractmethod
    async def get_config(self, config_id: str) -> IntegrationConfig | None: ...

    @abc.abstractmethod
    async def list_configs(
        self,
        tenant_id: str | None = None,
        active_only: bool = False,
        auto_sync_only: bool = False,
    ) -> list[IntegrationConfig]: ...

    @abc.abstractmethod
    async def save_config(self, config: IntegrationConfig) -> IntegrationConfig: ...

    @abc.abstractmethod
    async def delete_config(self, config_id: str) -> bool:
        """Delete the config along with its log entries and queue items."""

    # -- log --------------------------------------------------------------

    @abc.abstractmethod
    async def append_log(self, entry: IntegrationLogEntry) -> IntegrationLogEntry: ...

    @abc.abstractmethod
    async def list_logs(
        self,
        integration_id: str,
        direction: str | None = None,
        entity_type: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[IntegrationLogEntry]:
        """Newest first."""

    # -- queue ------------------------------------------------------------

    @abc.abstractmethod
    async def add_queue_item(self, item: SyncQueueItem) -> SyncQueueItem: ...

    @abc.abstractmethod
    async def get_queue_item(self, item_id: str) -> SyncQueueItem | None: ...

    @abc.abstractmethod
    async def save_queue_item(self, item: SyncQueueItem) -> SyncQueueItem: ...

    @abc.abstractmethod
    async def list_queue_items(
        self,
        integration_ids: Iterable[str] | None = None,
        status: str | None = None,
        entity_type: str | None = None,
        limit: int | None = None,
    ) -> list[SyncQueueItem]: ...

    @abc.abstractmethod
    async def select_pending(self, limit: int) -> list[SyncQueueItem]:
        """PENDING items with budget left, by priority then age."""

    @abc.abstractmethod
    async def claim_queue_item(self, item_id: str) -> SyncQueueItem | None:
        """Atomically move a PENDING item to PROCESSING.

        Returns the claimed item, or None when it was not PENDING (already
        claimed by another worker, finished, or missing).
        """

    @abc.abstractmethod
    async def release_stale(self, claimed_before: datetime) -> list[str]:
        """Return PROCESSING items claimed before *claimed_before* to PENDING.

        Catches items whose worker died mid-flight.  Returns their ids.
        """


class RecordStore(abc.ABC):
    """Internal assets / inventory / work orders / purchase orders.

    Records are flat dicts carrying ``id``, ``tenant_id``,
    ``external_id``, ``created_at``, ``updated_at`` and the entity fields.
    """

    @abc.abstractmethod
    async def find_by_external_id(
        self, tenant_id: str, entity_type: str, external_id: str
    ) -> dict[str, Any] | None: ...

    @abc.abstractmethod
    async def get(self, entity_type: str, record_id: str) -> dict[str, Any] | None: ...

    @abc.abstractmethod
    async def create(
        self, tenant_id: str, entity_type: str, data: dict[str, Any]
    ) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def update(
        self, entity_type: str, record_id: str, data: dict[str, Any], *, touch: bool = True
    ) -> dict[str, Any]:
        """Merge *data* into the record.  *touch* bumps ``updated_at``."""

    @abc.abstractmethod
    async def list_changed(
        self,
        tenant_id: str,
        entity_type: str,
        since: datetime | None = None,
        limit: int = 100,
        *,
        until: datetime | None = None,
        after_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Records updated after *since* (all when None), oldest change first.

        Ordered by ``(updated_at, id)``.  *until* is an inclusive upper
        bound.  With *after_id*, records updated exactly at *since* with a
        larger id are included too, so callers can page with the last
        row's ``(updated_at, id)`` as the cursor.
        """


def _queue_sort_key(item: SyncQueueItem) -> tuple[int, datetime]:
    return (item.priority, item.created_at)


def _strip_meta(data: dict[str, Any]) -> dict[str, Any]:
    return {
        k: v for k, v in data.items()
        if k not in ("id", "tenant_id", "created_at", "updated_at")
    }


# ── In-memory ────────────────────────────────────────────────────────────


class MemoryStore(IntegrationStore, RecordStore):
    """Dict-backed store.  Rows are copied on the way in and out."""

    def __init__(self) -> None:
        self._configs: dict[str, dict[str, Any]] = {}
        self._logs: list[dict[str, Any]] = []
        self._queue: dict[str, dict[str, Any]] = {}
        self._records: dict[str, dict[str, dict[str, Any]]] = {}

    # -- configs ----------------------------------------------------------

    async def add_config(self, config: IntegrationConfig) -> IntegrationConfig:
        self._configs[config.id] = config.to_dict()
        return IntegrationConfig.from_dict(self._configs[config.id])

    async def get_config(self, config_id: str) -> IntegrationConfig | None:
        row = self._configs.get(config_id)
        return IntegrationConfig.from_dict(row) if row else None

    async def list_configs(
        self,
        tenant_id: str | None = None,
        active_only: bool = False,
        auto_sync_only: bool = False,
    ) -> list[IntegrationConfig]:
        configs = [IntegrationConfig.from_dict(row) for row in self._configs.values()]
        if tenant_id is not None:
            configs = [c for c in configs if c.tenant_id == tenant_id]
        if active_only:
            configs = [c for c in configs if c.is_active]
        if auto_sync_only:
            configs = [c for c in configs if c.sync_settings.auto_sync]
        return sorted(configs, key=lambda c: c.created_at, reverse=True)

    async def save_config(self, config: IntegrationConfig) -> IntegrationConfig:
        config.updated_at = utcnow()
        self._configs[config.id] = config.to_dict()
        return IntegrationConfig.from_dict(self._configs[config.id])

    async def delete_config(self, config_id: str) -> bool:
        if self._configs.pop(config_id, None) is None:
            return False
        self._logs = [row for row in self._logs if row["integration_id"] != config_id]
        self._queue = {
            key: row for key, row in self._queue.items()
            if row["integration_id"] != config_id
        }
        return True

    # -- log --------------------------------------------------------------

    async def append_log(self, entry: IntegrationLogEntry) -> IntegrationLogEntry:
        self._logs.append(copy.deepcopy(entry.to_dict()))
        return entry

    async def list_logs(
        self,
        integration_id: str,
        direction: str | None = None,
        entity_type: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[IntegrationLogEntry]:
        rows = [
            row for row in self._logs
            if row["integration_id"] == integration_id
            and (direction is None or row["direction"] == direction)
            and (entity_type is None or row["entity_type"] == entity_type)
            and (status is None or row["status"] == status)
        ]
        # append order breaks ties between entries written in the same instant
        rows = list(reversed(rows))
        rows.sort(key=lambda row: parse_datetime(row["created_at"]), reverse=True)
        return [IntegrationLogEntry.from_dict(copy.deepcopy(row)) for row in rows[:limit]]

    # -- queue ------------------------------------------------------------

    async def add_queue_item(self, item: SyncQueueItem) -> SyncQueueItem:
        self._queue[item.id] = copy.deepcopy(item.to_dict())
        return SyncQueueItem.from_dict(copy.deepcopy(self._queue[item.id]))

    async def get_queue_item(self, item_id: str) -> SyncQueueItem | None:
        row = self._queue.get(item_id)
        return SyncQueueItem.from_dict(copy.deepcopy(row)) if row else None

    async def save_queue_item(self, item: SyncQueueItem) -> SyncQueueItem:
        item.updated_at = utcnow()
        self._queue[item.id] = copy.deepcopy(item.to_dict())
        return SyncQueueItem.from_dict(copy.deepcopy(self._queue[item.id]))

    async def list_queue_items(
        self,
        integration_ids: Iterable[str] | None = None,
        status: str | None = None,
        entity_type: str | None = None,
        limit: int | None = None,
    ) -> list[SyncQueueItem]:
        ids = set(integration_ids) if integration_ids is not None else None
        items = [
            SyncQueueItem.from_dict(copy.deepcopy(row)) for row in self._queue.values()
            if (ids is None or row["integration_id"] in ids)
            and (status is None or row["status"] == status)
            and (entity_type is None or row["entity_type"] == entity_type)
        ]
        items.sort(key=_queue_sort_key)
        return items[:limit] if limit is not None else items

    async def select_pending(self, limit: int) -> list[SyncQueueItem]:
        items = [
            item for item in await self.list_queue_items(status=QueueStatus.PENDING.value)
            if item.can_retry
        ]
        return items[:limit]

    async def claim_queue_item(self, item_id: str) -> SyncQueueItem | None:
        # no await between the check and the write, so this is atomic on the loop
        row = self._queue.get(item_id)
        if row is None or row["status"] != QueueStatus.PENDING.value:
            return None
        now = utcnow().isoformat()
        row.update(status=QueueStatus.PROCESSING.value, started_at=now, updated_at=now)
        return SyncQueueItem.from_dict(copy.deepcopy(row))

    async def release_stale(self, claimed_before: datetime) -> list[str]:
        released = []
        now = utcnow().isoformat()
        for row in self._queue.values():
            if row["status"] != QueueStatus.PROCESSING.value:
                continue
            started = parse_datetime(row.get("started_at"))
            if started is None or started < claimed_before:
                row.update(status=QueueStatus.PENDING.value, started_at=None, updated_at=now)
                released.append(row["id"])
        return released

    # -- records ----------------------------------------------------------

    def _table(self, entity_type: str) -> dict[str, dict[str, Any]]:
        return self._records.setdefault(entity_type, {})

    async def find_by_external_id(
        self, tenant_id: str, entity_type: str, external_id: str
    ) -> dict[str, Any] | None:
        for row in self._table(entity_type).values():
            if row["tenant_id"] == tenant_id and row.get("external_id") == external_id:
                return copy.deepcopy(row)
        return None

    async def get(self, entity_type: str, record_id: str) -> dict[str, Any] | None:
        row = self._table(entity_type).get(record_id)
        return copy.deepcopy(row) if row else None

    async def create(
        self, tenant_id: str, entity_type: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        now = utcnow()
        row = {
            **copy.deepcopy(_strip_meta(data)),
            "id": data.get("id") or new_id(),
            "tenant_id": tenant_id,
            "created_at": now,
            "updated_at": now,
        }
        self._table(entity_type)[row["id"]] = row
        return copy.deepcopy(row)

    async def update(
        self, entity_type: str, record_id: str, data: dict[str, Any], *, touch: bool = True
    ) -> dict[str, Any]:
        table = self._table(entity_type)
        if record_id not in table:
            raise KeyError(f"{entity_type} record {record_id!r} not found")
        table[record_id].update(copy.deepcopy(_strip_meta(data)))
        if touch:
            table[record_id]["updated_at"] = utcnow()
        return copy.deepcopy(table[record_id])

    async def list_changed(
        self,
        tenant_id: str,
        entity_type: str,
        since: datetime | None = None,
        limit: int = 100,
        *,
        until: datetime | None = None,
        after_id: str | None = None,
    ) -> list[dict[str, Any]]:
        def after_cursor(row: dict[str, Any]) -> bool:
            if since is None or row["updated_at"] > since:
                return True
            return after_id is not None and row["updated_at"] == since and row["id"] > after_id

        rows = [
            row for row in self._table(entity_type).values()
            if row["tenant_id"] == tenant_id
            and after_cursor(row)
            and (until is None or row["updated_at"] <= until)
        ]
        rows.sort(key=lambda row: (row["updated_at"], row["id"]))
        return [copy.deepcopy(row) for row in rows[:limit]]


# ── SQLite ───────────────────────────────────────────────────────────────


_SCHEMA = """
CREATE TABLE IF NOT EXISTS integration_configs (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    erp_type TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    connection_config TEXT NOT NULL,
    mappings TEXT NOT NULL DEFAULT '{}',
    sync_settings TEXT NOT NULL DEFAULT '{}',
    is_active INTEGER NOT NULL DEFAULT 1,
    sync_status TEXT NOT NULL DEFAULT 'idle',
    last_sync_at TEXT,
    last_sync_stats TEXT,
    last_sync_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_integration_configs_tenant
    ON integration_configs(tenant_id);

CREATE TABLE IF NOT EXISTS integration_logs (
    id TEXT PRIMARY KEY,
    integration_id TEXT NOT NULL
        REFERENCES integration_configs(id) ON DELETE CASCADE,
    direction TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    status TEXT NOT NULL,
    response TEXT,
    error_message TEXT,
    duration_ms INTEGER,
    records_processed INTEGER NOT NULL DEFAULT 0,
    records_with_errors INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    seq INTEGER
);
CREATE INDEX IF NOT EXISTS idx_integration_logs_lookup
    ON integration_logs(integration_id, created_at);

CREATE TABLE IF NOT EXISTS sync_queue (
    id TEXT PRIMARY KEY,
    integration_id TEXT NOT NULL
        REFERENCES integration_configs(id) ON DELETE CASCADE,
    operation TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    priority INTEGER NOT NULL DEFAULT 5,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    started_at TEXT,
    completed_at TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_pending
    ON sync_queue(status, priority, created_at);

CREATE TABLE IF NOT EXISTS records (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    external_id TEXT,
    data TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_records_external
    ON records(tenant_id, entity_type, external_id);
CREATE INDEX IF NOT EXISTS idx_records_changed
    ON records(tenant_id, entity_type, updated_at);
"""

_CONFIG_JSON = ("mappings", "sync_settings", "last_sync_stats")
_QUEUE_JSON = ("payload",)
_LOG_JSON = ("response",)


def _ts(value: datetime | str | None) -> str | None:
    """Fixed-width UTC timestamp so text comparison orders correctly."""
    parsed = parse_datetime(value)
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dump_row(data: dict[str, Any], json_fields: tuple[str, ...]) -> dict[str, Any]:
    row = dict(data)
    for key in json_fields:
        if row.get(key) is not None:
            row[key] = json.dumps(row[key], default=str)
    for key, value in row.items():
        if key.endswith("_at") and value is not None:
            row[key] = _ts(value)
    return row


def _load_row(row: sqlite3.Row, json_fields: tuple[str, ...]) -> dict[str, Any]:
    data = {key: row[key] for key in row.keys()}
    for key in json_fields:
        if data.get(key) is not None:
            data[key] = json.loads(data[key])
    return data


class SQLiteStore(IntegrationStore, RecordStore):
    """SQLite-backed store sharing one connection across worker threads."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
            self.path = str(Path(self.path).expanduser())
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._lock = threading.Lock()

    async def _run(self, fn: Callable[[sqlite3.Connection], R]) -> R:
        def call() -> R:
            with self._lock:
                try:
                    result = fn(self._conn)
                except Exception:
                    self._conn.rollback()
                    raise
                self._conn.commit()
                return result

        return await asyncio.to_thread(call)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _insert(conn: sqlite3.Connection, table: str, row: dict[str, Any], replace: bool = False) -> None:
        columns = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        conn.execute(f"{verb} INTO {table} ({columns}) VALUES ({marks})", tuple(row.values()))

    # -- configs ----------------------------------------------------------

    def _config_row(self, config: IntegrationConfig) -> dict[str, Any]:
        row = _dump_row(config.to_dict(), _CONFIG_JSON)
        row["is_active"] = int(config.is_active)
        return row

    @staticmethod
    def _config_from(row: sqlite3.Row) -> IntegrationConfig:
        data = _load_row(row, _CONFIG_JSON)
        data["is_active"] = bool(data["is_active"])
        return IntegrationConfig.from_dict(data)

    async def add_config(self, config: IntegrationConfig) -> IntegrationConfig:
        row = self._config_row(config)
        await self._run(lambda conn: self._insert(conn, "integration_configs", row))
        return config

    async def get_config(self, config_id: str) -> IntegrationConfig | None:
        row = await self._run(lambda conn: conn.execute(
            "SELECT * FROM integration_configs WHERE id = ?", (config_id,)
        ).fetchone())
        return self._config_from(row) if row else None

    async def list_configs(
        self,
        tenant_id: str | None = None,
        active_only: bool = False,
        auto_sync_only: bool = False,
    ) -> list[IntegrationConfig]:
        sql = "SELECT * FROM integration_configs WHERE 1 = 1"
        params: list[Any] = []
        if tenant_id is not None:
            sql += " AND tenant_id = ?"
            params.append(tenant_id)
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY created_at DESC"
        rows = await self._run(lambda conn: conn.execute(sql, params).fetchall())
        configs = [self._config_from(row) for row in rows]
        if auto_sync_only:
            configs = [c for c in configs if c.sync_settings.auto_sync]
        return configs

    async def save_config(self, config: IntegrationConfig) -> IntegrationConfig:
        config.updated_at = utcnow()
        row = self._config_row(config)
        assignments = ", ".join(f"{key} = ?" for key in row if key != "id")
        values = [value for key, value in row.items() if key != "id"]

        def write(conn: sqlite3.Connection) -> None:
            cur = conn.execute(
                f"UPDATE integration_configs SET {assignments} WHERE id = ?",
                (*values, config.id),
            )
            if cur.rowcount == 0:
                self._insert(conn, "integration_configs", row)

        await self._run(write)
        return config

    async def delete_config(self, config_id: str) -> bool:
        def delete(conn: sqlite3.Connection) -> bool:
            conn.execute("DELETE FROM integration_logs WHERE integration_id = ?", (config_id,))
            conn.execute("DELETE FROM sync_queue WHERE integration_id = ?", (config_id,))
            cur = conn.execute("DELETE FROM integration_configs WHERE id = ?", (config_id,))
            return cur.rowcount > 0

        return await self._run(delete)

    # -- log --------------------------------------------------------------

    async def append_log(self, entry: IntegrationLogEntry) -> IntegrationLogEntry:
        row = _dump_row(entry.to_dict(), _LOG_JSON)

        def write(conn: sqlite3.Connection) -> None:
            (seq,) = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM integration_logs").fetchone()
            self._insert(conn, "integration_logs", {**row, "seq": seq})

        await self._run(write)
        return entry

    async def list_logs(
        self,
        integration_id: str,
        direction: str | None = None,
        entity_type: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[IntegrationLogEntry]:
        sql = "SELECT * FROM integration_logs WHERE integration_id = ?"
        params: list[Any] = [integration_id]
        for column, value in (("direction", direction), ("entity_type", entity_type), ("status", status)):
            if value is not None:
                sql += f" AND {column} = ?"
                params.append(value)
        sql += " ORDER BY created_at DESC, seq DESC LIMIT ?"
        params.append(limit)
        rows = await self._run(lambda conn: conn.execute(sql, params).fetchall())
        entries = []
        for row in rows:
            data = _load_row(row, _LOG_JSON)
            data.pop("seq", None)
            entries.append(IntegrationLogEntry.from_dict(data))
        return entries

    # -- queue ------------------------------------------------------------

    async def add_queue_item(self, item: SyncQueueItem) -> SyncQueueItem:
        row = _dump_row(item.to_dict(), _QUEUE_JSON)
        await self._run(lambda conn: self._insert(conn, "sync_queue", row))
        return item

    async def get_queue_item(self, item_id: str) -> SyncQueueItem | None:
        row = await self._run(lambda conn: conn.execute(
            "SELECT * FROM sync_queue WHERE id = ?", (item_id,)
        ).fetchone())
        return SyncQueueItem.from_dict(_load_row(row, _QUEUE_JSON)) if row else None

    async def save_queue_item(self, item: SyncQueueItem) -> SyncQueueItem:
        item.updated_at = utcnow()
        row = _dump_row(item.to_dict(), _QUEUE_JSON)
        await self._run(lambda conn: self._insert(conn, "sync_queue", row, replace=True))
        return item

    async def list_queue_items(
        self,
        integration_ids: Iterable[str] | None = None,
        status: str | None = None,
        entity_type: str | None = None,
        limit: int | None = None,
    ) -> list[SyncQueueItem]:
        sql = "SELECT * FROM sync_queue WHERE 1 = 1"
        params: list[Any] = []
        if integration_ids is not None:
            ids = list(integration_ids)
            if not ids:
                return []
            sql += f" AND integration_id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        if entity_type is not None:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        sql += " ORDER BY priority ASC, created_at ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self._run(lambda conn: conn.execute(sql, params).fetchall())
        return [SyncQueueItem.from_dict(_load_row(row, _QUEUE_JSON)) for row in rows]

    async def select_pending(self, limit: int) -> list[SyncQueueItem]:
        rows = await self._run(lambda conn: conn.execute(
            """
            SELECT * FROM sync_queue
            WHERE status = ? AND retry_count < max_retries
            ORDER BY priority ASC, created_at ASC
            LIMIT ?
            """,
            (QueueStatus.PENDING.value, limit),
        ).fetchall())
        return [SyncQueueItem.from_dict(_load_row(row, _QUEUE_JSON)) for row in rows]

    async def claim_queue_item(self, item_id: str) -> SyncQueueItem | None:
        now = _ts(utcnow())

        def claim(conn: sqlite3.Connection) -> sqlite3.Row | None:
            cur = conn.execute(
                """
                UPDATE sync_queue
                SET status = ?, started_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (QueueStatus.PROCESSING.value, now, now, item_id, QueueStatus.PENDING.value),
            )
            if cur.rowcount != 1:
                return None
            return conn.execute("SELECT * FROM sync_queue WHERE id = ?", (item_id,)).fetchone()

        row = await self._run(claim)
        return SyncQueueItem.from_dict(_load_row(row, _QUEUE_JSON)) if row else None

    async def release_stale(self, claimed_before: datetime) -> list[str]:
        now = _ts(utcnow())

        def release(conn: sqlite3.Connection) -> list[str]:
            rows = conn.execute(
                """
                SELECT id FROM sync_queue
                WHERE status = ? AND (started_at IS NULL OR started_at < ?)
                """,
                (QueueStatus.PROCESSING.value, _ts(claimed_before)),
            ).fetchall()
            ids = [row["id"] for row in rows]
            conn.executemany(
                """
                UPDATE sync_queue SET status = ?, started_at = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                [(QueueStatus.PENDING.value, now, item_id, QueueStatus.PROCESSING.value) for item_id in ids],
            )
            return ids

        return await self._run(release)

    # -- records ----------------------------------------------------------

    @staticmethod
    def _record_from(row: sqlite3.Row) -> dict[str, Any]:
        return {
            **json.loads(row["data"]),
            "id": row["id"],
            "tenant_id": row["tenant_id"],
            "external_id": row["external_id"],
            "created_at": parse_datetime(row["created_at"]),
            "updated_at": parse_datetime(row["updated_at"]),
        }

    async def find_by_external_id(
        self, tenant_id: str, entity_type: str, external_id: str
    ) -> dict[str, Any] | None:
        row = await self._run(lambda conn: conn.execute(
            """
            SELECT * FROM records
            WHERE tenant_id = ? AND entity_type = ? AND external_id = ?
            LIMIT 1
            """,
            (tenant_id, entity_type, external_id),
        ).fetchone())
        return self._record_from(row) if row else None

    async def get(self, entity_type: str, record_id: str) -> dict[str, Any] | None:
        row = await self._run(lambda conn: conn.execute(
            "SELECT * FROM records WHERE entity_type = ? AND id = ?",
            (entity_type, record_id),
        ).fetchone())
        return self._record_from(row) if row else None

    async def create(
        self, tenant_id: str, entity_type: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        now = _ts(utcnow())
        fields = _strip_meta(data)
        row = {
            "id": data.get("id") or new_id(),
            "tenant_id": tenant_id,
            "entity_type": entity_type,
            "external_id": fields.pop("external_id", None),
            "data": json.dumps(fields, default=str),
            "created_at": now,
            "updated_at": now,
        }

        def write(conn: sqlite3.Connection) -> sqlite3.Row:
            self._insert(conn, "records", row)
            return conn.execute("SELECT * FROM records WHERE id = ?", (row["id"],)).fetchone()

        return self._record_from(await self._run(write))

    async def update(
        self, entity_type: str, record_id: str, data: dict[str, Any], *, touch: bool = True
    ) -> dict[str, Any]:
        fields = _strip_meta(data)
        now = _ts(utcnow())

        def write(conn: sqlite3.Connection) -> sqlite3.Row:
            row = conn.execute(
                "SELECT * FROM records WHERE entity_type = ? AND id = ?",
                (entity_type, record_id),
            ).fetchone()
            if row is None:
                raise KeyError(f"{entity_type} record {record_id!r} not found")
            merged = {**json.loads(row["data"]), **fields}
            external_id = merged.pop("external_id", row["external_id"])
            conn.execute(
                "UPDATE records SET data = ?, external_id = ?, updated_at = ? WHERE id = ?",
                (json.dumps(merged, default=str), external_id, now if touch else row["updated_at"], record_id),
            )
            return conn.execute("SELECT * FROM records WHERE id = ?", (record_id,)).fetchone()

        return self._record_from(await self._run(write))

    async def list_changed(
        self,
        tenant_id: str,
        entity_type: str,
        since: datetime | None = None,
        limit: int = 100,
        *,
        until: datetime | None = None,
        after_id: str | None = None,
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM records WHERE tenant_id = ? AND entity_type = ?"
        params: list[Any] = [tenant_id, entity_type]
        if since is not None and after_id is not None:
            sql += " AND (updated_at > ? OR (updated_at = ? AND id > ?))"
            params.extend([_ts(since), _ts(since), after_id])
        elif since is not None:
            sql += " AND updated_at > ?"
            params.append(_ts(since))
        if until is not None:
            sql += " AND updated_at <= ?"
            params.append(_ts(until))
        sql += " ORDER BY updated_at ASC, id ASC LIMIT ?"
        params.append(limit)
        rows = await self._run(lambda conn: conn.execute(sql, params).fetchall())
        return [self._record_from(row) for row in rows]
