"""
Audit trail hook.

Audit writing belongs to the host application; the engine only hands
events to an ``AuditSink``.  Emission is fire-and-forget: a failing sink
is logged and never breaks the operation being audited.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from erp_sync.core.models import format_datetime, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    action: str  # CREATE / UPDATE / DELETE / SYNC
    entity_type: str
    entity_id: str
    tenant_id: str | None = None
    user_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "details": self.details,
            "created_at": format_datetime(self.created_at),
        }


class AuditSink(abc.ABC):
    @abc.abstractmethod
    async def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink(AuditSink):
    """Writes audit events to the ``erp_sync.audit`` logger."""

    def __init__(self, logger_name: str = "erp_sync.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    async def record(self, event: AuditEvent) -> None:
        self._logger.info(
            "%s %s %s tenant=%s user=%s %s",
            event.action,
            event.entity_type,
            event.entity_id,
            event.tenant_id,
            event.user_id,
            event.details,
        )


async def emit(sink: AuditSink | None, event: AuditEvent) -> None:
    if sink is None:
        return
    try:
        await sink.record(event)
    except Exception as exc:
        logger.warning("Audit sink rejected %s %s: %s", event.action, event.entity_id, exc)
