"""Wires the engine's collaborators together from a ``Config``."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass

from erp_sync.core.audit import AuditSink, LoggingAuditSink
from erp_sync.core.config import Config
from erp_sync.core.crypto import CredentialCipher
from erp_sync.core.errors import ConfigurationError
from erp_sync.core.factory import ConnectorCache
from erp_sync.core.queue import RetryQueue
from erp_sync.core.scheduler import SyncScheduler
from erp_sync.core.service import IntegrationService
from erp_sync.core.store import MemoryStore, SQLiteStore
from erp_sync.core.sync import SyncOrchestrator

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """stderr logging for the entry points; stdout stays free for output."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@dataclass
class Runtime:
    store: MemoryStore | SQLiteStore
    cipher: CredentialCipher
    connectors: ConnectorCache
    queue: RetryQueue
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler
    service: IntegrationService

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: MemoryStore | SQLiteStore | None = None,
        audit: AuditSink | None = None,
    ) -> "Runtime":
        if not config.encryption_keys:
            raise ConfigurationError(
                "No encryption key configured. Run `erp-sync init --generate-key` "
                "or set ERP_SYNC_ENCRYPTION_KEY."
            )
        if store is None:
            store = SQLiteStore(config.database)
        audit = audit or LoggingAuditSink()

        cipher = CredentialCipher(config.encryption_keys)
        connectors = ConnectorCache(cipher, default_timeout=config.http_timeout)
        queue = RetryQueue(
            store,
            batch_size=config.queue_batch_size,
            claim_timeout=config.queue_claim_timeout,
        )
        orchestrator = SyncOrchestrator(store, store, connectors, queue=queue, audit=audit)
        queue.handler = orchestrator.process_queue_item
        scheduler = SyncScheduler(
            store,
            orchestrator,
            queue,
            queue_interval=config.queue_interval,
            sweep_interval=config.sweep_interval,
        )
        service = IntegrationService(store, orchestrator, connectors, cipher, queue, audit)
        logger.debug("Runtime ready (database=%s)", getattr(store, "path", "memory"))
        return cls(store, cipher, connectors, queue, orchestrator, scheduler, service)

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.connectors.clear()
        if isinstance(self.store, SQLiteStore):
            self.store.close()
