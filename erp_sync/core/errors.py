"""
Exception taxonomy for the sync engine.

Connector code never lets these (or anything else) escape a ``sync_*`` /
``connect`` / ``test_connection`` call; they are raised by the
orchestrator, the management service, and the retry queue.
"""

from __future__ import annotations

from typing import Any


class ErpSyncError(Exception):
    """Base class for every error raised by erp_sync."""


# ── Configuration ────────────────────────────────────────────────────────


class ConfigurationError(ErpSyncError):
    """The integration configuration cannot be used as requested."""


class IntegrationNotFoundError(ConfigurationError):
    def __init__(self, integration_id: str) -> None:
        super().__init__(f"Integration with ID {integration_id!r} not found")
        self.integration_id = integration_id


class IntegrationInactiveError(ConfigurationError):
    def __init__(self, integration_id: str) -> None:
        super().__init__(f"Integration {integration_id!r} is not active")
        self.integration_id = integration_id


class UnsupportedErpTypeError(ConfigurationError):
    def __init__(self, erp_type: Any) -> None:
        super().__init__(f"Unsupported integration type: {erp_type!r}")
        self.erp_type = erp_type


class CredentialDecryptionError(ConfigurationError):
    """Stored connection credentials could not be decrypted."""


# ── Sync ─────────────────────────────────────────────────────────────────


class ErpConnectionError(ErpSyncError):
    """``connect()`` failed; fatal to the current sync attempt."""


class SyncInProgressError(ErpSyncError):
    def __init__(self, integration_id: str) -> None:
        super().__init__(f"A sync is already running for integration {integration_id!r}")
        self.integration_id = integration_id


class PartialSyncError(ErpSyncError):
    """Some records failed while others were committed."""

    def __init__(self, integration_id: str, messages: list[str]) -> None:
        super().__init__(
            f"Sync for integration {integration_id!r} finished with "
            f"{len(messages)} error(s): " + "; ".join(messages)
        )
        self.integration_id = integration_id
        self.messages = messages


# ── Retry queue ──────────────────────────────────────────────────────────


class QueueItemError(ErpSyncError):
    def __init__(self, item_id: str, message: str, retry_count: int, max_retries: int) -> None:
        super().__init__(message)
        self.item_id = item_id
        self.message = message
        self.retry_count = retry_count
        self.max_retries = max_retries


class RetryableOperationError(QueueItemError):
    """A queued operation failed but still has retry budget."""

    def __str__(self) -> str:
        return (
            f"queue item {self.item_id} failed (attempt {self.retry_count}/"
            f"{self.max_retries}), will retry: {self.message}"
        )


class TerminalQueueError(QueueItemError):
    """A queued operation exhausted its retry budget."""

    def __str__(self) -> str:
        return (
            f"queue item {self.item_id} failed permanently after "
            f"{self.retry_count} attempt(s): {self.message}"
        )
