"""
Audit Logger

DESIGN DECISION: Every step a write goes through is logged.
This provides:
1. Traceability of what the screen showed and why
2. Debugging capability for races between overlapping writes
3. A record of every conflict the operator settled

The audit logger:
- Is async to not block the mutation flow
- Gracefully handles failures (a broken audit store never fails a write)
- Uses the mutation id as correlation id to trace related events
"""

from typing import Optional
from uuid import UUID

import structlog

from household_sync.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from household_sync.models.sync import CacheKey
from household_sync.services.backend.interface import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An audit store, if one is configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("household_sync.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_mutation_started(self, key: CacheKey, mutation_id: UUID, kind: str) -> None:
        await self.log(AuditEventBuilder.mutation_started(
            entity_type=key.entity_type.value,
            entity_id=str(key),
            mutation_id=mutation_id,
            kind=kind,
        ))

    async def log_optimistic_applied(
        self,
        key: CacheKey,
        mutation_id: UUID,
        expected_version: Optional[str],
    ) -> None:
        await self.log(AuditEventBuilder.optimistic_applied(
            entity_type=key.entity_type.value,
            entity_id=str(key),
            mutation_id=mutation_id,
            expected_version=expected_version,
        ))

    async def log_mutation_committed(
        self,
        key: CacheKey,
        mutation_id: UUID,
        version: Optional[str],
        invalidated: list[CacheKey],
    ) -> None:
        """Log a confirmed write and the aggregates it invalidated."""
        await self.log(AuditEventBuilder.mutation_committed(
            entity_type=key.entity_type.value,
            entity_id=str(key),
            mutation_id=mutation_id,
            version=version,
            invalidated=[str(k) for k in invalidated],
        ))

    async def log_mutation_rolled_back(
        self,
        key: CacheKey,
        mutation_id: UUID,
        error_kind: str,
        error_message: str,
    ) -> None:
        await self.log(AuditEventBuilder.mutation_rolled_back(
            entity_type=key.entity_type.value,
            entity_id=str(key),
            mutation_id=mutation_id,
            error_kind=error_kind,
            error_message=error_message,
        ))

    async def log_mutation_superseded(self, key: CacheKey, mutation_id: UUID) -> None:
        await self.log(AuditEventBuilder.mutation_superseded(
            entity_type=key.entity_type.value,
            entity_id=str(key),
            mutation_id=mutation_id,
        ))

    async def log_retry_scheduled(
        self,
        key: CacheKey,
        mutation_id: UUID,
        attempt: int,
        delay_seconds: float,
    ) -> None:
        await self.log(AuditEventBuilder.retry_scheduled(
            entity_type=key.entity_type.value,
            entity_id=str(key),
            mutation_id=mutation_id,
            attempt=attempt,
            delay_seconds=delay_seconds,
        ))

    async def log_conflict_detected(
        self,
        key: CacheKey,
        mutation_id: UUID,
        conflict_id: UUID,
        remote_version: Optional[str],
    ) -> None:
        await self.log(AuditEventBuilder.conflict_detected(
            entity_type=key.entity_type.value,
            entity_id=str(key),
            mutation_id=mutation_id,
            conflict_id=conflict_id,
            remote_version=remote_version,
        ))

    async def log_conflict_resolved(self, key: CacheKey, mutation_id: UUID, strategy: str) -> None:
        await self.log(AuditEventBuilder.conflict_resolved(
            entity_type=key.entity_type.value,
            entity_id=str(key),
            mutation_id=mutation_id,
            strategy=strategy,
        ))

    async def log_conflict_resolution_failed(
        self,
        key: CacheKey,
        mutation_id: UUID,
        strategy: str,
        error_kind: str,
        error_message: str,
        terminal: bool,
    ) -> None:
        await self.log(AuditEventBuilder.conflict_resolution_failed(
            entity_type=key.entity_type.value,
            entity_id=str(key),
            mutation_id=mutation_id,
            strategy=strategy,
            error_kind=error_kind,
            error_message=error_message,
            terminal=terminal,
        ))

    async def log_fetch_failed(self, key: CacheKey, error_kind: str, error_message: str) -> None:
        await self.log(AuditEventBuilder.fetch_failed(
            entity_type=key.entity_type.value,
            entity_id=str(key),
            error_kind=error_kind,
            error_message=error_message,
        ))

    async def log_fetch_discarded(self, key: CacheKey, mutation_id: Optional[UUID] = None) -> None:
        await self.log(AuditEventBuilder.fetch_discarded(
            entity_type=key.entity_type.value,
            entity_id=str(key),
            mutation_id=mutation_id,
        ))

    async def log_cache_invalidated(
        self,
        keys: list[CacheKey],
        mutation_id: Optional[UUID] = None,
    ) -> None:
        if not keys:
            return
        await self.log(AuditEventBuilder.cache_invalidated(
            keys=[str(k) for k in keys],
            mutation_id=mutation_id,
        ))
