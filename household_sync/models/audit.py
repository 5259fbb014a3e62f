"""
Audit Models for Household Sync

Every step a write goes through is logged for audit purposes:
optimistic apply, commit, rollback, conflict, resolution.
This makes it possible to reconstruct why the screen showed a value
and what finally reached the server.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from household_sync.models.sync import utc_now


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Mutation lifecycle
    MUTATION_STARTED = "mutation_started"
    OPTIMISTIC_APPLIED = "optimistic_applied"
    MUTATION_COMMITTED = "mutation_committed"
    MUTATION_ROLLED_BACK = "mutation_rolled_back"
    MUTATION_SUPERSEDED = "mutation_superseded"
    RETRY_SCHEDULED = "retry_scheduled"

    # Conflicts
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"
    CONFLICT_RESOLUTION_FAILED = "conflict_resolution_failed"

    # Reads
    FETCH_FAILED = "fetch_failed"
    FETCH_DISCARDED = "fetch_discarded"
    CACHE_INVALIDATED = "cache_invalidated"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    entity_id is the cache key rendered as a string
    (e.g. 'income/household/2025/9').
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'income', 'expenses')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="Cache key of the entity this event relates to"
    )

    # Correlation - all events of one mutation share its id
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="Mutation id the event belongs to"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by an operator action?"
    )

    def to_log_dict(self) -> dict:
        """Convert to a dictionary suitable for structured logging."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_row(self) -> list:
        """
        Flatten to a row for tabular export.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.mutation_started(key, mutation_id, kind)
        event = AuditEventBuilder.conflict_resolved(key, mutation_id, "remote")
    """

    @staticmethod
    def mutation_started(
        entity_type: str,
        entity_id: str,
        mutation_id: UUID,
        kind: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_STARTED,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=mutation_id,
            description=f"Mutation started: {kind} {entity_id}",
            details={"kind": kind},
            is_user_action=True,
        )

    @staticmethod
    def optimistic_applied(
        entity_type: str,
        entity_id: str,
        mutation_id: UUID,
        expected_version: Optional[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OPTIMISTIC_APPLIED,
            severity=AuditSeverity.DEBUG,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=mutation_id,
            description=f"Optimistic value applied to {entity_id}",
            details={"expected_version": expected_version},
        )

    @staticmethod
    def mutation_committed(
        entity_type: str,
        entity_id: str,
        mutation_id: UUID,
        version: Optional[str],
        invalidated: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_COMMITTED,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=mutation_id,
            description=f"Mutation committed: {entity_id}",
            details={
                "version": version,
                "invalidated_keys": invalidated,
            },
        )

    @staticmethod
    def mutation_rolled_back(
        entity_type: str,
        entity_id: str,
        mutation_id: UUID,
        error_kind: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_ROLLED_BACK,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=mutation_id,
            description=f"Mutation rolled back ({error_kind}): {entity_id}",
            error_code=error_kind,
            error_message=error_message,
        )

    @staticmethod
    def mutation_superseded(
        entity_type: str,
        entity_id: str,
        mutation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_SUPERSEDED,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=mutation_id,
            description=f"Mutation superseded by a newer write: {entity_id}",
        )

    @staticmethod
    def retry_scheduled(
        entity_type: str,
        entity_id: str,
        mutation_id: UUID,
        attempt: int,
        delay_seconds: float,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RETRY_SCHEDULED,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=mutation_id,
            description=f"Network retry {attempt} in {delay_seconds:.1f}s",
            details={
                "attempt": attempt,
                "delay_seconds": delay_seconds,
            },
        )

    @staticmethod
    def conflict_detected(
        entity_type: str,
        entity_id: str,
        mutation_id: UUID,
        conflict_id: UUID,
        remote_version: Optional[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFLICT_DETECTED,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=mutation_id,
            description=f"Version conflict on {entity_id}",
            details={
                "conflict_id": str(conflict_id),
                "remote_version": remote_version,
            },
        )

    @staticmethod
    def conflict_resolved(
        entity_type: str,
        entity_id: str,
        mutation_id: UUID,
        strategy: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFLICT_RESOLVED,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=mutation_id,
            description=f"Conflict resolved with '{strategy}': {entity_id}",
            details={"strategy": strategy},
            is_user_action=True,
        )

    @staticmethod
    def conflict_resolution_failed(
        entity_type: str,
        entity_id: str,
        mutation_id: UUID,
        strategy: str,
        error_kind: str,
        error_message: str,
        terminal: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFLICT_RESOLUTION_FAILED,
            severity=AuditSeverity.ERROR if terminal else AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=mutation_id,
            description=f"Conflict resolution '{strategy}' failed: {entity_id}",
            details={
                "strategy": strategy,
                "terminal": terminal,
            },
            error_code=error_kind,
            error_message=error_message,
            is_user_action=True,
        )

    @staticmethod
    def fetch_failed(
        entity_type: str,
        entity_id: str,
        error_kind: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FETCH_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"Fetch failed ({error_kind}): {entity_id}",
            error_code=error_kind,
            error_message=error_message,
        )

    @staticmethod
    def fetch_discarded(
        entity_type: str,
        entity_id: str,
        mutation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FETCH_DISCARDED,
            severity=AuditSeverity.DEBUG,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=mutation_id,
            description=f"Fetch result discarded, a write on the key intervened: {entity_id}",
        )

    @staticmethod
    def cache_invalidated(
        keys: list[str],
        mutation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CACHE_INVALIDATED,
            severity=AuditSeverity.DEBUG,
            correlation_id=mutation_id,
            description=f"{len(keys)} cache entries invalidated",
            details={"keys": keys},
        )
