"""
In-Memory Backend

Stands in for the finance API in tests and local demos. It behaves like
the real server where the sync layer cares:
- every write bumps a version marker
- a write carrying a stale marker is rejected with the current value
- derived fields are computed server-side

Failures and slow responses can be injected to exercise retries,
rollbacks and overlapping writes.
"""

import asyncio
import itertools
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID

from pydantic import BaseModel

from household_sync.models.audit import AuditEvent
from household_sync.models.projections import parse_payload, project_record
from household_sync.models.sync import CacheKey, VersionedValue, utc_now
from household_sync.services.backend.interface import (
    AuditStorageInterface,
    NotFoundError,
    RecordBackend,
    VersionConflictError,
)


class InMemoryRecordBackend(RecordBackend):
    """Dict-backed RecordBackend with version markers and fault injection."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._records: dict[CacheKey, VersionedValue] = {}
        self._counter = itertools.count(1)
        self._failures: dict[str, deque] = defaultdict(deque)
        self._gate: Optional[asyncio.Event] = None
        self.calls: list[tuple[str, CacheKey]] = []

    # -------------------------------------------------------------------------
    # Server-side state
    # -------------------------------------------------------------------------

    def _next_version(self) -> str:
        return f"v{next(self._counter)}"

    def seed(self, key: CacheKey, value: Any, version: Optional[str] = None) -> VersionedValue:
        """Put a value on the server directly (no conflict checks)."""
        modified_at = getattr(value, "updated_at", None) or self._clock()
        stored = VersionedValue(
            value=value,
            version=version or self._next_version(),
            modified_at=modified_at,
        )
        self._records[key] = stored
        return stored.model_copy(deep=True)

    def remote_edit(self, key: CacheKey, payload: Any) -> VersionedValue:
        """Simulate another device editing the record."""
        form = parse_payload(key.entity_type, payload)
        current = self._records.get(key)
        value = project_record(
            key,
            form,
            previous=current.value if current else None,
            now=self._clock(),
        )
        return self.seed(key, value)

    def current(self, key: CacheKey) -> Optional[VersionedValue]:
        stored = self._records.get(key)
        return stored.model_copy(deep=True) if stored is not None else None

    # -------------------------------------------------------------------------
    # Fault injection
    # -------------------------------------------------------------------------

    def fail_next(self, operation: str, error: BaseException, times: int = 1) -> None:
        """Make the next `times` calls of `operation` ('fetch', 'submit', 'delete') raise."""
        for _ in range(times):
            self._failures[operation].append(error)

    def hold(self) -> asyncio.Event:
        """
        Block every submit until the returned event is set.

        Used to keep a write in flight while another one is issued.
        """
        self._gate = asyncio.Event()
        return self._gate

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()
        self._gate = None

    def calls_of(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def _maybe_fail(self, operation: str) -> None:
        if self._failures[operation]:
            raise self._failures[operation].popleft()

    # -------------------------------------------------------------------------
    # RecordBackend
    # -------------------------------------------------------------------------

    async def fetch(self, key: CacheKey) -> Optional[VersionedValue]:
        self.calls.append(("fetch", key))
        await asyncio.sleep(0)
        self._maybe_fail("fetch")
        return self.current(key)

    async def submit(
        self,
        key: CacheKey,
        payload: BaseModel,
        expected_version: Optional[str] = None,
    ) -> VersionedValue:
        self.calls.append(("submit", key))
        gate = self._gate
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        self._maybe_fail("submit")

        current = self._records.get(key)
        if expected_version is not None:
            if current is None:
                raise NotFoundError(f"record not found: {key}", status_code=404)
            if current.version != expected_version:
                raise VersionConflictError(current.model_copy(deep=True))

        value = project_record(
            key,
            payload,
            previous=current.value if current else None,
            now=self._clock(),
        )
        return self.seed(key, value)

    async def delete(self, key: CacheKey, expected_version: Optional[str] = None) -> None:
        self.calls.append(("delete", key))
        await asyncio.sleep(0)
        self._maybe_fail("delete")

        current = self._records.get(key)
        if current is None:
            raise NotFoundError(f"record not found: {key}", status_code=404)
        if expected_version is not None and current.version != expected_version:
            raise VersionConflictError(current.model_copy(deep=True))
        del self._records[key]


class InMemoryAuditStorage(AuditStorageInterface):
    """Audit store kept in a list, in append order."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return [e for e in self.events if e.correlation_id == correlation_id]

    async def get_events_by_entity(self, entity_id: str) -> list[AuditEvent]:
        return [e for e in self.events if e.entity_id == entity_id]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return list(reversed(self.events))[:limit]
