"""
Conflict Detection and Resolution

DESIGN DECISION: A version conflict is never settled automatically.
The pipeline records both versions and suspends writes on the key; the
operator then picks exactly one strategy:
- local:  keep what was typed, overwrite the server
- remote: drop what was typed, take the server's version (no network call)
- merge:  combine both field by field (NOT RECOMMENDED)

A record is consumed exactly once: by a successful resolution or by a
terminal failure while resolving.
"""

import asyncio
from typing import Callable, Optional, Union
from uuid import UUID

import structlog
from pydantic import BaseModel

from household_sync.audit.logger import AuditLogger
from household_sync.cache.store import ReadCache
from household_sync.models.projections import (
    form_from_record,
    invalidate_dependents,
    merge_forms,
    project_record,
)
from household_sync.models.sync import (
    CacheKey,
    ConflictRecord,
    ConflictStrategy,
    ErrorKind,
    MutationKind,
    MutationOutcome,
    MutationStatus,
    PendingMutation,
    VersionedValue,
)
from household_sync.services.backend.interface import RecordBackend
from household_sync.sync.errors import ConflictResolutionError, ErrorHandler


logger = structlog.get_logger(__name__)


class ConflictRegistry:
    """Open conflicts, at most one per key, with the mutation that caused each."""

    def __init__(self):
        self._records: dict[CacheKey, ConflictRecord] = {}
        self._mutations: dict[UUID, PendingMutation] = {}

    def __len__(self) -> int:
        return len(self._records)

    def register(self, record: ConflictRecord, mutation: PendingMutation) -> None:
        if record.key in self._records:
            raise ValueError(f"conflict already open for {record.key}")
        self._records[record.key] = record
        self._mutations[record.conflict_id] = mutation
        logger.info(
            "conflict_registered",
            key=str(record.key),
            conflict_id=str(record.conflict_id),
        )

    def has_open(self, key: CacheKey) -> bool:
        return key in self._records

    def get(self, key: CacheKey) -> Optional[ConflictRecord]:
        return self._records.get(key)

    def get_by_id(self, conflict_id: UUID) -> Optional[ConflictRecord]:
        for record in self._records.values():
            if record.conflict_id == conflict_id:
                return record
        return None

    def pending(self) -> list[ConflictRecord]:
        """Open conflicts, oldest first."""
        return sorted(self._records.values(), key=lambda r: r.detected_at)

    def mutation_for(self, record: ConflictRecord) -> Optional[PendingMutation]:
        return self._mutations.get(record.conflict_id)

    def consume(self, record: ConflictRecord) -> Optional[PendingMutation]:
        """Remove the record; returns the mutation it was holding."""
        self._records.pop(record.key, None)
        return self._mutations.pop(record.conflict_id, None)


def build_conflict_record(
    mutation: PendingMutation,
    current: VersionedValue,
) -> ConflictRecord:
    """
    Describe a rejected write as two diverged versions.

    The local side is what the operator sees now: the optimistic value,
    or the previous value when no optimistic value was applied.
    """
    local_value = mutation.optimistic_value
    if local_value is None and mutation.kind is MutationKind.UPSERT and mutation.previous_entry:
        local_value = mutation.previous_entry.value

    return ConflictRecord(
        mutation_id=mutation.mutation_id,
        key=mutation.key,
        entity_type=mutation.key.entity_type,
        local_value=local_value,
        remote_value=current.value,
        local_modified_at=mutation.created_at,
        remote_modified_at=current.modified_at,
        local_payload=mutation.payload,
        remote_version=current.version,
    )


class ConflictResolver:
    """
    Applies the operator's choice to an open conflict.

    Shares the pipeline's per-key locks so a resolution never overlaps
    another write on the same key.
    """

    def __init__(
        self,
        cache: ReadCache,
        backend: RecordBackend,
        registry: ConflictRegistry,
        errors: ErrorHandler,
        audit: AuditLogger,
        lock_for: Callable[[CacheKey], asyncio.Lock],
        timeout_seconds: float = 10.0,
        on_write: Optional[Callable[[CacheKey], None]] = None,
    ):
        self._cache = cache
        self._backend = backend
        self._registry = registry
        self._errors = errors
        self._audit = audit
        self._lock_for = lock_for
        self._timeout = timeout_seconds
        self._on_write = on_write or (lambda key: None)

    def resolution_payload(
        self,
        record: ConflictRecord,
        strategy: ConflictStrategy,
    ) -> Optional[BaseModel]:
        """
        The form that will be submitted for a strategy (None for remote).

        Raises:
            ValueError: If merge is requested for a delete
        """
        if strategy is ConflictStrategy.REMOTE:
            return None

        mutation = self._registry.mutation_for(record)
        is_delete = mutation is not None and mutation.kind is MutationKind.DELETE

        if strategy is ConflictStrategy.LOCAL:
            if is_delete:
                return None
            if isinstance(record.local_payload, BaseModel):
                return record.local_payload
            return form_from_record(record.entity_type, record.local_value)

        if is_delete:
            raise ValueError("merge is not available for a deleted record")
        return merge_forms(
            record.entity_type,
            record.local_value,
            record.remote_value,
            record.local_modified_at,
            record.remote_modified_at,
        )

    async def resolve(
        self,
        record: Union[ConflictRecord, UUID],
        strategy: Union[ConflictStrategy, str],
    ) -> MutationOutcome:
        """
        Settle an open conflict with one strategy.

        Args:
            record: The conflict (or its id)
            strategy: 'local', 'remote' or 'merge'

        Returns:
            Committed outcome with the value now in the cache

        Raises:
            ConflictResolutionError: If the conflict is not open, or the
                resolution write failed. A network failure leaves the
                conflict open for another attempt within the conflict
                retry budget; any other failure closes it.
        """
        strategy = ConflictStrategy(strategy)
        conflict_id = record if isinstance(record, UUID) else record.conflict_id
        open_record = self._registry.get_by_id(conflict_id)
        if open_record is None:
            raise ConflictResolutionError(f"conflict {conflict_id} is not open")

        key = open_record.key
        async with self._lock_for(key):
            # Another resolution may have consumed it while we waited
            if self._registry.get(key) is not open_record:
                raise ConflictResolutionError(f"conflict {conflict_id} is not open")

            self._on_write(key)
            try:
                return await self._apply(open_record, strategy)
            finally:
                self._on_write(key)

    async def _apply(self, open_record: ConflictRecord, strategy: ConflictStrategy) -> MutationOutcome:
        key = open_record.key
        mutation = self._registry.mutation_for(open_record)

        if strategy is ConflictStrategy.REMOTE:
            if open_record.remote_value is None:
                self._cache.remove(key)
            else:
                self._cache.set(
                    key,
                    open_record.remote_value,
                    version=open_record.remote_version,
                    modified_at=open_record.remote_modified_at,
                )
            return await self._finish(open_record, mutation, strategy, open_record.remote_value)

        payload = self.resolution_payload(open_record, strategy)
        try:
            if payload is None:
                await asyncio.wait_for(self._backend.delete(key), self._timeout)
                confirmed = None
            else:
                confirmed = await asyncio.wait_for(
                    self._backend.submit(key, payload, expected_version=None),
                    self._timeout,
                )
        except Exception as e:
            raise await self._fail(open_record, mutation, strategy, e) from e

        if payload is None:
            self._cache.remove(key)
            value = None
        elif confirmed is None or confirmed.value is None:
            # Accepted without a body; show what was sent until refetched
            value = project_record(key, payload, previous=open_record.remote_value)
            self._cache.set(key, value, version=confirmed.version if confirmed else None)
            self._cache.invalidate(key)
        else:
            self._cache.set(
                key,
                confirmed.value,
                version=confirmed.version,
                modified_at=confirmed.modified_at,
            )
            value = confirmed.value
        return await self._finish(open_record, mutation, strategy, value)

    async def _finish(
        self,
        record: ConflictRecord,
        mutation: Optional[PendingMutation],
        strategy: ConflictStrategy,
        value,
    ) -> MutationOutcome:
        self._registry.consume(record)
        if mutation is not None:
            mutation.status = MutationStatus.COMMITTED
        invalidated = invalidate_dependents(self._cache, record.key)
        self._errors.clear(record.key)

        await self._audit.log_conflict_resolved(record.key, record.mutation_id, strategy.value)
        await self._audit.log_cache_invalidated(invalidated, record.mutation_id)

        return MutationOutcome(
            mutation_id=record.mutation_id,
            key=record.key,
            status=MutationStatus.COMMITTED,
            value=value,
        )

    async def _fail(
        self,
        record: ConflictRecord,
        mutation: Optional[PendingMutation],
        strategy: ConflictStrategy,
        error: Exception,
    ) -> ConflictResolutionError:
        key = record.key
        record.resolution_attempts += 1
        kind = self._errors.classifier.classify(error)
        budget = self._errors.policy(ErrorKind.CONFLICT).max_retries
        terminal = kind is not ErrorKind.NETWORK or record.resolution_attempts >= budget

        state = self._errors.handle_error(
            key,
            error,
            context=f"resolve_conflict:{strategy.value}",
            retry_count=record.resolution_attempts,
            allow_retry=not terminal,
        )

        if terminal:
            self._registry.consume(record)
            if mutation is not None:
                mutation.status = MutationStatus.ROLLED_BACK
            self._cache.invalidate(key)

        await self._audit.log_conflict_resolution_failed(
            key,
            record.mutation_id,
            strategy.value,
            kind.value,
            state.detail or "",
            terminal,
        )
        return ConflictResolutionError(state.message, state)
