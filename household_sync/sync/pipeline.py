"""
Mutation Pipeline

DESIGN DECISION: Writes are optimistic but never silently wrong.

    validate → snapshot → apply optimistic value → submit (with version)
        ├─ confirmed  → server value replaces optimistic, aggregates go stale
        ├─ conflict   → optimistic value kept as the local candidate, key suspended
        └─ failure    → snapshot restored exactly, classified error surfaced

Ordering rules:
- Mutations on the same key run one at a time (per-key asyncio.Lock)
- Latest intent wins: a new mutation on a key supersedes the one in flight.
  A superseded mutation stops retrying. If its request is already on the
  wire, the key stays locked until the server answers, so the next
  mutation snapshots what the server really holds.
- Every write bumps the key's write generation; a fetch that started
  before a write ends is discarded.
- Different keys proceed concurrently.
"""

import asyncio
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import ValidationError

from household_sync.audit.logger import AuditLogger
from household_sync.cache.store import ReadCache
from household_sync.models.projections import (
    invalidate_dependents,
    parse_payload,
    project_record,
    require_record_type,
)
from household_sync.models.sync import (
    CacheKey,
    ErrorKind,
    MutationKind,
    MutationOutcome,
    MutationStatus,
    PendingMutation,
    VersionedValue,
)
from household_sync.services.backend.interface import RecordBackend, VersionConflictError
from household_sync.sync.conflicts import ConflictRegistry, build_conflict_record
from household_sync.sync.connectivity import ConnectivityMonitor
from household_sync.sync.errors import (
    ConflictPendingError,
    ErrorHandler,
    MutationFailedError,
    MutationSupersededError,
    RetryingCall,
)


logger = structlog.get_logger(__name__)


class _Ticket:
    """Runtime handle of one mutation: its supersede signal and request phase."""

    def __init__(self, mutation: PendingMutation):
        self.mutation = mutation
        self.superseded = asyncio.Event()
        self.in_request = False
        self.retries = 0


class MutationPipeline:
    """
    Runs optimistic writes against the cache and the backend.

    Usage:
        pipeline = MutationPipeline(cache, backend, errors, conflicts, connectivity, audit)
        outcome = await pipeline.mutate(key, {"경훈_월급": 5_000_000, "선화_월급": 6_000_000})
    """

    def __init__(
        self,
        cache: ReadCache,
        backend: RecordBackend,
        errors: ErrorHandler,
        conflicts: ConflictRegistry,
        connectivity: ConnectivityMonitor,
        audit: AuditLogger,
        timeout_seconds: float = 10.0,
    ):
        self._cache = cache
        self._backend = backend
        self._errors = errors
        self._conflicts = conflicts
        self._connectivity = connectivity
        self._audit = audit
        self._timeout = timeout_seconds

        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._latest: dict[CacheKey, UUID] = {}
        self._active: dict[CacheKey, dict[UUID, _Ticket]] = {}
        self._in_flight: dict[CacheKey, _Ticket] = {}
        self._generations: dict[CacheKey, int] = {}

    # -------------------------------------------------------------------------
    # State queries
    # -------------------------------------------------------------------------

    def lock_for(self, key: CacheKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def in_flight(self, key: CacheKey) -> Optional[PendingMutation]:
        """The mutation whose optimistic value is currently applied to key."""
        ticket = self._in_flight.get(key)
        return ticket.mutation if ticket is not None else None

    def is_busy(self, key: CacheKey) -> bool:
        """Should a completing fetch leave this key alone?"""
        return bool(self._active.get(key)) or self._conflicts.has_open(key)

    def latest_mutation_id(self, key: CacheKey) -> Optional[UUID]:
        return self._latest.get(key)

    def write_generation(self, key: CacheKey) -> int:
        """Changes whenever a write on key starts or ends."""
        return self._generations.get(key, 0)

    def note_write(self, key: CacheKey) -> None:
        self._generations[key] = self._generations.get(key, 0) + 1

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def mutate(self, key: CacheKey, payload: Any) -> MutationOutcome:
        """
        Create or update the record at `key`.

        Args:
            key: Record key (income/expenses/accounts/savings)
            payload: Form model or dict of form fields

        Returns:
            Outcome with status COMMITTED, or CONFLICTED with the conflict record

        Raises:
            MutationFailedError: Validation or terminal backend failure (rolled back)
            MutationSupersededError: A newer mutation on the key replaced this one
            ConflictPendingError: The key has an unresolved conflict
        """
        try:
            form = parse_payload(key.entity_type, payload)
        except (ValidationError, ValueError) as e:
            state = self._errors.handle_error(key, e, context="validate", allow_retry=False)
            raise MutationFailedError(state.message, state) from e

        mutation = PendingMutation(key=key, kind=MutationKind.UPSERT, payload=form)
        return await self._run(mutation)

    async def delete(self, key: CacheKey) -> MutationOutcome:
        """Delete the record at `key` (optimistically removed from the cache)."""
        try:
            require_record_type(key.entity_type)
        except ValueError as e:
            state = self._errors.handle_error(key, e, context="validate", allow_retry=False)
            raise MutationFailedError(state.message, state) from e

        mutation = PendingMutation(key=key, kind=MutationKind.DELETE)
        return await self._run(mutation)

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def _raise_if_conflicted(self, key: CacheKey) -> None:
        if self._conflicts.has_open(key):
            raise ConflictPendingError(
                f"unresolved conflict on {key}; resolve it before writing again",
                self._errors.state(key),
            )

    async def _run(self, mutation: PendingMutation) -> MutationOutcome:
        key = mutation.key
        self._raise_if_conflicted(key)

        ticket = _Ticket(mutation)
        active = self._active.setdefault(key, {})
        for older in active.values():
            older.superseded.set()
        active[mutation.mutation_id] = ticket
        self._latest[key] = mutation.mutation_id
        self.note_write(key)

        await self._audit.log_mutation_started(key, mutation.mutation_id, mutation.kind.value)
        try:
            async with self.lock_for(key):
                if ticket.superseded.is_set():
                    # Replaced while queued: nothing was applied
                    mutation.status = MutationStatus.ROLLED_BACK
                    await self._audit.log_mutation_superseded(key, mutation.mutation_id)
                    raise MutationSupersededError(f"mutation on {key} superseded before it was applied")
                self._raise_if_conflicted(key)
                return await self._apply_and_submit(ticket)
        finally:
            self.note_write(key)
            active.pop(mutation.mutation_id, None)
            if not active and self._active.get(key) is active:
                del self._active[key]

    async def _apply_and_submit(self, ticket: _Ticket) -> MutationOutcome:
        mutation = ticket.mutation
        key = mutation.key

        snapshot = self._cache.snapshot(key)
        mutation.previous_entry = snapshot
        mutation.expected_version = snapshot.version if snapshot is not None else None

        if mutation.kind is MutationKind.UPSERT:
            mutation.optimistic_value = project_record(
                key,
                mutation.payload,
                previous=snapshot.value if snapshot is not None else None,
                now=mutation.created_at,
            )
            self._cache.set(
                key,
                mutation.optimistic_value,
                version=mutation.expected_version,
                modified_at=snapshot.modified_at if snapshot is not None else None,
            )
        else:
            self._cache.remove(key)

        self._in_flight[key] = ticket
        await self._audit.log_optimistic_applied(key, mutation.mutation_id, mutation.expected_version)

        try:
            confirmed = await self._submit(ticket)
        except MutationSupersededError:
            self._cache.restore(key, snapshot)
            mutation.status = MutationStatus.ROLLED_BACK
            await self._audit.log_mutation_superseded(key, mutation.mutation_id)
            raise
        except asyncio.CancelledError:
            self._cache.restore(key, snapshot)
            mutation.status = MutationStatus.ROLLED_BACK
            raise
        except VersionConflictError as e:
            return await self._on_conflict(ticket, e)
        except Exception as e:
            raise await self._on_failure(ticket, e) from e
        finally:
            if self._in_flight.get(key) is ticket:
                del self._in_flight[key]

        return await self._on_success(ticket, confirmed)

    async def _submit(self, ticket: _Ticket) -> Optional[VersionedValue]:
        """
        Send the write, retrying network failures, until it settles or is superseded.

        A superseded mutation that is waiting to retry is cancelled. One whose
        request is on the wire waits for the server's answer: if the write
        landed it is reported committed, otherwise superseded.
        """
        mutation = ticket.mutation
        key = mutation.key

        async def on_retry(retry_number: int, delay: float) -> None:
            await self._audit.log_retry_scheduled(key, mutation.mutation_id, retry_number, delay)

        call = RetryingCall(
            policy=self._errors.policy(ErrorKind.NETWORK),
            classifier=self._errors.classifier,
            connectivity=self._connectivity,
            should_stop=ticket.superseded.is_set,
            on_retry=on_retry,
        )
        request = asyncio.create_task(call(lambda: self._send(ticket)))
        stop = asyncio.create_task(ticket.superseded.wait())
        try:
            done, _ = await asyncio.wait({request, stop}, return_when=asyncio.FIRST_COMPLETED)
            if request not in done:
                if not ticket.in_request:
                    request.cancel()
                    await asyncio.wait({request})
                    raise MutationSupersededError(f"mutation on {key} superseded")
                logger.info(
                    "superseded_request_on_wire",
                    key=str(key),
                    mutation_id=str(mutation.mutation_id),
                )
                await asyncio.wait({request})
        except asyncio.CancelledError:
            request.cancel()
            raise
        finally:
            stop.cancel()

        ticket.retries = call.retries
        if ticket.superseded.is_set() and request.exception() is not None:
            raise MutationSupersededError(f"mutation on {key} superseded") from request.exception()
        return request.result()

    async def _send(self, ticket: _Ticket) -> Optional[VersionedValue]:
        mutation = ticket.mutation
        ticket.in_request = True
        try:
            if mutation.kind is MutationKind.DELETE:
                await asyncio.wait_for(
                    self._backend.delete(mutation.key, mutation.expected_version),
                    self._timeout,
                )
                return None
            return await asyncio.wait_for(
                self._backend.submit(mutation.key, mutation.payload, mutation.expected_version),
                self._timeout,
            )
        finally:
            ticket.in_request = False

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    async def _on_success(
        self,
        ticket: _Ticket,
        confirmed: Optional[VersionedValue],
    ) -> MutationOutcome:
        mutation = ticket.mutation
        key = mutation.key

        value = None
        if mutation.kind is MutationKind.UPSERT:
            if confirmed is not None and confirmed.value is not None:
                value = confirmed.value
                self._cache.set(key, value, version=confirmed.version, modified_at=confirmed.modified_at)
            else:
                # Server confirmed without a body; keep ours until refetched
                value = mutation.optimistic_value
                if confirmed is not None and confirmed.version is not None:
                    self._cache.set(key, value, version=confirmed.version)
                self._cache.invalidate(key)

        mutation.status = MutationStatus.COMMITTED
        invalidated = invalidate_dependents(self._cache, key)
        self._errors.clear(key)

        await self._audit.log_mutation_committed(
            key,
            mutation.mutation_id,
            confirmed.version if confirmed is not None else None,
            invalidated,
        )
        await self._audit.log_cache_invalidated(invalidated, mutation.mutation_id)

        return MutationOutcome(
            mutation_id=mutation.mutation_id,
            key=key,
            status=MutationStatus.COMMITTED,
            value=value,
        )

    async def _on_conflict(self, ticket: _Ticket, error: VersionConflictError) -> MutationOutcome:
        mutation = ticket.mutation
        key = mutation.key

        record = build_conflict_record(mutation, error.current)
        mutation.status = MutationStatus.CONFLICTED
        self._conflicts.register(record, mutation)
        self._errors.handle_error(key, error, context="mutate", retry_count=0)

        await self._audit.log_conflict_detected(
            key,
            mutation.mutation_id,
            record.conflict_id,
            record.remote_version,
        )
        return MutationOutcome(
            mutation_id=mutation.mutation_id,
            key=key,
            status=MutationStatus.CONFLICTED,
            value=record.local_value,
            conflict=record,
        )

    async def _on_failure(self, ticket: _Ticket, error: Exception) -> MutationFailedError:
        mutation = ticket.mutation
        key = mutation.key

        self._cache.restore(key, mutation.previous_entry)
        mutation.status = MutationStatus.ROLLED_BACK

        kind = self._errors.classifier.classify(error)
        state = self._errors.handle_error(
            key,
            error,
            context="mutate",
            retry_count=ticket.retries if kind is ErrorKind.NETWORK else 0,
        )
        await self._audit.log_mutation_rolled_back(
            key,
            mutation.mutation_id,
            kind.value,
            state.detail or "",
        )
        return MutationFailedError(state.message, state)
