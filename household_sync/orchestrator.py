"""
Sync Client for Household Finance

This module ties together the cache, the mutation pipeline and the
conflict resolver behind the one object the UI talks to.

DESIGN DECISION: The client enforces the boundaries:
- Reads never block; a missing or stale value triggers a background fetch
- A fetch never overwrites a key that has a write in flight or an open conflict,
  nor one written to since the fetch started
- Every write goes through the pipeline, every conflict through the resolver
- Every step is audited
"""

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import UUID

import structlog

from household_sync.audit import AuditLogger
from household_sync.cache import ReadCache
from household_sync.config import get_settings
from household_sync.models.records import EntityType
from household_sync.models.sync import (
    CacheEntry,
    CacheKey,
    ConflictRecord,
    ConflictStrategy,
    ErrorKind,
    ErrorState,
    MutationOutcome,
    ReadResult,
    VersionedValue,
)
from household_sync.services.backend import (
    AuditStorageInterface,
    HttpRecordBackend,
    RecordBackend,
)
from household_sync.sync import (
    ConflictPendingError,
    ConflictRegistry,
    ConflictResolver,
    ConflictView,
    ConnectivityMonitor,
    ErrorHandler,
    MutationFailedError,
    MutationPipeline,
    RetryExhaustedError,
    RetryPolicy,
    build_retry_policies,
    describe_conflict,
)
from household_sync.sync.errors import RetryingCall


logger = structlog.get_logger(__name__)


class SyncClient:
    """
    UI-facing facade over the sync layer.

    Usage:
        client = create_sync_client()
        key = client.key_for(EntityType.INCOME, 2025, 9)
        client.read(key)                      # never blocks
        outcome = await client.mutate(key, {"경훈_월급": 5_000_000, "선화_월급": 6_000_000})
        if outcome.conflict:
            await client.resolve_conflict(outcome.conflict, "remote")
    """

    def __init__(
        self,
        backend: RecordBackend,
        cache: Optional[ReadCache] = None,
        audit_logger: Optional[AuditLogger] = None,
        policies: Optional[dict[ErrorKind, RetryPolicy]] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        timeout_seconds: Optional[float] = None,
        debug: Optional[bool] = None,
    ):
        settings = get_settings()
        self._backend = backend
        self._cache = cache or ReadCache(
            stale_time=timedelta(seconds=settings.cache.stale_time_seconds),
            gc_time=timedelta(seconds=settings.cache.gc_time_seconds),
        )
        self._audit = audit_logger or AuditLogger()
        self._errors = ErrorHandler(
            policies or build_retry_policies(settings.retry),
            debug=settings.app.debug_mode if debug is None else debug,
        )
        self._connectivity = connectivity or ConnectivityMonitor()
        self._conflicts = ConflictRegistry()
        self._timeout = timeout_seconds or settings.backend.timeout_seconds
        self._default_owner = settings.app.default_owner_id

        self._pipeline = MutationPipeline(
            cache=self._cache,
            backend=backend,
            errors=self._errors,
            conflicts=self._conflicts,
            connectivity=self._connectivity,
            audit=self._audit,
            timeout_seconds=self._timeout,
        )
        self._resolver = ConflictResolver(
            cache=self._cache,
            backend=backend,
            registry=self._conflicts,
            errors=self._errors,
            audit=self._audit,
            lock_for=self._pipeline.lock_for,
            on_write=self._pipeline.note_write,
            timeout_seconds=self._timeout,
        )
        self._fetches: dict[CacheKey, asyncio.Task] = {}
        self._failed_ops: dict[CacheKey, Callable[[], Awaitable[Any]]] = {}

    @property
    def cache(self) -> ReadCache:
        return self._cache

    @property
    def pipeline(self) -> MutationPipeline:
        return self._pipeline

    @property
    def connectivity(self) -> ConnectivityMonitor:
        return self._connectivity

    def key_for(
        self,
        entity_type: Union[EntityType, str],
        year: int,
        month: int,
        sub_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> CacheKey:
        """Build a key, defaulting the owner to the configured household."""
        return CacheKey(
            entity_type=EntityType(entity_type),
            owner_id=owner_id or self._default_owner,
            year=year,
            month=month,
            sub_id=sub_id,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _result(self, key: CacheKey) -> ReadResult:
        entry = self._cache.get_entry(key)
        return ReadResult(
            value=entry.value if entry is not None else None,
            is_stale=entry is not None and self._cache.is_stale(key),
            is_loading=key in self._fetches,
            error=self._errors.state(key),
        )

    def read(self, key: CacheKey) -> ReadResult:
        """
        Current value of a key, without waiting.

        A stale value is returned as-is (flagged stale) while a refetch
        runs in the background. Outside a running event loop no fetch is
        scheduled.
        """
        if self._cache.is_stale(key) and not self._pipeline.is_busy(key):
            try:
                self._ensure_fetch(key)
            except RuntimeError:
                logger.debug("fetch_not_scheduled", key=str(key), reason="no running event loop")
        return self._result(key)

    async def load(self, key: CacheKey, force: bool = False) -> ReadResult:
        """Fetch a key (unless fresh) and return the settled result."""
        if force or self._cache.is_stale(key):
            await self._ensure_fetch(key)
        return self._result(key)

    def _ensure_fetch(self, key: CacheKey) -> asyncio.Task:
        task = self._fetches.get(key)
        if task is not None:
            return task

        task = asyncio.get_running_loop().create_task(self._fetch(key))
        self._fetches[key] = task

        def done(finished: asyncio.Task) -> None:
            if self._fetches.get(key) is finished:
                del self._fetches[key]

        task.add_done_callback(done)
        return task

    def _fetch_once(self, key: CacheKey):
        return asyncio.wait_for(self._backend.fetch(key), self._timeout)

    async def _fetch(self, key: CacheKey) -> None:
        generation = self._pipeline.write_generation(key)
        call = RetryingCall(
            policy=self._errors.policy(ErrorKind.NETWORK),
            classifier=self._errors.classifier,
            connectivity=self._connectivity,
        )
        try:
            result = await call(lambda: self._fetch_once(key))
        except Exception as e:
            # The cached value stays displayable; the error is surfaced via ReadResult
            kind = self._errors.classifier.classify(e)
            state = self._errors.handle_error(
                key,
                e,
                context="fetch",
                retry_count=call.retries if kind is ErrorKind.NETWORK else 0,
            )
            self._failed_ops[key] = lambda: self._refetch(key)
            await self._audit.log_fetch_failed(key, kind.value, state.detail or "")
            return

        await self._apply_fetch(key, result, generation)

    async def _refetch(self, key: CacheKey) -> ReadResult:
        generation = self._pipeline.write_generation(key)
        result = await self._fetch_once(key)
        await self._apply_fetch(key, result, generation)
        return self._result(key)

    async def _apply_fetch(
        self,
        key: CacheKey,
        result: Optional[VersionedValue],
        generation: int,
    ) -> None:
        if self._pipeline.is_busy(key) or self._pipeline.write_generation(key) != generation:
            logger.info("fetch_result_ignored", key=str(key), reason="write on key")
            await self._audit.log_fetch_discarded(key, self._pipeline.latest_mutation_id(key))
            return

        if result is None:
            self._cache.remove(key)
        else:
            self._cache.set(key, result.value, version=result.version, modified_at=result.modified_at)
        self._errors.clear(key)
        self._failed_ops.pop(key, None)

    def subscribe(
        self,
        key: CacheKey,
        listener: Callable[[CacheKey, Optional[CacheEntry]], None],
    ) -> Callable[[], None]:
        """Be notified of every change to a key. Returns the unsubscribe callable."""
        return self._cache.subscribe(key, listener)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def mutate(self, key: CacheKey, payload: Any) -> MutationOutcome:
        return await self._write(key, lambda: self._pipeline.mutate(key, payload))

    async def delete(self, key: CacheKey) -> MutationOutcome:
        return await self._write(key, lambda: self._pipeline.delete(key))

    async def _write(
        self,
        key: CacheKey,
        operation: Callable[[], Awaitable[MutationOutcome]],
    ) -> MutationOutcome:
        try:
            outcome = await operation()
        except MutationFailedError:
            self._failed_ops[key] = operation
            raise
        self._failed_ops.pop(key, None)
        return outcome

    async def resolve_conflict(
        self,
        record: Union[ConflictRecord, UUID],
        strategy: Union[ConflictStrategy, str],
    ) -> MutationOutcome:
        return await self._resolver.resolve(record, strategy)

    def pending_conflicts(self) -> list[ConflictRecord]:
        return self._conflicts.pending()

    def describe_conflict(self, record: ConflictRecord) -> ConflictView:
        return describe_conflict(record)

    # -------------------------------------------------------------------------
    # Errors and connectivity
    # -------------------------------------------------------------------------

    def error_state(self, key: CacheKey) -> Optional[ErrorState]:
        return self._errors.state(key)

    def dismiss_error(self, key: CacheKey) -> bool:
        return self._errors.dismiss(key)

    async def retry(self, key: CacheKey) -> Any:
        """
        Re-issue the last failed fetch or write on a key.

        The attempt waits the policy backoff and counts against the key's
        retry budget. A write is sent again with the payload that failed.

        Raises:
            ConflictPendingError: The key is in conflict; resolve it instead
            RetryExhaustedError: Nothing to retry, or no retries left
        """
        state = self._errors.state(key)
        if self._conflicts.has_open(key):
            raise ConflictPendingError(f"unresolved conflict on {key}; resolve it instead", state)
        operation = self._failed_ops.get(key)
        if operation is None:
            raise RetryExhaustedError(f"no failed operation to retry on {key}", state)

        result = await self._errors.retry(key, operation, context="retry")
        self._failed_ops.pop(key, None)
        return result

    def set_online(self) -> None:
        """Resume retries, drop network errors and refetch what they left stale."""
        self._connectivity.set_online()
        for key in self._errors.clear_kind(ErrorKind.NETWORK):
            if isinstance(key, CacheKey) and self._cache.has_subscribers(key):
                self.read(key)

    def set_offline(self) -> None:
        self._connectivity.set_offline()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def collect_garbage(self) -> list[CacheKey]:
        return self._cache.collect_garbage()

    async def aclose(self) -> None:
        for task in list(self._fetches.values()):
            task.cancel()
        await asyncio.gather(*self._fetches.values(), return_exceptions=True)
        await self._backend.aclose()


def create_sync_client(
    backend: Optional[RecordBackend] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
) -> SyncClient:
    """
    Factory function to create the sync client.

    Args:
        backend: Persistence backend. Defaults to the HTTP API from settings.
        audit_storage: Where audit events are persisted.
                       If None, audit events are only logged locally.
    """
    if backend is None:
        backend = HttpRecordBackend()
    return SyncClient(backend, audit_logger=AuditLogger(audit_storage))
