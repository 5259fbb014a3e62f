"""
Tests for the SyncClient facade: reads, background fetches, errors and lifecycle.
"""

import asyncio

import pytest

from conftest import settle
from household_sync.audit import AuditLogger
from household_sync.models import AuditEventType, EntityType, ErrorKind
from household_sync.orchestrator import SyncClient, create_sync_client
from household_sync.services.backend import (
    InMemoryAuditStorage,
    InMemoryRecordBackend,
    NetworkError,
    RequestValidationError,
)
from household_sync.sync import MutationFailedError, RetryExhaustedError


class GatedFetchBackend(InMemoryRecordBackend):
    """Fetches read the server value at once but answer only when the gate opens."""

    def __init__(self):
        super().__init__()
        self.fetch_gate = asyncio.Event()
        self.fetch_gate.set()

    async def fetch(self, key):
        current = await super().fetch(key)
        await self.fetch_gate.wait()
        return current


@pytest.fixture
def manual_client(backend, audit_storage, fast_policies) -> SyncClient:
    """Client whose network failures are only retried on request."""
    policies = dict(fast_policies)
    policies[ErrorKind.NETWORK] = fast_policies[ErrorKind.NETWORK].model_copy(update={"automatic": False})
    return SyncClient(backend, audit_logger=AuditLogger(audit_storage), policies=policies, timeout_seconds=1.0)


class TestReads:
    """Reads never block."""

    def test_read_outside_event_loop(self, client, income_key):
        """Without a running loop a read just reports what is cached."""
        result = client.read(income_key)
        assert result.value is None
        assert not result.is_loading
        assert not result.is_stale

    @pytest.mark.asyncio
    async def test_read_schedules_fetch(self, client, backend, income_key):
        """A missing value triggers a background fetch."""
        backend.remote_edit(income_key, {"경훈_월급": 1, "선화_월급": 2})

        first = client.read(income_key)
        assert first.value is None
        assert first.is_loading

        await settle()
        second = client.read(income_key)
        assert second.value.total_income == 3
        assert not second.is_loading
        assert backend.calls_of("fetch") == 1

    @pytest.mark.asyncio
    async def test_concurrent_reads_share_one_fetch(self, client, backend, income_key):
        """Reads of a key already being fetched do not start another fetch."""
        client.read(income_key)
        client.read(income_key)
        await settle()
        assert backend.calls_of("fetch") == 1

    @pytest.mark.asyncio
    async def test_fresh_value_not_refetched(self, client, backend, income_key):
        """load() of a fresh key does not hit the backend."""
        backend.remote_edit(income_key, {"경훈_월급": 1, "선화_월급": 2})
        await client.load(income_key)
        await client.load(income_key)
        assert backend.calls_of("fetch") == 1

    @pytest.mark.asyncio
    async def test_stale_value_still_shown(self, clocked_client, backend, clock, income_key):
        """A stale value is returned flagged while it is refetched."""
        backend.remote_edit(income_key, {"경훈_월급": 1, "선화_월급": 2})
        await clocked_client.load(income_key)
        backend.remote_edit(income_key, {"경훈_월급": 10, "선화_월급": 20})
        clock.advance(minutes=6)

        stale = clocked_client.read(income_key)
        assert stale.is_stale
        assert stale.value.total_income == 3

        await settle()
        fresh = clocked_client.read(income_key)
        assert not fresh.is_stale
        assert fresh.value.total_income == 30

    @pytest.mark.asyncio
    async def test_deleted_remotely(self, client, backend, income_key):
        """A record gone from the server disappears from the cache."""
        client.cache.set(income_key, "old")
        client.cache.invalidate(income_key)
        await client.load(income_key)
        assert income_key not in client.cache

    @pytest.mark.asyncio
    async def test_subscribers_notified(self, client, backend, income_key):
        """Subscribers see fetched values."""
        backend.remote_edit(income_key, {"경훈_월급": 1, "선화_월급": 2})
        seen = []
        unsubscribe = client.subscribe(income_key, lambda key, entry: seen.append(entry))

        await client.load(income_key)
        unsubscribe()

        assert seen[-1].value.total_income == 3


class TestFetchAfterWrite:
    """A fetch overtaken by a write never shows the older server value."""

    @pytest.mark.asyncio
    async def test_fetch_started_before_write_is_discarded(self, audit_storage, fast_policies, income_key):
        """The committed value survives a fetch that read the server before the write landed."""
        backend = GatedFetchBackend()
        backend.remote_edit(income_key, {"경훈_월급": 5_000_000, "선화_월급": 5_000_000})
        client = SyncClient(backend, audit_logger=AuditLogger(audit_storage), policies=fast_policies)
        await client.load(income_key)

        backend.fetch_gate.clear()
        client.cache.invalidate(income_key)
        client.read(income_key)
        await settle()
        assert client.read(income_key).is_loading

        outcome = await client.mutate(income_key, {"경훈_월급": 3_000_000, "선화_월급": 4_000_000})
        assert outcome.committed

        backend.fetch_gate.set()
        await settle()

        assert backend.calls_of("fetch") == 2
        assert client.cache.get(income_key).total_income == 7_000_000
        assert not client.cache.is_stale(income_key)
        discarded = [e for e in audit_storage.events if e.event_type == AuditEventType.FETCH_DISCARDED]
        assert len(discarded) == 1
        assert discarded[0].correlation_id == outcome.mutation_id

    @pytest.mark.asyncio
    async def test_fetch_into_empty_key_discarded_after_write(self, fast_policies, income_key):
        """A first load racing a write does not replace the written record."""
        backend = GatedFetchBackend()
        backend.remote_edit(income_key, {"경훈_월급": 5_000_000, "선화_월급": 5_000_000})
        backend.fetch_gate.clear()
        client = SyncClient(backend, policies=fast_policies)

        client.read(income_key)
        await settle()
        outcome = await client.mutate(income_key, {"경훈_월급": 1_000_000, "선화_월급": 0})
        backend.fetch_gate.set()
        await settle()

        assert outcome.committed
        assert client.cache.get(income_key).total_income == 1_000_000

    @pytest.mark.asyncio
    async def test_fetch_after_write_is_applied(self, client, backend, income_key, income_payload):
        """Fetches started once the write has settled are used normally."""
        await client.mutate(income_key, income_payload)
        backend.remote_edit(income_key, {"경훈_월급": 1, "선화_월급": 2})

        result = await client.load(income_key, force=True)

        assert result.value.total_income == 3


class TestFetchFailures:
    """Failed fetches keep what is displayable."""

    @pytest.mark.asyncio
    async def test_failure_keeps_cached_value(self, client, backend, audit_storage, income_key):
        """The last known value survives a failed refetch; the error is reported."""
        backend.remote_edit(income_key, {"경훈_월급": 1, "선화_월급": 2})
        await client.load(income_key)
        client.cache.invalidate(income_key)
        backend.fail_next("fetch", NetworkError("connection refused"), times=4)

        result = await client.load(income_key)

        assert result.value.total_income == 3
        assert result.is_stale
        assert result.error.kind is ErrorKind.NETWORK
        assert result.error.retry_count == 3
        assert backend.calls_of("fetch") == 5
        failed = [e for e in audit_storage.events if e.event_type == AuditEventType.FETCH_FAILED]
        assert len(failed) == 1

    @pytest.mark.asyncio
    async def test_dismiss_error(self, client, backend, income_key):
        """Dismissing clears the reported error."""
        backend.fail_next("fetch", NetworkError("down"), times=4)
        await client.load(income_key)
        assert client.dismiss_error(income_key)
        assert client.read(income_key).error is None
        await settle()

    @pytest.mark.asyncio
    async def test_back_online_clears_network_errors(self, client, backend, income_key):
        """Restoring connectivity drops network errors and refetches observed keys."""
        backend.remote_edit(income_key, {"경훈_월급": 1, "선화_월급": 2})
        backend.fail_next("fetch", NetworkError("down"), times=4)
        client.subscribe(income_key, lambda key, entry: None)
        await client.load(income_key)
        assert client.error_state(income_key) is not None

        client.set_offline()
        client.set_online()
        await settle()

        assert client.error_state(income_key) is None
        assert client.cache.get(income_key).total_income == 3

    @pytest.mark.asyncio
    async def test_success_clears_error(self, client, backend, income_key):
        """A later successful fetch clears the error state."""
        backend.remote_edit(income_key, {"경훈_월급": 1, "선화_월급": 2})
        backend.fail_next("fetch", NetworkError("down"), times=4)
        await client.load(income_key)
        await client.load(income_key, force=True)
        assert client.error_state(income_key) is None


class TestExplicitRetry:
    """The operator can re-run the last failed operation on a key."""

    @pytest.mark.asyncio
    async def test_retry_failed_write(self, manual_client, backend, income_key, income_payload):
        """The write is sent again with the same payload and committed."""
        backend.fail_next("submit", NetworkError("connection reset"))
        with pytest.raises(MutationFailedError) as exc_info:
            await manual_client.mutate(income_key, income_payload)
        assert exc_info.value.state.can_retry
        assert income_key not in manual_client.cache

        outcome = await manual_client.retry(income_key)

        assert outcome.committed
        assert backend.calls_of("submit") == 2
        assert backend.current(income_key).value.total_income == 11_000_000
        assert manual_client.error_state(income_key) is None

    @pytest.mark.asyncio
    async def test_retry_failed_fetch(self, manual_client, backend, income_key):
        """A failed load can be re-run; success clears the error."""
        backend.remote_edit(income_key, {"경훈_월급": 1, "선화_월급": 2})
        backend.fail_next("fetch", NetworkError("down"))
        result = await manual_client.load(income_key)
        assert result.error.can_retry

        refreshed = await manual_client.retry(income_key)

        assert refreshed.value.total_income == 3
        assert refreshed.error is None
        assert manual_client.error_state(income_key) is None

    @pytest.mark.asyncio
    async def test_failed_retry_counts_against_budget(self, manual_client, backend, income_key, income_payload):
        """A retry that fails again keeps the network kind and counts the attempt."""
        backend.fail_next("submit", NetworkError("connection reset"), times=2)
        with pytest.raises(MutationFailedError):
            await manual_client.mutate(income_key, income_payload)

        with pytest.raises(MutationFailedError):
            await manual_client.retry(income_key)

        state = manual_client.error_state(income_key)
        assert state.kind is ErrorKind.NETWORK
        assert state.retry_count == 1
        assert state.can_retry

    @pytest.mark.asyncio
    async def test_terminal_failure_cannot_be_retried(self, client, backend, income_key, income_payload):
        """Validation failures stay terminal."""
        backend.fail_next("submit", RequestValidationError("invalid amount", status_code=422))
        with pytest.raises(MutationFailedError):
            await client.mutate(income_key, income_payload)

        with pytest.raises(RetryExhaustedError):
            await client.retry(income_key)
        assert backend.calls_of("submit") == 1

    @pytest.mark.asyncio
    async def test_nothing_to_retry(self, client, income_key):
        """A key without a failure has nothing to retry."""
        with pytest.raises(RetryExhaustedError):
            await client.retry(income_key)


class TestLifecycle:
    """Construction, garbage collection and shutdown."""

    def test_key_for_defaults_owner(self, client):
        """Keys default to the configured household."""
        key = client.key_for("income", 2025, 9)
        assert key.entity_type is EntityType.INCOME
        assert key.owner_id == "household"
        assert client.key_for(EntityType.ACCOUNTS, 2025, 9, sub_id="acc-1").sub_id == "acc-1"

    @pytest.mark.asyncio
    async def test_collect_garbage(self, clocked_client, backend, clock, income_key):
        """Only unobserved entries past the GC horizon are evicted."""
        watched = income_key.model_copy(update={"month": 10})
        clocked_client.cache.set(income_key, 1)
        clocked_client.cache.set(watched, 2)
        clocked_client.subscribe(watched, lambda key, entry: None)
        clock.advance(minutes=11)

        assert clocked_client.collect_garbage() == [income_key]
        assert watched in clocked_client.cache

    @pytest.mark.asyncio
    async def test_audit_correlation(self, client, audit_storage, income_key, income_payload):
        """All events of one write can be found by its mutation id."""
        outcome = await client.mutate(income_key, income_payload)
        trail = await audit_storage.get_events_by_correlation_id(outcome.mutation_id)
        assert trail
        assert all(e.entity_id == str(income_key) for e in trail if e.entity_id)

        by_entity = await audit_storage.get_events_by_entity(str(income_key))
        assert [e.event_id for e in by_entity] == [e.event_id for e in trail if e.entity_id]
        recent = await audit_storage.get_recent_events(limit=1)
        assert recent == [audit_storage.events[-1]]

    @pytest.mark.asyncio
    async def test_create_sync_client(self, income_key, income_payload):
        """The factory wires a working client around a given backend."""
        backend = InMemoryRecordBackend()
        storage = InMemoryAuditStorage()
        client = create_sync_client(backend=backend, audit_storage=storage)

        outcome = await client.mutate(income_key, income_payload)

        assert isinstance(client, SyncClient)
        assert outcome.committed
        assert storage.events
        await client.aclose()

    @pytest.mark.asyncio
    async def test_broken_audit_store_does_not_fail_writes(self, backend, fast_policies, income_key, income_payload):
        """Audit persistence failures are logged, not raised."""

        class BrokenStorage(InMemoryAuditStorage):
            async def append_event(self, event):
                raise RuntimeError("disk full")

        client = SyncClient(backend, audit_logger=AuditLogger(BrokenStorage()), policies=fast_policies)
        outcome = await client.mutate(income_key, income_payload)
        assert outcome.committed


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
