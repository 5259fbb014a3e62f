"""Shared fixtures: an in-memory backend, a fast retry table and a controllable clock."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from household_sync.audit import AuditLogger
from household_sync.cache import ReadCache
from household_sync.config import RetrySettings
from household_sync.models import CacheKey, EntityType, ErrorKind
from household_sync.orchestrator import SyncClient
from household_sync.services.backend import InMemoryAuditStorage, InMemoryRecordBackend
from household_sync.sync import build_retry_policies


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2025, 9, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


async def settle(rounds: int = 20) -> None:
    """Let every ready task run until it blocks."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_policies():
    """Default retry table with no backoff delay."""
    policies = build_retry_policies(RetrySettings())
    policies[ErrorKind.NETWORK] = policies[ErrorKind.NETWORK].model_copy(
        update={"base_delay_seconds": 0.0}
    )
    return policies


@pytest.fixture
def backend() -> InMemoryRecordBackend:
    return InMemoryRecordBackend()


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def client(backend, audit_storage, fast_policies) -> SyncClient:
    return SyncClient(
        backend,
        audit_logger=AuditLogger(audit_storage),
        policies=fast_policies,
        timeout_seconds=1.0,
        debug=False,
    )


@pytest.fixture
def clocked_client(backend, audit_storage, fast_policies, clock) -> SyncClient:
    return SyncClient(
        backend,
        cache=ReadCache(clock=clock),
        audit_logger=AuditLogger(audit_storage),
        policies=fast_policies,
        timeout_seconds=1.0,
    )


@pytest.fixture
def income_key() -> CacheKey:
    return CacheKey(entity_type=EntityType.INCOME, owner_id="household", year=2025, month=9)


@pytest.fixture
def income_payload() -> dict:
    return {"경훈_월급": 5_000_000, "선화_월급": 6_000_000}
