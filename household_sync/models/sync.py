"""
Synchronization Models

The vocabulary of the sync layer: cache keys and entries, pending
mutations, conflict records and error states.

DESIGN DECISION: A CacheKey is the only way to address a resource.
Reads, writes, invalidations and conflicts all go through it, so no
component can reach the cached state bypassing the key model.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from household_sync.models.records import EntityType


def utc_now() -> datetime:
    """Timezone-aware current time (UTC)."""
    return datetime.now(timezone.utc)


# =============================================================================
# KEY MODEL
# =============================================================================

class CacheKey(BaseModel):
    """
    Deterministic fingerprint of a cached resource.

    Two keys built from the same (entity, owner, period, sub id)
    are equal and hash the same.
    """
    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    owner_id: str = Field(..., min_length=1)
    year: int = Field(..., ge=1)
    month: int = Field(..., ge=1, le=12)
    sub_id: Optional[str] = None

    @property
    def parts(self) -> tuple:
        """Key as a tuple, most general part first (used for prefix matching)."""
        base = (self.entity_type.value, self.owner_id, self.year, self.month)
        if self.sub_id is not None:
            return base + (self.sub_id,)
        return base

    def matches(self, prefix: tuple) -> bool:
        """Does this key start with the given parts?"""
        prefix = tuple(
            p.value if isinstance(p, EntityType) else p for p in prefix
        )
        return self.parts[:len(prefix)] == prefix

    def related(
        self,
        entity_type: EntityType,
        months_ahead: int = 0,
    ) -> "CacheKey":
        """Key of another entity for the same owner, optionally in a later month."""
        index = self.year * 12 + (self.month - 1) + months_ahead
        return CacheKey(
            entity_type=entity_type,
            owner_id=self.owner_id,
            year=index // 12,
            month=index % 12 + 1,
        )

    def __str__(self) -> str:
        return "/".join(str(p) for p in self.parts)


class VersionedValue(BaseModel):
    """A value as the server knows it, with its version marker."""

    value: Any = None
    version: Optional[str] = Field(
        default=None,
        description="Opaque, equality-comparable version marker"
    )
    modified_at: Optional[datetime] = None


# =============================================================================
# CACHE ENTRY
# =============================================================================

class CacheEntry(BaseModel):
    """
    Last known value for a key, with its freshness horizons.

    An invalidated entry keeps its value so it can still be displayed
    while a refetch is pending.
    """

    key: CacheKey
    value: Any = None
    version: Optional[str] = None
    modified_at: Optional[datetime] = None
    fetched_at: datetime
    stale_at: datetime
    evict_at: datetime
    invalidated: bool = False

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return self.invalidated or now >= self.stale_at

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return now >= self.evict_at


# =============================================================================
# MUTATIONS
# =============================================================================

class MutationKind(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class MutationStatus(str, Enum):
    """
    Lifecycle of a pending mutation.

    APPLIED is the only non-terminal state.
    """
    APPLIED = "applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    CONFLICTED = "conflicted"

    @property
    def is_terminal(self) -> bool:
        return self is not MutationStatus.APPLIED


class PendingMutation(BaseModel):
    """
    A write that has been optimistically applied but not yet reconciled.

    previous_entry is owned by this mutation alone and is only used
    for rollback.
    """

    mutation_id: UUID = Field(default_factory=uuid4)
    key: CacheKey
    kind: MutationKind = MutationKind.UPSERT
    payload: Any = None
    previous_entry: Optional[CacheEntry] = None
    optimistic_value: Any = None
    expected_version: Optional[str] = None
    status: MutationStatus = MutationStatus.APPLIED
    created_at: datetime = Field(default_factory=utc_now)


class MutationOutcome(BaseModel):
    """What a caller gets back from a mutation that did not fail."""

    mutation_id: UUID
    key: CacheKey
    status: MutationStatus
    value: Any = None
    conflict: Optional["ConflictRecord"] = None

    @property
    def committed(self) -> bool:
        return self.status == MutationStatus.COMMITTED


# =============================================================================
# CONFLICTS
# =============================================================================

class ConflictStrategy(str, Enum):
    """How the operator chose to settle a conflict."""
    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"


class ConflictRecord(BaseModel):
    """
    Two diverged versions of one record, awaiting an operator decision.

    Consumed exactly once by a resolution.
    """

    conflict_id: UUID = Field(default_factory=uuid4)
    mutation_id: UUID
    key: CacheKey
    entity_type: EntityType
    local_value: Any = None
    remote_value: Any = None
    local_modified_at: Optional[datetime] = None
    remote_modified_at: Optional[datetime] = None
    local_payload: Any = None
    remote_version: Optional[str] = None
    resolution_attempts: int = 0
    detected_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# ERRORS AND READS
# =============================================================================

class ErrorKind(str, Enum):
    NETWORK = "network"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN = "unknown"


class ErrorState(BaseModel):
    """A classified failure, as shown to the operator."""

    kind: ErrorKind
    message: str
    retry_count: int = 0
    max_retries: int = 0
    can_retry: bool = False
    detail: Optional[str] = Field(
        default=None,
        description="Raw error text (kept for logs, shown only in debug mode)"
    )
    context: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utc_now)


class ReadResult(BaseModel):
    """Subscribe-and-render view of a key."""

    value: Any = None
    is_stale: bool = False
    is_loading: bool = False
    error: Optional[ErrorState] = None


MutationOutcome.model_rebuild()
