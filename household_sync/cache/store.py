"""
Read Cache

DESIGN DECISION: One process-wide, key-addressed cache holds the last known
value of every resource. Everything that reads or writes cached state goes
through this class:
- reads are synchronous and never block
- writes are last-write-wins per key (ordering is the pipeline's job)
- invalidation marks entries stale but keeps the value displayable
- eviction only happens past the GC horizon and with no subscriber left
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

import structlog

from household_sync.models.sync import CacheEntry, CacheKey, utc_now


Listener = Callable[[CacheKey, Optional[CacheEntry]], None]
KeyOrPrefix = Union[CacheKey, tuple]

logger = structlog.get_logger(__name__)


class ReadCache:
    """
    Key-addressed store of last known values.

    Subscribers are notified synchronously whenever their key changes
    (set, invalidate, restore, remove or evict).
    """

    def __init__(
        self,
        stale_time: timedelta = timedelta(minutes=5),
        gc_time: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utc_now,
    ):
        self._stale_time = stale_time
        self._gc_time = gc_time
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._listeners: dict[CacheKey, list[Listener]] = defaultdict(list)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def get(self, key: CacheKey) -> Any:
        """Last known value, or None if the key has never been loaded."""
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def get_entry(self, key: CacheKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def is_stale(self, key: CacheKey) -> bool:
        """True if absent, invalidated or past the staleness horizon."""
        entry = self._entries.get(key)
        return entry is None or entry.is_stale(self._clock())

    def set(
        self,
        key: CacheKey,
        value: Any,
        version: Optional[str] = None,
        modified_at: Optional[datetime] = None,
    ) -> CacheEntry:
        """Overwrite the entry unconditionally and reset its horizons."""
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            version=version,
            modified_at=modified_at,
            fetched_at=now,
            stale_at=now + self._stale_time,
            evict_at=now + self._gc_time,
        )
        self._entries[key] = entry
        self._notify(key, entry)
        return entry

    def invalidate(self, key_or_prefix: KeyOrPrefix) -> list[CacheKey]:
        """
        Mark matching entries stale without deleting them.

        Args:
            key_or_prefix: An exact key, or a tuple prefix of key parts
                           such as ("income", "household").

        Returns:
            The keys that were invalidated
        """
        if isinstance(key_or_prefix, CacheKey):
            matched = [key_or_prefix] if key_or_prefix in self._entries else []
        else:
            matched = [k for k in self._entries if k.matches(key_or_prefix)]

        for key in matched:
            entry = self._entries[key].model_copy(update={"invalidated": True})
            self._entries[key] = entry
            self._notify(key, entry)
        return matched

    def snapshot(self, key: CacheKey) -> Optional[CacheEntry]:
        """Independent copy of the entry (None if absent), for exact rollback."""
        entry = self._entries.get(key)
        return entry.model_copy(deep=True) if entry is not None else None

    def restore(self, key: CacheKey, snapshot: Optional[CacheEntry]) -> None:
        """Put an entry back exactly as it was snapshotted, including absence."""
        if snapshot is None:
            self.remove(key)
            return
        self._entries[key] = snapshot.model_copy(deep=True)
        self._notify(key, self._entries[key])

    def remove(self, key: CacheKey) -> bool:
        """Drop an entry regardless of its horizons (used by rollback and deletes)."""
        if self._entries.pop(key, None) is None:
            return False
        self._notify(key, None)
        return True

    def has_subscribers(self, key: CacheKey) -> bool:
        return bool(self._listeners.get(key))

    def evict(self, key: CacheKey) -> bool:
        """
        Remove an entry once it is past its GC horizon and nobody observes it.

        Returns:
            True if the entry was evicted
        """
        entry = self._entries.get(key)
        if entry is None or not entry.is_expired(self._clock()):
            return False
        if self.has_subscribers(key):
            return False
        del self._entries[key]
        logger.debug("cache_entry_evicted", key=str(key))
        return True

    def collect_garbage(self) -> list[CacheKey]:
        """Evict every eligible entry."""
        return [key for key in list(self._entries) if self.evict(key)]

    def subscribe(self, key: CacheKey, listener: Listener) -> Callable[[], None]:
        """
        Register a reader for a key.

        Returns:
            A callable that removes the subscription
        """
        self._listeners[key].append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(key, None)

        return unsubscribe

    def _notify(self, key: CacheKey, entry: Optional[CacheEntry]) -> None:
        for listener in list(self._listeners.get(key, ())):
            try:
                listener(key, entry)
            except Exception as e:
                # A broken subscriber must not break the write path
                logger.error("cache_listener_failed", key=str(key), error=str(e))
