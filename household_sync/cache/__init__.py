"""Read cache package."""

from household_sync.cache.store import ReadCache

__all__ = ["ReadCache"]
