"""
Abstract Backend Interface

DESIGN DECISION: The sync layer talks to persistence through a small
abstract contract. This allows us to:
1. Talk to the finance HTTP API in production
2. Use in-memory storage for testing
3. Keep the pipeline decoupled from transport details

The contract is deliberately tiny: fetch a record, submit a record with
the version marker the client last saw, delete a record.
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from household_sync.models.audit import AuditEvent
from household_sync.models.sync import CacheKey, VersionedValue


class RecordBackend(ABC):
    """
    Abstract interface for the persistence backend.

    Any implementation (HTTP API, in-memory, etc.) must implement these
    methods and raise the exceptions defined below.
    """

    @abstractmethod
    async def fetch(self, key: CacheKey) -> Optional[VersionedValue]:
        """
        Read the current value of a resource.

        Args:
            key: The resource to read

        Returns:
            The value with its version marker, or None if it does not exist

        Raises:
            BackendError: If the read fails
        """
        pass

    @abstractmethod
    async def submit(
        self,
        key: CacheKey,
        payload: BaseModel,
        expected_version: Optional[str] = None,
    ) -> VersionedValue:
        """
        Create or update a record.

        Args:
            key: The record to write
            payload: Validated form data
            expected_version: Version marker the client last observed.
                              None means unconditional overwrite.

        Returns:
            The server-confirmed value and its new version marker.
            value is None when the server accepted the write without a body.

        Raises:
            VersionConflictError: If the server's marker differs from expected_version
            BackendError: If the write fails for any other reason
        """
        pass

    @abstractmethod
    async def delete(
        self,
        key: CacheKey,
        expected_version: Optional[str] = None,
    ) -> None:
        """
        Delete a record.

        Raises:
            VersionConflictError: If the record changed since expected_version
            NotFoundError: If the record does not exist
        """
        pass

    async def aclose(self) -> None:
        """Release transport resources."""
        return None


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events of one mutation, in chronological order.
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for one cache key, in chronological order.
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events (newest first).
        """
        pass


class BackendError(Exception):
    """Base exception for backend operations."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class NetworkError(BackendError):
    """The backend could not be reached (connection failure or timeout)."""
    pass


class RequestValidationError(BackendError):
    """The backend rejected the payload as invalid."""
    pass


class UnauthorizedError(BackendError):
    """Missing or invalid credentials."""
    pass


class NotFoundError(BackendError):
    """Record not found in storage."""
    pass


class VersionConflictError(BackendError):
    """
    The record was modified remotely since the client last saw it.

    Carries the server's current value so a conflict record can be built
    without a second round trip.
    """

    def __init__(
        self,
        current: VersionedValue,
        message: str = "version conflict",
        status_code: Optional[int] = 409,
    ):
        self.current = current
        super().__init__(message, status_code=status_code)
