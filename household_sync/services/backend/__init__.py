"""
Backend Services Package

Provides the abstract persistence contract and its implementations.
The HTTP API is the production backend; the in-memory one backs tests
and local demos.
"""

from household_sync.services.backend.interface import (
    AuditStorageInterface,
    BackendError,
    NetworkError,
    NotFoundError,
    RecordBackend,
    RequestValidationError,
    UnauthorizedError,
    VersionConflictError,
)
from household_sync.services.backend.http_backend import HttpRecordBackend
from household_sync.services.backend.memory import (
    InMemoryAuditStorage,
    InMemoryRecordBackend,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "RecordBackend",
    # Exceptions
    "BackendError",
    "NetworkError",
    "NotFoundError",
    "RequestValidationError",
    "UnauthorizedError",
    "VersionConflictError",
    # Implementations
    "HttpRecordBackend",
    "InMemoryAuditStorage",
    "InMemoryRecordBackend",
]
