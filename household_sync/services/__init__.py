"""Services package."""

from household_sync.services.backend import (
    AuditStorageInterface,
    BackendError,
    HttpRecordBackend,
    InMemoryAuditStorage,
    InMemoryRecordBackend,
    NetworkError,
    NotFoundError,
    RecordBackend,
    RequestValidationError,
    UnauthorizedError,
    VersionConflictError,
)

__all__ = [
    "AuditStorageInterface",
    "BackendError",
    "HttpRecordBackend",
    "InMemoryAuditStorage",
    "InMemoryRecordBackend",
    "NetworkError",
    "NotFoundError",
    "RecordBackend",
    "RequestValidationError",
    "UnauthorizedError",
    "VersionConflictError",
]
