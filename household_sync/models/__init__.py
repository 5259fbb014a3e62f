"""
Data Models Package

This package contains all Pydantic models used by the sync layer.
All data flowing through the cache and the pipeline conforms to these schemas.
"""

from household_sync.models.records import (
    Account,
    AccountFormData,
    AccountType,
    EntityType,
    ExpenseFormData,
    FinancialRecord,
    IncomeFormData,
    MonthlyExpenses,
    MonthlyIncome,
    MonthlySavings,
    SavingsFormData,
    SavingsType,
)
from household_sync.models.sync import (
    CacheEntry,
    CacheKey,
    ConflictRecord,
    ConflictStrategy,
    ErrorKind,
    ErrorState,
    MutationKind,
    MutationOutcome,
    MutationStatus,
    PendingMutation,
    ReadResult,
    VersionedValue,
    utc_now,
)
from household_sync.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Record models
    "Account",
    "AccountFormData",
    "AccountType",
    "EntityType",
    "ExpenseFormData",
    "FinancialRecord",
    "IncomeFormData",
    "MonthlyExpenses",
    "MonthlyIncome",
    "MonthlySavings",
    "SavingsFormData",
    "SavingsType",
    # Sync models
    "CacheEntry",
    "CacheKey",
    "ConflictRecord",
    "ConflictStrategy",
    "ErrorKind",
    "ErrorState",
    "MutationKind",
    "MutationOutcome",
    "MutationStatus",
    "PendingMutation",
    "ReadResult",
    "VersionedValue",
    "utc_now",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
