"""
Sync Package

The write path of the client: optimistic mutations, conflict handling,
error classification and retry.
"""

from household_sync.sync.connectivity import ConnectivityMonitor
from household_sync.sync.errors import (
    ConflictPendingError,
    ConflictResolutionError,
    ErrorClassifier,
    ErrorHandler,
    MutationFailedError,
    MutationSupersededError,
    RetryExhaustedError,
    RetryPolicy,
    SyncError,
    build_retry_policies,
)
from household_sync.sync.conflicts import ConflictRegistry, ConflictResolver
from household_sync.sync.pipeline import MutationPipeline
from household_sync.sync.presentation import ConflictView, describe_conflict

__all__ = [
    # Connectivity
    "ConnectivityMonitor",
    # Errors
    "ConflictPendingError",
    "ConflictResolutionError",
    "ErrorClassifier",
    "ErrorHandler",
    "MutationFailedError",
    "MutationSupersededError",
    "RetryExhaustedError",
    "RetryPolicy",
    "SyncError",
    "build_retry_policies",
    # Conflicts
    "ConflictRegistry",
    "ConflictResolver",
    "ConflictView",
    "describe_conflict",
    # Pipeline
    "MutationPipeline",
]
