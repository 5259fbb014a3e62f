"""Audit logging package."""

from household_sync.audit.logger import AuditLogger

__all__ = ["AuditLogger"]
