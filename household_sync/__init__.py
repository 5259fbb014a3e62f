"""
Household Sync - Source Package

Client-side synchronization core for the household finance tracker:
a key-addressed read cache, an optimistic mutation pipeline and an
operator-driven conflict workflow.

DESIGN PRINCIPLES:
1. Writes feel instant, but never lie: every failed write is rolled back exactly
2. Conflicts are never auto-resolved
3. Retries are bounded and only for transient failures
4. Every step must be auditable
5. The persistence backend is swappable
"""

__version__ = "1.0.0"
__author__ = "Household Finance Team"
