"""
State Store (SQLite-based).

Lightweight persistent document store for tracking:
- Recurring patterns and their next occurrence
- Bill instances and their paid state
- Payment history and reconciliation runs
- Institution and merchant aliases

Enforces one bill per (pattern, due date).
"""

from .interface import DocumentStore, StoreError
from .sqlite_store import StateStore

__all__ = [
    "DocumentStore",
    "StateStore",
    "StoreError",
]
