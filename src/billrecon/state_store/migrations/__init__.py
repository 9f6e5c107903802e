"""
Database migrations module.

This module provides versioned, ordered migrations for the SQLite bill store.
Migrations are applied in order and tracked in a migrations table.
"""

from .runner import MigrationRunner, get_all_migrations

__all__ = ["MigrationRunner", "get_all_migrations"]
