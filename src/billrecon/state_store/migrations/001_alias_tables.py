"""
Migration 001: Add institution_aliases and merchant_aliases tables.

institution_aliases holds user-defined institution -> account mappings that
take precedence over the built-in alias table. merchant_aliases holds
alternate merchant spellings per bill name, used to widen name matching.
"""

import sqlite3

VERSION = 1
NAME = "alias_tables"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create alias tables."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS institution_aliases (
            user_id TEXT NOT NULL,
            institution_name TEXT NOT NULL,
            account_id TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, institution_name)
        )
    """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS merchant_aliases (
            user_id TEXT NOT NULL,
            bill_name TEXT NOT NULL,  -- lowercased
            aliases TEXT NOT NULL,  -- JSON array
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, bill_name)
        )
    """
    )
