"""
Migration 003: Add unmark audit columns to bills.

last_unmarked_at / last_unmarked_by record who reverted a paid bill and
when. A bill can be unmarked once; afterwards can_be_unmarked stays 0.
"""

import sqlite3

VERSION = 3
NAME = "bill_unmark_audit"


def upgrade(conn: sqlite3.Connection) -> None:
    """Add unmark audit columns to bills table."""
    cursor = conn.execute("PRAGMA table_info(bills)")
    columns = [row[1] for row in cursor.fetchall()]

    if "last_unmarked_at" not in columns:
        conn.execute("ALTER TABLE bills ADD COLUMN last_unmarked_at TEXT")
    if "last_unmarked_by" not in columns:
        conn.execute("ALTER TABLE bills ADD COLUMN last_unmarked_by TEXT")
