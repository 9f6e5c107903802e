"""
Migration 002: Add reconciliation_runs table.

Audit trail of reconciliation passes: counts per run plus the JSON detail
list, so a re-run after a crash can be compared with the interrupted one.
"""

import sqlite3

VERSION = 2
NAME = "reconciliation_runs"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create reconciliation_runs table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS reconciliation_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            run_id TEXT NOT NULL,
            state TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT,
            transactions_seen INTEGER DEFAULT 0,
            cleared INTEGER DEFAULT 0,
            advanced INTEGER DEFAULT 0,
            generated INTEGER DEFAULT 0,
            skipped INTEGER DEFAULT 0,
            errors TEXT,  -- JSON array
            details TEXT  -- JSON array
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_reconciliation_runs_user ON reconciliation_runs(user_id)"
    )
