"""
SQLite-based document store implementation.

Tables:
- recurring_patterns: Recurring obligation templates
- bills: Concrete bill instances (unique per pattern + due date)
- bill_payments: Payment history, one row per (bill, transaction, paid date)
- institution_aliases / merchant_aliases: User alias tables (migration 001)
- reconciliation_runs: Audit trail of reconciliation passes (migration 002)

Every row is scoped to one user_id. Conditional writes are single UPDATE
statements whose WHERE clause carries the guard, so the check and the write
cannot interleave with another writer.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from billrecon.schemas.records import (
    BillInstance,
    BillStatus,
    Frequency,
    PatternStatus,
    PaymentOutcome,
    PaymentRecord,
    RecurringPattern,
)

from .interface import DocumentStore, StoreError

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _pattern_from_row(row: sqlite3.Row) -> RecurringPattern:
    """Create a pattern from a database row."""
    last_status = row["last_payment_status"]
    return RecurringPattern(
        id=row["id"],
        name=row["name"],
        amount=Decimal(row["amount"]),
        frequency=Frequency(row["frequency"]),
        next_occurrence=date.fromisoformat(row["next_occurrence"]),
        category=row["category"] or "",
        status=PatternStatus(row["status"]),
        linked_account_id=row["linked_account_id"],
        active_months=json.loads(row["active_months"]) if row["active_months"] else None,
        start_date=_date(row["start_date"]),
        end_date=_date(row["end_date"]),
        last_paid_date=_date(row["last_paid_date"]),
        last_payment_status=PaymentOutcome(last_status) if last_status else None,
        day_of_month=row["day_of_month"],
        merchant_names=json.loads(row["merchant_names"]) if row["merchant_names"] else [],
        type=row["type"] or "expense",
    )


def _bill_from_row(row: sqlite3.Row) -> BillInstance:
    """Create a bill from a database row."""
    return BillInstance(
        id=row["id"],
        name=row["name"],
        amount=Decimal(row["amount"]),
        due_date=date.fromisoformat(row["due_date"]),
        recurrence=Frequency(row["recurrence"]),
        recurring_pattern_id=row["recurring_pattern_id"],
        category=row["category"] or "",
        is_paid=bool(row["is_paid"]),
        status=BillStatus(row["status"]),
        paid_date=_date(row["paid_date"]),
        paid_amount=Decimal(row["paid_amount"]) if row["paid_amount"] is not None else None,
        linked_transaction_id=row["linked_transaction_id"],
        merchant_names=json.loads(row["merchant_names"]) if row["merchant_names"] else [],
        original_due_date=_date(row["original_due_date"]),
        marked_by=row["marked_by"],
        marked_via=row["marked_via"],
        marked_at=datetime.fromisoformat(row["marked_at"]) if row["marked_at"] else None,
        can_be_unmarked=bool(row["can_be_unmarked"]),
        created_from=row["created_from"],
    )


def _payment_from_row(row: sqlite3.Row) -> PaymentRecord:
    """Create a payment record from a database row."""
    return PaymentRecord(
        bill_id=row["bill_id"],
        bill_name=row["bill_name"],
        amount=Decimal(row["amount"]),
        due_date=date.fromisoformat(row["due_date"]),
        paid_date=date.fromisoformat(row["paid_date"]),
        payment_method=row["payment_method"],
        recurring_pattern_id=row["recurring_pattern_id"],
        linked_transaction_id=row["linked_transaction_id"] or None,
        category=row["category"] or "",
    )


_BILL_COLUMNS = (
    "user_id, id, name, amount, due_date, recurrence, recurring_pattern_id, category, "
    "is_paid, status, paid_date, paid_amount, linked_transaction_id, merchant_names, "
    "original_due_date, marked_by, marked_via, marked_at, can_be_unmarked, created_from, "
    "created_at, updated_at"
)


class StateStore(DocumentStore):
    """
    SQLite-based document store for one user's bills.

    Provides persistent tracking of:
    - Recurring patterns and their next occurrence
    - Bill instances and their paid state
    - Payment history
    - Institution and merchant aliases
    - Reconciliation runs (audit trail)

    Safe for single-writer scenarios; conditional writes keep repeated
    runs idempotent.
    """

    SCHEMA_VERSION = 1

    def __init__(
        self, db_path: Path | str, user_id: str = "default", run_migrations: bool = True
    ):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            user_id: Owner of every row read or written through this store
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.user_id = user_id
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        Raises:
            StoreError: If SQLite reports an error (the transaction is rolled back)
        """
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS recurring_patterns (
                    user_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    category TEXT,
                    frequency TEXT NOT NULL,
                    next_occurrence TEXT NOT NULL,
                    status TEXT NOT NULL,
                    linked_account_id TEXT,
                    active_months TEXT,  -- JSON array of 1-12
                    start_date TEXT,
                    end_date TEXT,
                    last_paid_date TEXT,
                    last_payment_status TEXT,
                    day_of_month INTEGER,
                    merchant_names TEXT,  -- JSON array
                    type TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bills (
                    user_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    due_date TEXT NOT NULL,
                    recurrence TEXT NOT NULL,
                    recurring_pattern_id TEXT,
                    category TEXT,
                    is_paid INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    paid_date TEXT,
                    paid_amount TEXT,
                    linked_transaction_id TEXT,
                    merchant_names TEXT,  -- JSON array
                    original_due_date TEXT,
                    marked_by TEXT,
                    marked_via TEXT,
                    marked_at TEXT,
                    can_be_unmarked INTEGER NOT NULL DEFAULT 1,
                    created_from TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bill_payments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    bill_id TEXT NOT NULL,
                    bill_name TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    due_date TEXT NOT NULL,
                    paid_date TEXT NOT NULL,
                    payment_month TEXT NOT NULL,  -- YYYY-MM
                    year INTEGER NOT NULL,
                    quarter INTEGER NOT NULL,
                    is_overdue INTEGER NOT NULL,
                    days_past_due INTEGER NOT NULL,
                    payment_method TEXT NOT NULL,
                    recurring_pattern_id TEXT,
                    linked_transaction_id TEXT NOT NULL DEFAULT '',
                    category TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (user_id, bill_id, linked_transaction_id, paid_date)
                )
            """
            )

            # One bill per pattern and due date
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_bills_pattern_due
                ON bills(user_id, recurring_pattern_id, due_date)
                WHERE recurring_pattern_id IS NOT NULL
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bills_is_paid ON bills(user_id, is_paid)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bills_transaction "
                "ON bills(user_id, linked_transaction_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bill_payments_bill "
                "ON bill_payments(user_id, bill_id)"
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        except sqlite3.Error as e:
            raise StoreError(f"Migration failed: {e}") from e
        finally:
            conn.close()

    # === Recurring Patterns ===

    def save_pattern(self, pattern: RecurringPattern) -> RecurringPattern:
        """Insert or replace a pattern. Assigns an id when it has none."""
        if not pattern.id:
            pattern.id = uuid.uuid4().hex
        now = _now_iso()

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO recurring_patterns
                (user_id, id, name, amount, category, frequency, next_occurrence, status,
                 linked_account_id, active_months, start_date, end_date, last_paid_date,
                 last_payment_status, day_of_month, merchant_names, type,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, id) DO UPDATE SET
                    name = excluded.name,
                    amount = excluded.amount,
                    category = excluded.category,
                    frequency = excluded.frequency,
                    next_occurrence = excluded.next_occurrence,
                    status = excluded.status,
                    linked_account_id = excluded.linked_account_id,
                    active_months = excluded.active_months,
                    start_date = excluded.start_date,
                    end_date = excluded.end_date,
                    last_paid_date = excluded.last_paid_date,
                    last_payment_status = excluded.last_payment_status,
                    day_of_month = excluded.day_of_month,
                    merchant_names = excluded.merchant_names,
                    type = excluded.type,
                    updated_at = excluded.updated_at
            """,
                (
                    self.user_id,
                    pattern.id,
                    pattern.name,
                    str(pattern.amount),
                    pattern.category,
                    pattern.frequency.value,
                    pattern.next_occurrence.isoformat(),
                    pattern.status.value,
                    pattern.linked_account_id,
                    json.dumps(pattern.active_months) if pattern.active_months else None,
                    _iso(pattern.start_date),
                    _iso(pattern.end_date),
                    _iso(pattern.last_paid_date),
                    pattern.last_payment_status.value if pattern.last_payment_status else None,
                    pattern.day_of_month,
                    json.dumps(pattern.merchant_names),
                    pattern.type,
                    now,
                    now,
                ),
            )
        return pattern

    def get_pattern(self, pattern_id: str) -> RecurringPattern | None:
        """Get a pattern by id."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM recurring_patterns WHERE user_id = ? AND id = ?",
                (self.user_id, pattern_id),
            ).fetchone()
            return _pattern_from_row(row) if row else None

    def list_patterns(self, status: PatternStatus | None = None) -> list[RecurringPattern]:
        """All patterns, optionally filtered by stored status, by next occurrence."""
        query = "SELECT * FROM recurring_patterns WHERE user_id = ?"
        params: list[Any] = [self.user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY next_occurrence, id"

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [_pattern_from_row(row) for row in rows]

    def advance_pattern(
        self,
        pattern_id: str,
        expected_next: date,
        new_next: date,
        paid_date: date,
        anchor_day: int | None = None,
    ) -> bool:
        """Move next_occurrence forward only if it still equals expected_next."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE recurring_patterns
                SET next_occurrence = ?, last_paid_date = ?, last_payment_status = ?,
                    day_of_month = COALESCE(day_of_month, ?), updated_at = ?
                WHERE user_id = ? AND id = ? AND next_occurrence = ?
            """,
                (
                    new_next.isoformat(),
                    paid_date.isoformat(),
                    PaymentOutcome.SUCCESS.value,
                    anchor_day,
                    _now_iso(),
                    self.user_id,
                    pattern_id,
                    expected_next.isoformat(),
                ),
            )
            return cursor.rowcount > 0

    def update_pattern_status(self, pattern_id: str, status: PatternStatus) -> bool:
        """Set the stored status."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE recurring_patterns SET status = ?, updated_at = ?
                WHERE user_id = ? AND id = ?
            """,
                (status.value, _now_iso(), self.user_id, pattern_id),
            )
            return cursor.rowcount > 0

    # === Bills ===

    def _bill_params(self, bill: BillInstance, now: str) -> tuple:
        return (
            self.user_id,
            bill.id,
            bill.name,
            str(bill.amount),
            bill.due_date.isoformat(),
            bill.recurrence.value,
            bill.recurring_pattern_id,
            bill.category,
            int(bill.is_paid),
            bill.status.value,
            _iso(bill.paid_date),
            str(bill.paid_amount) if bill.paid_amount is not None else None,
            bill.linked_transaction_id,
            json.dumps(bill.merchant_names),
            _iso(bill.original_due_date),
            bill.marked_by,
            bill.marked_via,
            _iso(bill.marked_at),
            int(bill.can_be_unmarked),
            bill.created_from,
            now,
            now,
        )

    def save_bill(self, bill: BillInstance) -> BillInstance:
        """Insert or update a bill. Assigns an id when it has none.

        Raises:
            StoreError: If another bill already exists for the same pattern
                and due date
        """
        if not bill.id:
            bill.id = uuid.uuid4().hex
        placeholders = ", ".join("?" * 22)

        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO bills ({_BILL_COLUMNS}) VALUES ({placeholders})
                ON CONFLICT(user_id, id) DO UPDATE SET
                    name = excluded.name,
                    amount = excluded.amount,
                    due_date = excluded.due_date,
                    recurrence = excluded.recurrence,
                    recurring_pattern_id = excluded.recurring_pattern_id,
                    category = excluded.category,
                    is_paid = excluded.is_paid,
                    status = excluded.status,
                    paid_date = excluded.paid_date,
                    paid_amount = excluded.paid_amount,
                    linked_transaction_id = excluded.linked_transaction_id,
                    merchant_names = excluded.merchant_names,
                    original_due_date = excluded.original_due_date,
                    marked_by = excluded.marked_by,
                    marked_via = excluded.marked_via,
                    marked_at = excluded.marked_at,
                    can_be_unmarked = excluded.can_be_unmarked,
                    created_from = excluded.created_from,
                    updated_at = excluded.updated_at
            """,
                self._bill_params(bill, _now_iso()),
            )
        return bill

    def insert_bill_if_absent(self, bill: BillInstance) -> bool:
        """Insert a bill unless its id, or its pattern + due date, already exists."""
        if not bill.id:
            bill.id = uuid.uuid4().hex
        placeholders = ", ".join("?" * 22)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"INSERT OR IGNORE INTO bills ({_BILL_COLUMNS}) VALUES ({placeholders})",
                self._bill_params(bill, _now_iso()),
            )
            return cursor.rowcount > 0

    def get_bill(self, bill_id: str) -> BillInstance | None:
        """Get a bill by id."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM bills WHERE user_id = ? AND id = ?", (self.user_id, bill_id)
            ).fetchone()
            return _bill_from_row(row) if row else None

    def find_bills(
        self,
        is_paid: bool | None = None,
        recurring_pattern_id: str | None = None,
        due_date: date | None = None,
    ) -> list[BillInstance]:
        """Bills matching all given equality filters, oldest due date first."""
        query = "SELECT * FROM bills WHERE user_id = ?"
        params: list[Any] = [self.user_id]
        if is_paid is not None:
            query += " AND is_paid = ?"
            params.append(int(is_paid))
        if recurring_pattern_id is not None:
            query += " AND recurring_pattern_id = ?"
            params.append(recurring_pattern_id)
        if due_date is not None:
            query += " AND due_date = ?"
            params.append(due_date.isoformat())
        query += " ORDER BY due_date, id"

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [_bill_from_row(row) for row in rows]

    def bill_exists(self, recurring_pattern_id: str, due_date: date) -> bool:
        """Check if a bill exists for the pattern and due date."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM bills
                WHERE user_id = ? AND recurring_pattern_id = ? AND due_date = ?
            """,
                (self.user_id, recurring_pattern_id, due_date.isoformat()),
            ).fetchone()
            return row is not None

    def count_unpaid_bills(self, recurring_pattern_id: str) -> int:
        """Number of unpaid bills for a pattern."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM bills
                WHERE user_id = ? AND recurring_pattern_id = ? AND is_paid = 0
            """,
                (self.user_id, recurring_pattern_id),
            ).fetchone()
            return row[0]

    def find_bill_by_transaction(self, transaction_id: str) -> BillInstance | None:
        """Bill already linked to the transaction, if any."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM bills WHERE user_id = ? AND linked_transaction_id = ?",
                (self.user_id, transaction_id),
            ).fetchone()
            return _bill_from_row(row) if row else None

    def mark_bill_paid(
        self,
        bill_id: str,
        paid_date: date,
        paid_amount: Decimal,
        transaction_id: str | None,
        marked_by: str,
        marked_via: str,
        marked_at: datetime,
    ) -> bool:
        """Mark a bill paid only if it is currently unpaid."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE bills
                SET is_paid = 1, status = ?, paid_date = ?, paid_amount = ?,
                    linked_transaction_id = ?, marked_by = ?, marked_via = ?,
                    marked_at = ?, can_be_unmarked = 1, updated_at = ?
                WHERE user_id = ? AND id = ? AND is_paid = 0
            """,
                (
                    BillStatus.PAID.value,
                    paid_date.isoformat(),
                    str(paid_amount),
                    transaction_id,
                    marked_by,
                    marked_via,
                    marked_at.isoformat(),
                    _now_iso(),
                    self.user_id,
                    bill_id,
                ),
            )
            return cursor.rowcount > 0

    def unmark_bill(self, bill_id: str, unmarked_at: datetime, unmarked_by: str) -> bool:
        """Revert a paid bill to pending if it is paid and may be unmarked."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE bills
                SET is_paid = 0, status = ?, paid_date = NULL, paid_amount = NULL,
                    linked_transaction_id = NULL, marked_by = NULL, marked_via = NULL,
                    marked_at = NULL, can_be_unmarked = 0,
                    last_unmarked_at = ?, last_unmarked_by = ?, updated_at = ?
                WHERE user_id = ? AND id = ? AND is_paid = 1 AND can_be_unmarked = 1
            """,
                (
                    BillStatus.PENDING.value,
                    unmarked_at.isoformat(),
                    unmarked_by,
                    _now_iso(),
                    self.user_id,
                    bill_id,
                ),
            )
            return cursor.rowcount > 0

    def delete_bill(self, bill_id: str) -> bool:
        """Delete one bill."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM bills WHERE user_id = ? AND id = ?", (self.user_id, bill_id)
            )
            return cursor.rowcount > 0

    def delete_unpaid_bills(self, recurring_pattern_id: str) -> int:
        """Delete unpaid bills of a pattern, keeping paid history."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM bills
                WHERE user_id = ? AND recurring_pattern_id = ? AND is_paid = 0
            """,
                (self.user_id, recurring_pattern_id),
            )
            return cursor.rowcount

    # === Payment History ===

    def record_payment(self, payment: PaymentRecord) -> bool:
        """Write a payment record once per (bill, transaction, paid date)."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO bill_payments
                (user_id, bill_id, bill_name, amount, due_date, paid_date, payment_month,
                 year, quarter, is_overdue, days_past_due, payment_method,
                 recurring_pattern_id, linked_transaction_id, category, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    self.user_id,
                    payment.bill_id,
                    payment.bill_name,
                    str(payment.amount),
                    payment.due_date.isoformat(),
                    payment.paid_date.isoformat(),
                    payment.payment_month,
                    payment.paid_date.year,
                    payment.quarter,
                    int(payment.is_overdue),
                    payment.days_past_due,
                    payment.payment_method,
                    payment.recurring_pattern_id,
                    payment.linked_transaction_id or "",
                    payment.category,
                    _now_iso(),
                ),
            )
            return cursor.rowcount > 0

    def list_payments(self, bill_id: str | None = None) -> list[PaymentRecord]:
        """Payment history, newest first."""
        query = "SELECT * FROM bill_payments WHERE user_id = ?"
        params: list[Any] = [self.user_id]
        if bill_id is not None:
            query += " AND bill_id = ?"
            params.append(bill_id)
        query += " ORDER BY paid_date DESC, id DESC"

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [_payment_from_row(row) for row in rows]

    # === Aliases ===

    def set_institution_alias(self, institution_name: str, account_id: str) -> None:
        """Map an institution name to an account id (user override)."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO institution_aliases
                (user_id, institution_name, account_id, updated_at)
                VALUES (?, ?, ?, ?)
            """,
                (self.user_id, institution_name, account_id, _now_iso()),
            )

    def get_institution_aliases(self) -> dict[str, str]:
        """All user-defined institution mappings."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT institution_name, account_id FROM institution_aliases WHERE user_id = ?",
                (self.user_id,),
            ).fetchall()
            return {row["institution_name"]: row["account_id"] for row in rows}

    def set_merchant_aliases(self, bill_name: str, aliases: list[str]) -> None:
        """Store alternate merchant spellings for a bill name."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO merchant_aliases (user_id, bill_name, aliases, updated_at)
                VALUES (?, ?, ?, ?)
            """,
                (self.user_id, bill_name.strip().lower(), json.dumps(aliases), _now_iso()),
            )

    def get_merchant_aliases(self) -> dict[str, list[str]]:
        """Merchant aliases keyed by lowercased bill name."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT bill_name, aliases FROM merchant_aliases WHERE user_id = ?",
                (self.user_id,),
            ).fetchall()
            return {row["bill_name"]: json.loads(row["aliases"]) for row in rows}

    # === Reconciliation Runs ===

    def record_run(self, summary: dict[str, Any]) -> int:
        """Record one reconciliation run. Returns the row id."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO reconciliation_runs
                (user_id, run_id, state, started_at, completed_at, transactions_seen,
                 cleared, advanced, generated, skipped, errors, details)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    self.user_id,
                    summary["run_id"],
                    summary["state"],
                    summary["started_at"],
                    summary.get("completed_at"),
                    summary.get("transactions_seen", 0),
                    summary.get("cleared", 0),
                    summary.get("advanced", 0),
                    summary.get("generated", 0),
                    summary.get("skipped", 0),
                    json.dumps(summary.get("errors", [])),
                    json.dumps(summary.get("details", [])),
                ),
            )
            return cursor.lastrowid or 0

    def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent reconciliation runs."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM reconciliation_runs WHERE user_id = ?
                ORDER BY id DESC LIMIT ?
            """,
                (self.user_id, limit),
            ).fetchall()
            runs = []
            for row in rows:
                run = dict(row)
                run["errors"] = json.loads(run["errors"]) if run["errors"] else []
                run["details"] = json.loads(run["details"]) if run["details"] else []
                runs.append(run)
            return runs

    # === Stats ===

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics for the current user."""
        with self._transaction() as conn:
            stats: dict[str, Any] = {}

            rows = conn.execute(
                """
                SELECT status, COUNT(*) as count FROM recurring_patterns
                WHERE user_id = ? GROUP BY status
            """,
                (self.user_id,),
            ).fetchall()
            stats["patterns_by_status"] = {row["status"]: row["count"] for row in rows}

            row = conn.execute(
                """
                SELECT COUNT(*) as total, COALESCE(SUM(is_paid), 0) as paid
                FROM bills WHERE user_id = ?
            """,
                (self.user_id,),
            ).fetchone()
            stats["bills_total"] = row["total"]
            stats["bills_paid"] = row["paid"]
            stats["bills_unpaid"] = row["total"] - row["paid"]

            stats["payments"] = conn.execute(
                "SELECT COUNT(*) FROM bill_payments WHERE user_id = ?", (self.user_id,)
            ).fetchone()[0]
            stats["runs"] = conn.execute(
                "SELECT COUNT(*) FROM reconciliation_runs WHERE user_id = ?", (self.user_id,)
            ).fetchone()[0]

            return stats
