"""
Abstract document store interface.

The reconciler needs very little from storage: equality-filtered reads,
single-document writes, existence checks and a handful of conditional
writes. There are no multi-document transactions; every check-then-act
sequence in the reconciler is an idempotent guard built on these methods.

Conditional writes return False (or 0) when their condition no longer holds,
so callers can log a stale-state skip instead of double-applying a change.

Implementations raise StoreError for I/O failures. The reconciler never
catches it; retrying is the caller's decision.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from billrecon.schemas.records import (
    BillInstance,
    PatternStatus,
    PaymentRecord,
    RecurringPattern,
)


class StoreError(Exception):
    """Raised when the underlying store fails."""

    pass


class DocumentStore(ABC):
    """Per-user store of patterns, bills, payments and aliases."""

    # Recurring patterns

    @abstractmethod
    def save_pattern(self, pattern: RecurringPattern) -> RecurringPattern:
        """Insert or replace a pattern. Assigns an id when it has none."""

    @abstractmethod
    def get_pattern(self, pattern_id: str) -> RecurringPattern | None:
        """Get a pattern by id."""

    @abstractmethod
    def list_patterns(self, status: PatternStatus | None = None) -> list[RecurringPattern]:
        """All patterns, optionally filtered by stored status."""

    @abstractmethod
    def advance_pattern(
        self,
        pattern_id: str,
        expected_next: date,
        new_next: date,
        paid_date: date,
        anchor_day: int | None = None,
    ) -> bool:
        """Move next_occurrence forward only if it still equals expected_next.

        Returns:
            True if the pattern was advanced, False if it had already moved
        """

    @abstractmethod
    def update_pattern_status(self, pattern_id: str, status: PatternStatus) -> bool:
        """Set the stored status. Returns False if the pattern does not exist."""

    # Bills

    @abstractmethod
    def save_bill(self, bill: BillInstance) -> BillInstance:
        """Insert or replace a bill. Assigns an id when it has none."""

    @abstractmethod
    def insert_bill_if_absent(self, bill: BillInstance) -> bool:
        """Insert a bill unless one exists for the same pattern and due date.

        Returns:
            True if inserted, False if an equivalent bill already existed
        """

    @abstractmethod
    def get_bill(self, bill_id: str) -> BillInstance | None:
        """Get a bill by id."""

    @abstractmethod
    def find_bills(
        self,
        is_paid: bool | None = None,
        recurring_pattern_id: str | None = None,
        due_date: date | None = None,
    ) -> list[BillInstance]:
        """Bills matching all given equality filters, oldest due date first."""

    @abstractmethod
    def bill_exists(self, recurring_pattern_id: str, due_date: date) -> bool:
        """Check if a bill exists for the pattern and due date."""

    @abstractmethod
    def count_unpaid_bills(self, recurring_pattern_id: str) -> int:
        """Number of unpaid bills for a pattern."""

    @abstractmethod
    def find_bill_by_transaction(self, transaction_id: str) -> BillInstance | None:
        """Bill already linked to the transaction, if any."""

    @abstractmethod
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
        """Mark a bill paid only if it is currently unpaid.

        Returns:
            True if marked, False if it was already paid (or missing)
        """

    @abstractmethod
    def unmark_bill(self, bill_id: str, unmarked_at: datetime, unmarked_by: str) -> bool:
        """Revert a paid bill to pending if it is paid and may be unmarked."""

    @abstractmethod
    def delete_bill(self, bill_id: str) -> bool:
        """Delete one bill."""

    @abstractmethod
    def delete_unpaid_bills(self, recurring_pattern_id: str) -> int:
        """Delete unpaid bills of a pattern, keeping paid history. Returns count."""

    # Payment history

    @abstractmethod
    def record_payment(self, payment: PaymentRecord) -> bool:
        """Write a payment record once per (bill, transaction)."""

    @abstractmethod
    def list_payments(self, bill_id: str | None = None) -> list[PaymentRecord]:
        """Payment history, newest first."""

    # Aliases

    @abstractmethod
    def set_institution_alias(self, institution_name: str, account_id: str) -> None:
        """Map an institution name to an account id (user override)."""

    @abstractmethod
    def get_institution_aliases(self) -> dict[str, str]:
        """All user-defined institution mappings."""

    @abstractmethod
    def set_merchant_aliases(self, bill_name: str, aliases: list[str]) -> None:
        """Store alternate merchant spellings for a bill name."""

    @abstractmethod
    def get_merchant_aliases(self) -> dict[str, list[str]]:
        """Merchant aliases keyed by lowercased bill name."""

    # Audit

    @abstractmethod
    def record_run(self, summary: dict[str, Any]) -> int:
        """Record one reconciliation run. Returns the run id."""

    @abstractmethod
    def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent reconciliation runs."""
