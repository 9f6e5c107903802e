"""
Canonical bill records (SSOT).

These are THE records every component works on: recurring patterns, bill
instances and bank transactions. No other module may invent another
"bill" or "pattern" shape; importers, the store and the CLI all map into and
out of these dataclasses.

Conventions:
- Amounts are Decimal, never float
- Dates are datetime.date (midnight); timestamps are naive datetimes
- Raw dicts may use snake_case or the legacy camelCase keys
  (dueDate, nextOccurrence, recurringPatternId, ...)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


class RecordValidationError(ValueError):
    """Raised when a raw record lacks a required field or has a bad value."""

    pass


class Frequency(str, Enum):
    """How often an obligation repeats."""

    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"
    ONE_TIME = "one-time"

    @classmethod
    def parse(cls, value: str | Frequency | None) -> Frequency:
        """Parse a frequency label, accepting legacy spellings.

        Args:
            value: Label such as "Monthly", "biweekly" or "yearly"

        Returns:
            Frequency (ONE_TIME when value is empty)

        Raises:
            RecordValidationError: If the label is not recognised
        """
        if isinstance(value, Frequency):
            return value
        if not value:
            return cls.ONE_TIME
        label = str(value).strip().lower().replace("_", "-")
        label = _FREQUENCY_ALIASES.get(label, label)
        try:
            return cls(label)
        except ValueError as e:
            raise RecordValidationError(f"Unknown frequency: {value!r}") from e


_FREQUENCY_ALIASES = {
    "biweekly": "bi-weekly",
    "bi weekly": "bi-weekly",
    "fortnightly": "bi-weekly",
    "yearly": "annually",
    "annual": "annually",
    "once": "one-time",
    "onetime": "one-time",
    "one time": "one-time",
}


class PatternStatus(str, Enum):
    """Lifecycle status of a recurring pattern."""

    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"
    FAILED = "failed"


class BillStatus(str, Enum):
    """Status of one concrete bill."""

    PENDING = "pending"
    PAID = "paid"
    SKIPPED = "skipped"


class PaymentOutcome(str, Enum):
    """Outcome of the last recorded payment attempt on a pattern."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# ============================================================================
# Parsing helpers
# ============================================================================


def _pick(data: dict[str, Any], *keys: str) -> Any:
    """Return the first non-empty value among keys."""
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_date(value: date | datetime | str | None) -> date | None:
    """Parse a date from a date, datetime or ISO string (time part ignored)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError as e:
        raise RecordValidationError(f"Invalid date: {value!r}") from e


def parse_datetime(value: datetime | str | None) -> datetime | None:
    """Parse an ISO timestamp."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError as e:
        raise RecordValidationError(f"Invalid timestamp: {value!r}") from e


def parse_amount(value: Decimal | int | float | str | None) -> Decimal:
    """Parse an amount into a Decimal.

    Strings may carry a currency symbol or thousands separators
    ("$1,234.50").

    Raises:
        RecordValidationError: If the value is missing or not numeric
    """
    if value is None or value == "":
        raise RecordValidationError("amount is required")
    if isinstance(value, bool):
        raise RecordValidationError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    text = str(value).strip().replace("$", "").replace(",", "")
    try:
        amount = Decimal(text)
    except InvalidOperation as e:
        raise RecordValidationError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise RecordValidationError(f"Invalid amount: {value!r}")
    return amount


def _parse_status(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    return enum_cls(str(value).strip().lower())


def parse_bool(value: Any) -> bool:
    """Parse a flag from a bool, number or string ("true", "1", "yes")."""
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "y")
    return bool(value)


def _require_name(data: dict[str, Any]) -> str:
    name = _pick(data, "name", "description", "merchant_name", "merchantName")
    if name is None or not str(name).strip():
        raise RecordValidationError("name is required")
    return str(name).strip()


def _string_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value if v]


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ============================================================================
# Records
# ============================================================================


@dataclass
class RecurringPattern:
    """
    A template for a repeating obligation.

    next_occurrence is the due date of the most recently generated, still
    unpaid bill for this pattern. It moves forward only on a payment event.
    """

    id: str
    name: str
    amount: Decimal
    frequency: Frequency
    next_occurrence: date
    category: str = ""
    status: PatternStatus = PatternStatus.ACTIVE
    linked_account_id: str | None = None
    # Calendar months (1-12) in which the obligation occurs; None = every month
    active_months: list[int] | None = None
    start_date: date | None = None
    end_date: date | None = None
    last_paid_date: date | None = None
    last_payment_status: PaymentOutcome | None = None
    # Original day-of-month for month-based stepping (Jan 31 stays a 31st)
    day_of_month: int | None = None
    merchant_names: list[str] = field(default_factory=list)
    type: str = "expense"

    @property
    def anchor_day(self) -> int:
        """Day-of-month that month-based stepping is anchored to."""
        return self.day_of_month or self.next_occurrence.day

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecurringPattern:
        """Build a pattern from a raw dict.

        Raises:
            RecordValidationError: If name, amount or next occurrence is missing
        """
        name = _require_name(data)
        amount = parse_amount(_pick(data, "amount"))
        next_occurrence = parse_date(
            _pick(data, "next_occurrence", "nextOccurrence", "next_due_date", "nextDueDate")
        )
        if next_occurrence is None:
            raise RecordValidationError(f"next_occurrence is required for {name!r}")

        active_months = _pick(data, "active_months", "activeMonths")
        if active_months is not None:
            active_months = [int(m) for m in active_months]
            if any(m < 1 or m > 12 for m in active_months):
                raise RecordValidationError(f"active_months must be 1-12: {active_months}")

        last_status = _pick(data, "last_payment_status", "lastPaymentStatus")
        day_of_month = _pick(data, "day_of_month", "dayOfMonth")

        return cls(
            id=str(_pick(data, "id") or ""),
            name=name,
            amount=amount,
            frequency=Frequency.parse(_pick(data, "frequency", "recurrence")),
            next_occurrence=next_occurrence,
            category=str(_pick(data, "category") or ""),
            status=_parse_status(PatternStatus, _pick(data, "status") or PatternStatus.ACTIVE),
            linked_account_id=_pick(data, "linked_account_id", "linkedAccountId"),
            active_months=active_months,
            start_date=parse_date(_pick(data, "start_date", "startDate")),
            end_date=parse_date(_pick(data, "end_date", "endDate")),
            last_paid_date=parse_date(_pick(data, "last_paid_date", "lastPaidDate")),
            last_payment_status=PaymentOutcome(last_status) if last_status else None,
            day_of_month=int(day_of_month) if day_of_month else None,
            merchant_names=_string_list(_pick(data, "merchant_names", "merchantNames")),
            type=str(_pick(data, "type") or "expense"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serialisable dict."""
        return {
            "id": self.id,
            "name": self.name,
            "amount": str(self.amount),
            "frequency": self.frequency.value,
            "next_occurrence": self.next_occurrence.isoformat(),
            "category": self.category,
            "status": self.status.value,
            "linked_account_id": self.linked_account_id,
            "active_months": self.active_months,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "last_paid_date": _iso(self.last_paid_date),
            "last_payment_status": (
                self.last_payment_status.value if self.last_payment_status else None
            ),
            "day_of_month": self.day_of_month,
            "merchant_names": list(self.merchant_names),
            "type": self.type,
        }


@dataclass
class BillInstance:
    """
    One concrete obligation due on one date.

    Paid bills are immutable except through an explicit unmark action.
    """

    id: str
    name: str
    amount: Decimal
    due_date: date
    recurrence: Frequency = Frequency.ONE_TIME
    recurring_pattern_id: str | None = None
    category: str = ""
    is_paid: bool = False
    status: BillStatus = BillStatus.PENDING
    paid_date: date | None = None
    paid_amount: Decimal | None = None
    linked_transaction_id: str | None = None
    merchant_names: list[str] = field(default_factory=list)
    original_due_date: date | None = None
    # Audit trail for paid/unpaid toggles
    marked_by: str | None = None
    marked_via: str | None = None
    marked_at: datetime | None = None
    can_be_unmarked: bool = True
    created_from: str | None = None

    @property
    def is_recurring(self) -> bool:
        """Check if the bill was generated from a recurring pattern."""
        return self.recurring_pattern_id is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BillInstance:
        """Build a bill from a raw dict.

        When no due date is present the legacy next-due-date field is used.

        Raises:
            RecordValidationError: If name, amount or due date is missing
        """
        name = _require_name(data)
        amount = parse_amount(_pick(data, "amount"))
        due_date = parse_date(_pick(data, "due_date", "dueDate", "next_due_date", "nextDueDate"))
        if due_date is None:
            raise RecordValidationError(f"due_date is required for {name!r}")

        is_paid = parse_bool(_pick(data, "is_paid", "isPaid"))
        status = _pick(data, "status")
        if status is None:
            status = BillStatus.PAID if is_paid else BillStatus.PENDING
        else:
            status = _parse_status(BillStatus, status)
        paid_amount = _pick(data, "paid_amount", "paidAmount")
        can_be_unmarked = _pick(data, "can_be_unmarked", "canBeUnmarked")

        return cls(
            id=str(_pick(data, "id") or ""),
            name=name,
            amount=amount,
            due_date=due_date,
            recurrence=Frequency.parse(_pick(data, "recurrence", "frequency")),
            recurring_pattern_id=_pick(
                data, "recurring_pattern_id", "recurringPatternId", "recurringTemplateId"
            ),
            category=str(_pick(data, "category") or ""),
            is_paid=is_paid,
            status=status,
            paid_date=parse_date(_pick(data, "paid_date", "paidDate")),
            paid_amount=parse_amount(paid_amount) if paid_amount is not None else None,
            linked_transaction_id=_pick(
                data, "linked_transaction_id", "linkedTransactionId", "transactionId"
            ),
            merchant_names=_string_list(_pick(data, "merchant_names", "merchantNames")),
            original_due_date=parse_date(_pick(data, "original_due_date", "originalDueDate")),
            marked_by=_pick(data, "marked_by", "markedBy"),
            marked_via=_pick(data, "marked_via", "markedVia"),
            marked_at=parse_datetime(_pick(data, "marked_at", "markedAt")),
            can_be_unmarked=True if can_be_unmarked is None else parse_bool(can_be_unmarked),
            created_from=_pick(data, "created_from", "createdFrom"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serialisable dict."""
        return {
            "id": self.id,
            "name": self.name,
            "amount": str(self.amount),
            "due_date": self.due_date.isoformat(),
            "recurrence": self.recurrence.value,
            "recurring_pattern_id": self.recurring_pattern_id,
            "category": self.category,
            "is_paid": self.is_paid,
            "status": self.status.value,
            "paid_date": _iso(self.paid_date),
            "paid_amount": str(self.paid_amount) if self.paid_amount is not None else None,
            "linked_transaction_id": self.linked_transaction_id,
            "merchant_names": list(self.merchant_names),
            "original_due_date": _iso(self.original_due_date),
            "marked_by": self.marked_by,
            "marked_via": self.marked_via,
            "marked_at": _iso(self.marked_at),
            "can_be_unmarked": self.can_be_unmarked,
            "created_from": self.created_from,
        }


@dataclass
class Transaction:
    """A bank transaction from the feed. Read-only to this package."""

    id: str
    name: str
    amount: Decimal  # Signed: negative for outflows
    date: date
    account_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        """Build a transaction from a raw feed or file record.

        Raises:
            RecordValidationError: If id, name, amount or date is missing
        """
        name = _require_name(data)
        tx_id = _pick(data, "id", "transaction_id", "transactionId")
        if tx_id is None:
            raise RecordValidationError(f"id is required for transaction {name!r}")
        tx_date = parse_date(_pick(data, "date", "posted_date", "postedDate"))
        if tx_date is None:
            raise RecordValidationError(f"date is required for transaction {name!r}")
        return cls(
            id=str(tx_id),
            name=name,
            amount=parse_amount(_pick(data, "amount")),
            date=tx_date,
            account_id=_pick(data, "account_id", "accountId", "account"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serialisable dict."""
        return {
            "id": self.id,
            "name": self.name,
            "amount": str(self.amount),
            "date": self.date.isoformat(),
            "account_id": self.account_id,
        }


@dataclass
class RecordRejection:
    """A raw record that failed validation in a batch parse."""

    index: int
    message: str
    raw: dict[str, Any] = field(default_factory=dict)


def _parse_batch(raw_records, factory):
    records = []
    rejections: list[RecordRejection] = []
    for index, raw in enumerate(raw_records):
        try:
            records.append(factory(raw))
        except (ValueError, TypeError, AttributeError) as e:
            raw_dict = dict(raw) if isinstance(raw, dict) else {}
            rejections.append(RecordRejection(index=index, message=str(e), raw=raw_dict))
    return records, rejections


def parse_bills(raw_records: list[dict[str, Any]]) -> tuple[list[BillInstance], list[RecordRejection]]:
    """Parse many bills, collecting per-record rejections instead of raising."""
    return _parse_batch(raw_records, BillInstance.from_dict)


def parse_patterns(
    raw_records: list[dict[str, Any]],
) -> tuple[list[RecurringPattern], list[RecordRejection]]:
    """Parse many recurring patterns, collecting per-record rejections."""
    return _parse_batch(raw_records, RecurringPattern.from_dict)


def parse_transactions(
    raw_records: list[dict[str, Any]],
) -> tuple[list[Transaction], list[RecordRejection]]:
    """Parse many transactions, collecting per-record rejections."""
    return _parse_batch(raw_records, Transaction.from_dict)


@dataclass
class PaymentRecord:
    """One row of payment history, written once per (bill, transaction)."""

    bill_id: str
    bill_name: str
    amount: Decimal
    due_date: date
    paid_date: date
    payment_method: str = "manual"
    recurring_pattern_id: str | None = None
    linked_transaction_id: str | None = None
    category: str = ""

    @property
    def payment_month(self) -> str:
        """YYYY-MM of the paid date."""
        return self.paid_date.strftime("%Y-%m")

    @property
    def quarter(self) -> int:
        return (self.paid_date.month - 1) // 3 + 1

    @property
    def days_past_due(self) -> int:
        return max(0, (self.paid_date - self.due_date).days)

    @property
    def is_overdue(self) -> bool:
        return self.days_past_due > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serialisable dict."""
        return {
            "bill_id": self.bill_id,
            "bill_name": self.bill_name,
            "amount": str(self.amount),
            "due_date": self.due_date.isoformat(),
            "paid_date": self.paid_date.isoformat(),
            "payment_month": self.payment_month,
            "year": self.paid_date.year,
            "quarter": self.quarter,
            "is_overdue": self.is_overdue,
            "days_past_due": self.days_past_due,
            "payment_method": self.payment_method,
            "recurring_pattern_id": self.recurring_pattern_id,
            "linked_transaction_id": self.linked_transaction_id,
            "category": self.category,
        }
