"""Recurrence scheduling and pattern lifecycle.

Two operations that must never be confused:

- project_next_occurrence: pure, used for display. It never rolls an
  overdue-but-unpaid due date forward; an obligation due yesterday keeps
  showing yesterday until a payment clears it.
- advance_after_payment: called only once a payment is confirmed. It steps
  exactly one period from the due date that was paid, never from today, so a
  late payment does not shift the schedule.

Month-based steps are computed from the original anchor day with clamping:
Jan 31 -> Feb 28 -> Mar 31, never Jan 31 -> Feb 28 -> Mar 28.

The reference time ("now") is always passed in; nothing here reads the clock.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, replace
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Iterable, Sequence

from billrecon.schemas.records import (
    Frequency,
    PatternStatus,
    PaymentOutcome,
    RecurringPattern,
)

logger = logging.getLogger(__name__)

# Day-based periods
PERIOD_DAYS = {
    Frequency.WEEKLY: 7,
    Frequency.BI_WEEKLY: 14,
}

# Month-based periods
PERIOD_MONTHS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.ANNUALLY: 12,
}

# Monthly-equivalent multipliers for budgeting totals
MONTHLY_MULTIPLIERS = {
    Frequency.WEEKLY: Decimal("4.33"),
    Frequency.BI_WEEKLY: Decimal("2.17"),
    Frequency.MONTHLY: Decimal("1"),
    Frequency.QUARTERLY: Decimal("0.33"),
    Frequency.ANNUALLY: Decimal("0.083"),
    Frequency.ONE_TIME: Decimal("0"),
}

# Upper bound on steps when projecting a stale date forward
MAX_PROJECTION_STEPS = 10_000


class InvalidTransitionError(Exception):
    """Raised when a status event is not allowed from the current status."""

    def __init__(self, status: PatternStatus, event: StatusEvent) -> None:
        self.status = status
        self.event = event
        super().__init__(f"Cannot apply {event.value!r} to a {status.value} pattern")


class StatusEvent(str, Enum):
    """Events that move a pattern between lifecycle states."""

    PAUSE = "pause"
    RESUME = "resume"
    END = "end"
    FAIL = "fail"
    RECOVER = "recover"
    REACTIVATE = "reactivate"


# (current status, event) -> new status. Anything missing is illegal.
TRANSITIONS: dict[tuple[PatternStatus, StatusEvent], PatternStatus] = {
    (PatternStatus.ACTIVE, StatusEvent.PAUSE): PatternStatus.PAUSED,
    (PatternStatus.ACTIVE, StatusEvent.END): PatternStatus.ENDED,
    (PatternStatus.ACTIVE, StatusEvent.FAIL): PatternStatus.FAILED,
    (PatternStatus.PAUSED, StatusEvent.RESUME): PatternStatus.ACTIVE,
    (PatternStatus.PAUSED, StatusEvent.END): PatternStatus.ENDED,
    (PatternStatus.FAILED, StatusEvent.RECOVER): PatternStatus.ACTIVE,
    (PatternStatus.FAILED, StatusEvent.PAUSE): PatternStatus.PAUSED,
    (PatternStatus.FAILED, StatusEvent.END): PatternStatus.ENDED,
    (PatternStatus.ENDED, StatusEvent.REACTIVATE): PatternStatus.ACTIVE,
}


def transition(status: PatternStatus, event: StatusEvent) -> PatternStatus:
    """Apply a status event.

    Raises:
        InvalidTransitionError: If the event is not allowed from status
    """
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransitionError(status, event) from None


def allowed_events(status: PatternStatus) -> list[StatusEvent]:
    """Events that may be applied to a pattern in the given status."""
    return [event for (current, event) in TRANSITIONS if current == status]


# ============================================================================
# Date stepping
# ============================================================================


def add_months(start: date, months: int, anchor_day: int | None = None) -> date:
    """Add calendar months, clamping the anchor day to the target month's length."""
    anchor = anchor_day or start.day
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def step(
    start: date, frequency: Frequency, periods: int = 1, anchor_day: int | None = None
) -> date | None:
    """Date `periods` periods after start, or None for one-time obligations."""
    if frequency in PERIOD_DAYS:
        return start + timedelta(days=PERIOD_DAYS[frequency] * periods)
    if frequency in PERIOD_MONTHS:
        return add_months(start, PERIOD_MONTHS[frequency] * periods, anchor_day)
    return None


def is_active_month(when: date, active_months: Iterable[int] | None) -> bool:
    """Check if a date falls in one of the active months (1-12); None means all."""
    if not active_months:
        return True
    return when.month in set(active_months)


@dataclass
class ScheduleView:
    """A pattern annotated for display."""

    pattern: RecurringPattern
    next_due: date
    status: PatternStatus
    days_until_due: int

    @property
    def is_overdue(self) -> bool:
        return self.days_until_due < 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.pattern.id,
            "name": self.pattern.name,
            "amount": str(self.pattern.amount),
            "frequency": self.pattern.frequency.value,
            "next_due": self.next_due.isoformat(),
            "status": self.status.value,
            "days_until_due": self.days_until_due,
            "is_overdue": self.is_overdue,
        }


@dataclass
class ScheduledOccurrence:
    """One future occurrence of a pattern."""

    due_date: date
    amount: Decimal
    name: str
    type: str


@dataclass
class MonthlyTotals:
    """Monthly-equivalent totals of active patterns."""

    income: Decimal
    expenses: Decimal

    @property
    def net(self) -> Decimal:
        return self.income - self.expenses


class RecurrenceScheduler:
    """Computes due dates and lifecycle status of recurring patterns.

    Args:
        failed_grace_days: Days past due after a failed payment before the
            pattern is reported as failed.
    """

    def __init__(self, failed_grace_days: int = 7) -> None:
        self.failed_grace_days = failed_grace_days

    # ------------------------------------------------------------------
    # Due dates
    # ------------------------------------------------------------------

    def project_next_occurrence(
        self,
        last_occurrence: date,
        frequency: Frequency,
        now: date,
        outstanding_due: date | None = None,
        anchor_day: int | None = None,
        active_months: Sequence[int] | None = None,
    ) -> date:
        """Project the next due date for display. Pure.

        Args:
            last_occurrence: Last known occurrence date
            frequency: Pattern frequency
            now: Reference date
            outstanding_due: Due date of a still-unpaid bill, if any. It is
                returned unchanged: unpaid obligations are never rolled forward.
            anchor_day: Day-of-month for month-based stepping
            active_months: Months (1-12) in which occurrences may fall

        Returns:
            The outstanding due date, or the first occurrence after now
        """
        if outstanding_due is not None:
            return outstanding_due
        if frequency == Frequency.ONE_TIME:
            return last_occurrence

        anchor = anchor_day or last_occurrence.day
        candidate = last_occurrence
        periods = 0
        while candidate <= now or not is_active_month(candidate, active_months):
            periods += 1
            if periods > MAX_PROJECTION_STEPS:
                raise ValueError(
                    f"Could not project {frequency.value} occurrence from {last_occurrence}"
                )
            candidate = step(last_occurrence, frequency, periods, anchor)
        return candidate

    def advance_after_payment(
        self,
        paid_due_date: date,
        frequency: Frequency,
        anchor_day: int | None = None,
        active_months: Sequence[int] | None = None,
    ) -> date | None:
        """Due date exactly one period after the paid due date.

        Periods that fall outside the active months are skipped.

        Returns:
            Next due date, or None for one-time obligations
        """
        if frequency == Frequency.ONE_TIME:
            return None
        anchor = anchor_day or paid_due_date.day
        periods = 1
        candidate = step(paid_due_date, frequency, periods, anchor)
        while candidate is not None and not is_active_month(candidate, active_months):
            periods += 1
            if periods > MAX_PROJECTION_STEPS:
                raise ValueError(f"No active month reachable from {paid_due_date}")
            candidate = step(paid_due_date, frequency, periods, anchor)
        return candidate

    def advance_pattern(self, pattern: RecurringPattern) -> date | None:
        """advance_after_payment for the pattern's current next occurrence."""
        return self.advance_after_payment(
            pattern.next_occurrence,
            pattern.frequency,
            anchor_day=pattern.anchor_day,
            active_months=pattern.active_months,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def determine_status(self, pattern: RecurringPattern, now: date) -> PatternStatus:
        """Derive the effective status of a pattern at `now`.

        A stored paused, ended or failed status wins; only the RECOVER event
        takes a pattern out of failed. Otherwise an end date in the past ends
        the pattern, a failed last payment more than the grace period past due
        is failed, and anything else is active.
        """
        if pattern.status in (PatternStatus.PAUSED, PatternStatus.ENDED, PatternStatus.FAILED):
            return pattern.status
        if pattern.end_date is not None and pattern.end_date < now:
            return PatternStatus.ENDED
        days_past_due = (now - pattern.next_occurrence).days
        if (
            pattern.last_payment_status == PaymentOutcome.FAILED
            and days_past_due > self.failed_grace_days
        ):
            return PatternStatus.FAILED
        return PatternStatus.ACTIVE

    def apply_event(self, pattern: RecurringPattern, event: StatusEvent) -> RecurringPattern:
        """Return a copy of the pattern with the status event applied.

        Raises:
            InvalidTransitionError: If the event is illegal for the pattern
        """
        new_status = transition(pattern.status, event)
        logger.debug("Pattern %s: %s -> %s", pattern.id, pattern.status.value, new_status.value)
        return replace(pattern, status=new_status)

    def record_payment_attempt(
        self, pattern: RecurringPattern, outcome: PaymentOutcome, processed: date
    ) -> RecurringPattern:
        """Return a copy of the pattern updated for one payment attempt.

        Success and skipped advance the schedule one period from the current
        due date; a failure leaves the due date where it is so the pattern
        can become failed once it is past the grace period.
        """
        if outcome == PaymentOutcome.FAILED:
            return replace(pattern, last_payment_status=outcome)

        next_due = self.advance_pattern(pattern)
        changes: dict = {"last_payment_status": outcome, "day_of_month": pattern.anchor_day}
        if next_due is not None:
            changes["next_occurrence"] = next_due
        if outcome == PaymentOutcome.SUCCESS:
            changes["last_paid_date"] = processed
        return replace(pattern, **changes)

    # ------------------------------------------------------------------
    # Display helpers
    # ------------------------------------------------------------------

    def annotate(
        self, pattern: RecurringPattern, now: date, has_unpaid_bill: bool = True
    ) -> ScheduleView:
        """Annotate a pattern with its displayed due date and status.

        While an unpaid bill exists the recorded next occurrence is shown as
        is, even when overdue.
        """
        next_due = self.project_next_occurrence(
            pattern.next_occurrence,
            pattern.frequency,
            now,
            outstanding_due=pattern.next_occurrence if has_unpaid_bill else None,
            anchor_day=pattern.anchor_day,
            active_months=pattern.active_months,
        )
        return ScheduleView(
            pattern=pattern,
            next_due=next_due,
            status=self.determine_status(pattern, now),
            days_until_due=(next_due - now).days,
        )

    def generate_schedule(
        self, pattern: RecurringPattern, periods: int = 6
    ) -> list[ScheduledOccurrence]:
        """Upcoming occurrences starting at the pattern's next occurrence."""
        schedule: list[ScheduledOccurrence] = []
        due: date | None = pattern.next_occurrence
        while due is not None and len(schedule) < periods:
            schedule.append(
                ScheduledOccurrence(
                    due_date=due, amount=pattern.amount, name=pattern.name, type=pattern.type
                )
            )
            due = self.advance_after_payment(
                due,
                pattern.frequency,
                anchor_day=pattern.anchor_day,
                active_months=pattern.active_months,
            )
        return schedule

    def items_in_range(
        self, patterns: Iterable[RecurringPattern], start: date, end: date
    ) -> list[RecurringPattern]:
        """Patterns whose next occurrence falls within [start, end]."""
        return [p for p in patterns if start <= p.next_occurrence <= end]

    @staticmethod
    def convert_to_monthly(amount: Decimal, frequency: Frequency) -> Decimal:
        """Monthly-equivalent amount, rounded to cents."""
        return (amount * MONTHLY_MULTIPLIERS[frequency]).quantize(Decimal("0.01"))

    def monthly_totals(self, patterns: Iterable[RecurringPattern], now: date) -> MonthlyTotals:
        """Monthly-equivalent income and expenses of currently active patterns."""
        income = Decimal("0")
        expenses = Decimal("0")
        for pattern in patterns:
            if self.determine_status(pattern, now) != PatternStatus.ACTIVE:
                continue
            monthly = self.convert_to_monthly(pattern.amount, pattern.frequency)
            if pattern.type == "income":
                income += monthly
            else:
                expenses += monthly
        return MonthlyTotals(income=income, expenses=expenses)
