"""Bill generation from recurring patterns.

A pattern's next_occurrence is the due date of its current unpaid bill, so
generation never invents dates: it only makes sure a bill exists at a date
the scheduler already produced. Every insert is guarded, in order, by

1. the pattern being live (not paused/ended, not past its end date)
2. an existence check on (pattern id, due date)
3. the unpaid cap (at most 2 unpaid bills per pattern)
4. the store's conditional insert, which ignores a concurrent twin

GenerationContext serializes bulk runs inside one process. It only avoids
wasted work; the guards above are what keep repeated runs from generating
twice.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import TYPE_CHECKING, Iterator

from billrecon.schemas.records import BillInstance, PatternStatus, RecurringPattern
from billrecon.scheduler.recurrence import RecurrenceScheduler, is_active_month

if TYPE_CHECKING:
    from billrecon.config import SchedulerConfig
    from billrecon.state_store import DocumentStore

logger = logging.getLogger(__name__)


class SkipReason(str, Enum):
    """Why a guarded step did nothing. None of these are failures."""

    TRANSACTION_ALREADY_LINKED = "transaction_already_linked"
    BILL_ALREADY_PAID = "bill_already_paid"
    PATTERN_MISSING = "pattern_missing"
    PATTERN_ALREADY_ADVANCED = "pattern_already_advanced"
    ONE_TIME_PATTERN = "one_time_pattern"
    PATTERN_INACTIVE = "pattern_inactive"
    INACTIVE_MONTH = "inactive_month"
    GENERATION_DISABLED = "generation_disabled"
    NEXT_BILL_EXISTS = "next_bill_exists"
    UNPAID_LIMIT = "unpaid_limit_reached"


@dataclass
class StepSkip:
    """A stale-state skip, reported for logging and display."""

    reason: SkipReason
    detail: str
    bill_id: str | None = None
    pattern_id: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "reason": self.reason.value,
            "detail": self.detail,
            "bill_id": self.bill_id,
            "pattern_id": self.pattern_id,
        }


@dataclass
class GenerationResult:
    """Result of a bulk generation run."""

    generated: list[BillInstance] = field(default_factory=list)
    skipped: list[StepSkip] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "generated": [b.to_dict() for b in self.generated],
            "skipped": [s.to_dict() for s in self.skipped],
        }


class GenerationInProgressError(RuntimeError):
    """Raised when a bulk generation run is started while another is active."""

    pass


class GenerationContext:
    """Non-reentrant marker for a bulk generation run in this process.

    Usage:
        context = GenerationContext()
        with context.run():
            ...
    """

    def __init__(self) -> None:
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @contextmanager
    def run(self) -> Iterator[None]:
        """Hold the context for the duration of a run.

        Raises:
            GenerationInProgressError: If a run already holds the context
        """
        if self._active:
            raise GenerationInProgressError("Bill generation is already running")
        self._active = True
        try:
            yield
        finally:
            self._active = False


class BillGenerator:
    """Creates the bill for a pattern's next occurrence, at most once."""

    CREATED_FROM = "recurring-generation"

    def __init__(
        self,
        store: DocumentStore,
        scheduler: RecurrenceScheduler,
        config: SchedulerConfig,
        context: GenerationContext | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.config = config
        self.context = context or GenerationContext()

    def _skip(
        self, skips: list[StepSkip], reason: SkipReason, detail: str, pattern: RecurringPattern
    ) -> None:
        logger.info("Skip generation for %s (%s): %s", pattern.id, reason.value, detail)
        skips.append(StepSkip(reason=reason, detail=detail, pattern_id=pattern.id))

    def ensure_bill(
        self,
        pattern: RecurringPattern,
        due_date: date,
        skips: list[StepSkip],
        merchant_names: list[str] | None = None,
        created_from: str = CREATED_FROM,
    ) -> BillInstance | None:
        """Create the pattern's bill at due_date unless a guard says otherwise.

        Args:
            pattern: Owning pattern
            due_date: Due date of the bill to create
            skips: Collector for stale-state skips
            merchant_names: Aliases to carry over (defaults to the pattern's)
            created_from: Provenance label stored on the new bill

        Returns:
            The new bill, or None if a guard skipped creation
        """
        if self.config.disable_auto_generation:
            self._skip(skips, SkipReason.GENERATION_DISABLED, "auto generation disabled", pattern)
            return None
        if pattern.status in (PatternStatus.PAUSED, PatternStatus.ENDED):
            self._skip(skips, SkipReason.PATTERN_INACTIVE, f"status {pattern.status.value}", pattern)
            return None
        if pattern.end_date is not None and due_date > pattern.end_date:
            self._skip(skips, SkipReason.PATTERN_INACTIVE, f"ends {pattern.end_date}", pattern)
            return None
        if not is_active_month(due_date, pattern.active_months):
            self._skip(skips, SkipReason.INACTIVE_MONTH, f"{due_date:%B} is inactive", pattern)
            return None
        if self.store.bill_exists(pattern.id, due_date):
            self._skip(skips, SkipReason.NEXT_BILL_EXISTS, f"bill due {due_date} exists", pattern)
            return None
        unpaid = self.store.count_unpaid_bills(pattern.id)
        if unpaid >= self.config.max_unpaid_per_pattern:
            self._skip(skips, SkipReason.UNPAID_LIMIT, f"{unpaid} unpaid bills", pattern)
            return None

        bill = BillInstance(
            id=uuid.uuid4().hex,
            name=pattern.name,
            amount=pattern.amount,
            due_date=due_date,
            recurrence=pattern.frequency,
            recurring_pattern_id=pattern.id,
            category=pattern.category,
            merchant_names=list(merchant_names or pattern.merchant_names),
            original_due_date=due_date,
            created_from=created_from,
        )
        if not self.store.insert_bill_if_absent(bill):
            self._skip(skips, SkipReason.NEXT_BILL_EXISTS, f"bill due {due_date} raced", pattern)
            return None

        logger.info("Generated bill %s for %r due %s", bill.id, pattern.name, due_date)
        return bill

    def generate_bills(self, today: date) -> GenerationResult:
        """Ensure every live pattern has a bill at its next occurrence.

        Raises:
            GenerationInProgressError: If another bulk run is active
        """
        result = GenerationResult()
        with self.context.run():
            for pattern in self.store.list_patterns():
                status = self.scheduler.determine_status(pattern, today)
                if status == PatternStatus.ENDED and pattern.status != PatternStatus.ENDED:
                    self.store.update_pattern_status(pattern.id, PatternStatus.ENDED)
                    pattern.status = PatternStatus.ENDED
                bill = self.ensure_bill(pattern, pattern.next_occurrence, result.skipped)
                if bill is not None:
                    result.generated.append(bill)

        logger.info(
            "Bill generation: %d generated, %d skipped",
            len(result.generated),
            len(result.skipped),
        )
        return result
