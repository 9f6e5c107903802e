"""Bill reconciliation orchestration service.

Clears unpaid bills from bank transactions. For every accepted match it runs
three guarded steps, each safe to repeat:

1. Mark the bill paid (conditional on it still being unpaid) and write one
   payment-history record
2. Advance the recurring pattern, but only while its next_occurrence still
   equals the bill's due date
3. Make sure exactly one bill exists at the advanced due date

Re-running the whole pass after a crash, a reload or a retried request
converges on the same end state. A transaction that is already linked to a
paid bill is not matched again; its pattern is only brought up to date.

Store failures propagate to the caller unchanged. Nothing here retries.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Sequence

from billrecon.config import Config
from billrecon.matching.engine import BillMatchingEngine, MatchResult
from billrecon.schemas.records import (
    BillInstance,
    PaymentRecord,
    RecordRejection,
    RecurringPattern,
    Transaction,
)
from billrecon.scheduler.recurrence import (
    RecurrenceScheduler,
    StatusEvent,
    transition,
)
from billrecon.services.bill_generation import (
    BillGenerator,
    GenerationContext,
    GenerationResult,
    SkipReason,
    StepSkip,
)
from billrecon.state_store.interface import StoreError

if TYPE_CHECKING:
    from billrecon.state_store import DocumentStore

logger = logging.getLogger(__name__)

AUTO_MARKED_BY = "auto-bill-clearing"
AUTO_MARKED_VIA = "auto-transaction-match"
AUTO_PAYMENT_METHOD = "Auto (transaction feed)"
MANUAL_MARKED_VIA = "manual"
MANUAL_PAYMENT_METHOD = "Manual"


class ReconciliationState(str, Enum):
    """Possible states for a reconciliation run."""

    LOADING = "LOADING"
    MATCHING = "MATCHING"
    APPLYING = "APPLYING"
    COMPLETED = "COMPLETED"
    DISABLED = "DISABLED"
    FAILED = "FAILED"


class BillNotFoundError(LookupError):
    """Raised when a bill id does not exist in the store."""

    pass


class PatternNotFoundError(LookupError):
    """Raised when a pattern id does not exist in the store."""

    pass


class UnmarkNotAllowedError(Exception):
    """Raised when a bill cannot be reverted to unpaid."""

    pass


class UndoWindowExpiredError(UnmarkNotAllowedError):
    """Raised when the undo window for a payment has passed."""

    def __init__(self, bill_id: str, marked_at: datetime, window_hours: int):
        self.bill_id = bill_id
        self.marked_at = marked_at
        self.window_hours = window_hours
        super().__init__(
            f"Bill {bill_id} was marked paid at {marked_at.isoformat()}; "
            f"the {window_hours}h undo window has expired"
        )


@dataclass
class MatchOutcome:
    """What the guarded steps did for one accepted match."""

    match: MatchResult
    cleared: bool = False
    advanced: bool = False
    next_due: date | None = None
    generated_bill_id: str | None = None
    planned: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = self.match.to_dict()
        data.update(
            {
                "cleared": self.cleared,
                "advanced": self.advanced,
                "next_due": self.next_due.isoformat() if self.next_due else None,
                "generated_bill_id": self.generated_bill_id,
                "planned": self.planned,
            }
        )
        return data


@dataclass
class ReconciliationResult:
    """Result of a reconciliation run."""

    state: ReconciliationState
    run_id: str = ""
    transactions_seen: int = 0
    cleared: int = 0
    advanced: int = 0
    generated: int = 0
    details: list[MatchOutcome] = field(default_factory=list)
    skipped: list[StepSkip] = field(default_factory=list)
    rejected: list[RecordRejection] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        """Return True if reconciliation completed without fatal errors."""
        return self.state in (ReconciliationState.COMPLETED, ReconciliationState.DISABLED)

    @property
    def summary(self) -> dict[str, int]:
        return {"cleared": self.cleared, "advanced": self.advanced, "generated": self.generated}

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "state": self.state.value,
            "run_id": self.run_id,
            "transactions_seen": self.transactions_seen,
            **self.summary,
            "details": [d.to_dict() for d in self.details],
            "skipped": [s.to_dict() for s in self.skipped],
            "rejected": [{"index": r.index, "message": r.message} for r in self.rejected],
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
        }


@dataclass
class EndPatternResult:
    """Result of ending a recurring pattern."""

    pattern: RecurringPattern
    deleted_unpaid: int
    kept_paid: int


class ReconciliationService:
    """Orchestrates transaction-driven bill clearing and bill generation.

    Safe to run repeatedly:
    - Skips transactions already linked to a paid bill
    - Never marks a paid bill twice
    - Never advances a pattern past a due date it already left
    - Never generates a second bill for the same pattern and due date

    Usage:
        service = ReconciliationService(store, config)
        result = service.run_reconciliation(transactions, now=datetime.now())
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Config | None = None,
        generation_context: GenerationContext | None = None,
    ) -> None:
        """Initialize the reconciliation service.

        Args:
            store: Document store for the current user.
            config: Application configuration (defaults when omitted).
            generation_context: Shared run context for bulk generation.
        """
        self.store = store
        self.config = config or Config()
        self.scheduler = RecurrenceScheduler(self.config.scheduler.failed_grace_days)
        self.matcher = BillMatchingEngine(self.config.matching)
        self.generator = BillGenerator(
            store, self.scheduler, self.config.scheduler, context=generation_context
        )

    # ------------------------------------------------------------------
    # Transaction-driven clearing
    # ------------------------------------------------------------------

    def run_reconciliation(
        self,
        transactions: Sequence[Transaction],
        now: datetime,
        bills: Sequence[BillInstance] | None = None,
        rejected: Sequence[RecordRejection] = (),
        dry_run: bool = False,
    ) -> ReconciliationResult:
        """Match transactions against unpaid bills and apply the results.

        Args:
            transactions: Validated bank transactions.
            now: Reference time for audit fields.
            bills: Unpaid bills to match against. Loaded from the store when None.
            rejected: Feed records rejected during validation, passed through
                to the result.
            dry_run: If True, report the matches without writing anything.

        Returns:
            ReconciliationResult with counts, per-match details and skips.

        Raises:
            StoreError: If the store fails. The run is not recorded.
        """
        start_time = time.time()
        result = ReconciliationResult(
            state=ReconciliationState.LOADING,
            run_id=uuid.uuid4().hex,
            transactions_seen=len(transactions),
            rejected=list(rejected),
        )

        if not self.config.matching.auto_clear_enabled:
            logger.info("Auto-clearing disabled; skipping reconciliation")
            result.state = ReconciliationState.DISABLED
            return result

        try:
            logger.info("Starting reconciliation - Phase 1: Load")
            if bills is None:
                bills = self.store.find_bills(is_paid=False)
            bills = self._with_merchant_aliases(bills)
            pending = self._unlinked_transactions(transactions, now, result, dry_run)

            result.state = ReconciliationState.MATCHING
            logger.info(
                "Reconciliation - Phase 2: Matching %d transactions against %d bills",
                len(pending),
                len(bills),
            )
            matches = self.matcher.match_transactions(pending, bills)

            result.state = ReconciliationState.APPLYING
            logger.info("Reconciliation - Phase 3: Applying %d matches", len(matches))
            for match in matches:
                if dry_run:
                    result.details.append(MatchOutcome(match=match, planned=True))
                    continue
                result.details.append(self._apply_match(match, now, result))

            result.state = ReconciliationState.COMPLETED
            logger.info(
                "Reconciliation completed: %d cleared, %d advanced, %d generated, %d skipped",
                result.cleared,
                result.advanced,
                result.generated,
                len(result.skipped),
            )
        except StoreError:
            result.state = ReconciliationState.FAILED
            logger.exception("Reconciliation %s failed on store access", result.run_id)
            raise

        result.duration_ms = int((time.time() - start_time) * 1000)
        if not dry_run:
            self._record_run(result, now)
        return result

    def _with_merchant_aliases(self, bills: Sequence[BillInstance]) -> list[BillInstance]:
        """Merge stored merchant aliases into each bill's merchant names."""
        aliases = self.store.get_merchant_aliases()
        if not aliases:
            return list(bills)
        enriched = []
        for bill in bills:
            extra = aliases.get(bill.name.strip().lower(), [])
            names = list(dict.fromkeys([*bill.merchant_names, *extra]))
            enriched.append(replace(bill, merchant_names=names) if extra else bill)
        return enriched

    def _unlinked_transactions(
        self,
        transactions: Sequence[Transaction],
        now: datetime,
        result: ReconciliationResult,
        dry_run: bool,
    ) -> list[Transaction]:
        """Drop transactions that already paid a bill, settling their patterns."""
        pending = []
        for transaction in transactions:
            linked = self.store.find_bill_by_transaction(transaction.id)
            if linked is None:
                pending.append(transaction)
                continue
            logger.info(
                "Transaction %s already linked to bill %s; not matching again",
                transaction.id,
                linked.id,
            )
            result.skipped.append(
                StepSkip(
                    reason=SkipReason.TRANSACTION_ALREADY_LINKED,
                    detail=f"transaction {transaction.id}",
                    bill_id=linked.id,
                    pattern_id=linked.recurring_pattern_id,
                )
            )
            if linked.is_paid and not dry_run:
                self._settle_pattern(linked, linked.paid_date or transaction.date, now, result)
        return pending

    def _apply_match(
        self, match: MatchResult, now: datetime, result: ReconciliationResult
    ) -> MatchOutcome:
        transaction = match.transaction
        bill = match.bill
        outcome = MatchOutcome(match=match)

        outcome.cleared = self._mark_paid(
            bill,
            paid_date=transaction.date,
            amount=abs(transaction.amount),
            transaction_id=transaction.id,
            marked_by=AUTO_MARKED_BY,
            marked_via=AUTO_MARKED_VIA,
            payment_method=AUTO_PAYMENT_METHOD,
            now=now,
            result=result,
        )
        if outcome.cleared:
            result.cleared += 1

        try:
            self._settle_pattern(bill, transaction.date, now, result, outcome)
        except ValueError as e:
            logger.warning("Could not advance pattern for bill %s: %s", bill.id, e)
            result.errors.append(f"Bill {bill.id}: {e}")
        return outcome

    def _mark_paid(
        self,
        bill: BillInstance,
        paid_date: date,
        amount: Decimal,
        transaction_id: str | None,
        marked_by: str,
        marked_via: str,
        payment_method: str,
        now: datetime,
        result: ReconciliationResult,
    ) -> bool:
        """Step 1: conditional mark-paid plus one payment-history row."""
        marked = self.store.mark_bill_paid(
            bill.id,
            paid_date=paid_date,
            paid_amount=amount,
            transaction_id=transaction_id,
            marked_by=marked_by,
            marked_via=marked_via,
            marked_at=now,
        )
        if not marked:
            logger.info("Bill %s already paid; skipping mark", bill.id)
            result.skipped.append(
                StepSkip(
                    reason=SkipReason.BILL_ALREADY_PAID,
                    detail=f"bill {bill.name!r} due {bill.due_date}",
                    bill_id=bill.id,
                    pattern_id=bill.recurring_pattern_id,
                )
            )
            return False

        logger.info("Marked bill %s (%r) paid on %s", bill.id, bill.name, paid_date)
        self.store.record_payment(
            PaymentRecord(
                bill_id=bill.id,
                bill_name=bill.name,
                amount=amount,
                due_date=bill.due_date,
                paid_date=paid_date,
                payment_method=payment_method,
                recurring_pattern_id=bill.recurring_pattern_id,
                linked_transaction_id=transaction_id,
                category=bill.category,
            )
        )
        return True

    def _settle_pattern(
        self,
        bill: BillInstance,
        paid_date: date,
        now: datetime,
        result: ReconciliationResult,
        outcome: MatchOutcome | None = None,
    ) -> None:
        """Steps 2 and 3: advance the owning pattern and ensure its next bill."""
        if not bill.recurring_pattern_id:
            return

        pattern = self.store.get_pattern(bill.recurring_pattern_id)
        if pattern is None:
            self._skip(result, SkipReason.PATTERN_MISSING, "pattern deleted", bill)
            return

        next_due = self.scheduler.advance_after_payment(
            bill.due_date,
            pattern.frequency,
            anchor_day=pattern.anchor_day,
            active_months=pattern.active_months,
        )
        if next_due is None:
            self._skip(result, SkipReason.ONE_TIME_PATTERN, "nothing to advance", bill)
            return
        if outcome is not None:
            outcome.next_due = next_due

        if pattern.next_occurrence == bill.due_date:
            advanced = self.store.advance_pattern(
                pattern.id,
                expected_next=bill.due_date,
                new_next=next_due,
                paid_date=paid_date,
                anchor_day=pattern.anchor_day,
            )
            if advanced:
                logger.info("Advanced pattern %s from %s to %s", pattern.id, bill.due_date, next_due)
                result.advanced += 1
                if outcome is not None:
                    outcome.advanced = True
                pattern = self.store.get_pattern(pattern.id) or pattern
            else:
                self._skip(result, SkipReason.PATTERN_ALREADY_ADVANCED, "advanced concurrently", bill)
                pattern = self.store.get_pattern(pattern.id) or pattern
        else:
            self._skip(
                result,
                SkipReason.PATTERN_ALREADY_ADVANCED,
                f"pattern at {pattern.next_occurrence}, bill due {bill.due_date}",
                bill,
            )

        if pattern.next_occurrence != next_due:
            return

        created = self.generator.ensure_bill(
            pattern,
            next_due,
            result.skipped,
            merchant_names=bill.merchant_names,
            created_from=AUTO_MARKED_BY,
        )
        if created is not None:
            result.generated += 1
            if outcome is not None:
                outcome.generated_bill_id = created.id

    def _skip(
        self, result: ReconciliationResult, reason: SkipReason, detail: str, bill: BillInstance
    ) -> None:
        logger.info("Skip for bill %s (%s): %s", bill.id, reason.value, detail)
        result.skipped.append(
            StepSkip(
                reason=reason,
                detail=detail,
                bill_id=bill.id,
                pattern_id=bill.recurring_pattern_id,
            )
        )

    def _record_run(self, result: ReconciliationResult, now: datetime) -> None:
        self.store.record_run(
            {
                "run_id": result.run_id,
                "state": result.state.value,
                "started_at": now.isoformat(),
                "completed_at": (now + timedelta(milliseconds=result.duration_ms)).isoformat(),
                "transactions_seen": result.transactions_seen,
                "cleared": result.cleared,
                "advanced": result.advanced,
                "generated": result.generated,
                "skipped": len(result.skipped),
                "errors": result.errors,
                "details": [d.to_dict() for d in result.details],
            }
        )

    # ------------------------------------------------------------------
    # Bill lifecycle
    # ------------------------------------------------------------------

    def generate_bills(self, now: datetime) -> GenerationResult:
        """Ensure every live pattern has an unpaid bill at its next occurrence.

        Raises:
            GenerationInProgressError: If another bulk run holds the context
        """
        return self.generator.generate_bills(now.date())

    def record_manual_payment(
        self,
        bill_id: str,
        paid_date: date,
        now: datetime,
        amount: Decimal | None = None,
        marked_by: str = "user",
    ) -> ReconciliationResult:
        """Mark a bill paid by hand and run the same pattern steps.

        Raises:
            BillNotFoundError: If the bill does not exist
        """
        bill = self.store.get_bill(bill_id)
        if bill is None:
            raise BillNotFoundError(f"Bill {bill_id} not found")

        result = ReconciliationResult(state=ReconciliationState.APPLYING, run_id=uuid.uuid4().hex)
        if self._mark_paid(
            bill,
            paid_date=paid_date,
            amount=amount if amount is not None else bill.amount,
            transaction_id=None,
            marked_by=marked_by,
            marked_via=MANUAL_MARKED_VIA,
            payment_method=MANUAL_PAYMENT_METHOD,
            now=now,
            result=result,
        ):
            result.cleared += 1
        self._settle_pattern(bill, paid_date, now, result)
        result.state = ReconciliationState.COMPLETED
        return result

    def unmark_bill(self, bill_id: str, now: datetime, unmarked_by: str = "user") -> BillInstance:
        """Revert a paid bill to pending within the undo window.

        The owning pattern is not rewound; the bill simply becomes payable
        again alongside the already generated next bill.

        Raises:
            BillNotFoundError: If the bill does not exist
            UndoWindowExpiredError: If the payment is older than the window
            UnmarkNotAllowedError: If the bill is unpaid or was already reverted once
        """
        bill = self.store.get_bill(bill_id)
        if bill is None:
            raise BillNotFoundError(f"Bill {bill_id} not found")
        if not bill.is_paid:
            raise UnmarkNotAllowedError(f"Bill {bill_id} is not paid")
        if not bill.can_be_unmarked:
            raise UnmarkNotAllowedError(f"Bill {bill_id} cannot be unmarked")

        window_hours = self.config.scheduler.undo_window_hours
        if bill.marked_at is not None and now - bill.marked_at > timedelta(hours=window_hours):
            raise UndoWindowExpiredError(bill_id, bill.marked_at, window_hours)

        if not self.store.unmark_bill(bill_id, unmarked_at=now, unmarked_by=unmarked_by):
            raise UnmarkNotAllowedError(f"Bill {bill_id} changed while unmarking")

        logger.info("Unmarked bill %s (%r) by %s", bill_id, bill.name, unmarked_by)
        return self.store.get_bill(bill_id) or bill

    def end_pattern(self, pattern_id: str, now: datetime) -> EndPatternResult:
        """Soft-end a pattern: delete its unpaid bills and keep paid history.

        Raises:
            PatternNotFoundError: If the pattern does not exist
            InvalidTransitionError: If the pattern has already ended
        """
        pattern = self.store.get_pattern(pattern_id)
        if pattern is None:
            raise PatternNotFoundError(f"Pattern {pattern_id} not found")

        new_status = transition(pattern.status, StatusEvent.END)
        self.store.update_pattern_status(pattern_id, new_status)
        deleted = self.store.delete_unpaid_bills(pattern_id)
        kept = len(self.store.find_bills(is_paid=True, recurring_pattern_id=pattern_id))

        logger.info(
            "Ended pattern %s (%r) on %s: %d unpaid bills deleted, %d paid kept",
            pattern_id,
            pattern.name,
            now.date(),
            deleted,
            kept,
        )
        return EndPatternResult(
            pattern=replace(pattern, status=new_status),
            deleted_unpaid=deleted,
            kept_paid=kept,
        )

    def set_pattern_status(
        self, pattern_id: str, event: StatusEvent, now: datetime
    ) -> RecurringPattern:
        """Apply a status event to a stored pattern and persist the result.

        Ending goes through end_pattern so unpaid bills are removed.

        Raises:
            PatternNotFoundError: If the pattern does not exist
            InvalidTransitionError: If the event is illegal for the current status
        """
        pattern = self.store.get_pattern(pattern_id)
        if pattern is None:
            raise PatternNotFoundError(f"Pattern {pattern_id} not found")
        if event == StatusEvent.END:
            return self.end_pattern(pattern_id, now).pattern

        updated = self.scheduler.apply_event(pattern, event)
        self.store.update_pattern_status(pattern_id, updated.status)
        logger.info(
            "Pattern %s: %s -> %s", pattern_id, pattern.status.value, updated.status.value
        )
        return updated
