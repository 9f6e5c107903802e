"""Tests for the ReconciliationService.

These tests verify:
- Guarded clearing: mark paid, advance pattern, ensure the next bill
- Repeated and interrupted runs converging on the same state
- Manual payments, undo window and pattern lifecycle operations
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from conftest import NOW, make_bill, make_pattern, make_transaction

from billrecon.scheduler import InvalidTransitionError, StatusEvent
from billrecon.schemas.records import Frequency, PatternStatus, RecordRejection
from billrecon.services import (
    BillNotFoundError,
    PatternNotFoundError,
    ReconciliationService,
    ReconciliationState,
    SkipReason,
    UndoWindowExpiredError,
    UnmarkNotAllowedError,
)
from billrecon.state_store import StoreError


@pytest.fixture
def service(store, config):
    return ReconciliationService(store, config)


@pytest.fixture
def netflix(store):
    """Monthly Netflix pattern with its bill due 2025-01-10."""
    pattern = store.save_pattern(make_pattern(merchant_names=["NETFLIX.COM"]))
    store.save_bill(make_bill(recurring_pattern_id=pattern.id, merchant_names=["NETFLIX.COM"]))
    return pattern


def reasons(result):
    return [s.reason for s in result.skipped]


def next_bill(store):
    bills = store.find_bills(recurring_pattern_id="pat-netflix", due_date=date(2025, 2, 10))
    return bills[0] if bills else None


class TestRunReconciliation:
    def test_clears_advances_and_generates(self, service, store, netflix):
        result = service.run_reconciliation([make_transaction()], NOW)

        assert result.state == ReconciliationState.COMPLETED
        assert result.success
        assert result.summary == {"cleared": 1, "advanced": 1, "generated": 1}

        bill = store.get_bill("bill-1")
        assert bill.is_paid
        assert bill.paid_date == date(2025, 1, 11)
        assert bill.paid_amount == Decimal("15.99")
        assert bill.linked_transaction_id == "tx-1"
        assert bill.marked_by == "auto-bill-clearing"
        assert bill.marked_via == "auto-transaction-match"
        assert bill.marked_at == NOW

        pattern = store.get_pattern("pat-netflix")
        assert pattern.next_occurrence == date(2025, 2, 10)
        assert pattern.last_paid_date == date(2025, 1, 11)

        generated = next_bill(store)
        assert generated.created_from == "auto-bill-clearing"
        assert generated.merchant_names == ["NETFLIX.COM"]
        assert result.details[0].generated_bill_id == generated.id
        assert result.details[0].next_due == date(2025, 2, 10)

        payments = store.list_payments("bill-1")
        assert len(payments) == 1
        assert payments[0].payment_method == "Auto (transaction feed)"
        assert len(store.list_runs()) == 1

    def test_second_run_changes_nothing(self, service, store, netflix):
        service.run_reconciliation([make_transaction()], NOW)

        second = service.run_reconciliation([make_transaction()], NOW)

        assert second.summary == {"cleared": 0, "advanced": 0, "generated": 0}
        assert reasons(second) == [
            SkipReason.TRANSACTION_ALREADY_LINKED,
            SkipReason.PATTERN_ALREADY_ADVANCED,
            SkipReason.NEXT_BILL_EXISTS,
        ]
        assert len(store.find_bills()) == 2
        assert len(store.list_payments()) == 1
        assert store.get_pattern("pat-netflix").next_occurrence == date(2025, 2, 10)

    def test_feed_with_two_monthly_payments_converges(self, service, store, netflix):
        feed = [
            make_transaction("tx-dec", tx_date=date(2024, 12, 10)),
            make_transaction("tx-jan"),
        ]

        first = service.run_reconciliation(feed, NOW)
        second = service.run_reconciliation(feed, NOW)

        assert first.summary == {"cleared": 1, "advanced": 1, "generated": 1}
        assert store.get_bill("bill-1").linked_transaction_id == "tx-jan"
        assert second.summary == {"cleared": 0, "advanced": 0, "generated": 0}
        assert not next_bill(store).is_paid
        assert store.get_pattern("pat-netflix").next_occurrence == date(2025, 2, 10)
        assert len(store.list_payments()) == 1

    def test_resumes_after_crash_before_advance(self, service, store, netflix):
        store.mark_bill_paid(
            "bill-1",
            paid_date=date(2025, 1, 11),
            paid_amount=Decimal("15.99"),
            transaction_id="tx-1",
            marked_by="auto-bill-clearing",
            marked_via="auto-transaction-match",
            marked_at=NOW,
        )

        result = service.run_reconciliation([make_transaction()], NOW)

        assert result.summary == {"cleared": 0, "advanced": 1, "generated": 1}
        assert store.get_pattern("pat-netflix").next_occurrence == date(2025, 2, 10)
        assert next_bill(store) is not None

    def test_resumes_after_crash_before_generation(self, service, store, netflix):
        store.mark_bill_paid(
            "bill-1",
            paid_date=date(2025, 1, 11),
            paid_amount=Decimal("15.99"),
            transaction_id="tx-1",
            marked_by="auto-bill-clearing",
            marked_via="auto-transaction-match",
            marked_at=NOW,
        )
        store.advance_pattern(
            "pat-netflix", date(2025, 1, 10), date(2025, 2, 10), date(2025, 1, 11)
        )

        result = service.run_reconciliation([make_transaction()], NOW)

        assert result.summary == {"cleared": 0, "advanced": 0, "generated": 1}
        assert next_bill(store) is not None

    def test_month_end_anchor_survives(self, service, store):
        store.save_pattern(make_pattern(next_occurrence=date(2025, 1, 31)))
        store.save_bill(make_bill(recurring_pattern_id="pat-netflix", due_date=date(2025, 1, 31)))

        service.run_reconciliation([make_transaction(tx_date=date(2025, 1, 31))], NOW)
        feb = store.find_bills(is_paid=False)[0]
        assert feb.due_date == date(2025, 2, 28)
        service.run_reconciliation(
            [make_transaction("tx-2", tx_date=date(2025, 2, 28))], NOW, bills=[feb]
        )

        assert store.get_pattern("pat-netflix").next_occurrence == date(2025, 3, 31)

    def test_disabled(self, store, config, netflix):
        config.matching.auto_clear_enabled = False

        result = ReconciliationService(store, config).run_reconciliation([make_transaction()], NOW)

        assert result.state == ReconciliationState.DISABLED
        assert result.success
        assert not store.get_bill("bill-1").is_paid
        assert store.list_runs() == []

    def test_dry_run_writes_nothing(self, service, store, netflix):
        result = service.run_reconciliation([make_transaction()], NOW, dry_run=True)

        assert [d.planned for d in result.details] == [True]
        assert result.details[0].match.bill.id == "bill-1"
        assert not store.get_bill("bill-1").is_paid
        assert store.list_runs() == []

    def test_no_match(self, service, store, netflix):
        tx = make_transaction(name="SPOTIFY USA", amount="-10.99", tx_date=date(2025, 3, 1))

        result = service.run_reconciliation([tx], NOW)

        assert result.details == []
        assert result.cleared == 0

    def test_stored_merchant_aliases_used(self, service, store):
        store.save_bill(make_bill("loan", name="Car Loan", amount="350.00"))
        store.set_merchant_aliases("Car Loan", ["ACME FINANCE"])
        tx = make_transaction(name="ACME FINANCE 1234", amount="-420.00")

        result = service.run_reconciliation([tx], NOW)

        assert result.cleared == 1
        assert store.get_bill("loan").is_paid

    def test_one_time_bill_not_advanced(self, service, store):
        store.save_pattern(make_pattern(frequency=Frequency.ONE_TIME))
        store.save_bill(make_bill(recurrence=Frequency.ONE_TIME, recurring_pattern_id="pat-netflix"))

        result = service.run_reconciliation([make_transaction()], NOW)

        assert result.cleared == 1
        assert result.advanced == 0
        assert reasons(result) == [SkipReason.ONE_TIME_PATTERN]

    def test_missing_pattern_skipped(self, service, store):
        store.save_bill(make_bill(recurring_pattern_id="deleted"))

        result = service.run_reconciliation([make_transaction()], NOW)

        assert result.cleared == 1
        assert reasons(result) == [SkipReason.PATTERN_MISSING]

    def test_rejections_passed_through(self, service, store, netflix):
        rejected = [RecordRejection(index=2, message="missing name")]

        result = service.run_reconciliation([make_transaction()], NOW, rejected=rejected)

        assert result.rejected == rejected
        assert result.to_dict()["rejected"] == [{"index": 2, "message": "missing name"}]

    def test_store_error_propagates(self, service, store, netflix):
        with patch.object(store, "find_bills", side_effect=StoreError("disk I/O error")):
            with pytest.raises(StoreError, match="disk I/O error"):
                service.run_reconciliation([make_transaction()], NOW)

        assert store.list_runs() == []


class TestManualPayment:
    def test_manual_payment_runs_pattern_steps(self, service, store, netflix):
        result = service.record_manual_payment("bill-1", date(2025, 1, 12), NOW)

        assert result.summary == {"cleared": 1, "advanced": 1, "generated": 1}
        bill = store.get_bill("bill-1")
        assert bill.marked_via == "manual"
        assert bill.marked_by == "user"
        assert bill.linked_transaction_id is None
        payment = store.list_payments("bill-1")[0]
        assert payment.payment_method == "Manual"
        assert payment.amount == Decimal("15.99")

    def test_repeat_is_a_skip(self, service, store, netflix):
        service.record_manual_payment("bill-1", date(2025, 1, 12), NOW)

        again = service.record_manual_payment("bill-1", date(2025, 1, 12), NOW)

        assert again.cleared == 0
        assert SkipReason.BILL_ALREADY_PAID in reasons(again)
        assert len(store.list_payments()) == 1

    def test_custom_amount(self, service, store, netflix):
        service.record_manual_payment("bill-1", date(2025, 1, 12), NOW, amount=Decimal("17.49"))

        assert store.get_bill("bill-1").paid_amount == Decimal("17.49")

    def test_missing_bill(self, service):
        with pytest.raises(BillNotFoundError):
            service.record_manual_payment("missing", date(2025, 1, 12), NOW)


class TestUnmark:
    def test_unmark_within_window(self, service, store, netflix):
        service.run_reconciliation([make_transaction()], NOW)

        bill = service.unmark_bill("bill-1", NOW + timedelta(hours=1))

        assert not bill.is_paid
        assert not bill.can_be_unmarked
        # The pattern is not rewound
        assert store.get_pattern("pat-netflix").next_occurrence == date(2025, 2, 10)
        assert next_bill(store) is not None

    def test_unmark_twice(self, service, netflix):
        service.run_reconciliation([make_transaction()], NOW)
        service.unmark_bill("bill-1", NOW)

        with pytest.raises(UnmarkNotAllowedError, match="not paid"):
            service.unmark_bill("bill-1", NOW)

    def test_window_expired(self, service, store, netflix):
        service.run_reconciliation([make_transaction()], NOW)

        with pytest.raises(UndoWindowExpiredError) as exc_info:
            service.unmark_bill("bill-1", NOW + timedelta(hours=73))

        assert exc_info.value.window_hours == 72
        assert store.get_bill("bill-1").is_paid

    def test_missing_bill(self, service):
        with pytest.raises(BillNotFoundError):
            service.unmark_bill("missing", NOW)


class TestPatternLifecycle:
    def test_end_pattern_keeps_paid_history(self, service, store, netflix):
        service.run_reconciliation([make_transaction()], NOW)

        result = service.end_pattern("pat-netflix", NOW)

        assert result.deleted_unpaid == 1
        assert result.kept_paid == 1
        assert result.pattern.status == PatternStatus.ENDED
        assert [b.id for b in store.find_bills()] == ["bill-1"]
        assert store.get_pattern("pat-netflix").status == PatternStatus.ENDED

    def test_end_twice_refused(self, service, netflix):
        service.end_pattern("pat-netflix", NOW)

        with pytest.raises(InvalidTransitionError):
            service.end_pattern("pat-netflix", NOW)

    def test_pause_stops_generation(self, service, store):
        store.save_pattern(make_pattern())

        paused = service.set_pattern_status("pat-netflix", StatusEvent.PAUSE, NOW)
        generated = service.generate_bills(NOW)

        assert paused.status == PatternStatus.PAUSED
        assert generated.generated == []

        service.set_pattern_status("pat-netflix", StatusEvent.RESUME, NOW)
        assert len(service.generate_bills(NOW).generated) == 1

    def test_end_event_deletes_unpaid(self, service, store, netflix):
        ended = service.set_pattern_status("pat-netflix", StatusEvent.END, NOW)

        assert ended.status == PatternStatus.ENDED
        assert store.find_bills() == []

    def test_illegal_event(self, service, store):
        store.save_pattern(make_pattern())

        with pytest.raises(InvalidTransitionError):
            service.set_pattern_status("pat-netflix", StatusEvent.RESUME, NOW)

    def test_missing_pattern(self, service):
        with pytest.raises(PatternNotFoundError):
            service.set_pattern_status("missing", StatusEvent.PAUSE, NOW)
        with pytest.raises(PatternNotFoundError):
            service.end_pattern("missing", NOW)
