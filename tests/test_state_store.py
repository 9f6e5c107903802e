"""Tests for the SQLite state store."""

import sqlite3
from datetime import date
from decimal import Decimal

import pytest
from conftest import NOW, make_bill, make_pattern

from billrecon.schemas.records import BillStatus, PatternStatus, PaymentOutcome, PaymentRecord
from billrecon.state_store import StateStore, StoreError
from billrecon.state_store.migrations import MigrationRunner, get_all_migrations


def mark_paid(store, bill_id, transaction_id="tx-1", marked_at=NOW):
    return store.mark_bill_paid(
        bill_id,
        paid_date=date(2025, 1, 11),
        paid_amount=Decimal("15.99"),
        transaction_id=transaction_id,
        marked_by="auto-bill-clearing",
        marked_via="auto-transaction-match",
        marked_at=marked_at,
    )


class TestSchema:
    def test_creates_tables(self, store, temp_db):
        conn = sqlite3.connect(temp_db)
        tables = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        conn.close()

        assert {
            "recurring_patterns",
            "bills",
            "bill_payments",
            "institution_aliases",
            "merchant_aliases",
            "reconciliation_runs",
            "migrations",
        } <= tables

    def test_migrations_applied(self, store, temp_db):
        conn = sqlite3.connect(temp_db)
        runner = MigrationRunner(conn)

        assert runner.get_current_version() == 3
        assert runner.get_pending() == []
        conn.close()

    def test_migrations_are_ordered(self):
        versions = [m.version for m in get_all_migrations()]
        assert versions == sorted(versions) == [1, 2, 3]

    def test_run_pending_reapplies_only_missing_versions(self, store, temp_db):
        conn = sqlite3.connect(temp_db)
        conn.execute("DELETE FROM migrations WHERE version = 3")
        conn.commit()
        runner = MigrationRunner(conn)

        assert runner.run_pending() == [3]
        assert runner.run_pending() == []
        assert runner.get_current_version() == 3
        conn.close()

    def test_reopen_is_idempotent(self, store, temp_db):
        store.save_pattern(make_pattern())

        reopened = StateStore(temp_db)

        assert reopened.get_pattern("pat-netflix") is not None


class TestPatterns:
    def test_round_trip(self, store):
        pattern = make_pattern(
            active_months=[1, 2, 3],
            end_date=date(2025, 12, 31),
            last_payment_status=PaymentOutcome.SUCCESS,
            merchant_names=["NFLX"],
        )
        store.save_pattern(pattern)

        loaded = store.get_pattern("pat-netflix")

        assert loaded == pattern

    def test_save_assigns_id(self, store):
        pattern = store.save_pattern(make_pattern(pattern_id=""))
        assert pattern.id

    def test_list_by_status(self, store):
        store.save_pattern(make_pattern("p1"))
        store.save_pattern(make_pattern("p2", status=PatternStatus.PAUSED))

        assert [p.id for p in store.list_patterns()] == ["p1", "p2"]
        assert [p.id for p in store.list_patterns(PatternStatus.PAUSED)] == ["p2"]

    def test_conditional_advance(self, store):
        store.save_pattern(make_pattern(next_occurrence=date(2025, 1, 31)))

        first = store.advance_pattern(
            "pat-netflix", date(2025, 1, 31), date(2025, 2, 28), date(2025, 2, 1), anchor_day=31
        )
        second = store.advance_pattern(
            "pat-netflix", date(2025, 1, 31), date(2025, 2, 28), date(2025, 2, 1), anchor_day=31
        )

        pattern = store.get_pattern("pat-netflix")
        assert (first, second) == (True, False)
        assert pattern.next_occurrence == date(2025, 2, 28)
        assert pattern.day_of_month == 31
        assert pattern.last_paid_date == date(2025, 2, 1)
        assert pattern.last_payment_status == PaymentOutcome.SUCCESS

    def test_advance_keeps_existing_anchor(self, store):
        store.save_pattern(make_pattern(next_occurrence=date(2025, 2, 28), day_of_month=31))

        store.advance_pattern(
            "pat-netflix", date(2025, 2, 28), date(2025, 3, 31), date(2025, 3, 1), anchor_day=28
        )

        assert store.get_pattern("pat-netflix").day_of_month == 31

    def test_update_status(self, store):
        store.save_pattern(make_pattern())

        assert store.update_pattern_status("pat-netflix", PatternStatus.ENDED)
        assert store.get_pattern("pat-netflix").status == PatternStatus.ENDED
        assert not store.update_pattern_status("missing", PatternStatus.ENDED)


class TestBills:
    def test_round_trip(self, store):
        bill = make_bill(recurring_pattern_id="pat-netflix", merchant_names=["NFLX"])
        store.save_bill(bill)

        assert store.get_bill("bill-1") == bill

    def test_insert_if_absent_rejects_same_pattern_and_due_date(self, store):
        first = make_bill("bill-1", recurring_pattern_id="pat-netflix")
        twin = make_bill("bill-2", recurring_pattern_id="pat-netflix")

        assert store.insert_bill_if_absent(first)
        assert not store.insert_bill_if_absent(twin)
        assert [b.id for b in store.find_bills()] == ["bill-1"]

    def test_one_time_bills_not_constrained(self, store):
        assert store.insert_bill_if_absent(make_bill("bill-1"))
        assert store.insert_bill_if_absent(make_bill("bill-2"))

    def test_save_bill_conflict_raises(self, store):
        store.save_bill(make_bill("bill-1", recurring_pattern_id="pat-netflix"))

        with pytest.raises(StoreError):
            store.save_bill(make_bill("bill-2", recurring_pattern_id="pat-netflix"))

    def test_find_bills_filters(self, store):
        store.save_bill(make_bill("b1", recurring_pattern_id="p1", due_date=date(2025, 2, 10)))
        store.save_bill(make_bill("b2", recurring_pattern_id="p1", due_date=date(2025, 1, 10)))
        store.save_bill(make_bill("b3", recurring_pattern_id="p2"))
        mark_paid(store, "b3")

        assert [b.id for b in store.find_bills(recurring_pattern_id="p1")] == ["b2", "b1"]
        assert [b.id for b in store.find_bills(is_paid=True)] == ["b3"]
        assert [b.id for b in store.find_bills(due_date=date(2025, 2, 10))] == ["b1"]
        assert store.count_unpaid_bills("p1") == 2
        assert store.bill_exists("p1", date(2025, 1, 10))
        assert not store.bill_exists("p1", date(2025, 3, 10))

    def test_mark_paid_only_once(self, store):
        store.save_bill(make_bill())

        assert mark_paid(store, "bill-1")
        assert not mark_paid(store, "bill-1", transaction_id="tx-2")

        bill = store.get_bill("bill-1")
        assert bill.is_paid
        assert bill.status == BillStatus.PAID
        assert bill.linked_transaction_id == "tx-1"
        assert bill.marked_at == NOW
        assert store.find_bill_by_transaction("tx-1").id == "bill-1"

    def test_mark_missing_bill(self, store):
        assert not mark_paid(store, "missing")

    def test_unmark_only_once(self, store):
        store.save_bill(make_bill())
        mark_paid(store, "bill-1")

        assert store.unmark_bill("bill-1", NOW, "user")
        assert not store.unmark_bill("bill-1", NOW, "user")

        bill = store.get_bill("bill-1")
        assert not bill.is_paid
        assert bill.status == BillStatus.PENDING
        assert bill.linked_transaction_id is None
        assert not bill.can_be_unmarked

    def test_delete_unpaid_keeps_paid(self, store):
        store.save_bill(make_bill("b1", recurring_pattern_id="p1", due_date=date(2024, 12, 10)))
        store.save_bill(make_bill("b2", recurring_pattern_id="p1", due_date=date(2025, 1, 10)))
        store.save_bill(make_bill("b3", recurring_pattern_id="p1", due_date=date(2025, 2, 10)))
        mark_paid(store, "b1")

        assert store.delete_unpaid_bills("p1") == 2
        assert [b.id for b in store.find_bills(recurring_pattern_id="p1")] == ["b1"]

    def test_delete_bill(self, store):
        store.save_bill(make_bill())

        assert store.delete_bill("bill-1")
        assert not store.delete_bill("bill-1")


class TestPayments:
    def test_record_once_per_transaction(self, store):
        payment = PaymentRecord(
            bill_id="bill-1",
            bill_name="Netflix",
            amount=Decimal("15.99"),
            due_date=date(2025, 1, 10),
            paid_date=date(2025, 1, 11),
            linked_transaction_id="tx-1",
        )

        assert store.record_payment(payment)
        assert not store.record_payment(payment)
        assert store.list_payments("bill-1") == [payment]

    def test_manual_payments_dedupe_on_paid_date(self, store):
        payment = PaymentRecord(
            bill_id="bill-1",
            bill_name="Netflix",
            amount=Decimal("15.99"),
            due_date=date(2025, 1, 10),
            paid_date=date(2025, 1, 12),
        )

        assert store.record_payment(payment)
        assert not store.record_payment(payment)

        loaded = store.list_payments()[0]
        assert loaded.linked_transaction_id is None
        assert loaded.is_overdue


class TestAliasesAndRuns:
    def test_institution_aliases(self, store):
        store.set_institution_alias("My Credit Union", "acc-1")
        store.set_institution_alias("My Credit Union", "acc-2")

        assert store.get_institution_aliases() == {"My Credit Union": "acc-2"}

    def test_merchant_aliases_keyed_lowercase(self, store):
        store.set_merchant_aliases("  Car Loan ", ["ACME FINANCE"])

        assert store.get_merchant_aliases() == {"car loan": ["ACME FINANCE"]}

    def test_runs(self, store):
        store.record_run(
            {
                "run_id": "r1",
                "state": "completed",
                "started_at": NOW.isoformat(),
                "cleared": 1,
                "errors": ["boom"],
            }
        )
        store.record_run({"run_id": "r2", "state": "failed", "started_at": NOW.isoformat()})

        runs = store.list_runs()

        assert [r["run_id"] for r in runs] == ["r2", "r1"]
        assert runs[1]["errors"] == ["boom"]
        assert runs[1]["cleared"] == 1

    def test_stats(self, store):
        store.save_pattern(make_pattern())
        store.save_bill(make_bill("b1"))
        store.save_bill(make_bill("b2"))
        mark_paid(store, "b1")

        stats = store.get_stats()

        assert stats["patterns_by_status"] == {"active": 1}
        assert stats["bills_total"] == 2
        assert stats["bills_paid"] == 1
        assert stats["bills_unpaid"] == 1
        assert stats["runs"] == 0


class TestUserIsolation:
    def test_users_do_not_see_each_other(self, temp_db):
        alice = StateStore(temp_db, user_id="alice")
        bob = StateStore(temp_db, user_id="bob")
        alice.save_pattern(make_pattern())
        alice.save_bill(make_bill(recurring_pattern_id="pat-netflix"))

        assert bob.get_pattern("pat-netflix") is None
        assert bob.find_bills() == []
        assert bob.insert_bill_if_absent(make_bill(recurring_pattern_id="pat-netflix"))
        assert not mark_paid(bob, "missing")
        assert alice.get_stats()["bills_total"] == 1

