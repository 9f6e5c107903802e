"""Tests for the transaction-to-bill matching engine."""

from datetime import date
from decimal import Decimal

import pytest
from conftest import make_bill, make_transaction

from billrecon.config import MatchingConfig
from billrecon.matching import BillMatchingEngine
from billrecon.schemas.records import Frequency


@pytest.fixture
def engine():
    return BillMatchingEngine()


class TestScore:
    def test_all_criteria(self, engine):
        result = engine.score(make_transaction(), make_bill())

        assert result.confidence == 100
        assert result.criteria == {"name": True, "amount": True, "date": True}
        assert result.days_apart == 1

    def test_two_criteria_accepted(self, engine):
        late = make_transaction(tx_date=date(2025, 1, 25))

        result = engine.score(late, make_bill())

        assert result.confidence == 67
        assert not result.date_match
        assert engine.find_best_match(late, [make_bill()]).bill.id == "bill-1"

    def test_one_criterion_rejected(self, engine):
        other = make_transaction(name="SPOTIFY USA", tx_date=date(2025, 2, 20))

        assert engine.score(other, make_bill()).confidence == 33
        assert engine.find_best_match(other, [make_bill()]) is None

    def test_amount_tolerance_is_absolute(self, engine):
        within = make_transaction(amount="-16.99")
        outside = make_transaction(amount="-17.00")

        assert engine.score(within, make_bill()).amount_match
        assert not engine.score(outside, make_bill()).amount_match

    def test_date_tolerance_boundary(self, engine):
        assert engine.score(make_transaction(tx_date=date(2025, 1, 13)), make_bill()).date_match
        assert not engine.score(
            make_transaction(tx_date=date(2025, 1, 14)), make_bill()
        ).date_match

    def test_merchant_aliases(self, engine):
        bill = make_bill(name="Car Loan", amount="350.00", merchant_names=["ACME FINANCE"])
        tx = make_transaction(name="ACME FINANCE 1234", amount="-420.00")

        result = engine.score(tx, bill)

        assert result.name_match
        assert result.confidence == 67

    def test_config_tolerances(self):
        engine = BillMatchingEngine(
            MatchingConfig(amount_tolerance=Decimal("5.00"), date_tolerance_days=10)
        )
        tx = make_transaction(amount="-19.99", tx_date=date(2025, 1, 20))

        assert engine.score(tx, make_bill()).confidence == 100


class TestBestMatch:
    def test_tie_goes_to_oldest_due_date(self, engine):
        bills = [
            make_bill("bill-jan", due_date=date(2025, 1, 10)),
            make_bill("bill-dec", due_date=date(2024, 12, 10)),
        ]
        tx = make_transaction(tx_date=date(2025, 3, 1))

        best = engine.find_best_match(tx, bills)

        assert best.bill.id == "bill-dec"
        assert best.confidence == 67

    def test_higher_confidence_beats_older_bill(self, engine):
        bills = [
            make_bill("bill-jan", due_date=date(2025, 1, 10)),
            make_bill("bill-dec", due_date=date(2024, 12, 10)),
        ]

        assert engine.find_best_match(make_transaction(), bills).bill.id == "bill-jan"

    def test_paid_bills_ignored(self, engine):
        paid = make_bill(is_paid=True)
        assert engine.find_best_match(make_transaction(), [paid]) is None


class TestMatchTransactions:
    def test_each_bill_consumed_once(self, engine):
        transactions = [
            make_transaction("tx-1", tx_date=date(2025, 1, 11)),
            make_transaction("tx-2", tx_date=date(2025, 1, 12)),
        ]

        matches = engine.match_transactions(transactions, [make_bill()])

        assert len(matches) == 1
        assert matches[0].transaction.id == "tx-1"

    def test_each_transaction_consumed_once(self, engine):
        bills = [
            make_bill("bill-1", due_date=date(2025, 1, 10)),
            make_bill("bill-2", due_date=date(2025, 1, 11)),
        ]

        matches = engine.match_transactions([make_transaction()], bills)

        assert [m.bill.id for m in matches] == ["bill-1"]

    def test_pairs_several_bills(self, engine):
        bills = [
            make_bill("bill-netflix"),
            make_bill("bill-spotify", name="Spotify", amount="10.99", due_date=date(2025, 1, 12)),
        ]
        transactions = [
            make_transaction("tx-s", name="SPOTIFY USA", amount="-10.99", tx_date=date(2025, 1, 12)),
            make_transaction("tx-n"),
        ]

        matches = engine.match_transactions(transactions, bills)

        assert {(m.transaction.id, m.bill.id) for m in matches} == {
            ("tx-n", "bill-netflix"),
            ("tx-s", "bill-spotify"),
        }

    def test_no_bills(self, engine):
        assert engine.match_transactions([make_transaction()], []) == []

    def test_full_match_beats_older_partial_match(self, engine):
        transactions = [
            make_transaction("tx-old", tx_date=date(2024, 12, 20)),
            make_transaction("tx-jan"),
        ]

        matches = engine.match_transactions(transactions, [make_bill()])

        assert [(m.transaction.id, m.bill.id) for m in matches] == [("tx-jan", "bill-1")]
        assert matches[0].confidence == 100

    def test_matches_returned_in_transaction_order(self, engine):
        bills = [
            make_bill("bill-jan"),
            make_bill("bill-feb", due_date=date(2025, 2, 10)),
        ]
        transactions = [
            make_transaction("tx-feb", tx_date=date(2025, 2, 10)),
            make_transaction("tx-jan"),
        ]

        matches = engine.match_transactions(transactions, bills)

        assert [(m.transaction.id, m.bill.id) for m in matches] == [
            ("tx-jan", "bill-jan"),
            ("tx-feb", "bill-feb"),
        ]


class TestPreviousPeriod:
    def test_payment_from_previous_period_rejected(self, engine):
        december = make_transaction("tx-dec", tx_date=date(2024, 12, 10))

        assert engine.predates_period(december, make_bill())
        assert engine.find_best_match(december, [make_bill()]) is None

    def test_late_payment_still_accepted(self, engine):
        tx = make_transaction(tx_date=date(2025, 2, 20))

        assert not engine.predates_period(tx, make_bill())
        assert engine.find_best_match(tx, [make_bill()]).confidence == 67

    def test_one_time_bill_has_no_previous_period(self, engine):
        bill = make_bill(recurrence=Frequency.ONE_TIME)
        early = make_transaction(tx_date=date(2024, 11, 1))

        assert not engine.predates_period(early, bill)
        assert engine.find_best_match(early, [bill]).confidence == 67
