"""Matching engine for correlating bank transactions with unpaid bills.

Three criteria, each a plain yes/no:
- Name: the transaction name matches the bill name or one of its merchant
  aliases (similarity engine, bill profile)
- Amount: |transaction| within the absolute dollar tolerance of the bill
- Date: transaction date within the day tolerance of the due date

Confidence is round(100 * criteria_met / 3), so 0, 33, 67 or 100. A match is
accepted at 67 or above, i.e. when at least two criteria hold.

When several bills clear the threshold for one transaction the highest
confidence wins and ties go to the earliest due date ("oldest unpaid first").
Each bill and each transaction is consumed at most once per pass, and a
transaction dated on or before a recurring bill's previous occurrence never
settles that bill.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Sequence

from billrecon.schemas.records import BillInstance, Transaction
from billrecon.scheduler.recurrence import step
from billrecon.similarity.engine import BILL_PROFILE, SimilarityEngine

if TYPE_CHECKING:
    from billrecon.config import MatchingConfig

logger = logging.getLogger(__name__)

CRITERIA_COUNT = 3
DEFAULT_MIN_CONFIDENCE = 67


@dataclass
class MatchResult:
    """Result of matching one transaction to one bill."""

    transaction: Transaction
    bill: BillInstance
    confidence: int
    name_match: bool
    amount_match: bool
    date_match: bool
    name_score: float = 0.0
    amount_difference: Decimal = Decimal("0")
    days_apart: int = 0

    @property
    def criteria(self) -> dict[str, bool]:
        """Per-criterion breakdown."""
        return {"name": self.name_match, "amount": self.amount_match, "date": self.date_match}

    @property
    def criteria_met(self) -> int:
        return sum(self.criteria.values())

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "transaction_id": self.transaction.id,
            "transaction_name": self.transaction.name,
            "bill_id": self.bill.id,
            "bill_name": self.bill.name,
            "confidence": self.confidence,
            "criteria": self.criteria,
            "name_score": self.name_score,
            "amount_difference": str(self.amount_difference),
            "days_apart": self.days_apart,
        }


class BillMatchingEngine:
    """Scores transactions against unpaid bills.

    Args:
        config: Matching settings; defaults are $1.00, 3 days, name 80,
            confidence 67.
        engine: Similarity engine; built from config when omitted.
    """

    def __init__(
        self,
        config: MatchingConfig | None = None,
        engine: SimilarityEngine | None = None,
    ) -> None:
        if engine is None:
            profile = BILL_PROFILE
            if config is not None:
                profile = profile.with_tolerances(
                    amount_tolerance=config.amount_tolerance,
                    date_tolerance_days=config.date_tolerance_days,
                    name_threshold=config.name_threshold,
                )
            engine = SimilarityEngine(profile)
        self.engine = engine
        self.min_confidence = config.min_confidence if config else DEFAULT_MIN_CONFIDENCE

    def score(self, transaction: Transaction, bill: BillInstance) -> MatchResult:
        """Evaluate the three criteria for one transaction/bill pair."""
        profile = self.engine.profile
        name_score = self.engine.name_score(transaction.name, bill.name, bill.merchant_names)
        name_match = self.engine.names_match(transaction.name, bill.name, bill.merchant_names)
        difference = abs(abs(transaction.amount) - abs(bill.amount))
        amount_match = difference <= profile.amount_tolerance
        days_apart = abs((transaction.date - bill.due_date).days)
        date_match = days_apart <= profile.date_tolerance_days

        met = sum((name_match, amount_match, date_match))
        return MatchResult(
            transaction=transaction,
            bill=bill,
            confidence=round(100 * met / CRITERIA_COUNT),
            name_match=name_match,
            amount_match=amount_match,
            date_match=date_match,
            name_score=name_score,
            amount_difference=difference,
            days_apart=days_apart,
        )

    @staticmethod
    def predates_period(transaction: Transaction, bill: BillInstance) -> bool:
        """True when the transaction falls on or before the bill's previous occurrence.

        Such a payment belongs to an earlier period and can never settle this
        bill. One-time bills have no previous occurrence.
        """
        previous = step(bill.due_date, bill.recurrence, periods=-1)
        return previous is not None and transaction.date <= previous

    def candidates(
        self, transaction: Transaction, bills: Iterable[BillInstance]
    ) -> list[MatchResult]:
        """All unpaid bills clearing the threshold, best first."""
        results = [
            result
            for result in (
                self.score(transaction, bill)
                for bill in bills
                if not bill.is_paid and not self.predates_period(transaction, bill)
            )
            if result.confidence >= self.min_confidence
        ]
        results.sort(key=_rank)
        return results

    def find_best_match(
        self, transaction: Transaction, bills: Iterable[BillInstance]
    ) -> MatchResult | None:
        """Best bill for one transaction, or None when nothing clears the threshold."""
        results = self.candidates(transaction, bills)
        if not results:
            return None
        best = results[0]
        if len(results) > 1:
            _log_ambiguous(transaction, best, len(results))
        return best

    def match_transactions(
        self, transactions: Sequence[Transaction], bills: Sequence[BillInstance]
    ) -> list[MatchResult]:
        """Pair transactions with bills, consuming each side at most once.

        Every transaction/bill pair is scored first. Pairs are then taken best
        first: highest confidence, then earliest due date, then the fewest
        days between payment and due date. A pair is skipped once either side
        has been taken, so an older partial match never claims a bill that a
        later transaction matches on all three criteria.
        """
        unpaid = [b for b in bills if not b.is_paid]
        scored: list[MatchResult] = []
        for transaction in transactions:
            results = self.candidates(transaction, unpaid)
            if len(results) > 1:
                _log_ambiguous(transaction, results[0], len(results))
            scored.extend(results)
        scored.sort(key=_rank)

        used_bills: set[str] = set()
        used_transactions: set[str] = set()
        matches: list[MatchResult] = []
        for result in scored:
            if result.bill.id in used_bills or result.transaction.id in used_transactions:
                continue
            logger.debug(
                "Matched transaction %s to bill %s (%d%%, %s)",
                result.transaction.id,
                result.bill.id,
                result.confidence,
                result.criteria,
            )
            used_bills.add(result.bill.id)
            used_transactions.add(result.transaction.id)
            matches.append(result)

        matches.sort(key=lambda r: (r.transaction.date, r.transaction.id))
        return matches


def _rank(result: MatchResult) -> tuple:
    return (
        -result.confidence,
        result.bill.due_date,
        result.days_apart,
        result.transaction.date,
        result.bill.id,
        result.transaction.id,
    )


def _log_ambiguous(transaction: Transaction, best: MatchResult, count: int) -> None:
    logger.info(
        "Ambiguous match for transaction %s (%r): %d candidates, best bill %s due %s",
        transaction.id,
        transaction.name,
        count,
        best.bill.id,
        best.bill.due_date,
    )
