"""Duplicate detection for bills and recurring templates.

Two independent algorithms, selected by the caller:

- Exact-key (bulk cleanup of generated bills): one pass over the bills,
  first occurrence of each generate_bill_key() wins. O(n), stable.
- Fuzzy pairwise (human-facing reports): O(n^2) strict comparison using the
  bill profile of the similarity engine. A pair is a duplicate only if the
  name matches AND the amount is within $1.00 AND the due dates are within
  3 days AND the recurrence is identical.

Recurring templates are compared with the weighted template composite
instead, which tolerates price drift.

Neither mode mutates its input; reports are transient and never persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from billrecon.schemas.dedupe import generate_bill_key, generate_group_key
from billrecon.schemas.records import BillInstance, PatternStatus, RecurringPattern
from billrecon.similarity.engine import (
    BILL_PROFILE,
    TEMPLATE_PROFILE,
    CompositeScore,
    SimilarityEngine,
)

logger = logging.getLogger(__name__)


class DedupeMode(str, Enum):
    """Which duplicate algorithm to run."""

    EXACT = "exact"
    FUZZY = "fuzzy"


@dataclass
class DuplicateGroup:
    """One kept bill plus the bills judged to duplicate it."""

    key: str
    keep: BillInstance
    remove: list[BillInstance] = field(default_factory=list)

    @property
    def count(self) -> int:
        """Number of bills in the group, kept one included."""
        return 1 + len(self.remove)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "key": self.key,
            "keep": self.keep.to_dict(),
            "remove": [b.to_dict() for b in self.remove],
            "count": self.count,
        }


@dataclass
class DuplicateReport:
    """Result of a dedup pass over a list of bills."""

    mode: DedupeMode
    kept: list[BillInstance]
    groups: list[DuplicateGroup]
    total_count: int

    @property
    def kept_count(self) -> int:
        return len(self.kept)

    @property
    def duplicate_count(self) -> int:
        return sum(len(g.remove) for g in self.groups)

    @property
    def removed(self) -> list[BillInstance]:
        """All bills marked for removal, in group order."""
        return [bill for group in self.groups for bill in group.remove]

    @property
    def summary(self) -> str:
        """Human-readable sentence derived from the counts."""
        if self.duplicate_count == 0:
            return f"No duplicates found. All {self.kept_count} bills are unique."
        if self.mode == DedupeMode.FUZZY:
            return (
                f"Found {self.duplicate_count} potential duplicate(s) in "
                f"{len(self.groups)} group(s). Kept {self.kept_count} unique bills "
                f"out of {self.total_count} total."
            )
        return (
            f"Found and removed {self.duplicate_count} duplicate(s). "
            f"Kept {self.kept_count} unique bills out of {self.total_count} total."
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "mode": self.mode.value,
            "kept_count": self.kept_count,
            "duplicate_count": self.duplicate_count,
            "total_count": self.total_count,
            "groups": [g.to_dict() for g in self.groups],
            "summary": self.summary,
        }


@dataclass
class TemplateDuplicate:
    """Two recurring templates that look like the same obligation."""

    first: RecurringPattern
    second: RecurringPattern
    score: CompositeScore

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "first": self.first.id,
            "second": self.second.id,
            "names": [self.first.name, self.second.name],
            "score": self.score.to_dict(),
        }


class DuplicateDetector:
    """Groups bills and templates that represent the same obligation.

    Args:
        bill_engine: Engine used for fuzzy bill comparison (bill profile).
        template_engine: Engine used for template composites (template profile).
    """

    def __init__(
        self,
        bill_engine: SimilarityEngine | None = None,
        template_engine: SimilarityEngine | None = None,
    ) -> None:
        self.bill_engine = bill_engine or SimilarityEngine(BILL_PROFILE)
        self.template_engine = template_engine or SimilarityEngine(TEMPLATE_PROFILE)

    # ------------------------------------------------------------------
    # Exact-key mode
    # ------------------------------------------------------------------

    def find_duplicates(self, bills: Sequence[BillInstance]) -> list[DuplicateGroup]:
        """Group bills sharing an identical key; the first one seen is kept."""
        groups: dict[str, DuplicateGroup] = {}
        for bill in bills:
            key = generate_bill_key(bill)
            group = groups.get(key)
            if group is None:
                groups[key] = DuplicateGroup(key=key, keep=bill)
            else:
                group.remove.append(bill)
        return [g for g in groups.values() if g.remove]

    def remove_duplicates(self, bills: Sequence[BillInstance]) -> list[BillInstance]:
        """Return the bills with every later exact duplicate dropped."""
        seen: set[str] = set()
        unique: list[BillInstance] = []
        for bill in bills:
            key = generate_bill_key(bill)
            if key in seen:
                logger.debug("Dropping duplicate bill %s (%s)", bill.id, key)
                continue
            seen.add(key)
            unique.append(bill)
        return unique

    def generate_duplicate_report(self, bills: Sequence[BillInstance]) -> DuplicateReport:
        """Exact-key report: kept bills, groups and counts."""
        report = DuplicateReport(
            mode=DedupeMode.EXACT,
            kept=self.remove_duplicates(bills),
            groups=self.find_duplicates(bills),
            total_count=len(bills),
        )
        logger.info(report.summary)
        return report

    def are_bills_duplicates(self, a: BillInstance, b: BillInstance) -> bool:
        """Check if two bills share the exact key."""
        return generate_bill_key(a) == generate_bill_key(b)

    def check_for_duplicate(
        self, new_bill: BillInstance, existing: Sequence[BillInstance]
    ) -> BillInstance | None:
        """Return the existing bill that new_bill would duplicate, if any."""
        key = generate_bill_key(new_bill)
        for bill in existing:
            if generate_bill_key(bill) == key:
                return bill
        return None

    # ------------------------------------------------------------------
    # Fuzzy mode
    # ------------------------------------------------------------------

    def find_fuzzy_groups(self, bills: Sequence[BillInstance]) -> list[DuplicateGroup]:
        """Pairwise strict comparison; each bill joins at most one group.

        For each bill not yet grouped, every later ungrouped bill that is a
        pairwise duplicate of it joins its group. The earlier bill is kept.
        """
        processed: set[int] = set()
        groups: list[DuplicateGroup] = []

        for i, bill in enumerate(bills):
            if i in processed:
                continue
            group = DuplicateGroup(key=generate_group_key(bill.name, bill.recurrence), keep=bill)
            for j in range(i + 1, len(bills)):
                if j in processed:
                    continue
                comparison = self.bill_engine.compare_bills(bill, bills[j])
                if comparison.is_duplicate:
                    logger.debug(
                        "Fuzzy duplicate: %r ~ %r (name %.1f, $%s apart, %d days)",
                        bill.name,
                        bills[j].name,
                        comparison.name_score,
                        comparison.amount_difference,
                        comparison.days_apart,
                    )
                    group.remove.append(bills[j])
                    processed.add(j)
            processed.add(i)
            if group.remove:
                groups.append(group)

        return groups

    def generate_fuzzy_report(self, bills: Sequence[BillInstance]) -> DuplicateReport:
        """Fuzzy report: kept bills, groups and counts."""
        groups = self.find_fuzzy_groups(bills)
        removed_ids = {id(b) for g in groups for b in g.remove}
        report = DuplicateReport(
            mode=DedupeMode.FUZZY,
            kept=[b for b in bills if id(b) not in removed_ids],
            groups=groups,
            total_count=len(bills),
        )
        logger.info(report.summary)
        return report

    def generate_report(
        self, bills: Sequence[BillInstance], mode: DedupeMode = DedupeMode.EXACT
    ) -> DuplicateReport:
        """Run the report for the caller-selected mode."""
        if mode == DedupeMode.FUZZY:
            return self.generate_fuzzy_report(bills)
        return self.generate_duplicate_report(bills)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def find_template_duplicates(
        self, patterns: Sequence[RecurringPattern]
    ) -> list[TemplateDuplicate]:
        """Pairs of recurring templates whose composite reaches the threshold.

        Ended patterns are ignored.
        """
        threshold = self.template_engine.profile.duplicate_threshold
        live = [p for p in patterns if p.status != PatternStatus.ENDED]
        pairs: list[TemplateDuplicate] = []
        for i, first in enumerate(live):
            for second in live[i + 1 :]:
                score = self.template_engine.composite(first, second)
                if score.total >= threshold:
                    pairs.append(TemplateDuplicate(first=first, second=second, score=score))
        pairs.sort(key=lambda p: p.score.total, reverse=True)
        return pairs
