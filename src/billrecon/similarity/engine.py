"""Similarity engine shared by duplicate detection, matching and institutions.

One implementation of text normalization, name/amount/date scoring and the
weighted composite, parameterized per call site by a SimilarityProfile:

- TEMPLATE_PROFILE: recurring templates, tolerant of price drift
  (weighted composite, duplicate at >= 80)
- BILL_PROFILE: concrete bills, fixed absolute tolerances
  ($1.00, 3 days, exact frequency)
- INSTITUTION_PROFILE: bank names, generic banking words stripped

All scores are on a 0-100 scale.
"""

from __future__ import annotations

import calendar
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Iterable

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")

# Filler words ignored by significant-word overlap
SKIP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "payment", "bill", "monthly", "annual",
    }
)

# Generic banking words stripped from institution names
BANKING_WORDS = ("credit union", "n.a.", "bank", "cu", "federal", "savings", "fsb")

# Merchant families: every alias resolves to the family key
MERCHANT_ALIASES: dict[str, tuple[str, ...]] = {
    "netflix": ("netflix", "netflix inc", "netflix com", "nflx"),
    "spotify": ("spotify", "spotify usa", "spotify ab", "spotify premium"),
    "hulu": ("hulu", "hulu llc", "hulu plus"),
    "disney plus": ("disney plus", "disneyplus", "disney+", "disney streaming"),
    "amazon prime": ("amazon prime", "prime video", "amzn prime", "amazon digital"),
    "apple": ("apple com bill", "apple.com/bill", "itunes", "apple music", "icloud"),
    "youtube": ("youtube premium", "youtube tv", "google youtube"),
    "hbo max": ("hbo max", "hbomax", "hbo now"),
    "comcast": ("comcast", "xfinity", "comcast cable"),
    "att": ("at&t", "att wireless", "att mobility"),
    "verizon": ("verizon", "verizon wireless", "vzw"),
    "t-mobile": ("t-mobile", "tmobile", "t mobile"),
    "geico": ("geico", "geico auto", "government employees insurance"),
    "state farm": ("state farm", "statefarm"),
}


def normalize_text(text: str | None) -> str:
    """Case-fold, strip non-alphanumerics and collapse whitespace."""
    if not text:
        return ""
    cleaned = _NON_ALNUM.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", cleaned).strip()


def compact(text: str | None) -> str:
    """Normalized text with all whitespace removed."""
    return normalize_text(text).replace(" ", "")


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings (two-row dynamic programming)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def _build_alias_index() -> list[tuple[str, str]]:
    index = [
        (compact(alias), family)
        for family, aliases in MERCHANT_ALIASES.items()
        for alias in aliases
    ]
    # Longest alias first so "googleyoutube" beats a shorter prefix
    index.sort(key=lambda item: len(item[0]), reverse=True)
    return index


_ALIAS_INDEX = _build_alias_index()


def merchant_family(text: str | None) -> str | None:
    """Resolve a merchant name to its built-in family, if any.

    A name resolves when its compact form equals an alias or starts with
    one ("NETFLIX.COM 866-579" -> "netflix").
    """
    key = compact(text)
    if not key:
        return None
    for alias, family in _ALIAS_INDEX:
        if key == alias or key.startswith(alias):
            return family
    return None


@dataclass(frozen=True)
class SimilarityProfile:
    """Weights and tolerances for one call site."""

    name: str
    # Composite weights (sum to 1.0)
    weight_name: float = 0.40
    weight_amount: float = 0.30
    weight_frequency: float = 0.15
    weight_category: float = 0.10
    weight_date: float = 0.05
    # Absolute tolerances for strict comparisons
    name_threshold: float = 80.0
    amount_tolerance: Decimal = Decimal("1.00")
    date_tolerance_days: int = 3
    # Composite score at which two records are duplicates
    duplicate_threshold: float = 80.0
    strip_words: tuple[str, ...] = field(default_factory=tuple)

    def with_tolerances(
        self,
        amount_tolerance: Decimal | None = None,
        date_tolerance_days: int | None = None,
        name_threshold: float | None = None,
        duplicate_threshold: float | None = None,
    ) -> SimilarityProfile:
        """Return a copy with the given tolerances overridden."""
        changes: dict = {}
        if amount_tolerance is not None:
            changes["amount_tolerance"] = amount_tolerance
        if date_tolerance_days is not None:
            changes["date_tolerance_days"] = date_tolerance_days
        if name_threshold is not None:
            changes["name_threshold"] = name_threshold
        if duplicate_threshold is not None:
            changes["duplicate_threshold"] = duplicate_threshold
        return replace(self, **changes)


TEMPLATE_PROFILE = SimilarityProfile(name="template")
BILL_PROFILE = SimilarityProfile(name="bill")
INSTITUTION_PROFILE = SimilarityProfile(name="institution", strip_words=BANKING_WORDS)


@dataclass
class SimilarityScore:
    """Individual signal contribution to a composite score."""

    signal: str
    score: float
    weight: float
    detail: str

    @property
    def weighted_score(self) -> float:
        """Get the weighted score for this signal."""
        return self.score * self.weight


@dataclass
class CompositeScore:
    """Weighted combination of per-signal scores."""

    signals: list[SimilarityScore] = field(default_factory=list)

    @property
    def total(self) -> float:
        """Weighted total, 0-100."""
        return round(sum(s.weighted_score for s in self.signals), 2)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "total": self.total,
            "signals": [
                {
                    "signal": s.signal,
                    "score": s.score,
                    "weight": s.weight,
                    "weighted_score": s.weighted_score,
                    "detail": s.detail,
                }
                for s in self.signals
            ],
        }


@dataclass
class BillComparison:
    """Per-criterion breakdown of a strict bill comparison."""

    name_score: float
    name_match: bool
    amount_difference: Decimal
    amount_match: bool
    days_apart: int
    date_match: bool
    frequency_match: bool

    @property
    def is_duplicate(self) -> bool:
        """All four criteria must hold."""
        return self.name_match and self.amount_match and self.date_match and self.frequency_match


class SimilarityEngine:
    """Normalization and scoring for one similarity profile.

    Usage:
        engine = SimilarityEngine(BILL_PROFILE)
        engine.name_score("Netflix", "NETFLIX.COM")   # 95.0
        engine.compare_bills(bill_a, bill_b).is_duplicate
    """

    def __init__(self, profile: SimilarityProfile = TEMPLATE_PROFILE) -> None:
        self.profile = profile

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    def normalize(self, text: str | None) -> str:
        """Normalize text for comparison.

        Generic profile words (e.g. "bank", "credit union") are removed when
        the profile defines them, unless nothing would be left.
        """
        if not text:
            return ""
        if not self.profile.strip_words:
            return normalize_text(text)

        lowered = f" {text.lower()} "
        for word in self.profile.strip_words:
            if not word.isalnum():
                lowered = lowered.replace(word, " ")
        tokens = normalize_text(lowered).split()
        single_words = {w for w in self.profile.strip_words if w.isalnum()}
        kept = [t for t in tokens if t not in single_words]
        return " ".join(kept) if kept else normalize_text(text)

    def significant_words(self, text: str | None) -> list[str]:
        """Words longer than two characters that are not filler words."""
        return [w for w in self.normalize(text).split() if len(w) > 2 and w not in SKIP_WORDS]

    def significant_word_overlap(self, a: str | None, b: str | None) -> float:
        """Share of significant words in common, relative to the shorter name (0-1)."""
        words_a = self.significant_words(a)
        words_b = self.significant_words(b)
        if not words_a or not words_b:
            return 0.0
        common = [w for w in words_a if w in words_b]
        return len(common) / min(len(words_a), len(words_b))

    def word_overlap_score(self, a: str | None, b: str | None) -> float:
        """Percentage of words that also appear, whole, in the other name.

        Relative to the longer name, rounded to a whole number.
        """
        words_a = self.normalize(a).split()
        words_b = self.normalize(b).split()
        if not words_a or not words_b:
            return 0.0
        matching = sum(1 for wa in words_a if wa in words_b)
        return float(round(matching / max(len(words_a), len(words_b)) * 100))

    # ------------------------------------------------------------------
    # Scores
    # ------------------------------------------------------------------

    def name_score(self, a: str | None, b: str | None, aliases: Iterable[str] = ()) -> float:
        """Score two names 0-100.

        Exact (ignoring spacing/punctuation) 100; same built-in merchant
        family 95; containment 80-100 scaled by length ratio; otherwise
        normalized edit-distance similarity. Extra aliases for b are scored
        as well and the best score wins.
        """
        best = self._single_name_score(a, b)
        for alias in aliases:
            if best >= 100.0:
                break
            best = max(best, self._single_name_score(a, alias))
        return best

    def _single_name_score(self, a: str | None, b: str | None) -> float:
        key_a = self.normalize(a).replace(" ", "")
        key_b = self.normalize(b).replace(" ", "")
        if not key_a or not key_b:
            return 0.0
        if key_a == key_b:
            return 100.0

        family_a = merchant_family(a)
        if family_a is not None and family_a == merchant_family(b):
            return 95.0

        shorter, longer = sorted((key_a, key_b), key=len)
        if shorter in longer:
            return round(80.0 + 20.0 * len(shorter) / len(longer), 2)

        distance = levenshtein(key_a, key_b)
        return round((1 - distance / max(len(key_a), len(key_b))) * 100, 2)

    def names_match(self, a: str | None, b: str | None, aliases: Iterable[str] = ()) -> bool:
        """Name criterion for strict comparisons.

        Passes when the name score reaches the profile threshold or at least
        half of the significant words are shared.
        """
        aliases = list(aliases)
        if self.name_score(a, b, aliases) >= self.profile.name_threshold:
            return True
        return any(
            self.significant_word_overlap(a, candidate) >= 0.5 for candidate in [b, *aliases]
        )

    def amount_score(self, a: Decimal, b: Decimal) -> float:
        """Score two amounts 0-100 by relative difference.

        Identical 100; <=5% 95; <=10% 85; <=20% 70; then linear decay to 0
        at a 50% difference. Signs are ignored.
        """
        a, b = abs(Decimal(a)), abs(Decimal(b))
        if a == b:
            return 100.0
        larger = max(a, b)
        pct = float(abs(a - b) / larger)
        if pct <= 0.05:
            return 95.0
        if pct <= 0.10:
            return 85.0
        if pct <= 0.20:
            return 70.0
        return round(max(0.0, 70.0 * (1 - (pct - 0.20) / 0.30)), 2)

    def date_score(self, a: date, b: date) -> float:
        """Score two dates 0-100 by day-of-month distance.

        Same day 100; within 3 days 80; within 7 days 60; else 0. The
        distance wraps across month ends (the 30th and the 2nd are close).
        """
        distance = abs(a.day - b.day)
        month_length = calendar.monthrange(a.year, a.month)[1]
        distance = min(distance, max(0, month_length - distance))
        if distance == 0:
            return 100.0
        if distance <= 3:
            return 80.0
        if distance <= 7:
            return 60.0
        return 0.0

    def composite(self, a, b) -> CompositeScore:
        """Weighted composite for two recurring templates.

        Both records must expose name, amount, frequency, category and
        next_occurrence.
        """
        profile = self.profile
        name = self.name_score(a.name, b.name, getattr(b, "merchant_names", ()))
        amount = self.amount_score(a.amount, b.amount)
        frequency = 100.0 if a.frequency == b.frequency else 0.0
        category_a = normalize_text(a.category)
        category_b = normalize_text(b.category)
        category = 100.0 if category_a and category_a == category_b else 0.0
        when = self.date_score(a.next_occurrence, b.next_occurrence)

        return CompositeScore(
            signals=[
                SimilarityScore("name", name, profile.weight_name, f"{a.name!r} vs {b.name!r}"),
                SimilarityScore(
                    "amount", amount, profile.weight_amount, f"{a.amount} vs {b.amount}"
                ),
                SimilarityScore(
                    "frequency",
                    frequency,
                    profile.weight_frequency,
                    f"{a.frequency.value} vs {b.frequency.value}",
                ),
                SimilarityScore(
                    "category", category, profile.weight_category, f"{a.category} vs {b.category}"
                ),
                SimilarityScore(
                    "date",
                    when,
                    profile.weight_date,
                    f"day {a.next_occurrence.day} vs {b.next_occurrence.day}",
                ),
            ]
        )

    def compare_bills(self, a, b) -> BillComparison:
        """Strict comparison of two concrete bills.

        Name score >= threshold, amount within the absolute tolerance, due
        dates within the day tolerance and identical recurrence.
        """
        profile = self.profile
        score = self.name_score(a.name, b.name)
        difference = abs(abs(a.amount) - abs(b.amount))
        days = abs((a.due_date - b.due_date).days)
        return BillComparison(
            name_score=score,
            name_match=score >= profile.name_threshold,
            amount_difference=difference,
            amount_match=difference <= profile.amount_tolerance,
            days_apart=days,
            date_match=days <= profile.date_tolerance_days,
            frequency_match=a.recurrence == b.recurrence,
        )
