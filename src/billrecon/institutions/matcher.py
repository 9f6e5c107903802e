"""Institution matching: free-text bank names to known accounts.

Cascade, first hit wins:

1. exact      100  normalized input equals an account's normalized institution
2. custom      95  user-defined mapping (institution name -> account id)
3. default     90  built-in alias table ("BofA" -> Bank of America)
4. fuzzy    70-85  whole-word containment or word overlap, accepted only at >= 70

Normalization lowercases, strips punctuation and removes generic banking
words ("bank", "credit union", "federal", "n.a.", ...), so
"Bank of America, N.A." and "bank of america" compare equal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from billrecon.similarity.engine import INSTITUTION_PROFILE, SimilarityEngine

logger = logging.getLogger(__name__)

CONFIDENCE_EXACT = 100
CONFIDENCE_CUSTOM = 95
CONFIDENCE_DEFAULT = 90
# Fuzzy scores are capped below the alias tier
CONFIDENCE_FUZZY_MAX = 85
MIN_CONFIDENCE = 70
SUGGESTION_CONFIDENCE = 80

DEFAULT_INSTITUTION_MAPPING: dict[str, tuple[str, ...]] = {
    "bank of america": ("bank of america", "bofa", "boa"),
    "usaa": ("usaa", "usaa federal savings bank"),
    "chase": ("chase", "jpmorgan chase", "jp morgan"),
    "wells fargo": ("wells fargo", "wells fargo bank"),
    "capital one": ("capital one", "capital one bank", "capitalone"),
    "citibank": ("citibank", "citi", "citigroup"),
    "us bank": ("us bank", "u.s. bank", "usbank"),
    "pnc bank": ("pnc", "pnc bank"),
    "td bank": ("td bank", "td"),
    "navy federal": ("navy federal", "navy federal credit union"),
    "ally bank": ("ally", "ally bank"),
    "discover": ("discover", "discover bank"),
    "synchrony": ("synchrony", "synchrony bank"),
    "american express": ("american express", "amex", "amex bank"),
}


class MatchMethod:
    """Names of the cascade tiers."""

    EXACT = "exact"
    CUSTOM = "custom"
    DEFAULT = "default"
    FUZZY = "fuzzy"


@dataclass
class Account:
    """A linked financial account."""

    id: str
    name: str = ""
    institution: str = ""

    @property
    def label(self) -> str:
        """Institution name, falling back to the account name."""
        return self.institution or self.name

    @classmethod
    def from_dict(cls, account_id: str, data: Mapping[str, Any]) -> Account:
        return cls(
            id=str(account_id),
            name=str(data.get("name") or ""),
            institution=str(data.get("institution") or data.get("institution_name") or ""),
        )


@dataclass
class InstitutionMatch:
    """Result of matching one institution name."""

    matched: bool
    account_id: str | None = None
    confidence: int = 0
    method: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "matched": self.matched,
            "account_id": self.account_id,
            "confidence": self.confidence,
            "method": self.method,
        }


NO_MATCH = InstitutionMatch(matched=False)


@dataclass
class BatchMatchResult:
    """Items partitioned into matched (>= 70) and unmatched."""

    matched: list[dict[str, Any]] = field(default_factory=list)
    unmatched: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class MappingSuggestions:
    """Suggested institution -> account mappings for user confirmation."""

    suggestions: dict[str, InstitutionMatch] = field(default_factory=dict)
    unmatched_institutions: list[str] = field(default_factory=list)


def contains_words(text: str, words: str) -> bool:
    """True when `words` appears in `text` as a run of whole words."""
    if not text or not words:
        return False
    return f" {words} " in f" {text} "


def institution_name_of(item: Mapping[str, Any]) -> str:
    """Institution name of a raw item (snake_case or legacy camelCase)."""
    return str(item.get("institution_name") or item.get("institutionName") or "")


class InstitutionMatcher:
    """Resolves free-text institution names to account ids."""

    def __init__(
        self,
        engine: SimilarityEngine | None = None,
        alias_table: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self.engine = engine or SimilarityEngine(INSTITUTION_PROFILE)
        table = alias_table if alias_table is not None else DEFAULT_INSTITUTION_MAPPING
        # standard name -> normalized aliases
        self._aliases: dict[str, set[str]] = {
            self.normalize(standard): {self.normalize(a) for a in aliases}
            for standard, aliases in table.items()
        }

    def normalize(self, name: str | None) -> str:
        """Normalize an institution name."""
        return self.engine.normalize(name)

    def match_institution(
        self,
        raw_name: str | None,
        accounts: Iterable[Account],
        custom_mapping: Mapping[str, str] | None = None,
    ) -> InstitutionMatch:
        """Resolve one institution name to an account.

        Args:
            raw_name: Institution name as typed or imported
            accounts: Known accounts
            custom_mapping: User overrides, institution name -> account id

        Returns:
            InstitutionMatch (matched=False when nothing clears the cascade)
        """
        normalized = self.normalize(raw_name)
        if not normalized:
            return NO_MATCH
        accounts = list(accounts)

        for account in accounts:
            if self.normalize(account.label) == normalized:
                return InstitutionMatch(True, account.id, CONFIDENCE_EXACT, MatchMethod.EXACT)

        if custom_mapping:
            result = self._apply_custom_mapping(normalized, accounts, custom_mapping)
            if result.matched:
                return result

        result = self._apply_default_mapping(normalized, accounts)
        if result.matched:
            return result

        return self._fuzzy_match(normalized, accounts)

    def _apply_custom_mapping(
        self, normalized: str, accounts: list[Account], custom_mapping: Mapping[str, str]
    ) -> InstitutionMatch:
        known_ids = {a.id for a in accounts}
        for institution, account_id in custom_mapping.items():
            if self.normalize(institution) == normalized and account_id in known_ids:
                return InstitutionMatch(True, account_id, CONFIDENCE_CUSTOM, MatchMethod.CUSTOM)
        return NO_MATCH

    def _apply_default_mapping(
        self, normalized: str, accounts: list[Account]
    ) -> InstitutionMatch:
        for standard, aliases in self._aliases.items():
            if normalized not in aliases:
                continue
            for account in accounts:
                institution = self.normalize(account.label)
                account_name = self.normalize(account.name)
                if (
                    institution in aliases
                    or account_name in aliases
                    or contains_words(institution, standard)
                    or contains_words(account_name, standard)
                ):
                    return InstitutionMatch(
                        True, account.id, CONFIDENCE_DEFAULT, MatchMethod.DEFAULT
                    )
        return NO_MATCH

    def _fuzzy_match(self, normalized: str, accounts: list[Account]) -> InstitutionMatch:
        best = NO_MATCH
        for account in accounts:
            score = self.similarity(normalized, self.normalize(account.label))
            if score >= MIN_CONFIDENCE and score > best.confidence:
                best = InstitutionMatch(True, account.id, score, MatchMethod.FUZZY)
        return best

    def similarity(self, a: str, b: str) -> int:
        """Fuzzy similarity of two normalized names, capped below the alias tier.

        Whole-word containment scores 85; otherwise the word-overlap percentage.
        """
        if not a or not b:
            return 0
        if contains_words(a, b) or contains_words(b, a):
            return CONFIDENCE_FUZZY_MAX
        return int(min(self.engine.word_overlap_score(a, b), CONFIDENCE_FUZZY_MAX))

    def batch_match(
        self,
        items: Iterable[Mapping[str, Any]],
        accounts: Iterable[Account],
        custom_mapping: Mapping[str, str] | None = None,
    ) -> BatchMatchResult:
        """Partition items by whether their institution resolves at >= 70.

        Matched items are copied with linked_account_id, match_confidence and
        match_method added; unmatched items are returned unchanged for manual
        resolution.
        """
        accounts = list(accounts)
        result = BatchMatchResult()
        for item in items:
            match = self.match_institution(institution_name_of(item), accounts, custom_mapping)
            if match.matched and match.confidence >= MIN_CONFIDENCE:
                result.matched.append(
                    {
                        **item,
                        "linked_account_id": match.account_id,
                        "match_confidence": match.confidence,
                        "match_method": match.method,
                    }
                )
            else:
                result.unmatched.append(dict(item))
        logger.info(
            "Institution batch match: %d matched, %d unmatched",
            len(result.matched),
            len(result.unmatched),
        )
        return result

    def suggest_mappings(
        self, items: Iterable[Mapping[str, Any]], accounts: Iterable[Account]
    ) -> MappingSuggestions:
        """Suggest mappings for institution names that resolve at >= 80."""
        accounts = list(accounts)
        suggestions = MappingSuggestions()
        unmatched: set[str] = set()
        for item in items:
            name = institution_name_of(item)
            if not name:
                continue
            match = self.match_institution(name, accounts)
            if match.matched and match.confidence >= SUGGESTION_CONFIDENCE:
                suggestions.suggestions[name] = match
            else:
                unmatched.add(name)
        suggestions.unmatched_institutions = sorted(unmatched)
        return suggestions

    @staticmethod
    def institution_list(accounts: Iterable[Account]) -> list[str]:
        """Sorted unique institution names across accounts."""
        return sorted({a.institution for a in accounts if a.institution})
