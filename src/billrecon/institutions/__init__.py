"""Institution-name to account matching."""

from .matcher import (
    DEFAULT_INSTITUTION_MAPPING,
    Account,
    BatchMatchResult,
    InstitutionMatch,
    InstitutionMatcher,
    MappingSuggestions,
    MatchMethod,
)

__all__ = [
    "DEFAULT_INSTITUTION_MAPPING",
    "Account",
    "BatchMatchResult",
    "InstitutionMatch",
    "InstitutionMatcher",
    "MappingSuggestions",
    "MatchMethod",
]
