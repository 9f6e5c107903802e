"""Shared name/amount/date similarity scoring."""

from .engine import (
    BILL_PROFILE,
    INSTITUTION_PROFILE,
    TEMPLATE_PROFILE,
    BillComparison,
    CompositeScore,
    SimilarityEngine,
    SimilarityProfile,
    SimilarityScore,
    levenshtein,
    merchant_family,
    normalize_text,
)

__all__ = [
    "BILL_PROFILE",
    "INSTITUTION_PROFILE",
    "TEMPLATE_PROFILE",
    "BillComparison",
    "CompositeScore",
    "SimilarityEngine",
    "SimilarityProfile",
    "SimilarityScore",
    "levenshtein",
    "merchant_family",
    "normalize_text",
]
