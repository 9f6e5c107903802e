"""Exact-key and fuzzy duplicate detection for bills and templates."""

from .detector import (
    DedupeMode,
    DuplicateDetector,
    DuplicateGroup,
    DuplicateReport,
    TemplateDuplicate,
)

__all__ = [
    "DedupeMode",
    "DuplicateDetector",
    "DuplicateGroup",
    "DuplicateReport",
    "TemplateDuplicate",
]
