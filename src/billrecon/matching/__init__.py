"""Transaction-to-bill matching."""

from .engine import BillMatchingEngine, MatchResult

__all__ = ["BillMatchingEngine", "MatchResult"]
