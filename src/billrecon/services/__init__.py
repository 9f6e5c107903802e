"""Services for bill clearing and bill generation."""

from billrecon.services.bill_generation import (
    BillGenerator,
    GenerationContext,
    GenerationInProgressError,
    GenerationResult,
    SkipReason,
    StepSkip,
)
from billrecon.services.reconciliation import (
    BillNotFoundError,
    EndPatternResult,
    MatchOutcome,
    PatternNotFoundError,
    ReconciliationResult,
    ReconciliationService,
    ReconciliationState,
    UndoWindowExpiredError,
    UnmarkNotAllowedError,
)

__all__ = [
    "BillGenerator",
    "BillNotFoundError",
    "EndPatternResult",
    "GenerationContext",
    "GenerationInProgressError",
    "GenerationResult",
    "MatchOutcome",
    "PatternNotFoundError",
    "ReconciliationResult",
    "ReconciliationService",
    "ReconciliationState",
    "SkipReason",
    "StepSkip",
    "UndoWindowExpiredError",
    "UnmarkNotAllowedError",
]
