"""
SSOT (Single Source of Truth) schemas for bill reconciliation.

These canonical records are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .dedupe import (
    KEY_SEPARATOR,
    build_bill_key,
    generate_bill_key,
    generate_group_key,
)
from .records import (
    BillInstance,
    BillStatus,
    Frequency,
    PatternStatus,
    PaymentOutcome,
    PaymentRecord,
    RecordRejection,
    RecordValidationError,
    RecurringPattern,
    Transaction,
    parse_amount,
    parse_bills,
    parse_date,
    parse_patterns,
    parse_transactions,
)

__all__ = [
    # Records
    "RecurringPattern",
    "BillInstance",
    "Transaction",
    "PaymentRecord",
    "Frequency",
    "PatternStatus",
    "BillStatus",
    "PaymentOutcome",
    # Validation
    "RecordValidationError",
    "RecordRejection",
    "parse_amount",
    "parse_date",
    "parse_bills",
    "parse_patterns",
    "parse_transactions",
    # Dedupe keys
    "KEY_SEPARATOR",
    "build_bill_key",
    "generate_bill_key",
    "generate_group_key",
]
