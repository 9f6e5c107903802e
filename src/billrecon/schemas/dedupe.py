"""
Dedupe key generation (CRITICAL).

This module defines THE deterministic bill keys. Every exact-key duplicate
check goes through generate_bill_key; no other module may build its own.

Bill key format:
    {name}|{amount}|{due_date}|{recurrence}|{pattern_id}

- name = lowercased, surrounding whitespace removed
- amount = 2 decimal places with dot separator
- due_date = YYYY-MM-DD
- recurrence = lowercased frequency label ("one-time" if absent)
- pattern_id = recurring pattern id, empty for one-off bills

The key must be:
- Stable: Same inputs always produce same output
- Case-insensitive on the name: "NETFLIX " and "netflix" share a key
- Strict on everything else: a due date one day apart is a different bill

Group keys are looser and only used to label fuzzy duplicate groups for
display: {normalized name}|{frequency}.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal

from .records import BillInstance, Frequency

# ============================================================================
# SSOT Constants for Key Generation
# ============================================================================

KEY_SEPARATOR = "|"

DEFAULT_RECURRENCE = Frequency.ONE_TIME.value

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _normalize_amount(amount: Decimal | str | float) -> str:
    """
    Normalize amount to consistent format for keys.

    Args:
        amount: Amount in various formats

    Returns:
        Normalized amount string with 2 decimal places
    """
    if isinstance(amount, str):
        amount = Decimal(amount)
    elif isinstance(amount, float):
        amount = Decimal(str(amount))
    elif isinstance(amount, int):
        amount = Decimal(amount)
    elif not isinstance(amount, Decimal):
        raise ValueError(f"amount must be Decimal, str, int or float, got: {type(amount)}")

    return f"{amount:.2f}"


def _normalize_string(value: str | None) -> str:
    """Normalize a string for keys (lowercase, strip whitespace)."""
    if not value:
        return ""
    return value.strip().lower()


def build_bill_key(
    name: str,
    amount: Decimal | str | float,
    due_date: date | str,
    recurrence: str | None = None,
    pattern_id: str | None = None,
) -> str:
    """
    Build the exact-match key from raw bill fields.

    Args:
        name: Bill name
        amount: Bill amount
        due_date: Due date (date or YYYY-MM-DD)
        recurrence: Frequency label
        pattern_id: Owning recurring pattern id

    Returns:
        Pipe-separated key
    """
    due = due_date.isoformat() if isinstance(due_date, date) else str(due_date)[:10]
    components = [
        _normalize_string(name),
        _normalize_amount(amount),
        due,
        _normalize_string(recurrence) or DEFAULT_RECURRENCE,
        pattern_id or "",
    ]
    return KEY_SEPARATOR.join(components)


def generate_bill_key(bill: BillInstance) -> str:
    """Generate the exact-match key for a bill."""
    return build_bill_key(
        name=bill.name,
        amount=bill.amount,
        due_date=bill.due_date,
        recurrence=bill.recurrence.value,
        pattern_id=bill.recurring_pattern_id,
    )


def generate_group_key(name: str, frequency: Frequency | str | None) -> str:
    """
    Generate a display key for a fuzzy duplicate group.

    Punctuation and whitespace are ignored, so "Electric Bill" and
    "Electric-Bill" share a group key.
    """
    label = frequency.value if isinstance(frequency, Frequency) else _normalize_string(frequency)
    return f"{_NON_ALNUM.sub('', _normalize_string(name))}{KEY_SEPARATOR}{label or DEFAULT_RECURRENCE}"
