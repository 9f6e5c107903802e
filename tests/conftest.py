"""Test fixtures and utilities."""

from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from billrecon.config import Config
from billrecon.schemas.records import (
    BillInstance,
    Frequency,
    RecurringPattern,
    Transaction,
)
from billrecon.state_store import StateStore

# Fixed reference time; nothing under test reads the clock
NOW = datetime(2025, 1, 15, 9, 30)


def make_pattern(
    pattern_id: str = "pat-netflix",
    name: str = "Netflix",
    amount: str = "15.99",
    frequency: Frequency = Frequency.MONTHLY,
    next_occurrence: date = date(2025, 1, 10),
    **kwargs,
) -> RecurringPattern:
    """Build a recurring pattern with sensible defaults."""
    return RecurringPattern(
        id=pattern_id,
        name=name,
        amount=Decimal(amount),
        frequency=frequency,
        next_occurrence=next_occurrence,
        **kwargs,
    )


def make_bill(
    bill_id: str = "bill-1",
    name: str = "Netflix",
    amount: str = "15.99",
    due_date: date = date(2025, 1, 10),
    recurrence: Frequency = Frequency.MONTHLY,
    recurring_pattern_id: str | None = None,
    **kwargs,
) -> BillInstance:
    """Build a bill with sensible defaults."""
    return BillInstance(
        id=bill_id,
        name=name,
        amount=Decimal(amount),
        due_date=due_date,
        recurrence=recurrence,
        recurring_pattern_id=recurring_pattern_id,
        **kwargs,
    )


def make_transaction(
    tx_id: str = "tx-1",
    name: str = "NETFLIX.COM",
    amount: str = "-15.99",
    tx_date: date = date(2025, 1, 11),
) -> Transaction:
    """Build a bank transaction (outflows are negative)."""
    return Transaction(id=tx_id, name=name, amount=Decimal(amount), date=tx_date)


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path."""
    return tmp_path / "test_bills.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store for the default user."""
    return StateStore(temp_db)


@pytest.fixture
def config(temp_db) -> Config:
    """Default configuration pointing at the temporary database."""
    cfg = Config()
    cfg.store.db_path = temp_db
    return cfg


@pytest.fixture
def sample_bill_records() -> list[dict]:
    """Raw bill records as they arrive from an import file."""
    return [
        {"name": "Netflix", "amount": 15.99, "dueDate": "2024-01-10", "recurrence": "monthly"},
        {"name": "Netflix", "amount": 15.99, "dueDate": "2024-01-10", "recurrence": "monthly"},
        {"name": "Netflix", "amount": 15.99, "dueDate": "2024-01-10", "recurrence": "monthly"},
        {"name": "Rent", "amount": "$1,450.00", "due_date": "2024-01-01", "recurrence": "Monthly"},
        {"name": "", "amount": 10, "due_date": "2024-01-05"},
    ]


@pytest.fixture
def sample_feed_response() -> dict:
    """One page of the transaction feed."""
    return {
        "data": [
            {"id": "t-100", "name": "NETFLIX.COM", "amount": "-15.99", "date": "2025-01-11"},
            {"id": "t-101", "name": "SPOTIFY USA", "amount": "-10.99", "date": "2025-01-12"},
            {"id": "t-102", "amount": "-5.00", "date": "2025-01-12"},
        ],
        "meta": {"pagination": {"total_pages": 1}},
    }
