"""Recurrence projection, advancement and pattern lifecycle."""

from .recurrence import (
    InvalidTransitionError,
    MonthlyTotals,
    RecurrenceScheduler,
    ScheduledOccurrence,
    ScheduleView,
    StatusEvent,
    add_months,
    allowed_events,
    is_active_month,
    transition,
)

__all__ = [
    "InvalidTransitionError",
    "MonthlyTotals",
    "RecurrenceScheduler",
    "ScheduleView",
    "ScheduledOccurrence",
    "StatusEvent",
    "add_months",
    "allowed_events",
    "is_active_month",
    "transition",
]
