"""
Bank transactions → Unpaid bills → Cleared bills → Next bills

A deterministic, repeatable reconciler for recurring bills: it matches bank
transactions to unpaid bills, advances recurring patterns and generates the
next bill exactly once, however often it is re-run.
"""

__version__ = "0.1.0"
