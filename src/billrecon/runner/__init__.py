"""
CLI runner module.

Provides commands:
- init-config: Write a default config file
- import: Load patterns, bills or aliases from JSON
- dedupe: Report and remove duplicate bills
- generate: Create missing bills for active patterns
- reconcile: Clear bills from bank transactions
- status: Show patterns, bills and runs
- match-institutions: Resolve institution names to accounts
- pay / unmark: Manual payment and undo
- end-pattern / pattern-status: Pattern lifecycle
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
