"""
Transaction feed client.

Read-only access to recent bank transactions.
"""

from .client import (
    FeedAPIError,
    FeedConnectionError,
    FeedError,
    TransactionFeedClient,
)

__all__ = [
    "TransactionFeedClient",
    "FeedError",
    "FeedAPIError",
    "FeedConnectionError",
]
