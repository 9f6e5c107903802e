"""
Tests for the transaction feed client.

These tests use responses library to mock HTTP requests,
validating client behavior without making real API calls.
"""

from datetime import date
from decimal import Decimal

import pytest
import requests
import responses
from responses import matchers

from billrecon.config import FeedConfig
from billrecon.feed_client import (
    FeedAPIError,
    FeedConnectionError,
    TransactionFeedClient,
)


def page_params(page: int, start: str = "2025-01-01", end: str = "2025-01-31") -> dict:
    return {"start": start, "end": end, "page": str(page), "limit": "100"}


class TestTransactionFeedClient:
    """Test transaction feed API client."""

    BASE_URL = "http://feed.test:8080/api"
    TOKEN = "test-token-12345"
    URL = f"{BASE_URL}/transactions"

    @responses.activate
    def test_list_transactions_single_page(self, sample_feed_response):
        """Valid records are parsed, malformed ones reported."""
        responses.add(
            responses.GET,
            self.URL,
            json=sample_feed_response,
            match=[matchers.query_param_matcher(page_params(1))],
        )

        client = TransactionFeedClient(self.BASE_URL, self.TOKEN)
        transactions, rejected = client.list_transactions(date(2025, 1, 1), date(2025, 1, 31))

        assert [t.id for t in transactions] == ["t-100", "t-101"]
        assert transactions[0].amount == Decimal("-15.99")
        assert transactions[0].date == date(2025, 1, 11)
        assert len(rejected) == 1
        assert rejected[0].index == 2

    @responses.activate
    def test_list_transactions_paginates(self):
        """All pages are fetched until total_pages."""
        for page in (1, 2):
            responses.add(
                responses.GET,
                self.URL,
                json={
                    "data": [
                        {
                            "id": f"t-{page}",
                            "name": "NETFLIX.COM",
                            "amount": "-15.99",
                            "date": "2025-01-11",
                        }
                    ],
                    "meta": {"pagination": {"total_pages": 2}},
                },
                match=[matchers.query_param_matcher(page_params(page))],
            )

        client = TransactionFeedClient(self.BASE_URL, self.TOKEN)
        transactions, _ = client.list_transactions(date(2025, 1, 1), date(2025, 1, 31))

        assert [t.id for t in transactions] == ["t-1", "t-2"]
        assert len(responses.calls) == 2

    @responses.activate
    def test_max_pages_limit(self):
        """Fetching stops at max_pages even when more pages exist."""
        responses.add(
            responses.GET,
            self.URL,
            json={"data": [], "meta": {"pagination": {"total_pages": 10}}},
        )

        client = TransactionFeedClient(self.BASE_URL, self.TOKEN)
        client.list_transactions(date(2025, 1, 1), date(2025, 1, 31), max_pages=3)

        assert len(responses.calls) == 3

    @responses.activate
    def test_auth_header(self, sample_feed_response):
        responses.add(responses.GET, self.URL, json=sample_feed_response)

        client = TransactionFeedClient(self.BASE_URL, self.TOKEN)
        client.list_transactions(date(2025, 1, 1), date(2025, 1, 31))

        assert responses.calls[0].request.headers["Authorization"] == f"Bearer {self.TOKEN}"

    @responses.activate
    def test_recent_transactions_window(self, sample_feed_response):
        responses.add(
            responses.GET,
            self.URL,
            json=sample_feed_response,
            match=[matchers.query_param_matcher(page_params(1, "2024-12-16", "2025-01-15"))],
        )

        client = TransactionFeedClient(self.BASE_URL, self.TOKEN)
        transactions, _ = client.recent_transactions(date(2025, 1, 15), days=30)

        assert len(transactions) == 2

    @responses.activate
    def test_api_error(self):
        """Error responses raise FeedAPIError with the server message."""
        responses.add(
            responses.GET,
            self.URL,
            json={"message": "Unauthenticated."},
            status=401,
        )

        client = TransactionFeedClient(self.BASE_URL, self.TOKEN)
        with pytest.raises(FeedAPIError) as exc_info:
            client.list_transactions(date(2025, 1, 1), date(2025, 1, 31))

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Unauthenticated."

    @responses.activate
    def test_non_json_body(self):
        responses.add(responses.GET, self.URL, body="<html>proxy</html>", status=200)

        client = TransactionFeedClient(self.BASE_URL, self.TOKEN)
        with pytest.raises(FeedAPIError, match="not JSON"):
            client.list_transactions(date(2025, 1, 1), date(2025, 1, 31))

    @responses.activate
    def test_connection_error(self):
        responses.add(
            responses.GET, self.URL, body=requests.exceptions.ConnectionError("refused")
        )

        client = TransactionFeedClient(self.BASE_URL, self.TOKEN)
        with pytest.raises(FeedConnectionError):
            client.list_transactions(date(2025, 1, 1), date(2025, 1, 31))

    @responses.activate
    def test_test_connection(self):
        responses.add(responses.GET, self.URL, json={"data": []})
        assert TransactionFeedClient(self.BASE_URL, self.TOKEN).test_connection() is True

    @responses.activate
    def test_test_connection_failure(self):
        responses.add(responses.GET, self.URL, json={"error": "down"}, status=500)
        assert TransactionFeedClient(self.BASE_URL, self.TOKEN).test_connection() is False

    def test_from_config(self):
        config = FeedConfig(
            base_url=f"{self.BASE_URL}/", token=self.TOKEN, timeout_seconds=5, page_size=50
        )

        client = TransactionFeedClient.from_config(config)

        assert client.base_url == self.BASE_URL
        assert client.timeout == 5
        assert client.page_size == 50
