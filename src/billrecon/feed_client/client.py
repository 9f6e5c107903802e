"""
Transaction feed API client implementation.

The feed is a read-only HTTP endpoint that lists recent bank transactions:

    GET {base_url}/transactions?start=YYYY-MM-DD&end=YYYY-MM-DD&page=N

    {"data": [{"id": "...", "name": "...", "amount": "-15.99", "date": "..."}],
     "meta": {"pagination": {"total_pages": 3}}}
"""

import logging
from datetime import date, timedelta

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..schemas.records import RecordRejection, Transaction, parse_transactions

logger = logging.getLogger(__name__)


class FeedError(Exception):
    """Base exception for transaction feed errors."""

    pass


class FeedAPIError(FeedError):
    """Feed returned an error response."""

    def __init__(self, status_code: int, message: str, response_body: str | None = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Transaction feed error {status_code}: {message}")


class FeedConnectionError(FeedError):
    """Failed to connect to the transaction feed."""

    pass


class TransactionFeedClient:
    """
    Client for the read-only transaction feed.

    Features:
    - Date-window queries with pagination
    - Per-record validation (bad records are reported, not fatal)
    - Optional transport retry; the reconciler itself never retries
    """

    DEFAULT_TIMEOUT = 30
    DEFAULT_MAX_PAGES = 50

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 0,
        backoff_factor: float = 0.5,
        page_size: int = 100,
    ):
        """
        Initialize feed client.

        Args:
            base_url: Feed URL (e.g., "https://bank-bridge.local/api")
            token: Bearer token
            timeout: Request timeout in seconds
            max_retries: Transport retry attempts (0 disables retry)
            backoff_factor: Backoff factor for retries
            page_size: Records requested per page
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            }
        )

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @classmethod
    def from_config(cls, feed_config) -> "TransactionFeedClient":
        """Build a client from a FeedConfig."""
        return cls(
            base_url=feed_config.base_url,
            token=feed_config.token,
            timeout=feed_config.timeout_seconds,
            max_retries=feed_config.max_retries,
            page_size=feed_config.page_size,
        )

    def _get(self, endpoint: str, params: dict | None = None) -> dict:
        """GET an endpoint and return the decoded JSON body."""
        url = f"{self.base_url}{endpoint}"
        logger.debug("Feed request: GET %s %s", url, params)

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            logger.error("Connection error to %s: %s", url, e)
            raise FeedConnectionError(
                f"Failed to connect to transaction feed at {self.base_url}: {e}"
            ) from e
        except requests.exceptions.Timeout as e:
            logger.error("Timeout for %s: %s", url, e)
            raise FeedConnectionError(f"Request to transaction feed timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error("Request error for %s: %s", url, e)
            raise FeedError(f"Request failed: {e}") from e

        if not response.ok:
            body = response.text
            try:
                message = response.json().get("message", response.reason)
            except ValueError:
                message = response.reason
            logger.error("Feed error %s: %s", response.status_code, message)
            raise FeedAPIError(response.status_code, message, response_body=body)

        try:
            return response.json()
        except ValueError as e:
            raise FeedAPIError(response.status_code, "Response is not JSON", response.text) from e

    def test_connection(self) -> bool:
        """Test connection to the feed."""
        try:
            self._get("/transactions", params={"page": 1, "limit": 1})
            return True
        except FeedError:
            return False

    def list_transactions(
        self,
        start_date: date,
        end_date: date,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> tuple[list[Transaction], list[RecordRejection]]:
        """
        List transactions in a date range.

        Args:
            start_date: First day (inclusive)
            end_date: Last day (inclusive)
            max_pages: Maximum number of pages to fetch

        Returns:
            (valid transactions, rejected records)
        """
        raw_records: list[dict] = []
        page = 1

        while True:
            data = self._get(
                "/transactions",
                params={
                    "start": start_date.isoformat(),
                    "end": end_date.isoformat(),
                    "page": page,
                    "limit": self.page_size,
                },
            )
            raw_records.extend(data.get("data", []))

            meta = data.get("meta", {}).get("pagination", {})
            total_pages = meta.get("total_pages", 1)
            if page >= total_pages or page >= max_pages:
                if page >= max_pages and total_pages > max_pages:
                    logger.warning(
                        "Reached max_pages limit (%d) while fetching transactions. "
                        "Total pages: %d. Older transactions are not included.",
                        max_pages,
                        total_pages,
                    )
                break
            page += 1

        transactions, rejected = parse_transactions(raw_records)
        for rejection in rejected:
            logger.warning("Skipping feed record %d: %s", rejection.index, rejection.message)
        logger.info(
            "Fetched %d transactions (%s to %s), %d rejected",
            len(transactions),
            start_date,
            end_date,
            len(rejected),
        )
        return transactions, rejected

    def recent_transactions(
        self, today: date, days: int = 60
    ) -> tuple[list[Transaction], list[RecordRejection]]:
        """Transactions from the last `days` days up to and including today."""
        return self.list_transactions(today - timedelta(days=days), today)
