"""
Configuration management (SSOT).

This module defines ALL configuration for the bill reconciler.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Matching tolerances are absolute (dollars, days), not percentages
- The undo window for unmarking a paid bill is measured in hours
- The transaction feed is read-only; its token never leaves this process
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class StoreConfig:
    """Document store settings."""

    # SQLite database file holding patterns, bills and payment history
    db_path: Path = field(default_factory=lambda: Path("data/bills.db"))
    # Owner of every document written by this process
    user_id: str = "default"


@dataclass
class MatchingConfig:
    """Transaction-to-bill and duplicate matching settings."""

    # Absolute dollar tolerance for the amount criterion
    amount_tolerance: Decimal = Decimal("1.00")
    # Absolute day tolerance for the date criterion
    date_tolerance_days: int = 3
    # Minimum name score (0-100) for the name criterion
    name_threshold: float = 80.0
    # Minimum confidence (0-100) to auto-clear a bill
    min_confidence: int = 67
    # Composite score (0-100) above which two recurring templates are duplicates
    template_duplicate_threshold: float = 80.0
    # Master switch for auto-clearing
    auto_clear_enabled: bool = True


@dataclass
class SchedulerConfig:
    """Recurrence and bill generation settings."""

    # Maximum number of unpaid bills per recurring pattern
    max_unpaid_per_pattern: int = 2
    # Days past due before a failed payment marks the pattern failed
    failed_grace_days: int = 7
    # Hours after marking paid during which a bill can be unmarked
    undo_window_hours: int = 72
    # Disable generation of next bills entirely
    disable_auto_generation: bool = False


@dataclass
class FeedConfig:
    """Transaction feed settings.

    The feed is a read-only HTTP endpoint listing recent bank transactions.
    If base_url is empty the feed is disabled and transactions must be
    supplied from a file.
    """

    base_url: str = ""
    token: str = ""
    # Window of recent transactions to fetch (days back from today)
    recent_days: int = 60
    # Request timeout (seconds)
    timeout_seconds: int = 30
    # Transport retries; the reconciler itself never retries
    max_retries: int = 0
    page_size: int = 100

    @property
    def enabled(self) -> bool:
        """Check if a feed URL is configured."""
        return bool(self.base_url)


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.matching.amount_tolerance < 0:
            errors.append("matching.amount_tolerance must be >= 0")
        if self.matching.date_tolerance_days < 0:
            errors.append("matching.date_tolerance_days must be >= 0")
        if not 0 <= self.matching.min_confidence <= 100:
            errors.append("matching.min_confidence must be between 0 and 100")
        if not 0 <= self.matching.name_threshold <= 100:
            errors.append("matching.name_threshold must be between 0 and 100")

        if self.scheduler.max_unpaid_per_pattern < 1:
            errors.append("scheduler.max_unpaid_per_pattern must be >= 1")
        if self.scheduler.undo_window_hours < 0:
            errors.append("scheduler.undo_window_hours must be >= 0")

        if self.feed.enabled and not self.feed.token:
            errors.append("feed.token is required when feed.base_url is set")
        if self.feed.recent_days < 1:
            errors.append("feed.recent_days must be >= 1")

        return errors

    def ensure_valid(self) -> None:
        """Raise ConfigValidationError if validate() reports any problem."""
        errors = self.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))


def _to_decimal(value: object, default: str) -> Decimal:
    if value is None:
        return Decimal(default)
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ConfigValidationError(f"Not a decimal value: {value!r}") from e


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - BILLRECON_DB_PATH
    - BILLRECON_USER_ID
    - BILLRECON_FEED_URL
    - BILLRECON_FEED_TOKEN
    - BILLRECON_FEED_DAYS (recent window in days)
    - BILLRECON_AUTO_CLEAR (true/false)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Store config
    store_data = data.get("store", {})
    store = StoreConfig(
        db_path=Path(
            os.environ.get("BILLRECON_DB_PATH", store_data.get("db_path", "data/bills.db"))
        ),
        user_id=os.environ.get("BILLRECON_USER_ID", store_data.get("user_id", "default")),
    )

    # Matching config
    matching_data = data.get("matching", {})
    auto_clear_env = os.environ.get("BILLRECON_AUTO_CLEAR", "").lower()
    auto_clear = matching_data.get("auto_clear_enabled", True)
    if auto_clear_env == "true":
        auto_clear = True
    elif auto_clear_env == "false":
        auto_clear = False

    matching = MatchingConfig(
        amount_tolerance=_to_decimal(matching_data.get("amount_tolerance"), "1.00"),
        date_tolerance_days=matching_data.get("date_tolerance_days", 3),
        name_threshold=matching_data.get("name_threshold", 80.0),
        min_confidence=matching_data.get("min_confidence", 67),
        template_duplicate_threshold=matching_data.get("template_duplicate_threshold", 80.0),
        auto_clear_enabled=auto_clear,
    )

    # Scheduler config
    scheduler_data = data.get("scheduler", {})
    scheduler = SchedulerConfig(
        max_unpaid_per_pattern=scheduler_data.get("max_unpaid_per_pattern", 2),
        failed_grace_days=scheduler_data.get("failed_grace_days", 7),
        undo_window_hours=scheduler_data.get("undo_window_hours", 72),
        disable_auto_generation=scheduler_data.get("disable_auto_generation", False),
    )

    # Feed config
    feed_data = data.get("feed", {})
    recent_days_env = os.environ.get("BILLRECON_FEED_DAYS", "")
    recent_days = feed_data.get("recent_days", 60)
    if recent_days_env:
        try:
            recent_days = int(recent_days_env)
        except ValueError:
            pass  # Keep default

    feed = FeedConfig(
        base_url=os.environ.get("BILLRECON_FEED_URL", feed_data.get("base_url", "")),
        token=os.environ.get("BILLRECON_FEED_TOKEN", feed_data.get("token", "")),
        recent_days=recent_days,
        timeout_seconds=feed_data.get("timeout_seconds", 30),
        max_retries=feed_data.get("max_retries", 0),
        page_size=feed_data.get("page_size", 100),
    )

    return Config(store=store, matching=matching, scheduler=scheduler, feed=feed)


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Bill Reconciler Configuration
#
# Tolerances are absolute: dollars for amounts, days for dates.

store:
  db_path: "data/bills.db"
  user_id: "default"

# Transaction-to-bill matching
matching:
  amount_tolerance: "1.00"             # Max |bill - transaction| in dollars
  date_tolerance_days: 3               # Max days between due date and payment
  name_threshold: 80                   # Min name score (0-100)
  min_confidence: 67                   # 2 of 3 criteria must hold
  template_duplicate_threshold: 80     # Composite score for template duplicates
  auto_clear_enabled: true             # Mark bills paid from bank transactions

# Recurrence and bill generation
scheduler:
  max_unpaid_per_pattern: 2
  failed_grace_days: 7                 # Failed payment + overdue this long => failed
  undo_window_hours: 72                # Unmark allowed this long after paying
  disable_auto_generation: false

# Read-only transaction feed (leave base_url empty to use files)
feed:
  base_url: ""
  token: ""
  recent_days: 60
  timeout_seconds: 30
  max_retries: 0
  page_size: 100
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
