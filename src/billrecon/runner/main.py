"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from datetime import date, datetime
from pathlib import Path

from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..duplicates import DedupeMode, DuplicateDetector
from ..feed_client import FeedError, TransactionFeedClient
from ..institutions import Account, InstitutionMatcher
from ..scheduler import InvalidTransitionError, RecurrenceScheduler, StatusEvent
from ..schemas.records import parse_amount, parse_bills, parse_patterns, parse_transactions
from ..services import (
    BillNotFoundError,
    GenerationInProgressError,
    PatternNotFoundError,
    ReconciliationService,
    UnmarkNotAllowedError,
)
from ..similarity import TEMPLATE_PROFILE, SimilarityEngine
from ..state_store import StateStore, StoreError

logger = logging.getLogger(__name__)

IMPORT_KINDS = ("patterns", "bills", "merchant-aliases", "institution-aliases")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="billrecon",
        description="Clear recurring bills from bank transactions and generate the next ones",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    # import command
    import_parser = subparsers.add_parser("import", help="Import records from a JSON file")
    import_parser.add_argument("kind", choices=IMPORT_KINDS, help="What the file contains")
    import_parser.add_argument("file", type=Path, help="JSON file to import")

    # dedupe command
    dedupe_parser = subparsers.add_parser("dedupe", help="Report (and remove) duplicate bills")
    dedupe_parser.add_argument(
        "--mode",
        choices=[m.value for m in DedupeMode],
        default=DedupeMode.EXACT.value,
        help="exact key match or fuzzy multi-factor match (default: exact)",
    )
    dedupe_parser.add_argument(
        "--apply",
        action="store_true",
        help="Delete unpaid duplicates (exact mode only)",
    )
    dedupe_parser.add_argument(
        "--templates",
        action="store_true",
        help="Also report recurring templates that look alike",
    )

    # generate command
    subparsers.add_parser("generate", help="Ensure each active pattern has its next bill")

    # reconcile command
    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Match bank transactions to unpaid bills and clear them",
    )
    reconcile_parser.add_argument(
        "--transactions",
        type=Path,
        help="Read transactions from a JSON file instead of the feed",
    )
    reconcile_parser.add_argument(
        "--days",
        type=int,
        help="Days of feed history to fetch (default: feed.recent_days)",
    )
    reconcile_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    reconcile_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the result as JSON",
    )

    # status command
    status_parser = subparsers.add_parser("status", help="Show patterns, bills and runs")
    status_parser.add_argument(
        "--schedule",
        type=int,
        default=0,
        metavar="N",
        help="Also list the next N occurrences of each pattern",
    )

    # match-institutions command
    institutions_parser = subparsers.add_parser(
        "match-institutions", help="Match institution names to accounts"
    )
    institutions_parser.add_argument(
        "accounts", type=Path, help="JSON object of accounts keyed by id"
    )
    institutions_parser.add_argument(
        "items", type=Path, help="JSON list of items with institution_name"
    )
    institutions_parser.add_argument(
        "--save-suggestions",
        action="store_true",
        help="Store confident suggestions as institution aliases",
    )

    # pay command
    pay_parser = subparsers.add_parser("pay", help="Mark a bill paid by hand")
    pay_parser.add_argument("bill_id", help="Bill ID")
    pay_parser.add_argument("--date", type=date.fromisoformat, help="Paid date (default: today)")
    pay_parser.add_argument("--amount", type=str, help="Paid amount (default: bill amount)")

    # unmark command
    unmark_parser = subparsers.add_parser("unmark", help="Revert a paid bill to unpaid")
    unmark_parser.add_argument("bill_id", help="Bill ID")

    # end-pattern command
    end_parser = subparsers.add_parser("end-pattern", help="End a recurring pattern")
    end_parser.add_argument("pattern_id", help="Pattern ID")

    # pattern-status command
    status_event_parser = subparsers.add_parser(
        "pattern-status", help="Pause, resume or reactivate a pattern"
    )
    status_event_parser.add_argument("pattern_id", help="Pattern ID")
    status_event_parser.add_argument(
        "event", choices=[e.value for e in StatusEvent], help="Status event"
    )

    return parser


def _open_store(config: Config) -> StateStore:
    return StateStore(config.store.db_path, user_id=config.store.user_id)


def _load_json(path: Path):
    with open(path) as f:
        return json.load(f)


def cmd_init_config(config_path: Path) -> int:
    """Write a default configuration file."""
    if config_path.exists():
        print(f"⚠️  {config_path} already exists; not overwriting")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_import(config: Config, kind: str, path: Path) -> int:
    """Import patterns, bills or aliases from a JSON file."""
    print(f"📥 Importing {kind} from {path}...")
    data = _load_json(path)
    store = _open_store(config)

    if kind == "merchant-aliases":
        for bill_name, aliases in data.items():
            store.set_merchant_aliases(bill_name, list(aliases))
        print(f"\n✓ Stored merchant aliases for {len(data)} bill name(s)")
        return 0

    if kind == "institution-aliases":
        for institution, account_id in data.items():
            store.set_institution_alias(institution, str(account_id))
        print(f"\n✓ Stored {len(data)} institution alias(es)")
        return 0

    if kind == "patterns":
        patterns, rejected = parse_patterns(data)
        for pattern in patterns:
            store.save_pattern(pattern)
            print(f"  🔁 [{pattern.id}] {pattern.name} ({pattern.frequency.value})")
        imported = len(patterns)
    else:
        bills, rejected = parse_bills(data)
        report = DuplicateDetector().generate_duplicate_report(bills)
        imported = 0
        existing = 0
        for bill in report.kept:
            if bill.recurring_pattern_id:
                if not store.insert_bill_if_absent(bill):
                    existing += 1
                    continue
            else:
                store.save_bill(bill)
            imported += 1
        print(f"  {report.summary}")
        if existing:
            print(f"  ⏭ {existing} bill(s) already present for their pattern and due date")

    for rejection in rejected:
        print(f"  ❌ Record {rejection.index}: {rejection.message}")

    print(f"\n✓ Imported: {imported}, Rejected: {len(rejected)}")
    return 0


def cmd_dedupe(config: Config, mode: str, apply: bool, templates: bool) -> int:
    """Report duplicate bills (and optionally templates)."""
    store = _open_store(config)
    template_engine = SimilarityEngine(
        TEMPLATE_PROFILE.with_tolerances(
            duplicate_threshold=config.matching.template_duplicate_threshold
        )
    )
    detector = DuplicateDetector(template_engine=template_engine)
    dedupe_mode = DedupeMode(mode)

    bills = store.find_bills()
    report = detector.generate_report(bills, dedupe_mode)

    print(f"\n🔍 Duplicate bills ({dedupe_mode.value})")
    print("=" * 40)
    for group in report.groups:
        print(f"  ✓ keep   [{group.keep.id}] {group.keep.name} due {group.keep.due_date}")
        for bill in group.remove:
            print(f"    remove [{bill.id}] {bill.name} due {bill.due_date}")
    print(f"\n{report.summary}")

    if apply:
        if dedupe_mode != DedupeMode.EXACT:
            print("⚠️  --apply only removes exact duplicates; fuzzy groups need review")
        else:
            deleted = 0
            for bill in report.removed:
                if bill.is_paid:
                    print(f"  ⏭ [{bill.id}] is paid; keeping payment history")
                    continue
                if store.delete_bill(bill.id):
                    deleted += 1
            print(f"✓ Deleted {deleted} duplicate bill(s)")

    if templates:
        pairs = detector.find_template_duplicates(store.list_patterns())
        print(f"\n🔁 Similar templates: {len(pairs)}")
        for pair in pairs:
            print(
                f"  {pair.first.name!r} ~ {pair.second.name!r} "
                f"({pair.score.total:.0f}%) [{pair.first.id}, {pair.second.id}]"
            )

    return 0


def cmd_generate(config: Config, now: datetime) -> int:
    """Generate missing bills for active patterns."""
    print("🧾 Generating bills...")
    service = ReconciliationService(_open_store(config), config)
    try:
        result = service.generate_bills(now)
    except GenerationInProgressError as e:
        print(f"❌ {e}")
        return 1

    for bill in result.generated:
        print(f"  ✓ [{bill.id}] {bill.name} due {bill.due_date} ({bill.amount})")
    for skip in result.skipped:
        logger.debug("Skipped pattern %s: %s", skip.pattern_id, skip.detail)

    print(f"\n✓ Generated: {len(result.generated)}, Skipped: {len(result.skipped)}")
    return 0


def cmd_reconcile(
    config: Config,
    now: datetime,
    transactions_file: Path | None = None,
    days: int | None = None,
    dry_run: bool = False,
    as_json: bool = False,
) -> int:
    """Run transaction-driven bill clearing."""
    if transactions_file is not None:
        data = _load_json(transactions_file)
        if isinstance(data, dict):
            data = data.get("data", [])
        transactions, rejected = parse_transactions(data)
    elif config.feed.enabled:
        client = TransactionFeedClient.from_config(config.feed)
        try:
            transactions, rejected = client.recent_transactions(
                now.date(), days or config.feed.recent_days
            )
        except FeedError as e:
            print(f"❌ Failed to fetch transactions: {e}")
            return 1
    else:
        print("❌ No transactions: pass --transactions or configure feed.base_url")
        return 1

    service = ReconciliationService(_open_store(config), config)
    result = service.run_reconciliation(
        transactions, now=now, rejected=rejected, dry_run=dry_run
    )

    if as_json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 0 if result.success else 1

    print()
    print("📊 Reconciliation Results" + (" (dry run)" if dry_run else ""))
    print("=" * 40)
    print(f"  Status:              {result.state.value}")
    print(f"  Transactions seen:   {result.transactions_seen}")
    print(f"  Rejected records:    {len(result.rejected)}")
    print(f"  Bills cleared:       {result.cleared}")
    print(f"  Patterns advanced:   {result.advanced}")
    print(f"  Bills generated:     {result.generated}")
    print(f"  Steps skipped:       {len(result.skipped)}")
    print(f"  Duration:            {result.duration_ms}ms")
    print()

    for detail in result.details:
        match = detail.match
        marker = "•" if detail.planned else ("✓" if detail.cleared else "⏭")
        print(
            f"  {marker} {match.transaction.name} → {match.bill.name} "
            f"due {match.bill.due_date} ({match.confidence}%)"
        )

    if result.errors:
        print("⚠️  Errors encountered:")
        for error in result.errors:
            print(f"   - {error}")

    if result.success:
        print("✓ Reconciliation completed successfully")
        return 0
    print("❌ Reconciliation failed")
    return 1


def cmd_status(config: Config, now: datetime, schedule: int = 0) -> int:
    """Show store status."""
    store = _open_store(config)
    stats = store.get_stats()
    scheduler = RecurrenceScheduler(config.scheduler.failed_grace_days)
    today = now.date()

    print("\n📊 Bill Status")
    print("=" * 40)
    for status, count in sorted(stats["patterns_by_status"].items()):
        print(f"  Patterns {status + ':':<14} {count}")
    print(f"  Bills total:            {stats['bills_total']}")
    print(f"  Bills paid:             {stats['bills_paid']}")
    print(f"  Bills unpaid:           {stats['bills_unpaid']}")
    print(f"  Payments recorded:      {stats['payments']}")
    print(f"  Reconciliation runs:    {stats['runs']}")

    patterns = store.list_patterns()
    if patterns:
        print("\n🔁 Patterns")
        for pattern in patterns:
            has_unpaid = store.count_unpaid_bills(pattern.id) > 0
            view = scheduler.annotate(pattern, today, has_unpaid_bill=has_unpaid)
            flag = " ⚠️ overdue" if view.is_overdue else ""
            print(
                f"  [{pattern.id}] {pattern.name}: {view.status.value}, "
                f"next {view.next_due} ({view.days_until_due:+d}d){flag}"
            )
            for occurrence in scheduler.generate_schedule(pattern, schedule)[1:]:
                print(f"      then {occurrence.due_date}")

        totals = scheduler.monthly_totals(patterns, today)
        print(f"\n  Monthly expenses: {totals.expenses}")
        print(f"  Monthly income:   {totals.income}")
        print(f"  Monthly net:      {totals.net}")

    print()
    return 0


def cmd_match_institutions(
    config: Config, accounts_file: Path, items_file: Path, save_suggestions: bool = False
) -> int:
    """Match institution names of imported items to accounts."""
    store = _open_store(config)
    accounts = [Account.from_dict(key, value) for key, value in _load_json(accounts_file).items()]
    items = _load_json(items_file)
    matcher = InstitutionMatcher()

    result = matcher.batch_match(items, accounts, store.get_institution_aliases())
    print(f"\n🏦 Institutions: {len(result.matched)} matched, {len(result.unmatched)} unmatched")
    for item in result.matched:
        print(
            f"  ✓ {item.get('institution_name') or item.get('institutionName')} → "
            f"{item['linked_account_id']} ({item['match_confidence']}%, {item['match_method']})"
        )

    suggestions = matcher.suggest_mappings(result.unmatched, accounts)
    for name, match in suggestions.suggestions.items():
        print(f"  ? {name} → {match.account_id} ({match.confidence}%)")
        if save_suggestions:
            store.set_institution_alias(name, match.account_id)
    for name in suggestions.unmatched_institutions:
        print(f"  ❌ {name}")

    if save_suggestions and suggestions.suggestions:
        print(f"\n✓ Saved {len(suggestions.suggestions)} institution alias(es)")
    return 0


def cmd_pay(
    config: Config, now: datetime, bill_id: str, paid_date: date | None, amount: str | None
) -> int:
    """Mark a bill paid by hand."""
    service = ReconciliationService(_open_store(config), config)
    try:
        result = service.record_manual_payment(
            bill_id,
            paid_date=paid_date or now.date(),
            now=now,
            amount=parse_amount(amount) if amount is not None else None,
        )
    except (BillNotFoundError, ValueError) as e:
        print(f"❌ {e}")
        return 1

    if not result.cleared:
        print(f"⏭ Bill {bill_id} was already paid")
        return 0
    print(f"✓ Bill {bill_id} marked paid")
    if result.generated:
        print("  🧾 Next bill generated")
    return 0


def cmd_unmark(config: Config, now: datetime, bill_id: str) -> int:
    """Revert a paid bill to unpaid."""
    service = ReconciliationService(_open_store(config), config)
    try:
        bill = service.unmark_bill(bill_id, now)
    except (BillNotFoundError, UnmarkNotAllowedError) as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ Bill {bill.id} ({bill.name}) is unpaid again")
    return 0


def cmd_end_pattern(config: Config, now: datetime, pattern_id: str) -> int:
    """End a recurring pattern."""
    service = ReconciliationService(_open_store(config), config)
    try:
        result = service.end_pattern(pattern_id, now)
    except (PatternNotFoundError, InvalidTransitionError) as e:
        print(f"❌ {e}")
        return 1
    print(
        f"✓ Ended {result.pattern.name}: deleted {result.deleted_unpaid} unpaid bill(s), "
        f"kept {result.kept_paid} paid"
    )
    return 0


def cmd_pattern_status(config: Config, now: datetime, pattern_id: str, event: str) -> int:
    """Apply a status event to a pattern."""
    service = ReconciliationService(_open_store(config), config)
    try:
        pattern = service.set_pattern_status(pattern_id, StatusEvent(event), now)
    except (PatternNotFoundError, InvalidTransitionError) as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ {pattern.name} is now {pattern.status.value}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
        config.ensure_valid()
    except (ConfigValidationError, OSError, ValueError) as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    now = datetime.now()

    # Route to command
    try:
        if parsed.command == "import":
            return cmd_import(config, parsed.kind, parsed.file)
        elif parsed.command == "dedupe":
            return cmd_dedupe(config, parsed.mode, parsed.apply, parsed.templates)
        elif parsed.command == "generate":
            return cmd_generate(config, now)
        elif parsed.command == "reconcile":
            return cmd_reconcile(
                config,
                now,
                transactions_file=parsed.transactions,
                days=parsed.days,
                dry_run=parsed.dry_run,
                as_json=parsed.json,
            )
        elif parsed.command == "status":
            return cmd_status(config, now, parsed.schedule)
        elif parsed.command == "match-institutions":
            return cmd_match_institutions(
                config, parsed.accounts, parsed.items, parsed.save_suggestions
            )
        elif parsed.command == "pay":
            return cmd_pay(config, now, parsed.bill_id, parsed.date, parsed.amount)
        elif parsed.command == "unmark":
            return cmd_unmark(config, now, parsed.bill_id)
        elif parsed.command == "end-pattern":
            return cmd_end_pattern(config, now, parsed.pattern_id)
        elif parsed.command == "pattern-status":
            return cmd_pattern_status(config, now, parsed.pattern_id, parsed.event)
    except StoreError as e:
        logger.exception("Store failure during %s", parsed.command)
        print(f"❌ Store error: {e}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
