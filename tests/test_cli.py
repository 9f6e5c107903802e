"""Tests for CLI commands.

These tests verify that all CLI commands are registered and that the main
workflows run end to end against a temporary database.
"""

import json
from datetime import date

import pytest

from billrecon.runner.main import create_cli, main
from billrecon.state_store import StateStore


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    def test_all_commands_registered(self):
        """Verify all expected commands are registered."""
        parser = create_cli()
        subparsers_action = next(
            a for a in parser._actions if a.dest == "command"
        )

        assert set(subparsers_action.choices) == {
            "init-config",
            "import",
            "dedupe",
            "generate",
            "reconcile",
            "status",
            "match-institutions",
            "pay",
            "unmark",
            "end-pattern",
            "pattern-status",
        }

    def test_reconcile_defaults(self):
        args = create_cli().parse_args(["reconcile"])

        assert args.transactions is None
        assert args.days is None
        assert args.dry_run is False
        assert args.json is False

    def test_dedupe_mode_choices(self):
        parser = create_cli()

        assert parser.parse_args(["dedupe"]).mode == "exact"
        assert parser.parse_args(["dedupe", "--mode", "fuzzy"]).mode == "fuzzy"
        with pytest.raises(SystemExit):
            parser.parse_args(["dedupe", "--mode", "sloppy"])

    def test_pay_parses_date(self):
        args = create_cli().parse_args(["pay", "bill-1", "--date", "2025-01-12"])
        assert args.date == date(2025, 1, 12)

    def test_pattern_status_events(self):
        args = create_cli().parse_args(["pattern-status", "pat-1", "pause"])
        assert args.event == "pause"

    def test_no_command_prints_help(self):
        assert main([]) == 1


@pytest.fixture
def workspace(tmp_path):
    """Config file pointing at a temporary database."""
    db_path = tmp_path / "bills.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f'store:\n  db_path: "{db_path}"\n')
    return tmp_path, config_path, db_path


def write_json(path, data):
    path.write_text(json.dumps(data))
    return path


class TestCommands:
    def test_init_config(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"

        assert main(["-c", str(path), "init-config"]) == 0
        assert path.exists()
        assert main(["-c", str(path), "init-config"]) == 1

    def test_invalid_config(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"
        path.write_text("matching:\n  min_confidence: 500\n")

        assert main(["-c", str(path), "status"]) == 1
        assert "Failed to load config" in capsys.readouterr().out

    def test_import_generate_reconcile(self, workspace, capsys):
        tmp_path, config_path, db_path = workspace
        patterns = write_json(
            tmp_path / "patterns.json",
            [
                {
                    "id": "pat-netflix",
                    "name": "Netflix",
                    "amount": "15.99",
                    "frequency": "monthly",
                    "next_occurrence": "2025-01-10",
                },
                {"name": "Broken", "amount": "1.00"},
            ],
        )
        transactions = write_json(
            tmp_path / "transactions.json",
            {
                "data": [
                    {"id": "tx-1", "name": "NETFLIX.COM", "amount": "-15.99", "date": "2025-01-11"}
                ]
            },
        )

        assert main(["-c", str(config_path), "import", "patterns", str(patterns)]) == 0
        assert "Rejected: 1" in capsys.readouterr().out
        assert main(["-c", str(config_path), "generate"]) == 0
        assert (
            main(["-c", str(config_path), "reconcile", "--transactions", str(transactions)]) == 0
        )

        store = StateStore(db_path)
        assert [b.due_date for b in store.find_bills(is_paid=True)] == [date(2025, 1, 10)]
        assert [b.due_date for b in store.find_bills(is_paid=False)] == [date(2025, 2, 10)]
        assert store.get_pattern("pat-netflix").next_occurrence == date(2025, 2, 10)

    def test_reconcile_json_output(self, workspace, capsys):
        tmp_path, config_path, _ = workspace
        transactions = write_json(
            tmp_path / "transactions.json",
            [{"id": "tx-1", "name": "NETFLIX.COM", "amount": "-15.99", "date": "2025-01-11"}],
        )

        code = main(
            ["-c", str(config_path), "reconcile", "--transactions", str(transactions), "--json"]
        )

        output = json.loads(capsys.readouterr().out)
        assert code == 0
        assert output["state"] == "COMPLETED"
        assert output["transactions_seen"] == 1
        assert output["cleared"] == 0

    def test_reconcile_without_source(self, workspace, capsys):
        _, config_path, _ = workspace

        assert main(["-c", str(config_path), "reconcile"]) == 1
        assert "No transactions" in capsys.readouterr().out

    def test_import_bills_dedupes(self, workspace, sample_bill_records, capsys):
        tmp_path, config_path, db_path = workspace
        bills = write_json(tmp_path / "bills.json", sample_bill_records)

        assert main(["-c", str(config_path), "import", "bills", str(bills)]) == 0

        assert len(StateStore(db_path).find_bills()) == 2

    def test_pay_and_unmark(self, workspace, capsys):
        tmp_path, config_path, db_path = workspace
        bills = write_json(
            tmp_path / "bills.json",
            [{"id": "bill-1", "name": "Gym", "amount": "40", "due_date": "2025-01-05"}],
        )
        main(["-c", str(config_path), "import", "bills", str(bills)])

        assert main(["-c", str(config_path), "pay", "bill-1", "--date", "2025-01-06"]) == 0
        assert StateStore(db_path).get_bill("bill-1").is_paid
        assert main(["-c", str(config_path), "unmark", "bill-1"]) == 0
        assert not StateStore(db_path).get_bill("bill-1").is_paid
        assert main(["-c", str(config_path), "unmark", "bill-1"]) == 1
        assert main(["-c", str(config_path), "pay", "missing"]) == 1

    def test_pattern_commands(self, workspace, capsys):
        tmp_path, config_path, db_path = workspace
        patterns = write_json(
            tmp_path / "patterns.json",
            [
                {
                    "id": "pat-gym",
                    "name": "Gym",
                    "amount": "40",
                    "frequency": "monthly",
                    "next_occurrence": "2025-01-05",
                }
            ],
        )
        main(["-c", str(config_path), "import", "patterns", str(patterns)])

        assert main(["-c", str(config_path), "pattern-status", "pat-gym", "pause"]) == 0
        assert main(["-c", str(config_path), "pattern-status", "pat-gym", "recover"]) == 1
        assert main(["-c", str(config_path), "end-pattern", "pat-gym"]) == 0
        assert StateStore(db_path).get_pattern("pat-gym").status.value == "ended"
        assert main(["-c", str(config_path), "end-pattern", "pat-gym"]) == 1

    def test_status(self, workspace, capsys):
        tmp_path, config_path, _ = workspace
        patterns = write_json(
            tmp_path / "patterns.json",
            [
                {
                    "id": "pat-gym",
                    "name": "Gym",
                    "amount": "40",
                    "frequency": "monthly",
                    "next_occurrence": "2025-01-05",
                }
            ],
        )
        main(["-c", str(config_path), "import", "patterns", str(patterns)])

        assert main(["-c", str(config_path), "status", "--schedule", "3"]) == 0
        out = capsys.readouterr().out
        assert "Gym" in out
        assert "Monthly expenses: 40.00" in out

    def test_match_institutions(self, workspace, capsys):
        tmp_path, config_path, db_path = workspace
        accounts = write_json(
            tmp_path / "accounts.json",
            {"acc-chase": {"name": "Checking", "institution": "Chase Bank"}},
        )
        items = write_json(
            tmp_path / "items.json",
            [{"name": "Rent", "institution_name": "Chase"}, {"institution_name": "Zelle"}],
        )

        assert main(["-c", str(config_path), "match-institutions", str(accounts), str(items)]) == 0
        assert "1 matched, 1 unmatched" in capsys.readouterr().out
