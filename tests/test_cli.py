"""Tests for CLI commands.

These tests verify that all CLI commands are properly registered and that
the store-backed commands work end to end against a temporary config.
"""

import json

import pytest
import yaml

from receipt_matcher.runner.main import create_cli, main
from receipt_matcher.state_store import QueueStatus, StateStore


@pytest.fixture
def config_file(tmp_path):
    """Config pointing the database and blobs into tmp_path."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "state_db_path": str(tmp_path / "state.db"),
                "storage": {"blob_root": str(tmp_path / "blobs")},
                "queue": {"process_on_create": False},
            }
        )
    )
    return path


@pytest.fixture
def transactions_file(tmp_path):
    path = tmp_path / "transactions.json"
    path.write_text(
        json.dumps(
            {
                "transactions": [
                    {
                        "id": "tx-1",
                        "user_id": "user-1",
                        "amount": -4999,
                        "date": "2024-03-10",
                        "name": "NETFLIX.COM",
                    },
                    {
                        "id": "tx-2",
                        "user_id": "user-1",
                        "amount": "-1299",
                        "date": "2024-03-12",
                        "name": "SPOTIFY",
                        "partner_name": "Spotify AB",
                    },
                    {"id": "broken", "user_id": "user-1"},
                ]
            }
        )
    )
    return path


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    def test_all_commands_registered(self):
        """Verify all expected commands are registered."""
        parser = create_cli()

        subparsers_action = None
        for action in parser._actions:
            if action.dest == "command":
                subparsers_action = action
                break

        assert subparsers_action is not None
        commands = list(subparsers_action.choices.keys())

        assert "init-config" in commands
        assert "import-transactions" in commands
        assert "enqueue" in commands
        assert "tick" in commands
        assert "status" in commands
        assert "pause" in commands
        assert "resume" in commands

    def test_enqueue_defaults(self):
        parser = create_cli()
        args = parser.parse_args(["enqueue", "--user", "user-1"])

        assert args.scope == "all_incomplete"
        assert args.triggered_by == "manual"
        assert args.strategies == "partner_files,amount_files,email_attachment,email_invoice"
        assert args.transaction_id is None

    def test_enqueue_requires_user(self):
        parser = create_cli()
        with pytest.raises(SystemExit):
            parser.parse_args(["enqueue"])

    def test_tick_max_items(self):
        args = create_cli().parse_args(["tick", "--max-items", "3"])
        assert args.max_items == 3

    def test_pause_takes_item_id(self):
        args = create_cli().parse_args(["pause", "7"])
        assert args.item_id == 7


class TestCLICommands:
    """End-to-end runs of the CLI commands."""

    def test_no_command_shows_help(self):
        assert main([]) == 1

    def test_init_config(self, tmp_path, capsys):
        path = tmp_path / "new.yaml"

        assert main(["-c", str(path), "init-config"]) == 0
        assert path.exists()
        assert main(["-c", str(path), "init-config"]) == 1
        assert main(["-c", str(path), "init-config", "--force"]) == 0
        assert "already exists" in capsys.readouterr().out

    def test_invalid_config(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"matching": {"connect_threshold": 99}}))

        assert main(["-c", str(path), "status"]) == 1
        assert "Failed to load config" in capsys.readouterr().out

    def test_import_transactions(self, tmp_path, config_file, transactions_file, capsys):
        rc = main(["-c", str(config_file), "import-transactions", str(transactions_file)])

        assert rc == 0
        assert "Imported 2 transaction(s)" in capsys.readouterr().out
        store = StateStore(tmp_path / "state.db")
        assert store.get_transaction("tx-2").amount == -1299
        assert store.get_transaction("tx-2").partner_name == "Spotify AB"
        assert store.get_transaction("broken") is None

    def test_import_unreadable_file(self, tmp_path, config_file):
        missing = tmp_path / "missing.json"
        assert main(["-c", str(config_file), "import-transactions", str(missing)]) == 1

    def test_enqueue_tick_status(self, tmp_path, config_file, transactions_file, capsys):
        """A queued search runs on tick and shows up in status."""
        main(["-c", str(config_file), "import-transactions", str(transactions_file)])

        assert main(["-c", str(config_file), "enqueue", "--user", "user-1"]) == 0
        assert main(["-c", str(config_file), "tick"]) == 0

        store = StateStore(tmp_path / "state.db")
        [item] = store.get_queue_items()
        assert item.status == QueueStatus.COMPLETED
        assert item.transactions_processed == 2

        capsys.readouterr()
        assert main(["-c", str(config_file), "status"]) == 0
        out = capsys.readouterr().out
        assert "Receipt Matcher Status" in out
        assert "completed" in out

    def test_enqueue_unknown_strategy(self, config_file, capsys):
        rc = main(
            ["-c", str(config_file), "enqueue", "--user", "user-1", "--strategies", "ftp_scan"]
        )
        assert rc == 1
        assert "Unknown strategies: ftp_scan" in capsys.readouterr().out

    def test_enqueue_single_without_transaction(self, config_file):
        rc = main(
            ["-c", str(config_file), "enqueue", "--user", "user-1", "--scope", "single_transaction"]
        )
        assert rc == 1

    def test_pause_and_resume(self, tmp_path, config_file, capsys):
        main(["-c", str(config_file), "enqueue", "--user", "user-1"])
        [item] = StateStore(tmp_path / "state.db").get_queue_items()

        assert main(["-c", str(config_file), "pause", str(item.id)]) == 0
        assert main(["-c", str(config_file), "pause", str(item.id)]) == 1
        assert main(["-c", str(config_file), "resume", str(item.id)]) == 0
        assert main(["-c", str(config_file), "resume", "999"]) == 1
        assert "not found" in capsys.readouterr().out
