"""Tests for the command line interface."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from typer.testing import CliRunner

from splitledger.cli import app, format_money
from splitledger.db import Database

runner = CliRunner()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Point the CLI at a temporary database in local-only mode."""
    path = tmp_path / "cli.db"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SPLITLEDGER_DATABASE_PATH", str(path))
    monkeypatch.delenv("SPLITLEDGER_REMOTE_URL", raising=False)
    return path


@pytest.fixture
def seeded(db_path):
    """A group with two members and one expense."""
    with Database(db_path) as db:
        alice = db.create_member("Alice")
        bob = db.create_member("Bob")
        group = db.create_group("Flat", member_ids=[alice.id, bob.id])
        db.create_expense(
            group.id,
            alice.id,
            "40.00",
            "utilities",
            datetime(2024, 3, 1, tzinfo=UTC),
            name="Electricity",
        )
    return {"group": group, "alice": alice, "bob": bob}


class TestFormatMoney:
    """Tests for format_money."""

    def test_negative_uses_parentheses(self):
        assert format_money(Decimal("-85.02"), use_color=False) == "($85.02)"

    def test_positive_is_padded(self):
        assert format_money(Decimal("1234.5"), use_color=False) == " $1,234.50 "


class TestCommands:
    """End-to-end command tests against a temporary database."""

    def test_group_create(self, db_path):
        result = runner.invoke(app, ["group", "create", "Trip"])

        assert result.exit_code == 0
        assert "Created group 'Trip'" in result.output
        with Database(db_path) as db:
            assert [g.name for g in db.list_groups()] == ["Trip"]

    def test_group_rename(self, db_path, seeded):
        result = runner.invoke(
            app, ["group", "rename", seeded["group"].id, "Flat share"]
        )

        assert result.exit_code == 0
        assert "Renamed group to 'Flat share'" in result.output
        with Database(db_path) as db:
            assert db.get_group(seeded["group"].id).name == "Flat share"

    def test_member_add_to_group(self, db_path, seeded):
        result = runner.invoke(
            app, ["member", "add", "Carol", "--group", seeded["group"].id]
        )

        assert result.exit_code == 0
        with Database(db_path) as db:
            assert len(db.get_group(seeded["group"].id).member_ids) == 3

    def test_expense_add(self, db_path, seeded):
        result = runner.invoke(
            app,
            [
                "expense",
                "add",
                seeded["group"].id,
                seeded["bob"].id,
                "12.5",
                "--name",
                "Groceries",
                "--category",
                "food",
            ],
        )

        assert result.exit_code == 0
        assert "$12.50" in result.output
        with Database(db_path) as db:
            assert {e.name for e in db.query_expenses()} == {"Electricity", "Groceries"}

    def test_expense_list(self, seeded):
        result = runner.invoke(app, ["expense", "list"])

        assert result.exit_code == 0
        assert "Electricity" in result.output
        assert "utilities" in result.output

    def test_balances(self, seeded):
        result = runner.invoke(app, ["balances", seeded["group"].id])

        assert result.exit_code == 0
        assert "Alice" in result.output
        assert "Bob → Alice: $20.00" in result.output

    def test_balances_unknown_group(self, db_path):
        result = runner.invoke(app, ["balances", "missing"])

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_categories(self, seeded):
        result = runner.invoke(app, ["categories"])

        assert result.exit_code == 0
        assert "utilities" in result.output
        assert "$40.00" in result.output

    def test_sync_without_remote(self, db_path):
        result = runner.invoke(app, ["sync"])

        assert result.exit_code == 1
        assert "No remote store configured" in result.output
