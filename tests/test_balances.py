"""Tests for equal-split balance calculation and settle-up suggestions."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from splitledger.balances import (
    compute_balances,
    split_evenly,
    suggest_settlements,
    to_cents,
)
from splitledger.models import Expense, Group, GroupSnapshot, Member


# Helper functions for tests
def make_expense(id: str, payer_id: str, amount: str, group_id: str = "g1") -> Expense:
    """Create an expense for testing."""
    return Expense(
        id=id,
        name=f"Test expense {id}",
        amount=Decimal(amount),
        category="food",
        date=datetime(2025, 1, 15, tzinfo=UTC),
        payer_id=payer_id,
        group_id=group_id,
    )


def make_snapshot(member_ids: list[str], expenses: list[Expense]) -> GroupSnapshot:
    """Create a group snapshot for testing."""
    return GroupSnapshot(
        group=Group(id="g1", name="Test", member_ids=set(member_ids)),
        members=[Member(id=mid, name=mid.capitalize()) for mid in member_ids],
        expenses=expenses,
    )


class TestTripScenario:
    """The three-person trip example."""

    def test_balances(self):
        """Alice pays 30 food, Bob pays 15 transport, Carol pays nothing."""
        snapshot = make_snapshot(
            ["alice", "bob", "carol"],
            [
                make_expense("e1", "alice", "30.00"),
                make_expense("e2", "bob", "15.00"),
            ],
        )

        balances = compute_balances(snapshot)

        assert balances == {
            "alice": Decimal("15.00"),
            "bob": Decimal("0.00"),
            "carol": Decimal("-15.00"),
        }
        assert sum(balances.values()) == Decimal("0.00")

    def test_balances_from_store(self, db, trip):
        """Balances computed from a stored snapshot match the scenario."""
        snapshot = db.get_group_snapshot(trip["group"].id)

        balances = compute_balances(snapshot)

        assert balances[trip["alice"].id] == Decimal("15.00")
        assert balances[trip["bob"].id] == Decimal("0.00")
        assert balances[trip["carol"].id] == Decimal("-15.00")


class TestEdgeCases:
    """Empty groups and empty ledgers."""

    def test_no_members_returns_empty_mapping(self):
        """A group with no members yields no balances, not a division error."""
        snapshot = make_snapshot([], [make_expense("e1", "alice", "10.00")])

        assert compute_balances(snapshot) == {}

    def test_no_expenses_all_zero(self):
        """Members with no expenses all have a zero balance."""
        balances = compute_balances(make_snapshot(["a", "b"], []))

        assert balances == {"a": Decimal("0.00"), "b": Decimal("0.00")}

    def test_single_member_owes_nothing(self):
        """A lone member's share equals what they paid."""
        snapshot = make_snapshot(["a"], [make_expense("e1", "a", "12.34")])

        assert compute_balances(snapshot) == {"a": Decimal("0.00")}


class TestRemainderDistribution:
    """Totals that do not divide evenly among members."""

    def test_sum_is_exactly_zero(self):
        """10.00 among 3 members still sums to exactly zero."""
        snapshot = make_snapshot(["a", "b", "c"], [make_expense("e1", "a", "10.00")])

        balances = compute_balances(snapshot)

        assert sum(balances.values()) == Decimal("0.00")
        # Shares are 3.34, 3.33, 3.33 in id order
        assert balances == {
            "a": Decimal("6.66"),
            "b": Decimal("-3.33"),
            "c": Decimal("-3.33"),
        }

    def test_remainder_goes_to_lowest_ids(self):
        """Leftover cents go one each to members in id order."""
        shares = split_evenly(101, ["c", "a", "b"])

        assert shares == {"a": 34, "b": 34, "c": 33}
        assert sum(shares.values()) == 101

    def test_deterministic(self):
        """Computing twice on the same snapshot gives identical results."""
        snapshot = make_snapshot(
            ["m1", "m2", "m3", "m4", "m5", "m6", "m7"],
            [
                make_expense("e1", "m1", "100.01"),
                make_expense("e2", "m4", "33.33"),
                make_expense("e3", "m7", "0.05"),
            ],
        )

        assert compute_balances(snapshot) == compute_balances(snapshot)

    @pytest.mark.parametrize(
        "amounts,members",
        [
            (["0.01"], 2),
            (["1.00", "2.00", "0.04"], 3),
            (["999.99", "0.01", "13.37"], 7),
            (["45.45", "45.45", "45.46"], 11),
        ],
    )
    def test_sum_is_zero_for_various_splits(self, amounts, members):
        """Balances always net to zero when every payer is a member."""
        ids = [f"m{i}" for i in range(members)]
        expenses = [
            make_expense(f"e{i}", ids[i % members], amount)
            for i, amount in enumerate(amounts)
        ]

        balances = compute_balances(make_snapshot(ids, expenses))

        assert sum(balances.values()) == Decimal("0.00")

    def test_split_evenly_no_members(self):
        """Splitting among nobody returns an empty mapping."""
        assert split_evenly(500, []) == {}


class TestPayerOutsideGroup:
    """Expenses whose payer is no longer a member."""

    def test_counted_in_total_but_not_paid(self):
        """A departed payer's expense raises everyone's share but credits nobody."""
        snapshot = make_snapshot(
            ["a", "b"],
            [
                make_expense("e1", "a", "10.00"),
                make_expense("e2", "departed", "10.00"),
            ],
        )

        balances = compute_balances(snapshot)

        # total 20.00, share 10.00 each; only a's 10.00 is credited
        assert balances == {"a": Decimal("0.00"), "b": Decimal("-10.00")}

    def test_expense_from_other_group_excluded(self, caplog):
        """An expense that belongs to another group is skipped with a warning."""
        snapshot = make_snapshot(
            ["a", "b"],
            [
                make_expense("e1", "a", "10.00"),
                make_expense("e2", "b", "50.00", group_id="other"),
            ],
        )

        with caplog.at_level("WARNING"):
            balances = compute_balances(snapshot)

        assert balances == {"a": Decimal("5.00"), "b": Decimal("-5.00")}
        assert "e2" in caplog.text


class TestToCents:
    """Tests for Decimal to cents conversion."""

    def test_exact(self):
        assert to_cents(Decimal("12.34")) == 1234

    def test_rounds_half_up(self):
        assert to_cents(Decimal("0.005")) == 1
        assert to_cents(Decimal("0.004")) == 0

    def test_negative(self):
        assert to_cents(Decimal("-15.00")) == -1500


class TestSuggestSettlements:
    """Tests for the who-pays-whom plan."""

    def test_trip(self):
        """Carol pays Alice 15.00."""
        transfers = suggest_settlements(
            {
                "alice": Decimal("15.00"),
                "bob": Decimal("0.00"),
                "carol": Decimal("-15.00"),
            }
        )

        assert len(transfers) == 1
        assert transfers[0].from_member_id == "carol"
        assert transfers[0].to_member_id == "alice"
        assert transfers[0].amount == Decimal("15.00")

    def test_transfers_zero_all_balances(self):
        """Applying every transfer brings each balance to zero."""
        balances = {
            "a": Decimal("40.00"),
            "b": Decimal("-25.00"),
            "c": Decimal("-10.00"),
            "d": Decimal("-5.00"),
        }

        transfers = suggest_settlements(balances)

        remaining = dict(balances)
        for transfer in transfers:
            remaining[transfer.from_member_id] += transfer.amount
            remaining[transfer.to_member_id] -= transfer.amount
        assert all(value == 0 for value in remaining.values())
        assert len(transfers) == 3

    def test_all_settled(self):
        """No transfers when everyone is at zero."""
        assert suggest_settlements({"a": Decimal("0.00")}) == []
