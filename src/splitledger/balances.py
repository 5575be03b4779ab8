"""Balance calculation and settle-up suggestions for a group.

All arithmetic is done in integer cents so that equal-split shares always
add up to the group total exactly.
"""

import logging
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

from .models import CENT, GroupSnapshot, Transfer

logger = logging.getLogger(__name__)


def to_cents(amount: Decimal) -> int:
    """
    Convert Decimal dollars to integer cents.
    Uses ROUND_HALF_UP for consistency.

    Args:
        amount: Amount as Decimal

    Returns:
        Amount in cents (integer)
    """
    cents = amount * 100
    return int(cents.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a Decimal amount with two places."""
    return (Decimal(cents) / 100).quantize(CENT)


def split_evenly(total_cents: int, member_ids: Iterable[str]) -> dict[str, int]:
    """
    Split a total among members using the largest-remainder method.

    Every member gets the integer share; the leftover cents go one each to
    the first members in id order, so the shares sum to exactly the total.

    Args:
        total_cents: Amount to split, in cents
        member_ids: Members sharing the amount

    Returns:
        Mapping of member id to share in cents (empty if no members)
    """
    ordered = sorted(set(member_ids))
    if not ordered:
        return {}

    base, remainder = divmod(total_cents, len(ordered))
    shares = {member_id: base for member_id in ordered}
    for member_id in ordered[:remainder]:
        shares[member_id] += 1

    if remainder:
        logger.debug(
            f"Distributed {remainder} remainder cents across {len(ordered)} members"
        )
    return shares


def compute_balances(snapshot: GroupSnapshot) -> dict[str, Decimal]:
    """
    Compute each member's net balance for an equal split of a group.

    balance = paid - share. Positive means the member is owed money,
    negative means the member owes money.

    Expenses paid by someone who is no longer a member still count toward
    the total but are not credited to anyone. Expenses that do not belong
    to the group are skipped with a warning.

    Args:
        snapshot: Point-in-time view of the group

    Returns:
        Mapping of member id to balance (empty if the group has no members)
    """
    member_ids = {member.id for member in snapshot.members}
    if not member_ids:
        return {}

    total = 0
    paid = dict.fromkeys(member_ids, 0)
    for expense in snapshot.expenses:
        if expense.group_id != snapshot.group.id:
            logger.warning(
                f"Data integrity: expense {expense.id} belongs to group "
                f"{expense.group_id}, not {snapshot.group.id}; excluded from balances"
            )
            continue

        cents = to_cents(expense.amount)
        total += cents
        if expense.payer_id in paid:
            paid[expense.payer_id] += cents
        else:
            logger.debug(
                f"Expense {expense.id} payer {expense.payer_id} is not a member "
                f"of group {snapshot.group.id}; counted in total only"
            )

    shares = split_evenly(total, member_ids)
    balances = {
        member_id: from_cents(paid[member_id] - shares[member_id])
        for member_id in sorted(member_ids)
    }

    logger.debug(
        f"Computed balances for group {snapshot.group.id}: "
        f"total {from_cents(total)} across {len(member_ids)} members"
    )
    return balances


def suggest_settlements(balances: dict[str, Decimal]) -> list[Transfer]:
    """
    Suggest payments that settle a set of balances.

    Greedy: the member who owes the most pays the member who is owed the
    most, until one side runs out. Ties are broken by member id.

    Args:
        balances: Mapping of member id to balance

    Returns:
        Transfers, largest first
    """
    creditors = [[mid, to_cents(b)] for mid, b in balances.items() if b > 0]
    debtors = [[mid, -to_cents(b)] for mid, b in balances.items() if b < 0]
    creditors.sort(key=lambda x: (-x[1], x[0]))
    debtors.sort(key=lambda x: (-x[1], x[0]))

    transfers = []
    i = j = 0
    while i < len(debtors) and j < len(creditors):
        debtor, creditor = debtors[i], creditors[j]
        amount = min(debtor[1], creditor[1])
        transfers.append(
            Transfer(
                from_member_id=debtor[0],
                to_member_id=creditor[0],
                amount=from_cents(amount),
            )
        )
        debtor[1] -= amount
        creditor[1] -= amount
        if debtor[1] == 0:
            i += 1
        if creditor[1] == 0:
            j += 1

    return transfers
