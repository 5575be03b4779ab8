"""Per-category expense totals."""

import logging
from collections.abc import Iterable
from decimal import Decimal

from .models import Category, CategorySum, Expense

logger = logging.getLogger(__name__)

CATEGORY_ORDER = {category: index for index, category in enumerate(Category)}


def aggregate_by_category(expenses: Iterable[Expense]) -> list[CategorySum]:
    """
    Sum expense amounts per category.

    Unknown or missing tags are counted under "other". Categories with no
    expenses are left out. Output follows the Category declaration order,
    with "other" last.

    Args:
        expenses: Expenses of one group or of the whole ledger

    Returns:
        Category totals in stable order
    """
    totals: dict[Category, Decimal] = {}
    for expense in expenses:
        category = Category.parse(expense.category)
        totals[category] = totals.get(category, Decimal("0.00")) + expense.amount

    logger.debug(f"Aggregated expenses into {len(totals)} categories")
    return [
        CategorySum(category=category, total=totals[category])
        for category in sorted(totals, key=CATEGORY_ORDER.__getitem__)
    ]
