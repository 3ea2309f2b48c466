"""50/30/20 budget calculations.

Everything here is derived state: nothing is persisted, and the same income
and expense list always produce the same summary.
"""
import logging
from typing import Dict, Iterable, List, Mapping, Union

from pydantic import BaseModel

from schemas import CATEGORIES

logger = logging.getLogger("spendsense.budget")

# Share of monthly income allocated to each category.
ALLOCATION: Dict[str, float] = {"Needs": 0.5, "Wants": 0.3, "Savings": 0.2}

CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "INR": "₹"}


class CategoryBudget(BaseModel):
    category: str
    weight: float
    allocated: float
    spent: float
    remaining: float
    percent_used: float
    over_budget: bool
    over_amount: float


class BudgetSummary(BaseModel):
    income: float
    categories: List[CategoryBudget]
    total_spent: float
    balance: float
    savings_rate_percent: float

    def category(self, name: str) -> CategoryBudget:
        for item in self.categories:
            if item.category == name:
                return item
        raise KeyError(name)


ExpenseLike = Union[Mapping, object]


def _field(expense: ExpenseLike, name: str):
    if isinstance(expense, Mapping):
        return expense.get(name)
    return getattr(expense, name, None)


def spent_by_category(expenses: Iterable[ExpenseLike]) -> Dict[str, float]:
    totals = {c: 0.0 for c in CATEGORIES}
    for expense in expenses:
        category = _field(expense, "category")
        if category not in totals:
            logger.warning("Ignoring expense with unknown category %r", category)
            continue
        totals[category] += float(_field(expense, "amount") or 0)
    return totals


def compute_budget(income: float, expenses: Iterable[ExpenseLike]) -> BudgetSummary:
    income = max(float(income or 0), 0.0)
    spent = spent_by_category(expenses)

    categories = []
    for name in CATEGORIES:
        allocated = income * ALLOCATION[name]
        used = spent[name]
        categories.append(CategoryBudget(
            category=name,
            weight=ALLOCATION[name],
            allocated=allocated,
            spent=used,
            remaining=allocated - used,
            # no allocation means nothing to measure against
            percent_used=(used / allocated * 100) if allocated > 0 else 0.0,
            over_budget=used > allocated,
            over_amount=max(used - allocated, 0.0),
        ))

    total_spent = sum(spent.values())
    return BudgetSummary(
        income=income,
        categories=categories,
        total_spent=total_spent,
        balance=income - total_spent,
        savings_rate_percent=(spent["Savings"] / income * 100) if income > 0 else 0.0,
    )


def category_breakdown(expenses: Iterable[ExpenseLike]) -> List[dict]:
    """Chart data: total and share of spending for each category that has any."""
    spent = spent_by_category(expenses)
    total = sum(spent.values())
    return [
        {"category": name, "total": amount, "share": amount / total * 100}
        for name, amount in spent.items()
        if amount > 0
    ]


def format_currency(amount: float, currency: str = "USD") -> str:
    """
    Format an amount as e.g. "$1,234.56". Unsupported currency codes fall back
    to USD.
    """
    symbol = CURRENCY_SYMBOLS.get(currency)
    if symbol is None:
        logger.warning("Invalid or unsupported currency code: %s. Defaulting to USD.", currency)
        symbol = CURRENCY_SYMBOLS["USD"]
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.2f}"
