import pytest

from budget import ALLOCATION, category_breakdown, compute_budget, format_currency
from schemas import Expense


def example_expenses():
    return [
        {"name": "Rent", "amount": 800, "category": "Needs"},
        {"name": "Concert", "amount": 950, "category": "Wants"},
        {"name": "Index fund", "amount": 100, "category": "Savings"},
    ]


def test_worked_example():
    summary = compute_budget(3000, example_expenses())

    needs, wants, savings = (summary.category(c) for c in ("Needs", "Wants", "Savings"))
    assert (needs.allocated, wants.allocated, savings.allocated) == pytest.approx((1500, 900, 600))
    assert needs.spent == 800 and not needs.over_budget
    assert wants.spent == 950 and wants.over_budget
    assert wants.over_amount == pytest.approx(50)
    assert wants.remaining == pytest.approx(-50)
    assert savings.spent == 100 and not savings.over_budget
    assert summary.total_spent == 1850
    assert summary.balance == 1150


@pytest.mark.parametrize("income", [0, 1, 1234.56, 3000, 99999.99])
def test_allocations_add_up_to_income(income):
    summary = compute_budget(income, [])
    assert sum(c.allocated for c in summary.categories) == pytest.approx(income)


def test_weights_are_fifty_thirty_twenty():
    assert ALLOCATION == {"Needs": 0.5, "Wants": 0.3, "Savings": 0.2}


def test_totals_and_balance():
    expenses = example_expenses() + [{"name": "Groceries", "amount": 120.5, "category": "Needs"}]
    summary = compute_budget(2500, expenses)
    assert summary.total_spent == pytest.approx(sum(c.spent for c in summary.categories))
    assert summary.balance == pytest.approx(2500 - summary.total_spent)


def test_zero_income_has_no_division_by_zero():
    summary = compute_budget(0, example_expenses())
    for item in summary.categories:
        assert item.allocated == 0
        assert item.percent_used == 0
    assert summary.savings_rate_percent == 0
    # spending against a zero allocation is still over budget
    assert summary.category("Needs").over_budget
    assert summary.category("Needs").over_amount == 800


def test_over_amount_is_never_negative():
    summary = compute_budget(10000, example_expenses())
    for item in summary.categories:
        assert not item.over_budget
        assert item.over_amount == 0


def test_percent_used_and_savings_rate():
    summary = compute_budget(3000, example_expenses())
    assert summary.category("Needs").percent_used == pytest.approx(800 / 1500 * 100)
    assert summary.savings_rate_percent == pytest.approx(100 / 3000 * 100)


def test_unknown_categories_are_ignored():
    summary = compute_budget(1000, [{"name": "Mystery", "amount": 50, "category": "Other"}])
    assert summary.total_spent == 0


def test_accepts_expense_models():
    expenses = [Expense(id="1", name="Rent", amount=700, category="Needs")]
    assert compute_budget(2000, expenses).category("Needs").spent == 700


def test_category_breakdown_skips_empty_categories():
    chart = category_breakdown([
        {"name": "Rent", "amount": 300, "category": "Needs"},
        {"name": "Games", "amount": 100, "category": "Wants"},
    ])
    assert [row["category"] for row in chart] == ["Needs", "Wants"]
    assert sum(row["share"] for row in chart) == pytest.approx(100)
    assert category_breakdown([]) == []


def test_format_currency():
    assert format_currency(1234.5) == "$1,234.50"
    assert format_currency(-20, "EUR") == "-€20.00"
    assert format_currency(99, "INR") == "₹99.00"
    assert format_currency(5, "XYZ") == "$5.00"
