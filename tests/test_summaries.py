from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from models import TransactionType
from summaries import (
    BudgetStatus,
    Summary,
    budget_usage,
    by_category,
    health_status,
    savings_rate,
    spending_ratio,
    summarize,
    top_categories,
)


@dataclass
class Txn:
    type: TransactionType
    amount_cents: int
    category: str
    date: date = date(2025, 1, 15)


def test_empty_list_sums_to_zero() -> None:
    assert summarize([]) == Summary(income=0, expenses=0, net=0)
    assert savings_rate(0, 0) is None


def test_income_and_rent_scenario() -> None:
    txns = [
        Txn(TransactionType.income, 100_000, "Salary / Wages"),
        Txn(TransactionType.expense, 40_000, "Rent / Mortgage"),
    ]
    totals = summarize(txns)
    assert totals == Summary(income=100_000, expenses=40_000, net=60_000)
    assert savings_rate(totals.income, totals.net) == 60
    assert top_categories(by_category(txns)) == [("Rent / Mortgage", 40_000)]


def test_negative_savings_rate_when_overspending() -> None:
    assert savings_rate(10_000, -5_000) == -50


def test_top_categories_orders_by_amount_then_name() -> None:
    totals = {"Dining Out": 5_000, "Groceries": 9_000, "Utilities": 5_000, "Fun": 100}
    assert top_categories(totals) == [
        ("Groceries", 9_000),
        ("Dining Out", 5_000),
        ("Utilities", 5_000),
    ]


def test_by_category_only_counts_requested_type() -> None:
    txns = [
        Txn(TransactionType.expense, 1_000, "Groceries"),
        Txn(TransactionType.expense, 2_500, "Groceries"),
        Txn(TransactionType.income, 9_999, "Side Income"),
    ]
    assert by_category(txns) == {"Groceries": 3_500}
    assert by_category(txns, TransactionType.income) == {"Side Income": 9_999}


def test_budget_near_threshold() -> None:
    usage = budget_usage(850, 1000)
    assert usage.status == BudgetStatus.near
    assert usage.pct == 85


def test_budget_over_is_display_clamped() -> None:
    usage = budget_usage(1200, 1000)
    assert usage.status == BudgetStatus.over
    assert usage.pct == 100
    assert usage.ratio == Decimal("1.2")


def test_budget_exactly_spent_is_near_not_over() -> None:
    assert budget_usage(1000, 1000).status == BudgetStatus.near


def test_budget_missing_or_zero_has_no_status() -> None:
    assert budget_usage(500, None).status == BudgetStatus.none
    assert budget_usage(500, 0).status == BudgetStatus.none


def test_budget_under_threshold_is_ok() -> None:
    usage = budget_usage(100, 1000)
    assert usage.status == BudgetStatus.ok
    assert usage.pct == 10


def test_spending_ratio_bounds() -> None:
    assert spending_ratio(0, 500) == Decimal(1)
    assert spending_ratio(1000, 5000) == Decimal(2)
    assert spending_ratio(1000, 250) == Decimal("0.25")


def test_health_status_bands() -> None:
    assert health_status(-1) == "danger"
    assert health_status(29_999) == "warning"
    assert health_status(30_000) == "ok"
