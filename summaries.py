from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from enum import Enum
from typing import Iterable, Mapping, Optional

from models import TransactionType

NEAR_BUDGET_RATIO = Decimal("0.8")
HEALTH_WARNING_CENTS = 30_000


@dataclass(frozen=True)
class Summary:
    income: int
    expenses: int
    net: int


class BudgetStatus(str, Enum):
    none = "none"
    ok = "ok"
    near = "near"
    over = "over"


@dataclass(frozen=True)
class BudgetUsage:
    status: BudgetStatus
    pct: int
    ratio: Optional[Decimal]


def _round_half_up(value: Decimal) -> int:
    return int((value + Decimal("0.5")).to_integral_value(rounding=ROUND_FLOOR))


def summarize(transactions: Iterable) -> Summary:
    income = 0
    expenses = 0
    for txn in transactions:
        if txn.type == TransactionType.income:
            income += txn.amount_cents
        elif txn.type == TransactionType.expense:
            expenses += txn.amount_cents
    return Summary(income=income, expenses=expenses, net=income - expenses)


def by_category(
    transactions: Iterable, txn_type: TransactionType = TransactionType.expense
) -> dict[str, int]:
    totals: dict[str, int] = {}
    for txn in transactions:
        if txn.type != txn_type:
            continue
        totals[txn.category] = totals.get(txn.category, 0) + txn.amount_cents
    return totals


def top_categories(totals: Mapping[str, int], n: int = 3) -> list[tuple[str, int]]:
    ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return ranked[:n]


def savings_rate(income: int, net: int) -> Optional[int]:
    """Percent of income kept after expenses; None while there is no income."""
    if income <= 0:
        return None
    return _round_half_up(Decimal(net) / Decimal(income) * 100)


def budget_usage(spent: int, budget: Optional[int]) -> BudgetUsage:
    if budget is None or budget <= 0:
        return BudgetUsage(status=BudgetStatus.none, pct=0, ratio=None)
    ratio = Decimal(spent) / Decimal(budget)
    if ratio > 1:
        status = BudgetStatus.over
    elif ratio >= NEAR_BUDGET_RATIO:
        status = BudgetStatus.near
    else:
        status = BudgetStatus.ok
    pct = min(max(_round_half_up(ratio * 100), 0), 100)
    return BudgetUsage(status=status, pct=pct, ratio=ratio)


def spending_ratio(income: int, expenses: int) -> Decimal:
    if income <= 0:
        return Decimal(1)
    ratio = Decimal(expenses) / Decimal(income)
    return min(max(ratio, Decimal(0)), Decimal(2))


def health_status(net: int) -> str:
    if net < 0:
        return "danger"
    if net < HEALTH_WARNING_CENTS:
        return "warning"
    return "ok"


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))
