"""
Aggregation Engine

DESIGN DECISION: Aggregates are DERIVED, never stored.
Every function here is pure: it reads a cache snapshot (or a list of
entities) and returns a fresh result. Nothing is memoized, so a read
after any commit or rollback always reflects the settled cache.

Conventions:
- net balance: income adds, expense subtracts (goal-linked included)
- contribution: goal-linked expense; withdrawal: goal-linked income
- budget spend: expenses linked to the budget, dated inside its window
"""

from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from ledger_recon.cache.entity_cache import CacheSnapshot
from ledger_recon.models.ledger import (
    ZERO,
    Budget,
    BudgetStatus,
    SavingsGoal,
    Transaction,
    TransactionType,
)


HUNDRED = Decimal("100")
DEFAULT_NEAR_LIMIT_RATIO = Decimal("0.9")


# =============================================================================
# RESULT MODELS
# =============================================================================

class GoalProgress(BaseModel):
    goal_id: int
    name: str
    current: Decimal
    target: Decimal
    percent: Decimal = Field(description="0-100, capped at 100")
    remaining: Decimal


class BudgetUsage(BaseModel):
    budget_id: int
    name: str
    category_id: Optional[int] = None
    allocated: Decimal
    spent: Decimal
    remaining: Decimal = Field(description="Negative when overspent")
    percent: Decimal
    is_over: bool
    status: BudgetStatus


class CategoryTotal(BaseModel):
    category_id: Optional[int] = None
    total: Decimal


class SavingsSummary(BaseModel):
    total_saved: Decimal = ZERO
    total_target: Decimal = ZERO
    total_remaining: Decimal = ZERO
    count: int = 0
    top_goal: Optional[SavingsGoal] = None


class DailyPoint(BaseModel):
    day: date
    income: Decimal = ZERO
    expense: Decimal = ZERO
    savings: Decimal = ZERO


class DashboardStats(BaseModel):
    """Everything the dashboard shows, derived in one pass over a snapshot."""

    total_income: Decimal
    total_expenses: Decimal
    net_balance: Decimal
    available_balance: Decimal
    savings_rate: Decimal
    recent_transactions: list[Transaction]
    budgets: list[BudgetUsage]
    expense_breakdown: list[CategoryTotal]
    savings: SavingsSummary
    weekly: list[DailyPoint]


# =============================================================================
# BALANCES
# =============================================================================

def total_income(transactions: Iterable[Transaction]) -> Decimal:
    return sum(
        (t.amount for t in transactions if t.type == TransactionType.INCOME), ZERO
    )


def total_expenses(transactions: Iterable[Transaction]) -> Decimal:
    return sum(
        (t.amount for t in transactions if t.type == TransactionType.EXPENSE), ZERO
    )


def net_balance(transactions: Iterable[Transaction]) -> Decimal:
    """Σincome - Σexpense."""
    return sum((t.signed_amount for t in transactions), ZERO)


def available_balance(transactions: Iterable[Transaction]) -> Decimal:
    """What can still be moved into a goal: the net balance, never below zero."""
    return max(ZERO, net_balance(transactions))


def total_contributions(transactions: Iterable[Transaction]) -> Decimal:
    return sum((t.amount for t in transactions if t.is_contribution), ZERO)


def savings_rate(transactions: Iterable[Transaction]) -> Decimal:
    """
    Σcontributions / Σincome as a fraction (0.25 == 25%).

    Zero when there is no income.
    """
    transactions = list(transactions)
    income = total_income(transactions)
    if income == ZERO:
        return ZERO
    return total_contributions(transactions) / income


# =============================================================================
# GOALS
# =============================================================================

def goal_balance(goal_id: int, transactions: Iterable[Transaction]) -> Decimal:
    """Signed sum of a goal's linked transactions, floored at zero."""
    balance = sum(
        (t.goal_delta for t in transactions if t.saving_goal_id == goal_id), ZERO
    )
    return max(ZERO, balance)


def goal_progress(goal: SavingsGoal) -> GoalProgress:
    percent = min(goal.current_amount / goal.target_amount * HUNDRED, HUNDRED)
    return GoalProgress(
        goal_id=goal.id,
        name=goal.name,
        current=goal.current_amount,
        target=goal.target_amount,
        percent=percent,
        remaining=max(goal.target_amount - goal.current_amount, ZERO),
    )


def savings_summary(goals: Iterable[SavingsGoal]) -> SavingsSummary:
    """Totals over a list of goals; the top goal holds the most money."""
    goals = list(goals)
    if not goals:
        return SavingsSummary()

    total_saved = sum((g.current_amount for g in goals), ZERO)
    total_target = sum((g.target_amount for g in goals), ZERO)
    return SavingsSummary(
        total_saved=total_saved,
        total_target=total_target,
        total_remaining=max(total_target - total_saved, ZERO),
        count=len(goals),
        top_goal=max(goals, key=lambda g: g.current_amount),
    )


# =============================================================================
# BUDGETS
# =============================================================================

def budget_spent(budget: Budget, transactions: Iterable[Transaction]) -> Decimal:
    return sum(
        (
            t.amount
            for t in transactions
            if t.type == TransactionType.EXPENSE
            and t.budget_id == budget.id
            and budget.covers(t.date)
        ),
        ZERO,
    )


def budget_status(
    budget: Budget,
    spent: Decimal,
    today: Optional[date] = None,
    near_limit_ratio: Decimal = DEFAULT_NEAR_LIMIT_RATIO,
) -> BudgetStatus:
    """
    Derive a budget's status.

    Checked in order: overspent, expired, completed (exactly used up),
    near limit, active.
    """
    today = today or date.today()
    allocated = budget.amount

    if spent > allocated:
        return BudgetStatus.OVERSPENT
    if today > budget.end_date:
        return BudgetStatus.EXPIRED
    if spent >= allocated:
        return BudgetStatus.COMPLETED
    if allocated > ZERO and spent / allocated >= near_limit_ratio:
        return BudgetStatus.NEAR_LIMIT
    return BudgetStatus.ACTIVE


def budget_usage(
    budget: Budget,
    transactions: Iterable[Transaction],
    today: Optional[date] = None,
    near_limit_ratio: Decimal = DEFAULT_NEAR_LIMIT_RATIO,
) -> BudgetUsage:
    spent = budget_spent(budget, transactions)
    allocated = budget.amount
    percent = spent / allocated * HUNDRED if allocated > ZERO else ZERO
    return BudgetUsage(
        budget_id=budget.id,
        name=budget.name,
        category_id=budget.category_id,
        allocated=allocated,
        spent=spent,
        remaining=allocated - spent,
        percent=percent,
        is_over=spent > allocated,
        status=budget_status(budget, spent, today, near_limit_ratio),
    )


def budget_compliance(
    budgets: Iterable[Budget],
    transactions: Iterable[Transaction],
    today: Optional[date] = None,
    near_limit_ratio: Decimal = DEFAULT_NEAR_LIMIT_RATIO,
) -> list[BudgetUsage]:
    """Usage of every budget, tightest (least remaining) first."""
    transactions = list(transactions)
    usages = [
        budget_usage(b, transactions, today, near_limit_ratio) for b in budgets
    ]
    return sorted(usages, key=lambda u: (u.remaining, u.budget_id))


# =============================================================================
# BREAKDOWNS AND SERIES
# =============================================================================

def expense_breakdown(transactions: Iterable[Transaction]) -> list[CategoryTotal]:
    """Expense totals per category, largest first. Goal contributions excluded."""
    totals: dict[Optional[int], Decimal] = defaultdict(lambda: ZERO)
    for t in transactions:
        if t.type == TransactionType.EXPENSE and not t.is_contribution:
            totals[t.category_id] += t.amount
    return sorted(
        (CategoryTotal(category_id=c, total=v) for c, v in totals.items()),
        key=lambda c: (-c.total, c.category_id is None, c.category_id or 0),
    )


def filter_by_date_range(
    transactions: Iterable[Transaction],
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> list[Transaction]:
    return [
        t for t in transactions
        if (date_from is None or t.date >= date_from)
        and (date_to is None or t.date <= date_to)
    ]


def recent_transactions(
    transactions: Iterable[Transaction],
    limit: int = 5,
) -> list[Transaction]:
    ordered = sorted(
        transactions,
        key=lambda t: (t.date, t.is_provisional, t.id),
        reverse=True,
    )
    return ordered[:limit]


def daily_series(
    transactions: Iterable[Transaction],
    end: date,
    days: int = 7,
) -> list[DailyPoint]:
    """
    Per-day totals for the `days` days ending at `end` (inclusive).

    income: all income; expense: expenses that are not goal contributions;
    savings: goal contributions.
    """
    start = end - timedelta(days=days - 1)
    points = {start + timedelta(days=i): DailyPoint(day=start + timedelta(days=i)) for i in range(days)}

    for t in transactions:
        point = points.get(t.date)
        if point is None:
            continue
        if t.type == TransactionType.INCOME:
            point.income += t.amount
        elif t.is_contribution:
            point.savings += t.amount
        else:
            point.expense += t.amount

    return [points[day] for day in sorted(points)]


def dashboard(
    snapshot: CacheSnapshot,
    today: Optional[date] = None,
    recent_limit: int = 5,
    near_limit_ratio: Decimal = DEFAULT_NEAR_LIMIT_RATIO,
) -> DashboardStats:
    """Bundle the dashboard aggregates for one snapshot."""
    today = today or date.today()
    transactions = snapshot.transactions

    return DashboardStats(
        total_income=total_income(transactions),
        total_expenses=total_expenses(transactions),
        net_balance=net_balance(transactions),
        available_balance=available_balance(transactions),
        savings_rate=savings_rate(transactions),
        recent_transactions=recent_transactions(transactions, recent_limit),
        budgets=budget_compliance(snapshot.budgets, transactions, today, near_limit_ratio),
        expense_breakdown=expense_breakdown(transactions),
        savings=savings_summary(snapshot.savings_goals),
        weekly=daily_series(transactions, today),
    )
