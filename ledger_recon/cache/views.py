"""
Standard Views

Factories for the projections the UI reads: the transaction list, the
dashboard's recent transactions, per-goal and per-budget transaction lists,
active goals, goal history and the single-entity detail views.

View keys are stable strings so callers can subscribe by key.
"""

from datetime import date
from typing import Optional

from ledger_recon.models.ledger import (
    Budget,
    CollectionType,
    GoalStatus,
    SavingsGoal,
    Transaction,
)
from ledger_recon.cache.entity_cache import ViewSpec


ALL_TRANSACTIONS = "transactions"
RECENT_TRANSACTIONS = "transactions:recent"
ACTIVE_GOALS = "savings_goals:active"
GOAL_HISTORY = "savings_goals:history"
ACTIVE_BUDGETS = "budgets:active"


def _newest_first(transaction: Transaction) -> tuple:
    # Provisional entries sort above confirmed ones from the same day
    return (transaction.date, transaction.is_provisional, transaction.id)


def _goal_order(goal: SavingsGoal) -> tuple:
    return (goal.created_at is not None, goal.created_at, goal.id)


def goal_transactions_key(goal_id: int) -> str:
    return f"transactions:goal:{goal_id}"


def budget_transactions_key(budget_id: int) -> str:
    return f"transactions:budget:{budget_id}"


def goal_detail_key(goal_id: int) -> str:
    return f"savings_goals:detail:{goal_id}"


def budget_detail_key(budget_id: int) -> str:
    return f"budgets:detail:{budget_id}"


def all_transactions() -> ViewSpec:
    return ViewSpec(
        key=ALL_TRANSACTIONS,
        collection=CollectionType.TRANSACTIONS,
        sort_key=_newest_first,
        descending=True,
    )


def recent_transactions(limit: int = 5) -> ViewSpec:
    return ViewSpec(
        key=RECENT_TRANSACTIONS,
        collection=CollectionType.TRANSACTIONS,
        sort_key=_newest_first,
        descending=True,
        limit=limit,
    )


def goal_transactions(goal_id: int) -> ViewSpec:
    return ViewSpec(
        key=goal_transactions_key(goal_id),
        collection=CollectionType.TRANSACTIONS,
        predicate=lambda t: t.saving_goal_id == goal_id,
        sort_key=_newest_first,
        descending=True,
    )


def budget_transactions(budget_id: int) -> ViewSpec:
    return ViewSpec(
        key=budget_transactions_key(budget_id),
        collection=CollectionType.TRANSACTIONS,
        predicate=lambda t: t.budget_id == budget_id,
        sort_key=_newest_first,
        descending=True,
    )


def active_goals() -> ViewSpec:
    return ViewSpec(
        key=ACTIVE_GOALS,
        collection=CollectionType.SAVINGS_GOALS,
        predicate=lambda g: g.status == GoalStatus.ACTIVE,
        sort_key=_goal_order,
        descending=True,
    )


def goal_history() -> ViewSpec:
    """Completed and cancelled goals."""
    return ViewSpec(
        key=GOAL_HISTORY,
        collection=CollectionType.SAVINGS_GOALS,
        predicate=lambda g: g.status != GoalStatus.ACTIVE,
        sort_key=_goal_order,
        descending=True,
    )


def goal_detail(goal_id: int) -> ViewSpec:
    return ViewSpec(
        key=goal_detail_key(goal_id),
        collection=CollectionType.SAVINGS_GOALS,
        ids=frozenset({goal_id}),
        record=True,
    )


def active_budgets(today: Optional[date] = None) -> ViewSpec:
    """Budgets whose window has not ended."""
    today = today or date.today()

    def is_current(budget: Budget) -> bool:
        return budget.end_date >= today

    return ViewSpec(
        key=ACTIVE_BUDGETS,
        collection=CollectionType.BUDGETS,
        predicate=is_current,
        sort_key=lambda b: (b.start_date, b.id),
    )


def budget_detail(budget_id: int) -> ViewSpec:
    return ViewSpec(
        key=budget_detail_key(budget_id),
        collection=CollectionType.BUDGETS,
        ids=frozenset({budget_id}),
        record=True,
    )


def standard_views(
    recent_limit: int = 5,
    today: Optional[date] = None,
) -> list[ViewSpec]:
    """The views a session registers on start."""
    return [
        all_transactions(),
        recent_transactions(recent_limit),
        active_goals(),
        goal_history(),
        active_budgets(today),
    ]
