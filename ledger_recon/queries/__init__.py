"""Aggregation queries package."""

from ledger_recon.queries.aggregations import (
    BudgetUsage,
    CategoryTotal,
    DailyPoint,
    DashboardStats,
    GoalProgress,
    SavingsSummary,
    available_balance,
    budget_compliance,
    budget_status,
    budget_usage,
    dashboard,
    daily_series,
    expense_breakdown,
    filter_by_date_range,
    goal_balance,
    goal_progress,
    net_balance,
    recent_transactions,
    savings_rate,
    savings_summary,
)

__all__ = [
    "BudgetUsage",
    "CategoryTotal",
    "DailyPoint",
    "DashboardStats",
    "GoalProgress",
    "SavingsSummary",
    "available_balance",
    "budget_compliance",
    "budget_status",
    "budget_usage",
    "dashboard",
    "daily_series",
    "expense_breakdown",
    "filter_by_date_range",
    "goal_balance",
    "goal_progress",
    "net_balance",
    "recent_transactions",
    "savings_rate",
    "savings_summary",
]
