"""Validation package."""

from ledger_recon.validation.validator import (
    ActiveGoalLimitReached,
    BudgetNotFound,
    DerivedFieldEdit,
    GoalNotActive,
    GoalNotFound,
    InsufficientFunds,
    InsufficientGoalBalance,
    MutationValidator,
    NonPositiveAmount,
    TransactionNotFound,
    TransactionPending,
    ValidationError,
)

__all__ = [
    "ActiveGoalLimitReached",
    "BudgetNotFound",
    "DerivedFieldEdit",
    "GoalNotActive",
    "GoalNotFound",
    "InsufficientFunds",
    "InsufficientGoalBalance",
    "MutationValidator",
    "NonPositiveAmount",
    "TransactionNotFound",
    "TransactionPending",
    "ValidationError",
]
