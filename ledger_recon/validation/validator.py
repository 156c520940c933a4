"""
Client-Side Mutation Validation

DESIGN DECISION: Every user intent is validated BEFORE anything happens.
No cache write, no snapshot and no network call is made for an intent
that fails here, so a rejected intent never needs a rollback.

Checks:
- Amount must be positive
- A contribution cannot exceed the available balance
- A withdrawal cannot exceed the goal's current balance
- The goal must exist and must not be cancelled
- The number of active goals is capped

IMPORTANT: Validation NEVER silently fixes issues.
It raises with a message the UI can show as-is.
"""

from decimal import Decimal
from typing import Optional

from ledger_recon.config import get_settings
from ledger_recon.models.ledger import Direction, GoalStatus, SavingsGoal


class ValidationError(Exception):
    """
    Base exception for rejected intents.

    `code` is a stable identifier recorded in the audit trail.
    """

    code = "validation_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NonPositiveAmount(ValidationError):
    code = "non_positive_amount"

    def __init__(self, amount: Decimal):
        self.amount = amount
        super().__init__(f"Amount must be greater than zero (got {amount})")


class InsufficientFunds(ValidationError):
    """Contribution larger than the available balance."""

    code = "insufficient_funds"

    def __init__(self, amount: Decimal, available: Decimal):
        self.amount = amount
        self.available = available
        super().__init__(
            f"Insufficient funds: {amount} requested, {available} available"
        )


class InsufficientGoalBalance(ValidationError):
    """Withdrawal larger than what the goal holds."""

    code = "insufficient_goal_balance"

    def __init__(self, amount: Decimal, current: Decimal):
        self.amount = amount
        self.current = current
        super().__init__(
            f"Cannot withdraw more than saved: {amount} requested, {current} saved"
        )


class GoalNotFound(ValidationError):
    code = "goal_not_found"

    def __init__(self, goal_id: int):
        self.goal_id = goal_id
        super().__init__(f"Savings goal not found: {goal_id}")


class BudgetNotFound(ValidationError):
    code = "budget_not_found"

    def __init__(self, budget_id: int):
        self.budget_id = budget_id
        super().__init__(f"Budget not found: {budget_id}")


class GoalNotActive(ValidationError):
    code = "goal_not_active"

    def __init__(self, goal_id: int, status: GoalStatus):
        self.goal_id = goal_id
        self.status = status
        super().__init__(f"Savings goal {goal_id} is {status.value}")


class TransactionNotFound(ValidationError):
    code = "transaction_not_found"

    def __init__(self, transaction_id: int):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class TransactionPending(ValidationError):
    """The transaction is still provisional; its create has not settled."""

    code = "transaction_pending"

    def __init__(self, transaction_id: int):
        self.transaction_id = transaction_id
        super().__init__("This transaction is still being saved. Try again in a moment.")


class DerivedFieldEdit(ValidationError):
    code = "derived_field_edit"

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"{field_name} is derived from transactions and cannot be edited")


class ActiveGoalLimitReached(ValidationError):
    code = "active_goal_limit_reached"

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            f"You can have at most {limit} active goals. Complete or delete one first."
        )


class MutationValidator:
    """
    Validates intents against the current cache state.

    Stateless apart from configuration; callers pass in what they read
    from the cache.
    """

    def __init__(self, max_active_goals: Optional[int] = None):
        self._max_active_goals = (
            max_active_goals
            if max_active_goals is not None
            else get_settings().engine.max_active_goals
        )

    @property
    def max_active_goals(self) -> int:
        return self._max_active_goals

    def validate_amount(self, amount: Decimal) -> None:
        if amount <= 0:
            raise NonPositiveAmount(amount)

    def validate_goal_movement(
        self,
        goal_id: int,
        goal: Optional[SavingsGoal],
        direction: Direction,
        amount: Decimal,
        available_balance: Decimal,
    ) -> SavingsGoal:
        """
        Validate a contribution or withdrawal.

        Returns:
            The goal the movement applies to

        Raises:
            NonPositiveAmount, GoalNotFound, GoalNotActive,
            InsufficientFunds, InsufficientGoalBalance
        """
        self.validate_amount(amount)

        if goal is None:
            raise GoalNotFound(goal_id)
        if goal.is_cancelled:
            raise GoalNotActive(goal_id, goal.status)

        if direction == Direction.CONTRIBUTE:
            if amount > available_balance:
                raise InsufficientFunds(amount, available_balance)
        elif amount > goal.current_amount:
            raise InsufficientGoalBalance(amount, goal.current_amount)

        return goal

    def validate_new_goal(
        self,
        active_goal_count: int,
        initial_amount: Decimal,
        available_balance: Decimal,
    ) -> None:
        """
        Validate creating a goal, with an optional initial contribution.

        Raises:
            ActiveGoalLimitReached, NonPositiveAmount, InsufficientFunds
        """
        if active_goal_count >= self._max_active_goals:
            raise ActiveGoalLimitReached(self._max_active_goals)
        if initial_amount < 0:
            raise NonPositiveAmount(initial_amount)
        if initial_amount > available_balance:
            raise InsufficientFunds(initial_amount, available_balance)
