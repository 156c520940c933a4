"""Shared builders and fixtures for the engine tests."""

from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from ledger_recon.audit import AuditLogger, InMemoryAuditStorage
from ledger_recon.config import EngineSettings
from ledger_recon.models.ledger import (
    ZERO,
    Budget,
    GoalStatus,
    SavingsGoal,
    Transaction,
    TransactionType,
)
from ledger_recon.notifications import NotificationCenter
from ledger_recon.orchestrator import LedgerSession
from ledger_recon.services.ledger import InMemoryLedgerService


TODAY = date(2026, 3, 15)


def D(value) -> Decimal:
    return Decimal(str(value))


def income(
    tx_id: int,
    amount,
    day: date = TODAY,
    goal_id: Optional[int] = None,
    budget_id: Optional[int] = None,
    category_id: Optional[int] = None,
    name: str = "Salary",
) -> Transaction:
    return Transaction(
        id=tx_id,
        amount=D(amount),
        type=TransactionType.INCOME,
        date=day,
        name=name,
        category_id=category_id,
        saving_goal_id=goal_id,
        budget_id=budget_id,
    )


def expense(
    tx_id: int,
    amount,
    day: date = TODAY,
    goal_id: Optional[int] = None,
    budget_id: Optional[int] = None,
    category_id: Optional[int] = None,
    name: str = "Groceries",
) -> Transaction:
    return Transaction(
        id=tx_id,
        amount=D(amount),
        type=TransactionType.EXPENSE,
        date=day,
        name=name,
        category_id=category_id,
        saving_goal_id=goal_id,
        budget_id=budget_id,
    )


def savings_goal(
    goal_id: int,
    target,
    current=ZERO,
    name: str = "Emergency Fund",
    status: Optional[GoalStatus] = None,
) -> SavingsGoal:
    goal = SavingsGoal(id=goal_id, name=name, target_amount=D(target))
    if status == GoalStatus.CANCELLED:
        goal = goal.model_copy(update={"status": GoalStatus.CANCELLED})
    return goal.with_balance(D(current))


def budget(
    budget_id: int,
    amount,
    start: date = date(2026, 3, 1),
    end: date = date(2026, 3, 31),
    category_id: Optional[int] = 1,
    name: str = "Food",
) -> Budget:
    return Budget(
        id=budget_id,
        name=name,
        amount=D(amount),
        category_id=category_id,
        start_date=start,
        end_date=end,
    )


def make_session(service: InMemoryLedgerService, **engine_overrides) -> LedgerSession:
    """Unstarted session wired to in-memory audit storage."""
    return LedgerSession(
        service,
        engine_settings=EngineSettings(**engine_overrides),
        audit_logger=AuditLogger(InMemoryAuditStorage()),
        notifications=NotificationCenter(),
    )


@pytest.fixture
def funded_service() -> InMemoryLedgerService:
    """
    Income 500, one goal (id 10, target 100) holding 90 through a
    single contribution, one budget (id 20) with a 30 expense.
    """
    return InMemoryLedgerService(
        transactions=[
            income(1, 500),
            expense(2, 90, goal_id=10, name="Deposit: Emergency Fund"),
            expense(3, 30, budget_id=20),
        ],
        goals=[savings_goal(10, 100, 90)],
        budgets=[budget(20, 200)],
    )
