"""
In-Memory Ledger Service

A process-local stand-in for the remote ledger service. It reproduces the
server behaviour the engine depends on:
- positive id allocation
- goal balance recomputed from linked transactions after every write
- goals auto-complete when the balance reaches the target
- optionally, a goal emptied by a withdrawal is removed and the create
  response reports `goal_deleted`
- deleting a budget or goal nulls the reference on linked transactions

It also supports the hooks tests need: failure injection, call recording
and pausing an operation until the test releases it.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from ledger_recon.models.ledger import (
    ZERO,
    Budget,
    BudgetDeleteResult,
    DeleteResult,
    PageMeta,
    SavingsGoal,
    SavingsGoalCreate,
    Transaction,
    TransactionCreate,
    TransactionFilter,
    TransactionPage,
    TransactionReceipt,
)
from ledger_recon.services.ledger.interface import (
    LedgerServiceInterface,
    NotFoundError,
    RemoteError,
)


DEFAULT_PAGE_SIZE = 15


@dataclass
class _InjectedFailure:
    error: Exception
    times: int
    after: int


class InMemoryLedgerService(LedgerServiceInterface):
    """
    In-memory implementation of the ledger service contract.

    Usage:
        service = InMemoryLedgerService(goals=[goal], transactions=[tx])
        service.inject_failure("create_transaction")
        gate = service.pause("delete_transaction")
        ...
        gate.set()
    """

    def __init__(
        self,
        transactions: Iterable[Transaction] = (),
        goals: Iterable[SavingsGoal] = (),
        budgets: Iterable[Budget] = (),
        auto_remove_emptied_goals: bool = False,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self._transactions: dict[int, Transaction] = {t.id: t for t in transactions}
        self._goals: dict[int, SavingsGoal] = {g.id: g for g in goals}
        self._budgets: dict[int, Budget] = {b.id: b for b in budgets}
        self._next_id = max(
            [0, *self._transactions, *self._goals, *self._budgets]
        ) + 1
        self.auto_remove_emptied_goals = auto_remove_emptied_goals
        self.page_size = page_size

        self.calls: list[tuple[str, Any]] = []
        self._failures: dict[str, list[_InjectedFailure]] = {}
        self._gates: dict[str, asyncio.Event] = {}

    # -------------------------------------------------------------------------
    # Test hooks
    # -------------------------------------------------------------------------

    def inject_failure(
        self,
        operation: str,
        error: Optional[Exception] = None,
        times: int = 1,
        after: int = 0,
    ) -> None:
        """
        Make `operation` fail.

        Args:
            operation: Interface method name, e.g. "create_transaction"
            error: Exception to raise (default: a 500 RemoteError)
            times: How many consecutive calls fail
            after: How many calls succeed before the first failure
        """
        failure = _InjectedFailure(
            error=error or RemoteError(
                f"Injected failure in {operation}",
                status_code=500,
                operation=operation,
            ),
            times=times,
            after=after,
        )
        self._failures.setdefault(operation, []).append(failure)

    def pause(self, operation: str) -> asyncio.Event:
        """
        Block calls to `operation` until the returned event is set.

        The call is recorded before it blocks.
        """
        gate = asyncio.Event()
        self._gates[operation] = gate
        return gate

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    async def _enter(self, operation: str, argument: Any = None) -> None:
        self.calls.append((operation, argument))

        gate = self._gates.get(operation)
        if gate is not None:
            await gate.wait()

        for failure in self._failures.get(operation, []):
            if failure.after > 0:
                failure.after -= 1
                continue
            if failure.times > 0:
                failure.times -= 1
                raise failure.error

    # -------------------------------------------------------------------------
    # Server-side bookkeeping
    # -------------------------------------------------------------------------

    def _allocate_id(self) -> int:
        new_id = self._next_id
        self._next_id += 1
        return new_id

    def _recompute_goal(self, goal_id: int) -> Optional[SavingsGoal]:
        goal = self._goals.get(goal_id)
        if goal is None:
            return None
        balance = sum(
            (t.goal_delta for t in self._transactions.values() if t.saving_goal_id == goal_id),
            ZERO,
        )
        goal = goal.with_balance(balance)
        self._goals[goal_id] = goal
        return goal

    def _null_references(self, budget_id: Optional[int] = None, goal_id: Optional[int] = None) -> int:
        count = 0
        for tx in list(self._transactions.values()):
            if (budget_id is not None and tx.budget_id == budget_id) or (
                goal_id is not None and tx.saving_goal_id == goal_id
            ):
                self._transactions[tx.id] = tx.detached()
                count += 1
        return count

    def _sorted_transactions(self) -> list[Transaction]:
        return sorted(
            self._transactions.values(),
            key=lambda t: (t.date, t.id),
            reverse=True,
        )

    # Read-only views for assertions
    def transaction(self, transaction_id: int) -> Optional[Transaction]:
        return self._transactions.get(transaction_id)

    def goal(self, goal_id: int) -> Optional[SavingsGoal]:
        return self._goals.get(goal_id)

    def budget(self, budget_id: int) -> Optional[Budget]:
        return self._budgets.get(budget_id)

    @property
    def transactions(self) -> list[Transaction]:
        return self._sorted_transactions()

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def list_transactions(
        self,
        filter: Optional[TransactionFilter] = None,
    ) -> TransactionPage:
        filter = filter or TransactionFilter()
        await self._enter("list_transactions", filter)

        matching = [t for t in self._sorted_transactions() if filter.matches(t)]
        if filter.all:
            return TransactionPage(
                data=matching,
                meta=PageMeta(current_page=1, last_page=1, total=len(matching)),
            )

        per_page = filter.per_page or self.page_size
        last_page = max(1, -(-len(matching) // per_page))
        start = (filter.page - 1) * per_page
        return TransactionPage(
            data=matching[start:start + per_page],
            meta=PageMeta(
                current_page=filter.page,
                last_page=last_page,
                per_page=per_page,
                total=len(matching),
            ),
        )

    async def create_transaction(
        self,
        payload: TransactionCreate,
    ) -> TransactionReceipt:
        await self._enter("create_transaction", payload)

        if payload.saving_goal_id is not None and payload.saving_goal_id not in self._goals:
            raise NotFoundError(
                f"Savings goal not found: {payload.saving_goal_id}",
                operation="create_transaction",
            )
        if payload.budget_id is not None and payload.budget_id not in self._budgets:
            raise NotFoundError(
                f"Budget not found: {payload.budget_id}",
                operation="create_transaction",
            )

        transaction = payload.provisional(
            self._allocate_id(), datetime.now(timezone.utc)
        )
        self._transactions[transaction.id] = transaction

        goal_deleted = False
        if transaction.saving_goal_id is not None:
            goal = self._recompute_goal(transaction.saving_goal_id)
            if (
                self.auto_remove_emptied_goals
                and transaction.is_withdrawal
                and goal is not None
                and goal.current_amount == ZERO
            ):
                del self._goals[goal.id]
                self._null_references(goal_id=goal.id)
                transaction = self._transactions[transaction.id]
                goal_deleted = True

        return TransactionReceipt(transaction=transaction, goal_deleted=goal_deleted)

    async def update_transaction(
        self,
        transaction_id: int,
        patch: dict,
    ) -> Transaction:
        await self._enter("update_transaction", (transaction_id, patch))

        current = self._transactions.get(transaction_id)
        if current is None:
            raise NotFoundError(
                f"Transaction not found: {transaction_id}",
                operation="update_transaction",
            )
        merged = {**current.to_payload(), **patch, "id": transaction_id}
        updated = Transaction.model_validate(merged)
        self._transactions[transaction_id] = updated

        for goal_id in {current.saving_goal_id, updated.saving_goal_id} - {None}:
            self._recompute_goal(goal_id)
        return updated

    async def delete_transaction(self, transaction_id: int) -> DeleteResult:
        await self._enter("delete_transaction", transaction_id)

        transaction = self._transactions.pop(transaction_id, None)
        if transaction is None:
            raise NotFoundError(
                f"Transaction not found: {transaction_id}",
                operation="delete_transaction",
            )
        if transaction.saving_goal_id is not None:
            self._recompute_goal(transaction.saving_goal_id)
        return DeleteResult(deleted=True)

    # -------------------------------------------------------------------------
    # Savings goals
    # -------------------------------------------------------------------------

    async def list_savings_goals(self) -> list[SavingsGoal]:
        await self._enter("list_savings_goals")
        return sorted(self._goals.values(), key=lambda g: g.id)

    async def create_savings_goal(self, payload: SavingsGoalCreate) -> SavingsGoal:
        await self._enter("create_savings_goal", payload)

        goal = SavingsGoal(
            id=self._allocate_id(),
            name=payload.name,
            target_amount=payload.target_amount,
            description=payload.description or None,
            created_at=datetime.now(timezone.utc),
        )
        self._goals[goal.id] = goal
        return goal

    async def update_savings_goal(self, goal_id: int, patch: dict) -> SavingsGoal:
        await self._enter("update_savings_goal", (goal_id, patch))

        current = self._goals.get(goal_id)
        if current is None:
            raise NotFoundError(
                f"Savings goal not found: {goal_id}",
                operation="update_savings_goal",
            )
        merged = {**current.model_dump(), **patch, "id": goal_id}
        updated = SavingsGoal.model_validate(merged)
        self._goals[goal_id] = updated.with_balance(updated.current_amount)
        return self._goals[goal_id]

    async def delete_savings_goal(self, goal_id: int) -> DeleteResult:
        await self._enter("delete_savings_goal", goal_id)

        if self._goals.pop(goal_id, None) is None:
            raise NotFoundError(
                f"Savings goal not found: {goal_id}",
                operation="delete_savings_goal",
            )
        self._null_references(goal_id=goal_id)
        return DeleteResult(deleted=True)

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    async def list_budgets(self) -> list[Budget]:
        await self._enter("list_budgets")
        return sorted(self._budgets.values(), key=lambda b: b.id)

    async def delete_budget(self, budget_id: int) -> BudgetDeleteResult:
        await self._enter("delete_budget", budget_id)

        if self._budgets.pop(budget_id, None) is None:
            raise NotFoundError(
                f"Budget not found: {budget_id}",
                operation="delete_budget",
            )
        count = self._null_references(budget_id=budget_id)
        return BudgetDeleteResult(deleted=True, transaction_count=count)
