"""
Abstract Ledger Service Interface

DESIGN DECISION: The remote ledger service sits behind an abstract interface.
This allows us to:
1. Talk to the real REST API through an HTTP implementation
2. Use an in-memory service for testing and offline work
3. Keep the engine decoupled from transport details

The remote service owns the durable representation and wins on conflict.
The interface is intentionally narrow - just the operations the engine needs.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ledger_recon.models.ledger import (
    Budget,
    BudgetDeleteResult,
    DeleteResult,
    SavingsGoal,
    SavingsGoalCreate,
    Transaction,
    TransactionCreate,
    TransactionFilter,
    TransactionPage,
    TransactionReceipt,
)


class LedgerServiceInterface(ABC):
    """
    Abstract interface for the remote ledger service.

    Any implementation (HTTP, in-memory, etc.) must implement these methods.
    Every method raises `RemoteError` (or a subclass) on failure and never
    retries.
    """

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_transactions(
        self,
        filter: Optional[TransactionFilter] = None,
    ) -> TransactionPage:
        """
        List one page of transactions.

        Args:
            filter: Query parameters; `filter.all` skips pagination

        Returns:
            The page data with its pagination meta
        """
        pass

    async def list_all_transactions(
        self,
        filter: Optional[TransactionFilter] = None,
    ) -> list[Transaction]:
        """
        Walk every page of a listing.

        Implementations that can answer in one round-trip may override this.
        """
        base = filter or TransactionFilter()
        transactions: list[Transaction] = []
        page_number = 1
        while True:
            page = await self.list_transactions(
                base.model_copy(update={"page": page_number, "all": False})
            )
            transactions.extend(page.data)
            if not page.has_more:
                return transactions
            page_number += 1

    @abstractmethod
    async def create_transaction(
        self,
        payload: TransactionCreate,
    ) -> TransactionReceipt:
        """
        Create a transaction.

        Returns:
            The authoritative transaction, plus `goal_deleted` when the
            service removed the linked goal as a side effect
        """
        pass

    @abstractmethod
    async def update_transaction(
        self,
        transaction_id: int,
        patch: dict,
    ) -> Transaction:
        """
        Update fields of a transaction.

        Raises:
            NotFoundError: If the transaction doesn't exist
        """
        pass

    @abstractmethod
    async def delete_transaction(self, transaction_id: int) -> DeleteResult:
        """
        Delete a transaction by ID.

        Raises:
            NotFoundError: If the transaction doesn't exist
        """
        pass

    # -------------------------------------------------------------------------
    # Savings goals
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_savings_goals(self) -> list[SavingsGoal]:
        pass

    @abstractmethod
    async def create_savings_goal(self, payload: SavingsGoalCreate) -> SavingsGoal:
        pass

    @abstractmethod
    async def update_savings_goal(self, goal_id: int, patch: dict) -> SavingsGoal:
        """
        Update fields of a savings goal.

        Raises:
            NotFoundError: If the goal doesn't exist
        """
        pass

    @abstractmethod
    async def delete_savings_goal(self, goal_id: int) -> DeleteResult:
        pass

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_budgets(self) -> list[Budget]:
        pass

    @abstractmethod
    async def delete_budget(self, budget_id: int) -> BudgetDeleteResult:
        """
        Delete a budget by ID.

        Returns:
            Result including how many transactions the service still had
            linked to the budget
        """
        pass

    async def aclose(self) -> None:
        """Release any transport resources."""
        return None


class RemoteError(Exception):
    """
    Base exception for ledger service operations.

    Carries the HTTP-like status code (None for transport failures) and the
    name of the interface operation that failed.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        operation: Optional[str] = None,
    ):
        self.status_code = status_code
        self.operation = operation
        super().__init__(message)


class NotFoundError(RemoteError):
    """Entity not found on the ledger service."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message, status_code=404, operation=operation)


class ConnectionError(RemoteError):
    """Could not reach the ledger service."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message, status_code=None, operation=operation)
