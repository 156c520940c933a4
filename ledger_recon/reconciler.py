"""
Deletion Reconciler

Keeps the cache consistent when transactions, goals or budgets are deleted.

Goal-linked transactions:
    Deleting a contribution takes its amount back out of the goal (floored
    at zero); deleting a withdrawal puts it back. The goal reversal and the
    transaction removal are one optimistic mutation.

Goals and budgets, in one of two modes:
    DETACH          linked transactions stay in history without the reference
    CASCADE_REFUND  linked transactions are deleted first, returning their
                    effect to the net balance

DESIGN DECISION: Any remote failure reinstates the complete pre-operation
snapshot, even when some linked deletions already succeeded on the server.
The cache never shows a half-deleted state; the caller can refresh the
session to pick up what the server actually holds. A delete the service
answers with `deleted: false` counts as a remote failure.
"""

from typing import Callable, Iterable, Optional, Sequence, Union
from uuid import UUID

import structlog

from ledger_recon.audit import create_correlation_id
from ledger_recon.base_flow import LedgerFlow
from ledger_recon.cache import EntityCache, MutationToken
from ledger_recon.models.ledger import (
    ZERO,
    Budget,
    CollectionType,
    DeleteResult,
    DeletionMode,
    DeletionResult,
    EntityKey,
    SavingsGoal,
    Transaction,
    collection_of,
    key_of,
)
from ledger_recon.services.ledger import RemoteError
from ledger_recon.validation import TransactionNotFound, TransactionPending, ValidationError


logger = structlog.get_logger(__name__)


class PartialCascadeFailure(RemoteError):
    """
    A cascade stopped after some linked transactions were already deleted.

    The local cache has been fully reinstated. `failed_id` is the linked
    transaction whose delete failed, or None when the final entity delete
    failed.
    """

    def __init__(
        self,
        message: str,
        deleted_ids: list[int],
        failed_id: Optional[int],
        status_code: Optional[int] = None,
        operation: Optional[str] = None,
    ):
        self.deleted_ids = deleted_ids
        self.failed_id = failed_id
        super().__init__(message, status_code=status_code, operation=operation)


class DeletionReconciler(LedgerFlow):
    """
    Deletes entities optimistically and reconciles linked state.

    Usage:
        result = await reconciler.delete_linked_transaction(tx)
        result = await reconciler.delete_goal_or_budget(
            budget, mode=DeletionMode.CASCADE_REFUND
        )
    """

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def delete_transaction(
        self,
        transaction: Transaction,
        correlation_id: Optional[UUID] = None,
    ) -> DeletionResult:
        """Delete any transaction; goal-linked ones also reverse the goal."""
        if transaction.saving_goal_id is not None:
            return await self.delete_linked_transaction(
                transaction, correlation_id=correlation_id
            )

        correlation_id = correlation_id or create_correlation_id()
        await self._check_deletable(transaction, correlation_id)
        tx_key = key_of(transaction)

        def patch(cache: EntityCache) -> None:
            cache.remove_by_id(CollectionType.TRANSACTIONS, transaction.id)

        token = await self._coordinator.begin(
            [tx_key], patch, label="delete_transaction", correlation_id=correlation_id
        )
        current = token.snapshot[tx_key] or transaction
        await self._remote(
            token,
            lambda: self._delete_confirmed(transaction.id),
            correlation_id,
            failure_title="Failed to delete transaction.",
        )
        self._coordinator.commit(token)

        if self._audit_logger:
            await self._audit_logger.log_transaction_deleted(
                transaction_id=transaction.id,
                goal_id=None,
                correlation_id=correlation_id,
            )
        if self._notifications is not None:
            self._notifications.success("Deleted", "Transaction deleted successfully.", correlation_id)

        return DeletionResult(
            entity_kind=CollectionType.TRANSACTIONS,
            entity_id=transaction.id,
            removed_transaction_ids=[transaction.id],
            refunded_amount=-current.signed_amount,
        )

    async def delete_linked_transaction(
        self,
        transaction: Transaction,
        goal: Optional[SavingsGoal] = None,
        correlation_id: Optional[UUID] = None,
    ) -> DeletionResult:
        """
        Delete a goal-linked transaction and reverse its effect on the goal.

        A contribution is subtracted from the goal (never below zero); a
        withdrawal is added back. Both changes commit or roll back together.
        """
        correlation_id = correlation_id or create_correlation_id()
        await self._check_deletable(transaction, correlation_id)

        goal_id = goal.id if goal is not None else transaction.saving_goal_id
        tx_key = key_of(transaction)
        keys = [tx_key]
        if goal_id is not None:
            keys.append(EntityKey(CollectionType.SAVINGS_GOALS, goal_id))

        def patch(cache: EntityCache) -> None:
            current_tx = cache.get(CollectionType.TRANSACTIONS, transaction.id) or transaction
            current_goal = (
                cache.get(CollectionType.SAVINGS_GOALS, goal_id) if goal_id is not None else None
            )
            if current_goal is not None:
                cache.upsert(
                    CollectionType.SAVINGS_GOALS,
                    current_goal.with_balance(current_goal.current_amount - current_tx.goal_delta),
                )
            cache.remove_by_id(CollectionType.TRANSACTIONS, transaction.id)

        token = await self._coordinator.begin(
            keys, patch, label="delete_linked_transaction", correlation_id=correlation_id
        )
        current = token.snapshot[tx_key] or transaction
        await self._remote(
            token,
            lambda: self._delete_confirmed(transaction.id),
            correlation_id,
            failure_title="Failed to delete transaction.",
        )
        self._coordinator.commit(token)

        settled_goal = (
            self._cache.get(CollectionType.SAVINGS_GOALS, goal_id) if goal_id is not None else None
        )
        if self._audit_logger:
            await self._audit_logger.log_transaction_deleted(
                transaction_id=transaction.id,
                goal_id=goal_id,
                correlation_id=correlation_id,
            )
        if self._notifications is not None:
            self._notifications.success(
                "Deleted", "Transaction deleted and balance updated.", correlation_id
            )

        return DeletionResult(
            entity_kind=CollectionType.TRANSACTIONS,
            entity_id=transaction.id,
            removed_transaction_ids=[transaction.id],
            refunded_amount=-current.signed_amount,
            goal=settled_goal,
        )

    # -------------------------------------------------------------------------
    # Goals and budgets
    # -------------------------------------------------------------------------

    async def delete_goal_or_budget(
        self,
        entity: Union[SavingsGoal, Budget],
        linked_transactions: Optional[Iterable[Transaction]] = None,
        mode: DeletionMode = DeletionMode.DETACH,
        correlation_id: Optional[UUID] = None,
    ) -> DeletionResult:
        """
        Delete a savings goal or budget together with its linked transactions.

        Args:
            entity: The goal or budget to delete
            linked_transactions: Transactions referencing it; read from the
                cache when omitted
            mode: DETACH keeps them without the reference, CASCADE_REFUND
                deletes them

        Raises:
            RemoteError: The entity delete failed; nothing changed locally
            PartialCascadeFailure: Some linked deletes succeeded before a
                failure; the local cache was fully reinstated
        """
        correlation_id = correlation_id or create_correlation_id()
        collection = collection_of(entity)
        if collection == CollectionType.TRANSACTIONS:
            raise TypeError("Use delete_transaction for transactions")

        if linked_transactions is None:
            linked = self._cache.where(
                CollectionType.TRANSACTIONS, self._links_to(entity)
            )
        else:
            linked = list(linked_transactions)
        linked = sorted(linked, key=lambda t: t.id)
        for tx in linked:
            if tx.is_provisional:
                error = TransactionPending(tx.id)
                await self._reject(
                    error,
                    f"delete_{collection.value}",
                    correlation_id,
                    entity_type=collection.value,
                    entity_id=entity.id,
                )
                raise error

        entity_key = key_of(entity)
        keys = [entity_key, *(key_of(t) for t in linked)]
        linked_ids = [t.id for t in linked]

        if mode == DeletionMode.DETACH:
            def patch(cache: EntityCache) -> None:
                for tx in linked:
                    current = cache.get(CollectionType.TRANSACTIONS, tx.id)
                    if current is not None:
                        cache.upsert(CollectionType.TRANSACTIONS, current.detached())
                cache.remove_by_id(collection, entity.id)
        else:
            def patch(cache: EntityCache) -> None:
                for tx in linked:
                    cache.remove_by_id(CollectionType.TRANSACTIONS, tx.id)
                cache.remove_by_id(collection, entity.id)

        token = await self._coordinator.begin(
            keys, patch, label=f"delete_{collection.value}_{mode.value}", correlation_id=correlation_id
        )
        removed_snapshot = [
            token.snapshot[key_of(t)] or t for t in linked
        ]

        if mode == DeletionMode.DETACH:
            delete_result = await self._remote(
                token,
                lambda: self._delete_entity(entity),
                correlation_id,
                failure_title=self._failure_title(collection),
            )
        else:
            delete_result = await self._cascade(token, entity, linked_ids, correlation_id)

        self._coordinator.commit(token)

        if collection == CollectionType.BUDGETS:
            expected = len(linked_ids) if mode == DeletionMode.DETACH else 0
            reported = getattr(delete_result, "transaction_count", expected)
            if reported != expected:
                logger.warning(
                    "budget_transaction_count_mismatch",
                    budget_id=entity.id,
                    cached=expected,
                    reported=reported,
                )

        if mode == DeletionMode.CASCADE_REFUND:
            refunded = -sum((t.signed_amount for t in removed_snapshot), ZERO)
            result = DeletionResult(
                mode=mode,
                entity_kind=collection,
                entity_id=entity.id,
                removed_transaction_ids=linked_ids,
                refunded_amount=refunded,
            )
        else:
            result = DeletionResult(
                mode=mode,
                entity_kind=collection,
                entity_id=entity.id,
                detached_transaction_ids=linked_ids,
            )

        if self._audit_logger:
            await self._audit_logger.log_entity_deleted(
                entity_type=collection.value,
                entity_id=entity.id,
                mode=mode.value,
                removed=len(result.removed_transaction_ids),
                detached=len(result.detached_transaction_ids),
                refunded_amount=result.refunded_amount,
                correlation_id=correlation_id,
            )
        if self._notifications is not None:
            self._notifications.success(
                "Deleted", self._success_message(collection, mode, linked_ids), correlation_id
            )
        return result

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _cascade(
        self,
        token: MutationToken,
        entity: Union[SavingsGoal, Budget],
        linked_ids: Sequence[int],
        correlation_id: UUID,
    ):
        """Delete linked transactions one by one, then the entity itself."""
        collection = collection_of(entity)
        deleted: list[int] = []
        failed_id: Optional[int] = None

        async def run():
            nonlocal failed_id
            for tx_id in linked_ids:
                failed_id = tx_id
                await self._delete_confirmed(tx_id)
                deleted.append(tx_id)
            failed_id = None
            return await self._delete_entity(entity)

        try:
            return await self._remote(
                token, run, correlation_id, failure_title=self._failure_title(collection)
            )
        except RemoteError as e:
            if not deleted:
                raise
            if self._audit_logger:
                await self._audit_logger.log_cascade_failed(
                    entity_type=collection.value,
                    entity_id=entity.id,
                    deleted_ids=list(deleted),
                    failed_id=failed_id,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            raise PartialCascadeFailure(
                f"Deleted {len(deleted)} of {len(linked_ids)} linked transactions "
                f"before failing: {e}",
                deleted_ids=list(deleted),
                failed_id=failed_id,
                status_code=e.status_code,
                operation=e.operation,
            ) from e

    async def _delete_confirmed(self, transaction_id: int) -> DeleteResult:
        return self._confirmed(
            "delete_transaction", await self._service.delete_transaction(transaction_id)
        )

    async def _delete_entity(self, entity: Union[SavingsGoal, Budget]) -> DeleteResult:
        if isinstance(entity, SavingsGoal):
            return self._confirmed(
                "delete_savings_goal", await self._service.delete_savings_goal(entity.id)
            )
        return self._confirmed("delete_budget", await self._service.delete_budget(entity.id))

    @staticmethod
    def _confirmed(operation: str, result: DeleteResult) -> DeleteResult:
        """A delete the service answered with deleted=false did not happen."""
        if not result.deleted:
            raise RemoteError(
                f"{operation} was not carried out by the ledger service",
                operation=operation,
            )
        return result

    async def _check_deletable(self, transaction: Transaction, correlation_id: UUID) -> None:
        error: Optional[ValidationError] = None
        if transaction.is_provisional:
            error = TransactionPending(transaction.id)
        elif self._cache.get(CollectionType.TRANSACTIONS, transaction.id) is None:
            error = TransactionNotFound(transaction.id)
        if error is not None:
            await self._reject(
                error,
                "delete_transaction",
                correlation_id,
                entity_type=CollectionType.TRANSACTIONS.value,
                entity_id=transaction.id,
            )
            raise error

    @staticmethod
    def _links_to(entity: Union[SavingsGoal, Budget]) -> Callable[[Transaction], bool]:
        if isinstance(entity, SavingsGoal):
            return lambda t: t.saving_goal_id == entity.id
        return lambda t: t.budget_id == entity.id

    @staticmethod
    def _failure_title(collection: CollectionType) -> str:
        if collection == CollectionType.SAVINGS_GOALS:
            return "Failed to delete goal or refund transactions."
        return "Failed to delete budget."

    @staticmethod
    def _success_message(
        collection: CollectionType,
        mode: DeletionMode,
        linked_ids: Sequence[int],
    ) -> str:
        if collection == CollectionType.SAVINGS_GOALS:
            if mode == DeletionMode.CASCADE_REFUND and linked_ids:
                return "Goal deleted and funds returned to balance."
            return "Goal deleted successfully."
        return "Budget deleted successfully."
