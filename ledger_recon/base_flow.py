"""
Shared plumbing for the flows that mutate the cache.

Every flow follows the same failure contract:
- client-side validation fails -> audit the rejection, raise, nothing changed
  (goal movements are checked again once their goal's queue is reached)
- remote call fails            -> roll back, audit, notify, re-raise
- settlement task cancelled    -> roll back, re-raise
Nothing is retried.
"""

import asyncio
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Optional
from uuid import UUID

from ledger_recon.audit import AuditLogger
from ledger_recon.cache import EntityCache, MutationToken, OptimisticMutationCoordinator
from ledger_recon.models.ledger import (
    CollectionType,
    Direction,
    EntityKey,
    SavingsGoal,
    Transaction,
    TransactionReceipt,
)
from ledger_recon.notifications import NotificationCenter
from ledger_recon.queries import aggregations
from ledger_recon.services.ledger import LedgerServiceInterface, RemoteError
from ledger_recon.validation import MutationValidator, ValidationError


class LedgerFlow:
    """Base class holding the collaborators every flow needs."""

    def __init__(
        self,
        cache: EntityCache,
        coordinator: OptimisticMutationCoordinator,
        service: LedgerServiceInterface,
        validator: Optional[MutationValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        notifications: Optional[NotificationCenter] = None,
    ):
        self._cache = cache
        self._coordinator = coordinator
        self._service = service
        self._validator = validator or MutationValidator()
        self._audit_logger = audit_logger
        self._notifications = notifications

    def _available_balance(self) -> Decimal:
        return aggregations.available_balance(self._cache.all(CollectionType.TRANSACTIONS))

    def _net_balance(self) -> Decimal:
        return aggregations.net_balance(self._cache.all(CollectionType.TRANSACTIONS))

    def _revalidate_goal_movement(
        self,
        cache: EntityCache,
        goal_id: int,
        direction: Direction,
        amount: Decimal,
        ceiling: Decimal,
        net_at_validation: Decimal,
    ) -> SavingsGoal:
        """
        Validate a goal movement again from inside its patch.

        Runs once the goal's lock is held, against the goal as it is now.
        The contribution ceiling shrinks by however much the net balance
        fell since the first check.
        """
        shortfall = net_at_validation - aggregations.net_balance(
            cache.all(CollectionType.TRANSACTIONS)
        )
        if shortfall > 0:
            ceiling -= shortfall
        return self._validator.validate_goal_movement(
            goal_id,
            cache.get(CollectionType.SAVINGS_GOALS, goal_id),
            direction,
            amount,
            ceiling,
        )

    def _transactions_for_goal(self, goal_id: int) -> list[Transaction]:
        return self._cache.where(
            CollectionType.TRANSACTIONS, lambda t: t.saving_goal_id == goal_id
        )

    async def _reject(
        self,
        error: ValidationError,
        operation: str,
        correlation_id: Optional[UUID],
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
    ) -> None:
        """Audit a rejected intent. The caller re-raises."""
        if self._audit_logger:
            await self._audit_logger.log_validation_rejected(
                operation=operation,
                error_code=error.code,
                message=error.message,
                entity_type=entity_type,
                entity_id=entity_id,
                correlation_id=correlation_id,
            )

    async def _report_remote_failure(
        self,
        token: Optional[MutationToken],
        error: RemoteError,
        correlation_id: UUID,
        failure_title: Optional[str],
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log_remote_error(
                operation=error.operation or (token.label if token else "unknown"),
                error_message=str(error),
                status_code=error.status_code,
                correlation_id=correlation_id,
            )
            if token is not None:
                await self._audit_logger.log_rollback(
                    token_id=token.token_id,
                    label=token.label,
                    keys=token.key_labels(),
                    correlation_id=correlation_id,
                    reason=str(error),
                )
        if self._notifications is not None and failure_title:
            self._notifications.error("Error", failure_title, correlation_id)

    async def _remote(
        self,
        token: MutationToken,
        call: Callable[[], Awaitable[Any]],
        correlation_id: UUID,
        failure_title: Optional[str],
    ) -> Any:
        """Run one remote call; roll back, audit and notify on failure."""
        try:
            return await call()
        except asyncio.CancelledError:
            self._coordinator.rollback(token, reason="cancelled")
            raise
        except RemoteError as e:
            self._coordinator.rollback(token, reason=str(e))
            await self._report_remote_failure(token, e, correlation_id, failure_title)
            raise
        except Exception as e:
            self._coordinator.rollback(token, reason=repr(e))
            if self._audit_logger:
                await self._audit_logger.log_error(
                    error_type=type(e).__name__,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            raise

    def _commit_receipt(
        self,
        token: MutationToken,
        receipt: TransactionReceipt,
        goal_id: Optional[int],
        discard: Iterable[EntityKey] = (),
    ) -> None:
        """
        Commit a created transaction.

        When the service removed the goal as a side effect, the goal is
        dropped and every cached transaction that referenced it is
        detached, matching what the server did to its own rows.
        """
        if receipt.goal_deleted and goal_id is not None:
            goal_key = EntityKey(CollectionType.SAVINGS_GOALS, goal_id)
            orphans = [
                t.detached()
                for t in self._transactions_for_goal(goal_id)
                if not t.is_provisional and t.id != receipt.transaction.id
            ]
            self._coordinator.commit(
                token,
                server_result=[*orphans, receipt.transaction.detached()],
                discard=[*discard, goal_key],
            )
        else:
            self._coordinator.commit(
                token, server_result=[receipt.transaction], discard=discard
            )
