"""
Main Orchestrator for the Ledger Reconciliation Engine

This module ties together all the components and defines the
end-to-end flows for:
1. Contribution / withdrawal (validate -> speculative patch -> create -> settle)
2. Transactions (create, edit, delete, CSV import)
3. Savings goals (create, edit, cancel, delete)
4. The session lifecycle (hydrate the cache, expose stats, shut down)

DESIGN DECISION: The orchestrator enforces the boundaries:
- No cache write happens for an intent that fails validation
- No cache write bypasses the mutation coordinator (except hydration)
- Every remote failure rolls back, is audited and is re-raised
- Every step is audited

This is the "glue" that ensures the cache keeps telling the truth
even when individual remote calls fail.
"""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Union
from uuid import UUID

import structlog
from pydantic import ValidationError as SchemaError

from ledger_recon.audit import (
    AuditLogger,
    InMemoryAuditStorage,
    create_correlation_id,
)
from ledger_recon.base_flow import LedgerFlow
from ledger_recon.cache import (
    EntityCache,
    OptimisticMutationCoordinator,
    ViewChange,
    views,
)
from ledger_recon.config import EngineSettings, Settings, get_settings
from ledger_recon.models.ledger import (
    ZERO,
    CollectionType,
    ContributionResult,
    DeletionMode,
    DeletionResult,
    Direction,
    EntityKey,
    GoalStatus,
    ImportFailure,
    ImportReport,
    SavingsGoal,
    SavingsGoalCreate,
    Transaction,
    TransactionCreate,
    TransactionType,
    key_of,
)
from ledger_recon.notifications import NotificationCenter
from ledger_recon.queries import DashboardStats, aggregations
from ledger_recon.reconciler import DeletionReconciler
from ledger_recon.saga import Saga
from ledger_recon.services.ledger import (
    HttpLedgerService,
    LedgerServiceInterface,
    RemoteError,
)
from ledger_recon.validation import (
    BudgetNotFound,
    DerivedFieldEdit,
    GoalNotFound,
    InsufficientGoalBalance,
    MutationValidator,
    TransactionNotFound,
    TransactionPending,
    ValidationError,
)


logger = structlog.get_logger(__name__)


def movement_payload(
    goal: SavingsGoal,
    direction: Direction,
    amount: Decimal,
    day: date,
    category_id: Optional[int] = None,
) -> TransactionCreate:
    """
    Build the linked transaction for a contribution or withdrawal.

    A contribution leaves the general balance (expense), a withdrawal
    returns to it (income).
    """
    if direction == Direction.CONTRIBUTE:
        name = f"Deposit: {goal.name}"
        description = f"Funds transferred to savings goal: {goal.name}"
        tx_type = TransactionType.EXPENSE
    else:
        name = f"Withdrawal: {goal.name}"
        description = f"Funds moved from savings goal: {goal.name}"
        tx_type = TransactionType.INCOME

    return TransactionCreate(
        amount=amount,
        type=tx_type,
        date=day,
        name=name[:200],
        description=description,
        category_id=category_id,
        saving_goal_id=goal.id,
    )


def _pending_description(direction: Direction) -> str:
    if direction == Direction.CONTRIBUTE:
        return "Contribution (Pending...)"
    return "Withdrawal (Pending...)"


class PendingOperation:
    """
    Handle for a contribution whose speculative patch is already visible.

    The remote round-trip continues in the background; `result()` waits
    for it and returns the settled outcome or raises its error.
    """

    def __init__(self, task: "asyncio.Task[ContributionResult]", correlation_id: UUID, label: str):
        self._task = task
        self.correlation_id = correlation_id
        self.label = label

    @property
    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> ContributionResult:
        return await self._task

    def cancel(self) -> bool:
        """Cancel the settlement. The speculative patch is rolled back."""
        return self._task.cancel()


class ContributionFlow(LedgerFlow):
    """
    Orchestrates contributions to and withdrawals from a savings goal.

    Flow:
    1. Validate -> amount, goal, funds (nothing touched on failure)
    2. Patch    -> goal balance and a provisional transaction, one token
    3. Create   -> the linked transaction on the service (operation of record)
    4. Settle   -> commit with the server transaction, or roll back

    Steps 2 and 3 run as a saga: if 3 fails or is cancelled, 2 is
    compensated by rolling its token back.
    """

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._tasks: set[asyncio.Task] = set()

    async def submit(
        self,
        goal_id: int,
        direction: Direction,
        amount: Decimal,
        available_balance: Optional[Decimal] = None,
        category_id: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
        today: Optional[date] = None,
    ) -> PendingOperation:
        """
        Validate, apply the speculative patch and return without waiting
        for the service.

        Args:
            available_balance: Contribution ceiling; computed from the
                cache when omitted

        Raises:
            ValidationError: Rejected before any cache write
        """
        correlation_id = correlation_id or create_correlation_id()
        if available_balance is None:
            available_balance = self._available_balance()

        goal = self._cache.get(CollectionType.SAVINGS_GOALS, goal_id)
        try:
            goal = self._validator.validate_goal_movement(
                goal_id, goal, direction, amount, available_balance
            )
        except ValidationError as e:
            await self._reject(
                e,
                direction.value,
                correlation_id,
                entity_type=CollectionType.SAVINGS_GOALS.value,
                entity_id=goal_id,
            )
            raise

        payload = movement_payload(goal, direction, amount, today or date.today(), category_id)
        applied = asyncio.Event()
        task = asyncio.create_task(
            self._settle(
                goal_id,
                goal.name,
                direction,
                payload,
                applied,
                correlation_id,
                ceiling=available_balance,
                net_at_validation=self._net_balance(),
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._forget)

        waiter = asyncio.create_task(applied.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if not applied.is_set():
            # The patch itself failed, e.g. the goal vanished while queued
            task.result()
        return PendingOperation(task, correlation_id, label=direction.value)

    async def apply(
        self,
        goal_id: int,
        direction: Direction,
        amount: Decimal,
        available_balance: Optional[Decimal] = None,
        category_id: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
        today: Optional[date] = None,
    ) -> ContributionResult:
        """Submit and wait for settlement."""
        pending = await self.submit(
            goal_id,
            direction,
            amount,
            available_balance=available_balance,
            category_id=category_id,
            correlation_id=correlation_id,
            today=today,
        )
        return await pending.result()

    async def contribute(self, goal_id: int, amount: Decimal, **kwargs: Any) -> ContributionResult:
        return await self.apply(goal_id, Direction.CONTRIBUTE, amount, **kwargs)

    async def withdraw(self, goal_id: int, amount: Decimal, **kwargs: Any) -> ContributionResult:
        return await self.apply(goal_id, Direction.WITHDRAW, amount, **kwargs)

    async def drain(self) -> None:
        """Wait for every settlement still running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _forget(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled():
            # Retrieved here so an ignored PendingOperation does not warn;
            # callers still get it from result()
            task.exception()

    async def _settle(
        self,
        goal_id: int,
        goal_name: str,
        direction: Direction,
        payload: TransactionCreate,
        applied: asyncio.Event,
        correlation_id: UUID,
        ceiling: Decimal,
        net_at_validation: Decimal,
    ) -> ContributionResult:
        provisional = payload.provisional(
            self._cache.allocate_provisional_id(), datetime.now(timezone.utc)
        ).model_copy(update={"description": _pending_description(direction)})
        tx_key = key_of(provisional)
        goal_key = EntityKey(CollectionType.SAVINGS_GOALS, goal_id)
        delta = payload.amount if direction == Direction.CONTRIBUTE else -payload.amount

        def patch(cache: EntityCache) -> None:
            # Re-read at apply time: a queued mutation sees the settled value
            goal = self._revalidate_goal_movement(
                cache, goal_id, direction, payload.amount, ceiling, net_at_validation
            )
            cache.upsert(
                CollectionType.SAVINGS_GOALS,
                goal.with_balance(goal.current_amount + delta),
            )
            cache.upsert(CollectionType.TRANSACTIONS, provisional)

        async def speculative_balance_patch():
            token = await self._coordinator.begin(
                [goal_key, tx_key],
                patch,
                label=f"goal_{direction.value}",
                correlation_id=correlation_id,
            )
            applied.set()
            return token

        saga = Saga(f"goal_{direction.value}", correlation_id)
        saga.step(
            "speculative_balance_patch",
            speculative_balance_patch,
            compensate=lambda token, error: self._coordinator.rollback(token, reason=repr(error)),
        )
        saga.step(
            "create_linked_transaction",
            lambda: self._service.create_transaction(payload),
        )

        try:
            results = await saga.run()
        except ValidationError as e:
            await self._reject(
                e,
                direction.value,
                correlation_id,
                entity_type=CollectionType.SAVINGS_GOALS.value,
                entity_id=goal_id,
            )
            raise
        except RemoteError as e:
            await self._report_remote_failure(
                saga.results.get("speculative_balance_patch"),
                e,
                correlation_id,
                failure_title=(
                    "Failed to add contribution."
                    if direction == Direction.CONTRIBUTE
                    else "Failed to withdraw funds."
                ),
            )
            raise
        except Exception as e:
            if self._audit_logger:
                await self._audit_logger.log_error(
                    error_type=type(e).__name__,
                    error_message=str(e),
                    details={"operation": direction.value, "goal_id": goal_id},
                    correlation_id=correlation_id,
                )
            raise

        token = results["speculative_balance_patch"]
        receipt = results["create_linked_transaction"]
        self._commit_receipt(token, receipt, goal_id, discard=[tx_key])

        goal = self._cache.get(CollectionType.SAVINGS_GOALS, goal_id)
        transaction = (
            self._cache.get(CollectionType.TRANSACTIONS, receipt.transaction.id)
            or receipt.transaction
        )

        if self._audit_logger:
            await self._audit_logger.log_goal_balance_changed(
                goal_id=goal_id,
                direction=direction.value,
                amount=payload.amount,
                new_amount=goal.current_amount if goal else ZERO,
                transaction_id=transaction.id,
                correlation_id=correlation_id,
            )
            if receipt.goal_deleted:
                await self._audit_logger.log_goal_removed_by_service(
                    goal_id=goal_id,
                    correlation_id=correlation_id,
                )

        if self._notifications is not None:
            amount_text = f"{payload.amount:,.2f}"
            if direction == Direction.CONTRIBUTE:
                self._notifications.success(
                    "Contribution Added!", f"{amount_text} added to {goal_name}.", correlation_id
                )
            elif receipt.goal_deleted:
                self._notifications.success(
                    "Withdrawn & Deleted",
                    f"{amount_text} withdrawn. Goal deleted as it is empty.",
                    correlation_id,
                )
            else:
                self._notifications.success(
                    "Withdrawn!", f"{amount_text} withdrawn from {goal_name}.", correlation_id
                )

        return ContributionResult(
            direction=direction,
            transaction=transaction,
            goal=goal,
            goal_deleted=receipt.goal_deleted,
            close_goal_detail=receipt.goal_deleted,
        )


class TransactionFlow(LedgerFlow):
    """
    Orchestrates plain transaction edits.

    Goal-linked transactions created or edited here move the goal balance
    in the same optimistic mutation, so the settled-goal invariant holds
    however the transaction was entered.
    """

    def __init__(self, *args: Any, reconciler: Optional[DeletionReconciler] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._reconciler = reconciler or DeletionReconciler(*args, **kwargs)

    async def create(
        self,
        payload: Union[TransactionCreate, dict],
        correlation_id: Optional[UUID] = None,
        available_balance: Optional[Decimal] = None,
        notify: bool = True,
    ) -> Transaction:
        """
        Create a transaction optimistically.

        Raises:
            pydantic.ValidationError: Malformed payload
            ValidationError: Goal-linked payload rejected
            RemoteError: The service refused; nothing changed locally
        """
        correlation_id = correlation_id or create_correlation_id()
        if not isinstance(payload, TransactionCreate):
            payload = TransactionCreate.model_validate(payload)

        goal_id = payload.saving_goal_id
        direction = (
            Direction.CONTRIBUTE
            if payload.type == TransactionType.EXPENSE
            else Direction.WITHDRAW
        )
        if available_balance is None:
            available_balance = self._available_balance()
        net_at_validation = self._net_balance()
        if goal_id is not None:
            try:
                self._validator.validate_goal_movement(
                    goal_id,
                    self._cache.get(CollectionType.SAVINGS_GOALS, goal_id),
                    direction,
                    payload.amount,
                    available_balance,
                )
            except ValidationError as e:
                await self._reject(
                    e,
                    "create_transaction",
                    correlation_id,
                    entity_type=CollectionType.SAVINGS_GOALS.value,
                    entity_id=goal_id,
                )
                raise

        provisional = payload.provisional(
            self._cache.allocate_provisional_id(), datetime.now(timezone.utc)
        )
        tx_key = key_of(provisional)
        keys = [tx_key]
        if goal_id is not None:
            keys.append(EntityKey(CollectionType.SAVINGS_GOALS, goal_id))

        def patch(cache: EntityCache) -> None:
            if goal_id is not None:
                goal = self._revalidate_goal_movement(
                    cache,
                    goal_id,
                    direction,
                    payload.amount,
                    available_balance,
                    net_at_validation,
                )
                cache.upsert(
                    CollectionType.SAVINGS_GOALS,
                    goal.with_balance(goal.current_amount + provisional.goal_delta),
                )
            cache.upsert(CollectionType.TRANSACTIONS, provisional)

        try:
            token = await self._coordinator.begin(
                keys, patch, label="create_transaction", correlation_id=correlation_id
            )
        except ValidationError as e:
            await self._reject(
                e,
                "create_transaction",
                correlation_id,
                entity_type=CollectionType.SAVINGS_GOALS.value,
                entity_id=goal_id,
            )
            raise
        receipt = await self._remote(
            token,
            lambda: self._service.create_transaction(payload),
            correlation_id,
            failure_title="Failed to save transaction." if notify else None,
        )
        self._commit_receipt(token, receipt, goal_id, discard=[tx_key])

        if self._audit_logger:
            await self._audit_logger.log_transaction_saved(
                transaction_id=receipt.transaction.id,
                amount=receipt.transaction.amount,
                transaction_type=receipt.transaction.type.value,
                created=True,
                correlation_id=correlation_id,
            )
            if receipt.goal_deleted and goal_id is not None:
                await self._audit_logger.log_goal_removed_by_service(
                    goal_id=goal_id,
                    correlation_id=correlation_id,
                )
        if self._notifications is not None and notify:
            self._notifications.success("Added!", "Transaction added successfully.", correlation_id)

        return (
            self._cache.get(CollectionType.TRANSACTIONS, receipt.transaction.id)
            or receipt.transaction
        )

    async def update(
        self,
        transaction_id: int,
        patch: dict,
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Edit a settled transaction.

        Any goal the transaction is linked to before or after the edit is
        rebalanced by the difference in the transaction's effect on it.
        """
        correlation_id = correlation_id or create_correlation_id()

        current = self._cache.get(CollectionType.TRANSACTIONS, transaction_id)
        error: Optional[ValidationError] = None
        if current is None:
            error = TransactionNotFound(transaction_id)
        elif current.is_provisional:
            error = TransactionPending(transaction_id)
        if error is not None:
            await self._reject(
                error,
                "update_transaction",
                correlation_id,
                entity_type=CollectionType.TRANSACTIONS.value,
                entity_id=transaction_id,
            )
            raise error

        updated = Transaction.model_validate(
            {**current.to_payload(), **patch, "id": transaction_id}
        )

        def shift(goal_id: int) -> Decimal:
            old = current.goal_delta if current.saving_goal_id == goal_id else ZERO
            new = updated.goal_delta if updated.saving_goal_id == goal_id else ZERO
            return new - old

        def goal_error(goal_id: int, goal: Optional[SavingsGoal]) -> Optional[ValidationError]:
            if goal is None:
                return GoalNotFound(goal_id)
            if goal.current_amount + shift(goal_id) < 0:
                return InsufficientGoalBalance(-shift(goal_id), goal.current_amount)
            return None

        goal_ids = sorted({current.saving_goal_id, updated.saving_goal_id} - {None})
        for goal_id in goal_ids:
            error = goal_error(goal_id, self._cache.get(CollectionType.SAVINGS_GOALS, goal_id))
            if error is not None:
                await self._reject(
                    error,
                    "update_transaction",
                    correlation_id,
                    entity_type=CollectionType.SAVINGS_GOALS.value,
                    entity_id=goal_id,
                )
                raise error

        def apply_edit(cache: EntityCache) -> None:
            for goal_id in goal_ids:
                # Checked again: queued mutations may have moved the goal
                goal = cache.get(CollectionType.SAVINGS_GOALS, goal_id)
                failure = goal_error(goal_id, goal)
                if failure is not None:
                    raise failure
                cache.upsert(
                    CollectionType.SAVINGS_GOALS,
                    goal.with_balance(goal.current_amount + shift(goal_id)),
                )
            cache.upsert(CollectionType.TRANSACTIONS, updated)

        keys = [key_of(current)]
        keys.extend(EntityKey(CollectionType.SAVINGS_GOALS, g) for g in goal_ids)
        try:
            token = await self._coordinator.begin(
                keys, apply_edit, label="update_transaction", correlation_id=correlation_id
            )
        except ValidationError as e:
            await self._reject(
                e,
                "update_transaction",
                correlation_id,
                entity_type=CollectionType.SAVINGS_GOALS.value,
            )
            raise

        wire = updated.to_payload()
        wire.pop("id")
        wire.pop("created_at")
        server = await self._remote(
            token,
            lambda: self._service.update_transaction(transaction_id, wire),
            correlation_id,
            failure_title="Failed to update transaction.",
        )
        self._coordinator.commit(token, server_result=[server])

        if self._audit_logger:
            await self._audit_logger.log_transaction_saved(
                transaction_id=server.id,
                amount=server.amount,
                transaction_type=server.type.value,
                created=False,
                correlation_id=correlation_id,
            )
        if self._notifications is not None:
            self._notifications.success("Updated!", "Transaction updated successfully.", correlation_id)
        return server

    async def delete(
        self,
        transaction_id: int,
        correlation_id: Optional[UUID] = None,
    ) -> DeletionResult:
        correlation_id = correlation_id or create_correlation_id()
        transaction = self._cache.get(CollectionType.TRANSACTIONS, transaction_id)
        if transaction is None:
            error = TransactionNotFound(transaction_id)
            await self._reject(
                error,
                "delete_transaction",
                correlation_id,
                entity_type=CollectionType.TRANSACTIONS.value,
                entity_id=transaction_id,
            )
            raise error
        return await self._reconciler.delete_transaction(transaction, correlation_id=correlation_id)

    async def import_transactions(
        self,
        records: Iterable[Union[TransactionCreate, dict]],
        correlation_id: Optional[UUID] = None,
    ) -> ImportReport:
        """
        Submit already-parsed rows one by one.

        Each row is an ordinary create; a failing row is recorded and the
        import carries on with the next one.
        """
        correlation_id = correlation_id or create_correlation_id()
        report = ImportReport()

        for index, record in enumerate(records):
            try:
                created = await self.create(record, correlation_id=correlation_id, notify=False)
            except (ValidationError, RemoteError, SchemaError) as e:
                report.failures.append(ImportFailure(index=index, error=str(e)))
                logger.info("import_row_failed", index=index, error=str(e))
            else:
                report.created.append(created)

        if self._audit_logger:
            await self._audit_logger.log_import_completed(
                created=report.created_count,
                failed=report.failed_count,
                correlation_id=correlation_id,
            )
        if self._notifications is not None:
            if report.created_count:
                self._notifications.success(
                    "Imported!",
                    f"Successfully imported {report.created_count} transactions.",
                    correlation_id,
                )
            if report.failed_count:
                self._notifications.warning(
                    "Import incomplete",
                    f"{report.failed_count} rows could not be imported.",
                    correlation_id,
                )
        return report


class GoalFlow(LedgerFlow):
    """Orchestrates savings goal create, edit, cancel and delete."""

    def __init__(
        self,
        *args: Any,
        contributions: Optional[ContributionFlow] = None,
        reconciler: Optional[DeletionReconciler] = None,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self._contributions = contributions or ContributionFlow(*args, **kwargs)
        self._reconciler = reconciler or DeletionReconciler(*args, **kwargs)

    async def create(
        self,
        payload: Union[SavingsGoalCreate, dict],
        initial_amount: Decimal = ZERO,
        available_balance: Optional[Decimal] = None,
        category_id: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> SavingsGoal:
        """
        Create a goal, then optionally fund it.

        The goal starts at zero on the service; an initial amount is an
        ordinary contribution submitted once the goal exists. If that
        contribution fails the goal is kept and the failure is reported
        through the contribution flow.
        """
        correlation_id = correlation_id or create_correlation_id()
        if not isinstance(payload, SavingsGoalCreate):
            payload = SavingsGoalCreate.model_validate(payload)
        if available_balance is None:
            available_balance = self._available_balance()

        active = self._cache.where(
            CollectionType.SAVINGS_GOALS, lambda g: g.status == GoalStatus.ACTIVE
        )
        try:
            self._validator.validate_new_goal(len(active), initial_amount, available_balance)
        except ValidationError as e:
            await self._reject(
                e,
                "create_savings_goal",
                correlation_id,
                entity_type=CollectionType.SAVINGS_GOALS.value,
            )
            raise

        provisional = SavingsGoal(
            id=self._cache.allocate_provisional_id(),
            name=payload.name,
            target_amount=payload.target_amount,
            description=payload.description or None,
            created_at=datetime.now(timezone.utc),
        )
        provisional_key = key_of(provisional)
        token = await self._coordinator.begin(
            [provisional_key],
            lambda cache: cache.upsert(CollectionType.SAVINGS_GOALS, provisional),
            label="create_savings_goal",
            correlation_id=correlation_id,
        )
        goal = await self._remote(
            token,
            lambda: self._service.create_savings_goal(payload),
            correlation_id,
            failure_title="Failed to save savings goal.",
        )
        self._coordinator.commit(token, server_result=[goal], discard=[provisional_key])

        if self._audit_logger:
            await self._audit_logger.log_goal_saved(
                goal_id=goal.id,
                name=goal.name,
                created=True,
                correlation_id=correlation_id,
            )
        if self._notifications is not None:
            self._notifications.success("Created!", "Savings goal created successfully.", correlation_id)

        if initial_amount > 0:
            try:
                await self._contributions.apply(
                    goal.id,
                    Direction.CONTRIBUTE,
                    initial_amount,
                    available_balance=available_balance,
                    category_id=category_id,
                    correlation_id=correlation_id,
                )
            except (ValidationError, RemoteError) as e:
                logger.warning(
                    "initial_contribution_failed",
                    goal_id=goal.id,
                    error=str(e),
                )

        return self._cache.get(CollectionType.SAVINGS_GOALS, goal.id) or goal

    async def update(
        self,
        goal_id: int,
        patch: dict,
        correlation_id: Optional[UUID] = None,
    ) -> SavingsGoal:
        """
        Edit a goal's name, target, description or status.

        `current_amount` is derived from transactions and cannot be
        patched; status is re-derived from the balance unless cancelled.
        """
        correlation_id = correlation_id or create_correlation_id()

        goal = self._cache.get(CollectionType.SAVINGS_GOALS, goal_id)
        error: Optional[ValidationError] = None
        if "current_amount" in patch:
            error = DerivedFieldEdit("current_amount")
        elif goal is None:
            error = GoalNotFound(goal_id)
        if error is not None:
            await self._reject(
                error,
                "update_savings_goal",
                correlation_id,
                entity_type=CollectionType.SAVINGS_GOALS.value,
                entity_id=goal_id,
            )
            raise error

        merged = SavingsGoal.model_validate({**goal.model_dump(), **patch, "id": goal_id})
        merged = merged.with_balance(merged.current_amount)
        wire = merged.model_dump(mode="json", include=set(patch))

        token = await self._coordinator.begin(
            [key_of(goal)],
            lambda cache: cache.upsert(CollectionType.SAVINGS_GOALS, merged),
            label="update_savings_goal",
            correlation_id=correlation_id,
        )
        server = await self._remote(
            token,
            lambda: self._service.update_savings_goal(goal_id, wire),
            correlation_id,
            failure_title="Failed to save savings goal.",
        )
        self._coordinator.commit(token, server_result=[server])

        if self._audit_logger:
            await self._audit_logger.log_goal_saved(
                goal_id=server.id,
                name=server.name,
                created=False,
                correlation_id=correlation_id,
            )
        if self._notifications is not None:
            self._notifications.success("Updated!", "Savings goal updated successfully.", correlation_id)
        return server

    async def cancel(self, goal_id: int, correlation_id: Optional[UUID] = None) -> SavingsGoal:
        return await self.update(
            goal_id, {"status": GoalStatus.CANCELLED.value}, correlation_id=correlation_id
        )

    async def delete(
        self,
        goal_id: int,
        mode: DeletionMode = DeletionMode.DETACH,
        correlation_id: Optional[UUID] = None,
    ) -> DeletionResult:
        correlation_id = correlation_id or create_correlation_id()
        goal = self._cache.get(CollectionType.SAVINGS_GOALS, goal_id)
        if goal is None:
            error = GoalNotFound(goal_id)
            await self._reject(
                error,
                "delete_savings_goal",
                correlation_id,
                entity_type=CollectionType.SAVINGS_GOALS.value,
                entity_id=goal_id,
            )
            raise error
        return await self._reconciler.delete_goal_or_budget(
            goal, mode=mode, correlation_id=correlation_id
        )


class LedgerSession:
    """
    One user's engine: a cache, its coordinator and the flows over them.

    Usage:
        async with create_session() as session:
            await session.contributions.contribute(goal_id, Decimal("25"))
            stats = session.stats()
    """

    def __init__(
        self,
        service: LedgerServiceInterface,
        engine_settings: Optional[EngineSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
        notifications: Optional[NotificationCenter] = None,
    ):
        self._settings = engine_settings or get_settings().engine
        self.service = service
        self.cache = EntityCache()
        self.coordinator = OptimisticMutationCoordinator(
            self.cache, serialize=self._settings.serialize_entity_mutations
        )
        self.validator = MutationValidator(self._settings.max_active_goals)
        self.audit_logger = audit_logger
        self.notifications = notifications if notifications is not None else NotificationCenter()

        collaborators = dict(
            cache=self.cache,
            coordinator=self.coordinator,
            service=service,
            validator=self.validator,
            audit_logger=audit_logger,
            notifications=self.notifications,
        )
        self.reconciler = DeletionReconciler(**collaborators)
        self.contributions = ContributionFlow(**collaborators)
        self.transactions = TransactionFlow(reconciler=self.reconciler, **collaborators)
        self.goals = GoalFlow(
            contributions=self.contributions,
            reconciler=self.reconciler,
            **collaborators,
        )

    async def __aenter__(self) -> "LedgerSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self, today: Optional[date] = None) -> "LedgerSession":
        """Register the standard views and hydrate the cache."""
        for spec in views.standard_views(self._settings.recent_transactions_limit, today):
            self.cache.register_view(spec)
        await self.refresh()
        return self

    async def refresh(self, correlation_id: Optional[UUID] = None) -> None:
        """
        Replace every collection with what the service holds.

        Raises:
            RuntimeError: Mutations are still in flight
            RemoteError: A listing failed; the cache is unchanged
        """
        correlation_id = correlation_id or create_correlation_id()
        if self.coordinator.in_flight():
            raise RuntimeError("Cannot refresh while mutations are in flight")

        try:
            transactions, budgets, goals = await asyncio.gather(
                self.service.list_all_transactions(),
                self.service.list_budgets(),
                self.service.list_savings_goals(),
            )
        except RemoteError as e:
            if self.audit_logger:
                await self.audit_logger.log_remote_error(
                    operation=e.operation or "refresh",
                    error_message=str(e),
                    status_code=e.status_code,
                    correlation_id=correlation_id,
                )
            raise

        with self.cache.batch():
            self.cache.load(CollectionType.TRANSACTIONS, transactions)
            self.cache.load(CollectionType.BUDGETS, budgets)
            self.cache.load(CollectionType.SAVINGS_GOALS, goals)

        if self.audit_logger:
            await self.audit_logger.log_cache_hydrated(
                transactions=len(transactions),
                budgets=len(budgets),
                goals=len(goals),
                correlation_id=correlation_id,
            )

    async def close(self) -> None:
        await self.contributions.drain()
        await self.service.aclose()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def stats(self, today: Optional[date] = None) -> DashboardStats:
        return aggregations.dashboard(
            self.cache.snapshot(),
            today=today,
            recent_limit=self._settings.recent_transactions_limit,
            near_limit_ratio=Decimal(str(self._settings.near_limit_ratio)),
        )

    def available_balance(self) -> Decimal:
        return aggregations.available_balance(self.cache.all(CollectionType.TRANSACTIONS))

    def open_goal_detail(
        self,
        goal_id: int,
        on_change: Optional[Callable[[ViewChange], None]] = None,
    ) -> Optional[Callable[[], None]]:
        """
        Register the detail and transaction views for one goal.

        Returns an unsubscribe function when `on_change` is given; the
        callback receives `closed=True` if the goal disappears.
        """
        self.cache.register_view(views.goal_detail(goal_id))
        self.cache.register_view(views.goal_transactions(goal_id))
        if on_change is None:
            return None
        unsubscribe_detail = self.cache.subscribe(views.goal_detail_key(goal_id), on_change)
        unsubscribe_transactions = self.cache.subscribe(
            views.goal_transactions_key(goal_id), on_change
        )

        def unsubscribe() -> None:
            unsubscribe_detail()
            unsubscribe_transactions()

        return unsubscribe

    def close_goal_detail(self, goal_id: int) -> None:
        self.cache.drop_view(views.goal_detail_key(goal_id))
        self.cache.drop_view(views.goal_transactions_key(goal_id))

    def open_budget_detail(self, budget_id: int) -> None:
        self.cache.register_view(views.budget_detail(budget_id))
        self.cache.register_view(views.budget_transactions(budget_id))

    def close_budget_detail(self, budget_id: int) -> None:
        self.cache.drop_view(views.budget_detail_key(budget_id))
        self.cache.drop_view(views.budget_transactions_key(budget_id))

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    async def delete_budget(
        self,
        budget_id: int,
        mode: DeletionMode = DeletionMode.DETACH,
        correlation_id: Optional[UUID] = None,
    ) -> DeletionResult:
        correlation_id = correlation_id or create_correlation_id()
        budget = self.cache.get(CollectionType.BUDGETS, budget_id)
        if budget is None:
            error = BudgetNotFound(budget_id)
            if self.audit_logger:
                await self.audit_logger.log_validation_rejected(
                    operation="delete_budgets",
                    error_code=error.code,
                    message=error.message,
                    entity_type=CollectionType.BUDGETS.value,
                    entity_id=budget_id,
                    correlation_id=correlation_id,
                )
            raise error
        return await self.reconciler.delete_goal_or_budget(
            budget, mode=mode, correlation_id=correlation_id
        )


def create_session(
    service: Optional[LedgerServiceInterface] = None,
    settings: Optional[Settings] = None,
) -> LedgerSession:
    """
    Factory function to create a fully wired session.

    Args:
        service: Ledger service to talk to. Defaults to the HTTP client
                 configured from LEDGER_SERVICE_* settings.
        settings: Settings to use instead of the cached global ones

    Returns:
        An unstarted LedgerSession (start it, or use `async with`)
    """
    settings = settings or get_settings()
    service = service or HttpLedgerService(settings.ledger_service)
    audit_logger = AuditLogger(
        InMemoryAuditStorage(max_events=settings.engine.audit_history_size)
    )
    return LedgerSession(
        service,
        engine_settings=settings.engine,
        audit_logger=audit_logger,
        notifications=NotificationCenter(),
    )
