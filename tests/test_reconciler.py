"""Tests for deletion reconciliation."""

import pytest

from ledger_recon.audit import create_correlation_id
from ledger_recon.cache import views
from ledger_recon.models.audit import AuditEventType
from ledger_recon.models.ledger import CollectionType, DeleteResult, DeletionMode, Direction
from ledger_recon.queries import aggregations
from ledger_recon.reconciler import PartialCascadeFailure
from ledger_recon.services.ledger import InMemoryLedgerService, RemoteError
from ledger_recon.validation import TransactionNotFound, TransactionPending

from tests.conftest import TODAY, D, budget, expense, income, make_session, savings_goal


def state(session):
    """Order-independent view of the whole cache."""
    snap = session.cache.snapshot()
    return (
        sorted(snap.transactions, key=lambda t: t.id),
        sorted(snap.budgets, key=lambda b: b.id),
        sorted(snap.savings_goals, key=lambda g: g.id),
    )


def net(session):
    return aggregations.net_balance(session.cache.all(CollectionType.TRANSACTIONS))


class RefusingDeleteService(InMemoryLedgerService):
    """Answers deleted=false for the listed transactions and keeps them."""

    def __init__(self, *args, refuse=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.refuse = set(refuse)

    async def delete_transaction(self, transaction_id):
        if transaction_id in self.refuse:
            await self._enter("delete_transaction", transaction_id)
            return DeleteResult(deleted=False)
        return await super().delete_transaction(transaction_id)


@pytest.fixture
def goal_service() -> InMemoryLedgerService:
    """Goal 10 at 40 from a 25 and a 15 contribution."""
    return InMemoryLedgerService(
        transactions=[
            income(1, 500),
            expense(2, 25, goal_id=10),
            expense(3, 15, goal_id=10),
        ],
        goals=[savings_goal(10, 100, 40)],
    )


@pytest.fixture
def budget_service() -> InMemoryLedgerService:
    """Budget 20 with three expenses totaling 45."""
    return InMemoryLedgerService(
        transactions=[
            income(1, 100),
            expense(2, 10, budget_id=20),
            expense(3, 15, budget_id=20),
            expense(4, 20, budget_id=20),
        ],
        budgets=[budget(20, 200)],
    )


class TestLinkedTransactionDeletion:
    """Tests for deleting goal-linked transactions."""

    @pytest.mark.asyncio
    async def test_deleting_contribution_reduces_goal(self, goal_service):
        """Test Scenario C: deleting a 15 contribution takes the goal from 40 to 25."""
        session = make_session(goal_service)
        await session.start(today=TODAY)
        tx = session.cache.get(CollectionType.TRANSACTIONS, 3)

        result = await session.reconciler.delete_linked_transaction(tx)

        assert session.cache.get(CollectionType.SAVINGS_GOALS, 10).current_amount == D(25)
        assert session.cache.get(CollectionType.TRANSACTIONS, 3) is None
        assert result.removed_transaction_ids == [3]
        assert result.refunded_amount == D(15)
        assert result.goal.current_amount == D(25)
        assert goal_service.goal(10).current_amount == D(25)

    @pytest.mark.asyncio
    async def test_deleting_withdrawal_adds_back(self):
        """Test that removing a withdrawal restores the goal balance."""
        service = InMemoryLedgerService(
            transactions=[income(1, 500), expense(2, 40, goal_id=10), income(3, 10, goal_id=10)],
            goals=[savings_goal(10, 100, 30)],
        )
        session = make_session(service)
        await session.start(today=TODAY)

        result = await session.transactions.delete(3)

        assert session.cache.get(CollectionType.SAVINGS_GOALS, 10).current_amount == D(40)
        assert result.refunded_amount == D(-10)

    @pytest.mark.asyncio
    async def test_remote_failure_restores_goal_and_transaction(self, goal_service):
        """Test that a failed delete rolls back both changes together."""
        session = make_session(goal_service)
        await session.start(today=TODAY)
        before = state(session)
        goal_service.inject_failure("delete_transaction")

        with pytest.raises(RemoteError):
            await session.transactions.delete(3)

        assert state(session) == before
        assert session.notifications.drain()[-1].message == "Failed to delete transaction."

    @pytest.mark.asyncio
    async def test_plain_transaction(self, goal_service):
        """Test deleting an unlinked transaction."""
        session = make_session(goal_service)
        await session.start(today=TODAY)

        result = await session.transactions.delete(1)

        assert session.cache.get(CollectionType.TRANSACTIONS, 1) is None
        assert result.refunded_amount == D(-500)
        assert result.goal is None

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, goal_service):
        """Test that a missing transaction is rejected without a call."""
        session = make_session(goal_service)
        await session.start(today=TODAY)

        with pytest.raises(TransactionNotFound):
            await session.transactions.delete(999)
        assert goal_service.call_count("delete_transaction") == 0


class TestBudgetDeletion:
    """Tests for deleting budgets in both modes."""

    @pytest.mark.asyncio
    async def test_cascade_refund(self, budget_service):
        """Test Scenario E: cascade-deleting a budget with 45 of expenses."""
        session = make_session(budget_service)
        await session.start(today=TODAY)
        assert net(session) == D(55)

        result = await session.delete_budget(20, mode=DeletionMode.CASCADE_REFUND)

        assert sorted(result.removed_transaction_ids) == [2, 3, 4]
        assert result.refunded_amount == D(45)
        assert session.cache.get(CollectionType.BUDGETS, 20) is None
        assert [t.id for t in session.cache.all(CollectionType.TRANSACTIONS)] == [1]
        assert net(session) == D(100)
        assert session.stats(today=TODAY).net_balance == D(100)
        assert budget_service.transactions == [budget_service.transaction(1)]

    @pytest.mark.asyncio
    async def test_detach_keeps_history(self, budget_service):
        """Test that detaching keeps transactions without the reference."""
        session = make_session(budget_service)
        await session.start(today=TODAY)
        session.open_budget_detail(20)

        result = await session.delete_budget(20, mode=DeletionMode.DETACH)

        assert sorted(result.detached_transaction_ids) == [2, 3, 4]
        assert result.refunded_amount == D(0)
        assert session.cache.get_view(views.budget_transactions_key(20)) == ()
        assert session.cache.get_record(views.budget_detail_key(20)) is None
        remaining = session.cache.all(CollectionType.TRANSACTIONS)
        assert len(remaining) == 4
        assert all(t.budget_id is None for t in remaining)
        assert net(session) == D(55)
        assert budget_service.call_count("delete_transaction") == 0

    @pytest.mark.asyncio
    async def test_partial_cascade_reinstates_everything(self, budget_service):
        """Test that a failure after one linked delete restores the full snapshot."""
        session = make_session(budget_service)
        await session.start(today=TODAY)
        before = state(session)
        budget_service.inject_failure("delete_transaction", after=1)
        cid = create_correlation_id()

        with pytest.raises(PartialCascadeFailure) as exc_info:
            await session.delete_budget(20, mode=DeletionMode.CASCADE_REFUND, correlation_id=cid)

        assert exc_info.value.deleted_ids == [2]
        assert exc_info.value.failed_id == 3
        assert state(session) == before
        assert session.coordinator.in_flight() == []

        events = await session.audit_logger.storage.get_events_by_correlation_id(cid)
        assert AuditEventType.CASCADE_FAILED in [e.event_type for e in events]
        assert session.notifications.drain()[-1].message == "Failed to delete budget."

        # the server did delete one row; a refresh picks that up
        await session.refresh()
        assert session.cache.get(CollectionType.TRANSACTIONS, 2) is None

    @pytest.mark.asyncio
    async def test_first_delete_failing_is_plain_remote_error(self, budget_service):
        """Test that nothing-deleted failures are not partial."""
        session = make_session(budget_service)
        await session.start(today=TODAY)
        budget_service.inject_failure("delete_transaction")

        with pytest.raises(RemoteError) as exc_info:
            await session.delete_budget(20, mode=DeletionMode.CASCADE_REFUND)

        assert not isinstance(exc_info.value, PartialCascadeFailure)
        assert session.cache.get(CollectionType.BUDGETS, 20) is not None

    @pytest.mark.asyncio
    async def test_entity_delete_failing_after_cascade(self, budget_service):
        """Test failed_id is None when only the budget delete failed."""
        session = make_session(budget_service)
        await session.start(today=TODAY)
        before = state(session)
        budget_service.inject_failure("delete_budget")

        with pytest.raises(PartialCascadeFailure) as exc_info:
            await session.delete_budget(20, mode=DeletionMode.CASCADE_REFUND)

        assert exc_info.value.deleted_ids == [2, 3, 4]
        assert exc_info.value.failed_id is None
        assert state(session) == before


class TestGoalDeletion:
    """Tests for deleting savings goals."""

    @pytest.mark.asyncio
    async def test_cascade_returns_funds(self, goal_service):
        """Test that cascading a goal refunds its contributions."""
        session = make_session(goal_service)
        await session.start(today=TODAY)
        assert session.available_balance() == D(460)

        result = await session.goals.delete(10, mode=DeletionMode.CASCADE_REFUND)

        assert result.refunded_amount == D(40)
        assert session.available_balance() == D(500)
        assert session.cache.get(CollectionType.SAVINGS_GOALS, 10) is None
        assert session.notifications.drain()[-1].message == "Goal deleted and funds returned to balance."

    @pytest.mark.asyncio
    async def test_detach_goal(self, goal_service):
        """Test that detaching a goal leaves its transactions unlinked."""
        session = make_session(goal_service)
        await session.start(today=TODAY)

        result = await session.goals.delete(10)

        assert result.mode == DeletionMode.DETACH
        assert session.cache.get(CollectionType.TRANSACTIONS, 2).saving_goal_id is None
        assert goal_service.transaction(2).saving_goal_id is None

    @pytest.mark.asyncio
    async def test_pending_contribution_blocks_deletion(self, goal_service):
        """Test that a goal with an unsettled contribution cannot be deleted."""
        session = make_session(goal_service)
        await session.start(today=TODAY)
        gate = goal_service.pause("create_transaction")
        pending = await session.contributions.submit(10, Direction.CONTRIBUTE, D(5))
        provisional = session.cache.where(CollectionType.TRANSACTIONS, lambda t: t.is_provisional)[0]

        with pytest.raises(TransactionPending):
            await session.goals.delete(10)
        with pytest.raises(TransactionPending):
            await session.reconciler.delete_transaction(provisional)

        gate.set()
        await pending.result()
        assert goal_service.call_count("delete_savings_goal") == 0
        assert session.cache.get(CollectionType.SAVINGS_GOALS, 10).current_amount == D(45)


class TestUnconfirmedDeletes:
    """Tests for deletes the service answers with deleted=false."""

    @pytest.mark.asyncio
    async def test_unconfirmed_linked_delete_rolls_back(self):
        """Test that the goal and transaction stay when the service keeps them."""
        service = RefusingDeleteService(
            transactions=[income(1, 500), expense(2, 25, goal_id=10), expense(3, 15, goal_id=10)],
            goals=[savings_goal(10, 100, 40)],
            refuse=[3],
        )
        session = make_session(service)
        await session.start(today=TODAY)
        before = state(session)

        with pytest.raises(RemoteError) as exc_info:
            await session.transactions.delete(3)

        assert exc_info.value.operation == "delete_transaction"
        assert not isinstance(exc_info.value, PartialCascadeFailure)
        assert state(session) == before
        assert session.cache.get(CollectionType.SAVINGS_GOALS, 10).current_amount == D(40)
        assert service.transaction(3) is not None
        assert service.goal(10).current_amount == D(40)
        assert session.coordinator.in_flight() == []
        assert session.notifications.drain()[-1].message == "Failed to delete transaction."

    @pytest.mark.asyncio
    async def test_unconfirmed_delete_mid_cascade_is_partial(self):
        """Test that a refused linked delete after a confirmed one is a partial cascade."""
        service = RefusingDeleteService(
            transactions=[
                income(1, 100),
                expense(2, 10, budget_id=20),
                expense(3, 15, budget_id=20),
                expense(4, 20, budget_id=20),
            ],
            budgets=[budget(20, 200)],
            refuse=[3],
        )
        session = make_session(service)
        await session.start(today=TODAY)
        before = state(session)

        with pytest.raises(PartialCascadeFailure) as exc_info:
            await session.delete_budget(20, mode=DeletionMode.CASCADE_REFUND)

        assert exc_info.value.deleted_ids == [2]
        assert exc_info.value.failed_id == 3
        assert state(session) == before
        assert service.budget(20) is not None
        assert service.call_count("delete_budget") == 0
