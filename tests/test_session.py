"""Tests for the session and the transaction / goal flows."""

import asyncio

import pytest

from ledger_recon.audit import create_correlation_id
from ledger_recon.cache import ViewChange, views
from ledger_recon.config import get_settings, validate_all_settings
from ledger_recon.models.audit import AuditEventType
from ledger_recon.models.ledger import CollectionType, Direction, GoalStatus, TransactionType
from ledger_recon.notifications import NotificationLevel
from ledger_recon.orchestrator import create_session
from ledger_recon.services.ledger import RemoteError
from ledger_recon.validation import (
    ActiveGoalLimitReached,
    BudgetNotFound,
    DerivedFieldEdit,
    GoalNotActive,
    GoalNotFound,
    InsufficientFunds,
    InsufficientGoalBalance,
    TransactionNotFound,
)

from tests.conftest import TODAY, D, make_session


async def started(service, **overrides):
    session = make_session(service, **overrides)
    await session.start(today=TODAY)
    return session


def goal_of(session, goal_id=10):
    return session.cache.get(CollectionType.SAVINGS_GOALS, goal_id)


class TestSessionLifecycle:
    """Tests for hydration, refresh and shutdown."""

    @pytest.mark.asyncio
    async def test_start_hydrates_and_audits(self, funded_service):
        """Test that every collection is loaded and the load is audited."""
        session = await started(funded_service)

        assert len(session.cache.all(CollectionType.TRANSACTIONS)) == 3
        assert goal_of(session).current_amount == D(90)
        assert session.cache.get(CollectionType.BUDGETS, 20) is not None
        assert [t.id for t in session.cache.get_view(views.RECENT_TRANSACTIONS)] == [3, 2, 1]

        [event] = await session.audit_logger.storage.get_recent_events()
        assert event.event_type == AuditEventType.CACHE_HYDRATED
        assert event.details["transactions"] == 3

    @pytest.mark.asyncio
    async def test_async_context_manager(self, funded_service):
        """Test start on enter and drain on exit."""
        async with make_session(funded_service) as session:
            assert session.available_balance() == D(380)
            await session.contributions.submit(10, Direction.CONTRIBUTE, D(5))

        assert session.coordinator.in_flight() == []
        assert funded_service.goal(10).current_amount == D(95)

    @pytest.mark.asyncio
    async def test_refresh_refused_while_in_flight(self, funded_service):
        """Test that hydration never overwrites pending mutations."""
        session = await started(funded_service)
        gate = funded_service.pause("create_transaction")
        pending = await session.contributions.submit(10, Direction.CONTRIBUTE, D(5))

        with pytest.raises(RuntimeError):
            await session.refresh()

        gate.set()
        await pending.result()
        await session.refresh()
        assert goal_of(session).current_amount == D(95)

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_cache(self, funded_service):
        """Test that a failed listing leaves the cache as it was."""
        session = await started(funded_service)
        before = session.cache.snapshot()
        funded_service.inject_failure("list_budgets")
        cid = create_correlation_id()

        with pytest.raises(RemoteError):
            await session.refresh(correlation_id=cid)

        assert session.cache.snapshot() == before
        events = await session.audit_logger.storage.get_events_by_correlation_id(cid)
        assert [e.event_type for e in events] == [AuditEventType.REMOTE_ERROR]

    @pytest.mark.asyncio
    async def test_stats(self, funded_service):
        """Test the dashboard read over the session cache."""
        session = await started(funded_service)

        stats = session.stats(today=TODAY)

        assert stats.net_balance == D(380)
        assert stats.total_income == D(500)
        assert stats.budgets[0].spent == D(30)
        assert stats.savings.total_saved == D(90)
        assert stats.savings_rate == D(90) / D(500)

    @pytest.mark.asyncio
    async def test_goal_detail_subscription(self, funded_service):
        """Test subscribing to one goal and unsubscribing."""
        session = await started(funded_service)
        changes: list[ViewChange] = []
        unsubscribe = session.open_goal_detail(10, on_change=changes.append)

        await session.contributions.apply(10, Direction.CONTRIBUTE, D(5))
        seen = len(changes)
        unsubscribe()
        await session.contributions.apply(10, Direction.CONTRIBUTE, D(1))

        assert seen > 0
        assert len(changes) == seen
        assert session.cache.get_record(views.goal_detail_key(10)).current_amount == D(96)

        session.close_goal_detail(10)
        assert session.cache.get_view(views.ACTIVE_GOALS)[0].id == 10


class TestTransactionFlow:
    """Tests for plain transaction create, edit and import."""

    @pytest.mark.asyncio
    async def test_create_plain(self, funded_service):
        """Test creating an unlinked transaction."""
        session = await started(funded_service)

        tx = await session.transactions.create({
            "amount": "12.50",
            "type": "expense",
            "date": TODAY.isoformat(),
            "name": "Lunch",
            "budget_id": 20,
        })

        assert tx.id > 0
        assert session.cache.get(CollectionType.TRANSACTIONS, tx.id) == tx
        assert session.stats(today=TODAY).budgets[0].spent == D("42.50")
        note = session.notifications.drain()[-1]
        assert (note.title, note.message) == ("Added!", "Transaction added successfully.")

    @pytest.mark.asyncio
    async def test_create_goal_linked_moves_goal(self, funded_service):
        """Test that a linked transaction entered by hand moves the goal."""
        session = await started(funded_service)

        await session.transactions.create({
            "amount": "5",
            "type": "expense",
            "date": TODAY.isoformat(),
            "saving_goal_id": 10,
        })

        assert goal_of(session).current_amount == D(95)
        assert funded_service.goal(10).current_amount == D(95)

    @pytest.mark.asyncio
    async def test_create_goal_linked_is_validated(self, funded_service):
        """Test that a hand-entered withdrawal cannot overdraw the goal."""
        session = await started(funded_service)

        with pytest.raises(InsufficientGoalBalance):
            await session.transactions.create({
                "amount": "91",
                "type": "income",
                "date": TODAY.isoformat(),
                "saving_goal_id": 10,
            })
        assert funded_service.call_count("create_transaction") == 0

    @pytest.mark.asyncio
    async def test_create_failure_rolls_back(self, funded_service):
        """Test that a refused create leaves no provisional entity."""
        session = await started(funded_service)
        before = session.cache.snapshot()
        funded_service.inject_failure("create_transaction")

        with pytest.raises(RemoteError):
            await session.transactions.create({
                "amount": "5", "type": "expense", "date": TODAY.isoformat(), "saving_goal_id": 10,
            })

        assert session.cache.snapshot() == before
        assert session.notifications.drain()[-1].message == "Failed to save transaction."

    @pytest.mark.asyncio
    async def test_update_amount_rebalances_goal(self, funded_service):
        """Test that editing a contribution amount shifts the goal."""
        session = await started(funded_service)

        updated = await session.transactions.update(2, {"amount": "60.00"})

        assert updated.amount == D(60)
        assert goal_of(session).current_amount == D(60)
        assert funded_service.goal(10).current_amount == D(60)
        assert session.notifications.drain()[-1].title == "Updated!"

    @pytest.mark.asyncio
    async def test_update_relinks_to_goal(self, funded_service):
        """Test moving a budget expense onto a goal."""
        session = await started(funded_service)

        await session.transactions.update(3, {"budget_id": None, "saving_goal_id": 10})

        goal = goal_of(session)
        assert goal.current_amount == D(120)
        assert goal.status == GoalStatus.COMPLETED
        assert goal == funded_service.goal(10)

    @pytest.mark.asyncio
    async def test_update_cannot_drive_goal_negative(self, funded_service):
        """Test that flipping a contribution into a withdrawal is refused."""
        session = await started(funded_service)

        with pytest.raises(InsufficientGoalBalance):
            await session.transactions.update(2, {"type": TransactionType.INCOME.value})
        assert funded_service.call_count("update_transaction") == 0

    @pytest.mark.asyncio
    async def test_queued_update_rechecks_goal(self, funded_service):
        """Test that an edit waiting behind withdrawals is checked against the goal it finally sees."""
        session = await started(funded_service)
        gate = funded_service.pause("create_transaction")

        first = await session.contributions.submit(10, Direction.WITHDRAW, D(10))
        second = asyncio.create_task(
            session.contributions.submit(10, Direction.WITHDRAW, D(60))
        )
        for _ in range(5):
            await asyncio.sleep(0)
        edit = asyncio.create_task(session.transactions.update(2, {"amount": "50.00"}))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not edit.done()

        gate.set()
        await first.result()
        await (await second).result()
        with pytest.raises(InsufficientGoalBalance):
            await edit

        assert goal_of(session).current_amount == D(20)
        assert session.cache.get(CollectionType.TRANSACTIONS, 2).amount == D(90)
        assert funded_service.call_count("update_transaction") == 0
        assert funded_service.goal(10).current_amount == D(20)

    @pytest.mark.asyncio
    async def test_update_unknown_and_failure(self, funded_service):
        """Test missing transactions and remote failures."""
        session = await started(funded_service)

        with pytest.raises(TransactionNotFound):
            await session.transactions.update(999, {"amount": "1"})

        funded_service.inject_failure("update_transaction")
        with pytest.raises(RemoteError):
            await session.transactions.update(2, {"amount": "10"})
        assert goal_of(session).current_amount == D(90)
        assert session.cache.get(CollectionType.TRANSACTIONS, 2).amount == D(90)
        assert session.notifications.drain()[-1].message == "Failed to update transaction."

    @pytest.mark.asyncio
    async def test_import_collects_row_failures(self, funded_service):
        """Test that bad rows are reported and good rows still land."""
        session = await started(funded_service)
        rows = [
            {"amount": "10", "type": "income", "date": "2026-03-02", "name": "Refund"},
            {"amount": "-5", "type": "expense", "date": "2026-03-02"},
            {"amount": "7.25", "type": "expense", "date": "2026-03-03", "category_id": 3},
            {"amount": "500", "type": "income", "date": "2026-03-03", "saving_goal_id": 10},
        ]

        report = await session.transactions.import_transactions(rows)

        assert report.created_count == 2
        assert [f.index for f in report.failures] == [1, 3]
        assert session.available_balance() == D("382.75")
        notes = session.notifications.drain()
        assert notes[0].message == "Successfully imported 2 transactions."
        assert notes[1].level == NotificationLevel.WARNING


class TestGoalFlow:
    """Tests for goal create, edit, cancel and delete."""

    @pytest.mark.asyncio
    async def test_create_with_initial_contribution(self, funded_service):
        """Test that the initial amount is an ordinary contribution."""
        session = await started(funded_service, max_active_goals=3)

        goal = await session.goals.create(
            {"name": "Laptop", "target_amount": "1000"}, initial_amount=D(50)
        )

        assert goal.id > 0
        assert goal.current_amount == D(50)
        assert funded_service.goal(goal.id).current_amount == D(50)
        linked = [t for t in session.cache.all(CollectionType.TRANSACTIONS) if t.saving_goal_id == goal.id]
        assert [t.name for t in linked] == ["Deposit: Laptop"]
        titles = [n.title for n in session.notifications.drain()]
        assert titles == ["Created!", "Contribution Added!"]

    @pytest.mark.asyncio
    async def test_active_goal_limit(self, funded_service):
        """Test the active goal cap."""
        session = await started(funded_service, max_active_goals=1)

        with pytest.raises(ActiveGoalLimitReached):
            await session.goals.create({"name": "Car", "target_amount": "100"})
        assert funded_service.call_count("create_savings_goal") == 0

    @pytest.mark.asyncio
    async def test_initial_amount_over_balance(self, funded_service):
        """Test that an unaffordable initial amount rejects the goal."""
        session = await started(funded_service)

        with pytest.raises(InsufficientFunds):
            await session.goals.create(
                {"name": "Car", "target_amount": "5000"}, initial_amount=D(381)
            )

    @pytest.mark.asyncio
    async def test_initial_contribution_failure_keeps_goal(self, funded_service):
        """Test that a failed initial contribution leaves an empty goal."""
        session = await started(funded_service)
        funded_service.inject_failure("create_transaction")

        goal = await session.goals.create(
            {"name": "Car", "target_amount": "500"}, initial_amount=D(20)
        )

        assert goal.current_amount == D(0)
        assert funded_service.goal(goal.id) is not None

    @pytest.mark.asyncio
    async def test_create_failure_leaves_no_provisional_goal(self, funded_service):
        """Test rollback of a refused goal create."""
        session = await started(funded_service)
        funded_service.inject_failure("create_savings_goal")

        with pytest.raises(RemoteError):
            await session.goals.create({"name": "Car", "target_amount": "500"})

        assert [g.id for g in session.cache.all(CollectionType.SAVINGS_GOALS)] == [10]
        assert session.notifications.drain()[-1].message == "Failed to save savings goal."

    @pytest.mark.asyncio
    async def test_update_target_rederives_status(self, funded_service):
        """Test that lowering the target can complete a goal."""
        session = await started(funded_service)

        goal = await session.goals.update(10, {"target_amount": "80"})

        assert goal.status == GoalStatus.COMPLETED
        assert goal_of(session).status == GoalStatus.COMPLETED
        assert session.cache.get_view(views.ACTIVE_GOALS) == ()

    @pytest.mark.asyncio
    async def test_current_amount_is_derived(self, funded_service):
        """Test that the balance cannot be edited directly."""
        session = await started(funded_service)

        with pytest.raises(DerivedFieldEdit):
            await session.goals.update(10, {"current_amount": "5"})
        assert funded_service.call_count("update_savings_goal") == 0

    @pytest.mark.asyncio
    async def test_cancel_blocks_movements(self, funded_service):
        """Test that a cancelled goal accepts no contributions."""
        session = await started(funded_service)

        goal = await session.goals.cancel(10)

        assert goal.status == GoalStatus.CANCELLED
        assert session.cache.get_view(views.GOAL_HISTORY)[0].id == 10
        with pytest.raises(GoalNotActive):
            await session.contributions.apply(10, Direction.CONTRIBUTE, D(5))

    @pytest.mark.asyncio
    async def test_delete_unknown_goal(self, funded_service):
        """Test that deleting a missing goal is a validation error."""
        session = await started(funded_service)

        with pytest.raises(GoalNotFound):
            await session.goals.delete(99)


class TestBudgetDeletionEntry:
    """Tests for the session-level budget delete."""

    @pytest.mark.asyncio
    async def test_unknown_budget(self, funded_service):
        """Test that an unknown budget is rejected and audited."""
        session = await started(funded_service)
        cid = create_correlation_id()

        with pytest.raises(BudgetNotFound):
            await session.delete_budget(99, correlation_id=cid)

        events = await session.audit_logger.storage.get_events_by_correlation_id(cid)
        assert [e.event_type for e in events] == [AuditEventType.VALIDATION_REJECTED]
        assert funded_service.call_count("delete_budget") == 0


class TestCreateSession:
    """Tests for the session factory and settings."""

    @pytest.mark.asyncio
    async def test_factory_wires_audit_and_settings(self, funded_service, monkeypatch):
        """Test that environment settings reach the session."""
        monkeypatch.setenv("LEDGER_MAX_ACTIVE_GOALS", "2")
        monkeypatch.setenv("LEDGER_RECENT_TRANSACTIONS_LIMIT", "2")
        get_settings.cache_clear()
        try:
            session = create_session(service=funded_service)
            await session.start(today=TODAY)
        finally:
            get_settings.cache_clear()

        assert session.validator.max_active_goals == 2
        assert len(session.cache.get_view(views.RECENT_TRANSACTIONS)) == 2
        assert len(session.audit_logger.storage) == 1
        await session.close()

    def test_validate_all_settings(self):
        """Test the startup check."""
        results = validate_all_settings()
        assert results["engine"] is True
        assert results["ledger_service"] is True

    def test_invalid_engine_setting(self, monkeypatch):
        """Test that a bad value is reported, not raised."""
        monkeypatch.setenv("LEDGER_NEAR_LIMIT_RATIO", "1.5")
        get_settings.cache_clear()
        try:
            results = validate_all_settings()
        finally:
            get_settings.cache_clear()

        assert results["engine"] is False
        assert "engine_error" in results
