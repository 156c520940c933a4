"""
Tests for the Ledger Reconciliation Engine models

Test strategy:
1. Unit tests for individual components (models, validators)
2. Integration tests for flows (with the in-memory ledger service)
3. No real API calls in tests
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError as SchemaError

from ledger_recon.models.ledger import (
    Budget,
    BudgetLink,
    CollectionType,
    EntityKey,
    GoalLink,
    GoalStatus,
    LinkKind,
    PageMeta,
    SavingsGoal,
    SavingsGoalCreate,
    Transaction,
    TransactionCreate,
    TransactionFilter,
    TransactionPage,
    TransactionType,
    collection_of,
    key_of,
)
from ledger_recon.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

from tests.conftest import TODAY, budget, expense, income, savings_goal


class TestTransactionModel:
    """Tests for the Transaction model and its reference variant."""

    def test_wire_references_are_lifted_into_link(self):
        """Test that saving_goal_id becomes a GoalLink."""
        tx = Transaction.model_validate({
            "id": 1,
            "amount": "25.00",
            "type": "expense",
            "date": "2026-03-01",
            "saving_goal_id": 7,
            "budget_id": None,
        })
        assert isinstance(tx.link, GoalLink)
        assert tx.link_kind == LinkKind.GOAL
        assert tx.saving_goal_id == 7
        assert tx.budget_id is None

    def test_budget_reference(self):
        """Test that budget_id becomes a BudgetLink."""
        tx = expense(1, 10, budget_id=3)
        assert isinstance(tx.link, BudgetLink)
        assert tx.budget_id == 3
        assert tx.saving_goal_id is None

    def test_both_references_rejected(self):
        """Test that a transaction cannot reference a budget and a goal."""
        with pytest.raises(SchemaError):
            Transaction.model_validate({
                "id": 1,
                "amount": "5",
                "type": "expense",
                "date": "2026-03-01",
                "budget_id": 1,
                "saving_goal_id": 2,
            })

    def test_amount_must_be_positive(self):
        """Test that zero and negative amounts are rejected."""
        with pytest.raises(SchemaError):
            expense(1, 0)
        with pytest.raises(SchemaError):
            income(1, -5)

    def test_transaction_is_immutable(self):
        """Test that cached entities cannot be mutated in place."""
        tx = income(1, 10)
        with pytest.raises(SchemaError):
            tx.amount = Decimal("20")

    def test_contribution_and_withdrawal_classification(self):
        """Test goal-linked expense/income classification."""
        contribution = expense(1, 40, goal_id=9)
        withdrawal = income(2, 15, goal_id=9)
        plain = expense(3, 12)

        assert contribution.is_contribution and not contribution.is_withdrawal
        assert withdrawal.is_withdrawal and not withdrawal.is_contribution
        assert not plain.is_contribution and not plain.is_withdrawal

    def test_signed_amounts(self):
        """Test net-balance and goal-balance signs."""
        contribution = expense(1, 40, goal_id=9)
        withdrawal = income(2, 15, goal_id=9)

        assert contribution.signed_amount == Decimal("-40")
        assert contribution.goal_delta == Decimal("40")
        assert withdrawal.signed_amount == Decimal("15")
        assert withdrawal.goal_delta == Decimal("-15")
        assert expense(3, 12).goal_delta == Decimal("0")

    def test_provisional_ids_are_negative(self):
        """Test provisional detection."""
        assert expense(-1, 5).is_provisional
        assert not expense(1, 5).is_provisional

    def test_detached_drops_reference_only(self):
        """Test that detaching keeps everything but the link."""
        tx = expense(4, 10, budget_id=2, category_id=6)
        detached = tx.detached()
        assert detached.link is None
        assert detached.id == 4
        assert detached.category_id == 6
        assert tx.budget_id == 2

    def test_to_payload_uses_flat_wire_format(self):
        """Test serialization back to budget_id / saving_goal_id."""
        payload = expense(4, "10.50", goal_id=3).to_payload()
        assert payload["saving_goal_id"] == 3
        assert payload["budget_id"] is None
        assert payload["amount"] == "10.50"
        assert payload["date"] == TODAY.isoformat()


class TestTransactionCreate:
    """Tests for the creation payload."""

    def test_to_wire(self):
        """Test JSON-ready body."""
        payload = TransactionCreate(
            amount=Decimal("12.00"),
            type=TransactionType.EXPENSE,
            date=date(2026, 3, 2),
            name="Coffee",
            budget_id=4,
        )
        wire = payload.to_wire()
        assert wire["amount"] == "12.00"
        assert wire["type"] == "expense"
        assert wire["date"] == "2026-03-02"
        assert wire["budget_id"] == 4
        assert wire["saving_goal_id"] is None

    def test_single_reference_enforced(self):
        """Test that both references are rejected on create too."""
        with pytest.raises(SchemaError):
            TransactionCreate(
                amount=Decimal("1"),
                type=TransactionType.EXPENSE,
                date=TODAY,
                budget_id=1,
                saving_goal_id=2,
            )

    def test_provisional_entity(self):
        """Test building the speculative cache entity."""
        payload = TransactionCreate(
            amount=Decimal("5"),
            type=TransactionType.INCOME,
            date=TODAY,
            saving_goal_id=8,
        )
        created_at = datetime(2026, 3, 15, tzinfo=timezone.utc)
        tx = payload.provisional(-3, created_at)
        assert tx.id == -3
        assert tx.is_withdrawal
        assert tx.created_at == created_at


class TestSavingsGoalModel:
    """Tests for SavingsGoal balance and status derivation."""

    def test_with_balance_completes_at_target(self):
        """Test that reaching the target completes the goal."""
        goal = savings_goal(1, 100, 90).with_balance(Decimal("100"))
        assert goal.status == GoalStatus.COMPLETED
        assert goal.is_completed

    def test_with_balance_clamps_at_zero(self):
        """Test that the balance never goes negative."""
        goal = savings_goal(1, 100, 20).with_balance(Decimal("-5"))
        assert goal.current_amount == Decimal("0")
        assert goal.status == GoalStatus.ACTIVE

    def test_with_balance_reopens_completed_goal(self):
        """Test that dropping below target reactivates the goal."""
        goal = savings_goal(1, 100, 100)
        assert goal.status == GoalStatus.COMPLETED
        assert goal.with_balance(Decimal("60")).status == GoalStatus.ACTIVE

    def test_cancelled_status_is_kept(self):
        """Test that a cancelled goal stays cancelled."""
        goal = savings_goal(1, 100, 10, status=GoalStatus.CANCELLED)
        assert goal.with_balance(Decimal("150")).status == GoalStatus.CANCELLED

    def test_target_must_be_positive(self):
        """Test target validation."""
        with pytest.raises(SchemaError):
            SavingsGoal(id=1, name="Trip", target_amount=Decimal("0"))

    def test_create_payload_starts_at_zero(self):
        """Test the goal creation body."""
        wire = SavingsGoalCreate(name=" Trip ", target_amount=Decimal("300")).to_wire()
        assert wire["name"] == "Trip"
        assert wire["current_amount"] == "0.00"


class TestBudgetModel:
    """Tests for Budget."""

    def test_window_validation(self):
        """Test that the end date cannot precede the start date."""
        with pytest.raises(SchemaError):
            Budget(
                id=1,
                name="Food",
                amount=Decimal("100"),
                start_date=date(2026, 3, 31),
                end_date=date(2026, 3, 1),
            )

    def test_covers(self):
        """Test window membership, inclusive on both ends."""
        b = budget(1, 100)
        assert b.covers(date(2026, 3, 1))
        assert b.covers(date(2026, 3, 31))
        assert not b.covers(date(2026, 4, 1))


class TestEntityHelpers:
    """Tests for collection/key helpers and listing models."""

    def test_collection_and_key(self):
        """Test entity-to-collection mapping."""
        assert collection_of(income(1, 5)) == CollectionType.TRANSACTIONS
        assert key_of(savings_goal(3, 10)) == EntityKey(CollectionType.SAVINGS_GOALS, 3)
        assert key_of(budget(2, 10)) == EntityKey(CollectionType.BUDGETS, 2)

    def test_collection_of_rejects_other_types(self):
        """Test that non-entities are rejected."""
        with pytest.raises(TypeError):
            collection_of(PageMeta())

    def test_entity_keys_sort(self):
        """Test that keys have a total order for lock acquisition."""
        keys = [
            EntityKey(CollectionType.TRANSACTIONS, 1),
            EntityKey(CollectionType.BUDGETS, 5),
            EntityKey(CollectionType.SAVINGS_GOALS, 2),
        ]
        assert sorted(keys)[0].collection == CollectionType.BUDGETS

    def test_filter_params_and_matching(self):
        """Test the transaction filter."""
        f = TransactionFilter(saving_goal_id=3, date_from=date(2026, 3, 10))
        assert f.to_params() == {
            "saving_goal_id": "3",
            "start_date": "2026-03-10",
            "page": "1",
        }
        assert f.matches(expense(1, 5, goal_id=3))
        assert not f.matches(expense(2, 5, goal_id=4))
        assert not f.matches(expense(3, 5, day=date(2026, 3, 1), goal_id=3))
        assert TransactionFilter(all=True).to_params() == {"all": "true"}

    def test_page_has_more(self):
        """Test pagination flag."""
        assert TransactionPage(meta=PageMeta(current_page=1, last_page=2)).has_more
        assert not TransactionPage().has_more


class TestAuditModels:
    """Tests for audit models."""

    def test_audit_event_creation(self):
        """Test AuditEvent model creation."""
        event = AuditEvent(
            event_type=AuditEventType.CACHE_HYDRATED,
            description="Cache loaded",
        )
        assert event.event_type == AuditEventType.CACHE_HYDRATED
        assert event.severity == AuditSeverity.INFO
        assert event.event_id is not None

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        event = AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            entity_type="transactions",
            entity_id=4,
            description="Transaction 4 deleted",
        )
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "transaction_deleted"
        assert log_dict["entity_id"] == 4
        assert "timestamp" in log_dict

    def test_builder_goal_balance_changed(self):
        """Test contribution/withdrawal event types."""
        cid = uuid4()
        contributed = AuditEventBuilder.goal_balance_changed(
            goal_id=1,
            direction="contribute",
            amount=Decimal("10"),
            new_amount=Decimal("100"),
            transaction_id=5,
            correlation_id=cid,
        )
        withdrawn = AuditEventBuilder.goal_balance_changed(
            goal_id=1,
            direction="withdraw",
            amount=Decimal("10"),
            new_amount=Decimal("90"),
            transaction_id=6,
            correlation_id=cid,
        )
        assert contributed.event_type == AuditEventType.CONTRIBUTION_APPLIED
        assert withdrawn.event_type == AuditEventType.WITHDRAWAL_APPLIED
        assert contributed.details["new_amount"] == "100"
        assert contributed.correlation_id == cid

    def test_builder_cascade_failed(self):
        """Test that cascade failures are errors."""
        event = AuditEventBuilder.cascade_failed(
            entity_type="budgets",
            entity_id=2,
            deleted_ids=[1, 2],
            failed_id=3,
            error_message="boom",
            correlation_id=uuid4(),
        )
        assert event.severity == AuditSeverity.ERROR
        assert event.details["failed_id"] == 3
