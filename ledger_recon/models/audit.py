"""
Audit Models for the Ledger Reconciliation Engine

Every significant cache mutation and remote interaction is recorded.
This provides:
1. Traceability of each optimistic mutation from begin to settlement
2. Debugging information when a rollback happens
3. A history the UI can show after a failure

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Each stage of an optimistic mutation has its own event type.
    """
    # Cache lifecycle
    CACHE_HYDRATED = "cache_hydrated"

    # Optimistic mutations
    MUTATION_ROLLED_BACK = "mutation_rolled_back"

    # Client-side validation
    VALIDATION_REJECTED = "validation_rejected"

    # Goal balance operations
    CONTRIBUTION_APPLIED = "contribution_applied"
    WITHDRAWAL_APPLIED = "withdrawal_applied"
    GOAL_REMOVED_BY_SERVICE = "goal_removed_by_service"
    GOAL_CREATED = "goal_created"
    GOAL_UPDATED = "goal_updated"

    # Transactions
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"
    IMPORT_COMPLETED = "import_completed"

    # Deletion reconciliation
    ENTITY_DELETED = "entity_deleted"
    CASCADE_FAILED = "cascade_failed"

    # System events
    SYSTEM_ERROR = "system_error"
    REMOTE_ERROR = "remote_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Collection of the entity (e.g., 'transactions', 'savings_goals')"
    )
    entity_id: Optional[int] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one contribution)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.mutation_rolled_back(token_id, "contribute", keys, cid)
        event = AuditEventBuilder.goal_balance_changed(goal_id, "contribute", "10.00", cid)
    """

    @staticmethod
    def cache_hydrated(
        transactions: int,
        budgets: int,
        goals: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CACHE_HYDRATED,
            correlation_id=correlation_id,
            description=(
                f"Cache loaded: {transactions} transactions, "
                f"{budgets} budgets, {goals} goals"
            ),
            details={
                "transactions": transactions,
                "budgets": budgets,
                "savings_goals": goals,
            },
        )

    @staticmethod
    def mutation_rolled_back(
        token_id: UUID,
        label: str,
        keys: list[str],
        correlation_id: Optional[UUID],
        reason: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_ROLLED_BACK,
            severity=AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description=f"Optimistic mutation rolled back: {label}",
            details={
                "token_id": str(token_id),
                "keys": keys,
            },
            error_message=reason,
        )

    @staticmethod
    def validation_rejected(
        operation: str,
        error_code: str,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"{operation} rejected before any change: {message}",
            details={"operation": operation},
            error_code=error_code,
            error_message=message,
            is_user_action=True,
        )

    @staticmethod
    def goal_balance_changed(
        goal_id: int,
        direction: str,
        amount: Decimal,
        new_amount: Decimal,
        transaction_id: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        event_type = (
            AuditEventType.CONTRIBUTION_APPLIED
            if direction == "contribute"
            else AuditEventType.WITHDRAWAL_APPLIED
        )
        return AuditEvent(
            event_type=event_type,
            entity_type="savings_goals",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Goal {goal_id}: {direction} {amount} (balance now {new_amount})",
            details={
                "amount": str(amount),
                "new_amount": str(new_amount),
                "transaction_id": transaction_id,
            },
            is_user_action=True,
        )

    @staticmethod
    def goal_removed_by_service(
        goal_id: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOAL_REMOVED_BY_SERVICE,
            entity_type="savings_goals",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Ledger service removed emptied goal {goal_id}",
        )

    @staticmethod
    def goal_saved(
        goal_id: int,
        name: str,
        created: bool,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.GOAL_CREATED if created else AuditEventType.GOAL_UPDATED
            ),
            entity_type="savings_goals",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Savings goal {'created' if created else 'updated'}: {name}",
            details={"name": name},
            is_user_action=True,
        )

    @staticmethod
    def transaction_saved(
        transaction_id: int,
        amount: Decimal,
        transaction_type: str,
        created: bool,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.TRANSACTION_CREATED
                if created
                else AuditEventType.TRANSACTION_UPDATED
            ),
            entity_type="transactions",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction {'created' if created else 'updated'}: {transaction_type} {amount}",
            details={
                "amount": str(amount),
                "type": transaction_type,
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_deleted(
        transaction_id: int,
        goal_id: Optional[int],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            entity_type="transactions",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction {transaction_id} deleted",
            details={"saving_goal_id": goal_id},
            is_user_action=True,
        )

    @staticmethod
    def import_completed(
        created: int,
        failed: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMPORT_COMPLETED,
            severity=AuditSeverity.WARNING if failed else AuditSeverity.INFO,
            correlation_id=correlation_id,
            description=f"Import finished: {created} created, {failed} failed",
            details={"created": created, "failed": failed},
            is_user_action=True,
        )

    @staticmethod
    def entity_deleted(
        entity_type: str,
        entity_id: int,
        mode: Optional[str],
        removed: int,
        detached: int,
        refunded_amount: Decimal,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENTITY_DELETED,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Deleted {entity_type} {entity_id} ({mode or 'plain'})",
            details={
                "mode": mode,
                "removed_transactions": removed,
                "detached_transactions": detached,
                "refunded_amount": str(refunded_amount),
            },
            is_user_action=True,
        )

    @staticmethod
    def cascade_failed(
        entity_type: str,
        entity_id: int,
        deleted_ids: list[int],
        failed_id: Optional[int],
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CASCADE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=(
                f"Cascade delete of {entity_type} {entity_id} failed after "
                f"{len(deleted_ids)} deletions; cache reinstated"
            ),
            details={
                "deleted_ids": deleted_ids,
                "failed_id": failed_id,
            },
            error_message=error_message,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def remote_error(
        operation: str,
        error_message: str,
        status_code: Optional[int],
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"Ledger service error during {operation}",
            error_code=str(status_code) if status_code is not None else None,
            error_message=error_message,
            details={
                "operation": operation,
            },
            correlation_id=correlation_id,
        )
