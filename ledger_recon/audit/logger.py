"""
Audit Logger

DESIGN DECISION: Every significant action in the engine is logged.
This provides:
1. Traceability of each optimistic mutation
2. Debugging capability when a rollback happens
3. User can see history of their interactions

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from ledger_recon.audit.storage import AuditStorageInterface
from ledger_recon.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for history shown to the user)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("ledger_recon.audit")

    @property
    def storage(self) -> Optional[AuditStorageInterface]:
        return self._storage

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage is not None:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_cache_hydrated(
        self,
        transactions: int,
        budgets: int,
        goals: int,
        correlation_id: UUID,
    ) -> None:
        """Log initial population of the cache."""
        await self.log(AuditEventBuilder.cache_hydrated(
            transactions=transactions,
            budgets=budgets,
            goals=goals,
            correlation_id=correlation_id,
        ))

    async def log_rollback(
        self,
        token_id: UUID,
        label: str,
        keys: list[str],
        correlation_id: Optional[UUID],
        reason: Optional[str] = None,
    ) -> None:
        """Log a rolled back optimistic mutation."""
        await self.log(AuditEventBuilder.mutation_rolled_back(
            token_id=token_id,
            label=label,
            keys=keys,
            correlation_id=correlation_id,
            reason=reason,
        ))

    async def log_validation_rejected(
        self,
        operation: str,
        error_code: str,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an intent refused before any cache write."""
        await self.log(AuditEventBuilder.validation_rejected(
            operation=operation,
            error_code=error_code,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
        ))

    async def log_goal_balance_changed(
        self,
        goal_id: int,
        direction: str,
        amount: Decimal,
        new_amount: Decimal,
        transaction_id: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.goal_balance_changed(
            goal_id=goal_id,
            direction=direction,
            amount=amount,
            new_amount=new_amount,
            transaction_id=transaction_id,
            correlation_id=correlation_id,
        ))

    async def log_goal_removed_by_service(
        self,
        goal_id: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.goal_removed_by_service(
            goal_id=goal_id,
            correlation_id=correlation_id,
        ))

    async def log_goal_saved(
        self,
        goal_id: int,
        name: str,
        created: bool,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.goal_saved(
            goal_id=goal_id,
            name=name,
            created=created,
            correlation_id=correlation_id,
        ))

    async def log_transaction_saved(
        self,
        transaction_id: int,
        amount: Decimal,
        transaction_type: str,
        created: bool,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_saved(
            transaction_id=transaction_id,
            amount=amount,
            transaction_type=transaction_type,
            created=created,
            correlation_id=correlation_id,
        ))

    async def log_transaction_deleted(
        self,
        transaction_id: int,
        goal_id: Optional[int],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_deleted(
            transaction_id=transaction_id,
            goal_id=goal_id,
            correlation_id=correlation_id,
        ))

    async def log_import_completed(
        self,
        created: int,
        failed: int,
        correlation_id: UUID,
    ) -> None:
        """Log the outcome of a batch import."""
        await self.log(AuditEventBuilder.import_completed(
            created=created,
            failed=failed,
            correlation_id=correlation_id,
        ))

    async def log_entity_deleted(
        self,
        entity_type: str,
        entity_id: int,
        mode: Optional[str],
        removed: int,
        detached: int,
        refunded_amount: Decimal,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.entity_deleted(
            entity_type=entity_type,
            entity_id=entity_id,
            mode=mode,
            removed=removed,
            detached=detached,
            refunded_amount=refunded_amount,
            correlation_id=correlation_id,
        ))

    async def log_cascade_failed(
        self,
        entity_type: str,
        entity_id: int,
        deleted_ids: list[int],
        failed_id: Optional[int],
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log a cascade that stopped part way."""
        await self.log(AuditEventBuilder.cascade_failed(
            entity_type=entity_type,
            entity_id=entity_id,
            deleted_ids=deleted_ids,
            failed_id=failed_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_remote_error(
        self,
        operation: str,
        error_message: str,
        status_code: Optional[int],
        correlation_id: Optional[UUID],
    ) -> None:
        """Log a failed call to the ledger service."""
        await self.log(AuditEventBuilder.remote_error(
            operation=operation,
            error_message=error_message,
            status_code=status_code,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., a contribution).
    Pass it through all subsequent operations.
    """
    return uuid4()
