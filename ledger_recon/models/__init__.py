"""
Data Models Package

This package contains all Pydantic models used by the reconciliation engine.
Everything the cache holds and everything exchanged with the ledger service
conforms to these schemas.
"""

from ledger_recon.models.ledger import (
    Budget,
    BudgetDeleteResult,
    BudgetLink,
    BudgetStatus,
    CollectionType,
    ContributionResult,
    DeleteResult,
    DeletionMode,
    DeletionResult,
    Direction,
    EntityKey,
    GoalLink,
    GoalStatus,
    ImportFailure,
    ImportReport,
    LedgerEntity,
    LinkKind,
    PageMeta,
    SavingsGoal,
    SavingsGoalCreate,
    Transaction,
    TransactionCreate,
    TransactionFilter,
    TransactionPage,
    TransactionReceipt,
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

__all__ = [
    # Ledger models
    "Budget",
    "BudgetDeleteResult",
    "BudgetLink",
    "BudgetStatus",
    "CollectionType",
    "ContributionResult",
    "DeleteResult",
    "DeletionMode",
    "DeletionResult",
    "Direction",
    "EntityKey",
    "GoalLink",
    "GoalStatus",
    "ImportFailure",
    "ImportReport",
    "LedgerEntity",
    "LinkKind",
    "PageMeta",
    "SavingsGoal",
    "SavingsGoalCreate",
    "Transaction",
    "TransactionCreate",
    "TransactionFilter",
    "TransactionPage",
    "TransactionReceipt",
    "TransactionType",
    "collection_of",
    "key_of",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
