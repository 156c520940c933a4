"""Audit logging package."""

from ledger_recon.audit.logger import AuditLogger, create_correlation_id
from ledger_recon.audit.storage import AuditStorageInterface, InMemoryAuditStorage

__all__ = [
    "AuditLogger",
    "AuditStorageInterface",
    "InMemoryAuditStorage",
    "create_correlation_id",
]
