"""Services package."""

from ledger_recon.services.ledger import (
    ConnectionError,
    HttpLedgerService,
    InMemoryLedgerService,
    LedgerServiceInterface,
    NotFoundError,
    RemoteError,
)

__all__ = [
    "ConnectionError",
    "HttpLedgerService",
    "InMemoryLedgerService",
    "LedgerServiceInterface",
    "NotFoundError",
    "RemoteError",
]
