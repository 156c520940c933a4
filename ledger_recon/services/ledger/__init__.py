"""
Ledger Service Package

Provides the abstract contract for the remote ledger service and its
implementations: HTTP for the real API, in-memory for tests and offline use.
"""

from ledger_recon.services.ledger.interface import (
    ConnectionError,
    LedgerServiceInterface,
    NotFoundError,
    RemoteError,
)
from ledger_recon.services.ledger.http_client import HttpLedgerService
from ledger_recon.services.ledger.memory import InMemoryLedgerService

__all__ = [
    # Interface
    "LedgerServiceInterface",
    # Exceptions
    "ConnectionError",
    "NotFoundError",
    "RemoteError",
    # Implementations
    "HttpLedgerService",
    "InMemoryLedgerService",
]
