"""
Ledger Reconciliation Engine - Source Package

Client-side engine for a personal-finance tracker. Keeps a local cache of
transactions, budgets and savings goals consistent with a remote ledger
service while mutations are applied optimistically.

DESIGN PRINCIPLES:
1. Speculate locally → Confirm remotely → Commit or roll back
2. Validate before touching the cache
3. The remote service is the final arbiter
4. Every mutation is auditable
5. The ledger service is swappable
"""

__version__ = "1.0.0"
__author__ = "Ledger Reconciliation Team"
