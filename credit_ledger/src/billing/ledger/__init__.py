"""
Ledger Store Module

Persistent storage for grants, the transaction log, subscriptions, pending
checkouts and webhook events.

Usage:
    from credit_ledger.src.billing.ledger import get_ledger_store

    store = get_ledger_store()
"""

from functools import lru_cache

from .interfaces import LedgerStore, LedgerTransaction
from .memory_store import MemoryLedgerStore
from .sql_store import SqlLedgerStore


@lru_cache
def get_ledger_store() -> LedgerStore:
    """Process-wide SQL ledger store bound to the configured database."""
    from credit_ledger.database.db import async_db_session

    return SqlLedgerStore(async_db_session)


__all__ = [
    'LedgerStore',
    'LedgerTransaction',
    'MemoryLedgerStore',
    'SqlLedgerStore',
    'get_ledger_store',
]
