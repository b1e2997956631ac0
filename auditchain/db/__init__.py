"""
Database Layer for the Audit Ledger

Provides:
- LedgerStore abstraction (InMemory for dev/tests, Postgres for prod)
- PostgreSQL schema (schema.sql) with insert-only grants
- Connection configuration

PostgresLedgerStore lives in auditchain.db.postgres and is imported only
when the psycopg2 driver is selected.
"""

from .store import (
    AppendContext,
    ChainTip,
    InMemoryLedgerStore,
    LedgerStore,
)
from .config import (
    DatabaseConfig,
    LedgerStoreDriver,
    get_ledgerstore_driver,
)

__all__ = [
    "AppendContext",
    "ChainTip",
    "InMemoryLedgerStore",
    "LedgerStore",
    "DatabaseConfig",
    "LedgerStoreDriver",
    "get_ledgerstore_driver",
]
