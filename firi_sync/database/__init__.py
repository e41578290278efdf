# ============================================================================
# Firi Ledger Sync v1.0.0
# Database Module - Ledger Persistence
# ============================================================================

from firi_sync.database.ledger_store import LedgerStore, SqlLedgerStore, LEDGER_SCHEMA_SQL
from firi_sync.database.memory_store import InMemoryLedgerStore

__all__ = [
    'LedgerStore',
    'SqlLedgerStore',
    'InMemoryLedgerStore',
    'LEDGER_SCHEMA_SQL',
]
