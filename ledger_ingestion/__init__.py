"""
============================================================================
Firi Ledger Sync v1.0.0
Ledger Ingestion Package - Firi History to Canonical Ledger
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All amounts use decimal.Decimal
Traceability: All operations include correlation_id for audit

PIPELINE (data_processor and sync_service import the persistence
layer and are imported from their modules directly):
    FiriSyncManager     paginated retrieval of transactions, deposits and
                        orders with per-stream cursors
    FiriDataProcessor   raw upsert, normalization, connection-wide trade
                        enrichment and fee merge
    FiriSyncService     connect / sync operations with status bookkeeping

NORMALIZER:
    Pure functions (normalize, enrich_trade_matches, merge_fees,
    build_ledger) with no I/O, usable without a database.

============================================================================
"""

from ledger_ingestion.schemas import (
    ExchangeConnection,
    NormalizedEntry,
    RawRecord,
    RecordKind,
    SyncCursor,
    SyncCursorSet,
    SyncStatus,
    SyncStream,
    TxnType,
)
from ledger_ingestion.ledger_normalizer import (
    build_ledger,
    enrich_trade_matches,
    find_unresolved_trade_matches,
    merge_fees,
    normalize,
)
from ledger_ingestion.sync_manager import FiriSyncManager, SyncOptions, SyncResult

__all__ = [
    # Schemas
    'ExchangeConnection',
    'NormalizedEntry',
    'RawRecord',
    'RecordKind',
    'SyncCursor',
    'SyncCursorSet',
    'SyncStatus',
    'SyncStream',
    'TxnType',
    # Normalizer
    'build_ledger',
    'enrich_trade_matches',
    'find_unresolved_trade_matches',
    'merge_fees',
    'normalize',
    # Sync
    'FiriSyncManager',
    'SyncOptions',
    'SyncResult',
]
