"""
============================================================================
Firi Ledger Sync v1.0.0
In-Memory Ledger Store
============================================================================

Same upsert semantics as SqlLedgerStore, held in dictionaries. Used by
tests and local dry runs. The encrypted secret is kept in its "\\x" hex
wire form, the way a text-based database gateway returns bytea columns.

============================================================================
"""

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from firi_sync.database.ledger_store import LedgerStore
from ledger_ingestion.schemas import (
    EXCHANGE_FIRI,
    ExchangeConnection,
    NormalizedEntry,
    RawRecord,
    RecordKind,
    SyncStatus,
    TxnType,
)


class InMemoryLedgerStore(LedgerStore):
    """Dictionary-backed LedgerStore guarded by one lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._raw: Dict[int, RawRecord] = {}
        self._raw_keys: Dict[Tuple[str, str, str, str], int] = {}
        self._normalized: Dict[int, NormalizedEntry] = {}
        self._connections: Dict[str, ExchangeConnection] = {}
        self._next_raw_id = 1
        self._next_entry_id = 1

    # Raw records

    def upsert_raw_records(self, records: Sequence[RawRecord]) -> List[RawRecord]:
        stored = []
        with self._lock:
            for record in records:
                key = record.natural_key
                raw_id = self._raw_keys.get(key)
                if raw_id is None:
                    raw_id = self._next_raw_id
                    self._next_raw_id += 1
                    self._raw_keys[key] = raw_id
                saved = replace(record, id=raw_id)
                self._raw[raw_id] = saved
                stored.append(saved)
        return stored

    def select_raw(
        self,
        connection_id: str,
        kind: Optional[RecordKind] = None
    ) -> List[RawRecord]:
        with self._lock:
            return [
                r for _, r in sorted(self._raw.items())
                if r.connection_id == connection_id and (kind is None or r.kind is kind)
            ]

    # Normalized entries

    def upsert_normalized_entries(self, entries: Sequence[NormalizedEntry]) -> int:
        with self._lock:
            for entry in entries:
                existing = self._normalized.get(entry.source_raw_id)
                if existing is not None:
                    entry_id = existing.id
                else:
                    entry_id = self._next_entry_id
                    self._next_entry_id += 1
                self._normalized[entry.source_raw_id] = replace(entry, id=entry_id)
        return len(entries)

    def select_normalized(
        self,
        connection_id: str,
        txn_types: Optional[Iterable[TxnType]] = None
    ) -> List[NormalizedEntry]:
        wanted = set(txn_types) if txn_types is not None else None
        with self._lock:
            return [
                e for _, e in sorted(self._normalized.items())
                if e.connection_id == connection_id
                and (wanted is None or e.txn_type in wanted)
            ]

    def delete_normalized(self, connection_id: str, source_raw_ids: Iterable[int]) -> int:
        deleted = 0
        with self._lock:
            for source_raw_id in source_raw_ids:
                entry = self._normalized.get(source_raw_id)
                if entry is not None and entry.connection_id == connection_id:
                    del self._normalized[source_raw_id]
                    deleted += 1
        return deleted

    # Connections

    def get_connection(self, connection_id: str) -> Optional[ExchangeConnection]:
        with self._lock:
            connection = self._connections.get(connection_id)
            return replace(connection) if connection is not None else None

    def find_connection(
        self,
        user_id: str,
        exchange: str = EXCHANGE_FIRI
    ) -> Optional[ExchangeConnection]:
        with self._lock:
            for connection in self._connections.values():
                if connection.user_id == user_id and connection.exchange == exchange:
                    return replace(connection)
        return None

    def upsert_connection(
        self,
        user_id: str,
        api_key: str,
        client_id: str,
        api_secret: str,
        exchange: str = EXCHANGE_FIRI
    ) -> ExchangeConnection:
        existing = self.find_connection(user_id, exchange)
        with self._lock:
            connection = ExchangeConnection(
                id=existing.id if existing is not None else str(uuid.uuid4()),
                user_id=user_id,
                exchange=exchange,
                api_key=api_key,
                client_id=client_id,
                api_secret=api_secret,
                sync_cursor={},
                last_synced_at=existing.last_synced_at if existing is not None else None,
                sync_metadata=existing.sync_metadata if existing is not None else {},
            )
            self._connections[connection.id] = connection
            return replace(connection)

    def update_connection_sync_state(
        self,
        connection_id: str,
        sync_status: SyncStatus,
        sync_error: Optional[str] = None,
        sync_cursor: Optional[Dict[str, Any]] = None,
        last_synced_at: Optional[datetime] = None,
        sync_metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return
            connection.sync_status = sync_status
            connection.sync_error = sync_error
            if sync_cursor is not None:
                connection.sync_cursor = sync_cursor
            if last_synced_at is not None:
                connection.last_synced_at = last_synced_at
            if sync_metadata is not None:
                connection.sync_metadata = sync_metadata
