"""
============================================================================
Firi Ledger Sync v1.0.0
Ledger Store - Persistence Boundary for Raw and Normalized Records
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Amounts are Decimal; payloads are JSON-serializable
Side Effects: Database writes

TABLES:
- exchange_connections:     one row per (user_id, exchange)
- raw_transactions:         natural key (connection_id, provider,
                            provider_tx_id, kind)
- normalized_transactions:  one row per raw row (source_raw_id unique)

Every write is an upsert so re-ingesting the same exchange data never
duplicates rows. Conflicts are resolved here, not in application code.

============================================================================
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Engine

from firi_sync.crypto.wire_codec import from_wire
from ledger_ingestion.schemas import (
    EXCHANGE_FIRI,
    ExchangeConnection,
    NormalizedEntry,
    RawRecord,
    RecordKind,
    SyncStatus,
    TxnType,
)

logger = logging.getLogger(__name__)


# ============================================================================
# SCHEMA
# ============================================================================

LEDGER_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS exchange_connections (
    id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id         TEXT NOT NULL,
    exchange        TEXT NOT NULL,
    api_key         TEXT NOT NULL,
    client_id       TEXT NOT NULL,
    api_secret      BYTEA NOT NULL,
    sync_cursor     JSONB DEFAULT '{}'::jsonb,
    last_synced_at  TIMESTAMPTZ,
    sync_status     TEXT NOT NULL DEFAULT 'idle'
                    CHECK (sync_status IN ('idle', 'syncing', 'completed', 'error')),
    sync_error      TEXT,
    sync_metadata   JSONB DEFAULT '{}'::jsonb,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (user_id, exchange)
);

CREATE TABLE IF NOT EXISTS raw_transactions (
    id              BIGSERIAL PRIMARY KEY,
    user_id         TEXT NOT NULL,
    connection_id   UUID NOT NULL REFERENCES exchange_connections(id) ON DELETE CASCADE,
    provider        TEXT NOT NULL,
    provider_tx_id  TEXT NOT NULL,
    kind            TEXT NOT NULL CHECK (kind IN ('transaction', 'deposit', 'order')),
    occurred_at     TIMESTAMPTZ,
    payload         JSONB NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (connection_id, provider, provider_tx_id, kind)
);

CREATE TABLE IF NOT EXISTS normalized_transactions (
    id              BIGSERIAL PRIMARY KEY,
    user_id         TEXT NOT NULL,
    connection_id   UUID NOT NULL REFERENCES exchange_connections(id) ON DELETE CASCADE,
    source_raw_id   BIGINT NOT NULL UNIQUE REFERENCES raw_transactions(id) ON DELETE CASCADE,
    txn_type        TEXT NOT NULL,
    base_asset      TEXT,
    base_amount     NUMERIC,
    quote_asset     TEXT,
    quote_amount    NUMERIC,
    fee_asset       TEXT,
    fee_amount      NUMERIC CHECK (fee_amount IS NULL OR fee_amount >= 0),
    price           NUMERIC,
    txid            TEXT,
    order_id        TEXT,
    occurred_at     TIMESTAMPTZ,
    metadata        JSONB,
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_raw_transactions_connection_kind
    ON raw_transactions(connection_id, kind);
CREATE INDEX IF NOT EXISTS idx_normalized_connection_type
    ON normalized_transactions(connection_id, txn_type);
CREATE INDEX IF NOT EXISTS idx_normalized_order_id
    ON normalized_transactions(connection_id, order_id);
"""


def _json(value: Any) -> str:
    return json.dumps(value if value is not None else {}, default=str)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


# ============================================================================
# ABSTRACT STORE
# ============================================================================

class LedgerStore(ABC):
    """
    Persistence interface used by the data processor and sync service.

    Implementations must give upsert semantics on the natural keys and
    return selections ordered by id / source_raw_id.
    """

    @abstractmethod
    def upsert_raw_records(self, records: Sequence[RawRecord]) -> List[RawRecord]:
        """Upsert on the natural key; returns the records with ids set."""

    @abstractmethod
    def upsert_normalized_entries(self, entries: Sequence[NormalizedEntry]) -> int:
        """Upsert on source_raw_id; returns rows written."""

    @abstractmethod
    def select_normalized(
        self,
        connection_id: str,
        txn_types: Optional[Iterable[TxnType]] = None
    ) -> List[NormalizedEntry]:
        """Ledger rows of a connection, optionally filtered by type."""

    @abstractmethod
    def select_raw(
        self,
        connection_id: str,
        kind: Optional[RecordKind] = None
    ) -> List[RawRecord]:
        """Raw rows of a connection, optionally filtered by kind."""

    @abstractmethod
    def delete_normalized(self, connection_id: str, source_raw_ids: Iterable[int]) -> int:
        """Delete ledger rows by source_raw_id; returns rows deleted."""

    @abstractmethod
    def get_connection(self, connection_id: str) -> Optional[ExchangeConnection]:
        """Connection by id or None."""

    @abstractmethod
    def find_connection(
        self,
        user_id: str,
        exchange: str = EXCHANGE_FIRI
    ) -> Optional[ExchangeConnection]:
        """The user's connection for an exchange or None."""

    @abstractmethod
    def upsert_connection(
        self,
        user_id: str,
        api_key: str,
        client_id: str,
        api_secret: str,
        exchange: str = EXCHANGE_FIRI
    ) -> ExchangeConnection:
        """
        Create or replace credentials for (user_id, exchange).

        api_secret is the wire form of the encrypted blob. Replacing
        credentials resets the sync state.
        """

    @abstractmethod
    def update_connection_sync_state(
        self,
        connection_id: str,
        sync_status: SyncStatus,
        sync_error: Optional[str] = None,
        sync_cursor: Optional[Dict[str, Any]] = None,
        last_synced_at: Optional[datetime] = None,
        sync_metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Update status; cursor/timestamp/metadata only when given."""


# ============================================================================
# POSTGRESQL STORE
# ============================================================================

class SqlLedgerStore(LedgerStore):
    """
    PostgreSQL implementation on a SQLAlchemy engine.

    Reliability Level: SOVEREIGN TIER
    Thread Safety: Engine pool is thread-safe; each call uses its own
                   connection and transaction
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def create_schema(self) -> None:
        """Create tables and indexes if missing."""
        with self.engine.begin() as conn:
            for statement in LEDGER_SCHEMA_SQL.split(";"):
                if statement.strip():
                    conn.execute(text(statement))
        logger.info("[FIRI-DB] Ledger schema ensured")

    # ------------------------------------------------------------------------
    # Raw records
    # ------------------------------------------------------------------------

    def upsert_raw_records(self, records: Sequence[RawRecord]) -> List[RawRecord]:
        if not records:
            return []

        sql = text("""
            INSERT INTO raw_transactions (
                user_id, connection_id, provider, provider_tx_id, kind,
                occurred_at, payload
            ) VALUES (
                :user_id, :connection_id, :provider, :provider_tx_id, :kind,
                :occurred_at, CAST(:payload AS JSONB)
            )
            ON CONFLICT (connection_id, provider, provider_tx_id, kind)
            DO UPDATE SET payload = EXCLUDED.payload,
                          occurred_at = EXCLUDED.occurred_at
            RETURNING id
        """)

        stored: List[RawRecord] = []
        with self.engine.begin() as conn:
            for record in records:
                row = conn.execute(sql, {
                    "user_id": record.user_id,
                    "connection_id": record.connection_id,
                    "provider": record.provider,
                    "provider_tx_id": record.provider_tx_id,
                    "kind": record.kind.value,
                    "occurred_at": record.occurred_at,
                    "payload": _json(record.payload),
                }).fetchone()
                stored.append(RawRecord(
                    id=row[0],
                    provider=record.provider,
                    connection_id=record.connection_id,
                    user_id=record.user_id,
                    kind=record.kind,
                    provider_tx_id=record.provider_tx_id,
                    occurred_at=record.occurred_at,
                    payload=record.payload,
                ))
        return stored

    def select_raw(
        self,
        connection_id: str,
        kind: Optional[RecordKind] = None
    ) -> List[RawRecord]:
        query = """
            SELECT id, provider, connection_id, user_id, kind, provider_tx_id,
                   occurred_at, payload
            FROM raw_transactions
            WHERE connection_id = :connection_id
        """
        params: Dict[str, Any] = {"connection_id": connection_id}
        if kind is not None:
            query += " AND kind = :kind"
            params["kind"] = kind.value
        query += " ORDER BY id"

        with self.engine.connect() as conn:
            rows = conn.execute(text(query), params).fetchall()

        return [
            RawRecord(
                id=row.id,
                provider=row.provider,
                connection_id=str(row.connection_id),
                user_id=row.user_id,
                kind=RecordKind(row.kind),
                provider_tx_id=row.provider_tx_id,
                occurred_at=row.occurred_at,
                payload=_load_json(row.payload) or {},
            )
            for row in rows
        ]

    # ------------------------------------------------------------------------
    # Normalized entries
    # ------------------------------------------------------------------------

    def upsert_normalized_entries(self, entries: Sequence[NormalizedEntry]) -> int:
        if not entries:
            return 0

        sql = text("""
            INSERT INTO normalized_transactions (
                user_id, connection_id, source_raw_id, txn_type,
                base_asset, base_amount, quote_asset, quote_amount,
                fee_asset, fee_amount, price, txid, order_id,
                occurred_at, metadata
            ) VALUES (
                :user_id, :connection_id, :source_raw_id, :txn_type,
                :base_asset, :base_amount, :quote_asset, :quote_amount,
                :fee_asset, :fee_amount, :price, :txid, :order_id,
                :occurred_at, CAST(:metadata AS JSONB)
            )
            ON CONFLICT (source_raw_id) DO UPDATE SET
                txn_type = EXCLUDED.txn_type,
                base_asset = EXCLUDED.base_asset,
                base_amount = EXCLUDED.base_amount,
                quote_asset = EXCLUDED.quote_asset,
                quote_amount = EXCLUDED.quote_amount,
                fee_asset = EXCLUDED.fee_asset,
                fee_amount = EXCLUDED.fee_amount,
                price = EXCLUDED.price,
                txid = EXCLUDED.txid,
                order_id = EXCLUDED.order_id,
                occurred_at = EXCLUDED.occurred_at,
                metadata = EXCLUDED.metadata,
                updated_at = NOW()
        """)

        params = [
            {
                "user_id": e.user_id,
                "connection_id": e.connection_id,
                "source_raw_id": e.source_raw_id,
                "txn_type": e.txn_type.value,
                "base_asset": e.base_asset,
                "base_amount": e.base_amount,
                "quote_asset": e.quote_asset,
                "quote_amount": e.quote_amount,
                "fee_asset": e.fee_asset,
                "fee_amount": e.fee_amount,
                "price": e.price,
                "txid": e.txid,
                "order_id": e.order_id,
                "occurred_at": e.occurred_at,
                "metadata": _json(e.metadata),
            }
            for e in entries
        ]

        with self.engine.begin() as conn:
            conn.execute(sql, params)
        return len(params)

    def select_normalized(
        self,
        connection_id: str,
        txn_types: Optional[Iterable[TxnType]] = None
    ) -> List[NormalizedEntry]:
        query = """
            SELECT id, user_id, connection_id, source_raw_id, txn_type,
                   base_asset, base_amount, quote_asset, quote_amount,
                   fee_asset, fee_amount, price, txid, order_id,
                   occurred_at, metadata
            FROM normalized_transactions
            WHERE connection_id = :connection_id
        """
        params: Dict[str, Any] = {"connection_id": connection_id}
        if txn_types is not None:
            params["txn_types"] = [t.value for t in txn_types]
            query += " AND txn_type = ANY(:txn_types)"
        query += " ORDER BY source_raw_id"

        with self.engine.connect() as conn:
            rows = conn.execute(text(query), params).fetchall()

        return [
            NormalizedEntry(
                id=row.id,
                user_id=row.user_id,
                connection_id=str(row.connection_id),
                source_raw_id=row.source_raw_id,
                txn_type=TxnType(row.txn_type),
                base_asset=row.base_asset,
                base_amount=_decimal(row.base_amount),
                quote_asset=row.quote_asset,
                quote_amount=_decimal(row.quote_amount),
                fee_asset=row.fee_asset,
                fee_amount=_decimal(row.fee_amount),
                price=_decimal(row.price),
                txid=row.txid,
                order_id=row.order_id,
                occurred_at=row.occurred_at,
                metadata=_load_json(row.metadata) or {},
            )
            for row in rows
        ]

    def delete_normalized(self, connection_id: str, source_raw_ids: Iterable[int]) -> int:
        ids = list(source_raw_ids)
        if not ids:
            return 0
        with self.engine.begin() as conn:
            result = conn.execute(text("""
                DELETE FROM normalized_transactions
                WHERE connection_id = :connection_id
                  AND source_raw_id = ANY(:ids)
            """), {"connection_id": connection_id, "ids": ids})
        return result.rowcount

    # ------------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------------

    _CONNECTION_COLUMNS = """
        id, user_id, exchange, api_key, client_id, api_secret, sync_cursor,
        last_synced_at, sync_status, sync_error, sync_metadata
    """

    @staticmethod
    def _connection_from_row(row) -> ExchangeConnection:
        return ExchangeConnection(
            id=str(row.id),
            user_id=row.user_id,
            exchange=row.exchange,
            api_key=row.api_key,
            client_id=row.client_id,
            api_secret=row.api_secret,
            sync_cursor=_load_json(row.sync_cursor),
            last_synced_at=row.last_synced_at,
            sync_status=SyncStatus(row.sync_status),
            sync_error=row.sync_error,
            sync_metadata=_load_json(row.sync_metadata) or {},
        )

    def get_connection(self, connection_id: str) -> Optional[ExchangeConnection]:
        with self.engine.connect() as conn:
            row = conn.execute(text(
                f"SELECT {self._CONNECTION_COLUMNS} FROM exchange_connections "
                f"WHERE id = CAST(:id AS UUID)"
            ), {"id": connection_id}).fetchone()
        return self._connection_from_row(row) if row else None

    def find_connection(
        self,
        user_id: str,
        exchange: str = EXCHANGE_FIRI
    ) -> Optional[ExchangeConnection]:
        with self.engine.connect() as conn:
            row = conn.execute(text(
                f"SELECT {self._CONNECTION_COLUMNS} FROM exchange_connections "
                f"WHERE user_id = :user_id AND exchange = :exchange"
            ), {"user_id": user_id, "exchange": exchange}).fetchone()
        return self._connection_from_row(row) if row else None

    def upsert_connection(
        self,
        user_id: str,
        api_key: str,
        client_id: str,
        api_secret: str,
        exchange: str = EXCHANGE_FIRI
    ) -> ExchangeConnection:
        sql = text(f"""
            INSERT INTO exchange_connections (
                user_id, exchange, api_key, client_id, api_secret
            ) VALUES (
                :user_id, :exchange, :api_key, :client_id, :api_secret
            )
            ON CONFLICT (user_id, exchange) DO UPDATE SET
                api_key = EXCLUDED.api_key,
                client_id = EXCLUDED.client_id,
                api_secret = EXCLUDED.api_secret,
                sync_cursor = '{{}}'::jsonb,
                sync_status = 'idle',
                sync_error = NULL,
                updated_at = NOW()
            RETURNING {self._CONNECTION_COLUMNS}
        """)
        with self.engine.begin() as conn:
            row = conn.execute(sql, {
                "user_id": user_id,
                "exchange": exchange,
                "api_key": api_key,
                "client_id": client_id,
                # bytea column takes raw bytes, not the text wire form
                "api_secret": from_wire(api_secret),
            }).fetchone()
        return self._connection_from_row(row)

    def update_connection_sync_state(
        self,
        connection_id: str,
        sync_status: SyncStatus,
        sync_error: Optional[str] = None,
        sync_cursor: Optional[Dict[str, Any]] = None,
        last_synced_at: Optional[datetime] = None,
        sync_metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        assignments = ["sync_status = :sync_status", "sync_error = :sync_error", "updated_at = NOW()"]
        params: Dict[str, Any] = {
            "id": connection_id,
            "sync_status": sync_status.value,
            "sync_error": sync_error,
        }
        if sync_cursor is not None:
            assignments.append("sync_cursor = CAST(:sync_cursor AS JSONB)")
            params["sync_cursor"] = _json(sync_cursor)
        if last_synced_at is not None:
            assignments.append("last_synced_at = :last_synced_at")
            params["last_synced_at"] = last_synced_at
        if sync_metadata is not None:
            assignments.append("sync_metadata = CAST(:sync_metadata AS JSONB)")
            params["sync_metadata"] = _json(sync_metadata)

        with self.engine.begin() as conn:
            conn.execute(text(
                f"UPDATE exchange_connections SET {', '.join(assignments)} "
                f"WHERE id = CAST(:id AS UUID)"
            ), params)
