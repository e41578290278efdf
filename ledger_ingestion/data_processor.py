"""
============================================================================
Firi Data Processor - Raw Ingestion, Normalization and Ledger Repair
============================================================================

Reliability Level: L6 Critical
Input Constraints: JSON lists returned by FiriSyncManager
Side Effects: LedgerStore writes

PROCESSING CHAIN (per kind, each isolated):
    Raw JSON -> RawRecord (natural key) -> upsert -> ids -> normalize ->
    upsert NormalizedEntry (key source_raw_id)

GLOBAL PASS (after all kinds):
    Every trade-like row and every order of the CONNECTION, not only the
    current batch, is re-read so a trade match whose order arrived in an
    earlier sync still resolves. Fee rows are re-derived from the stored
    raw transactions, merged into their trades, and the absorbed fee rows
    are deleted.

    Cost: the global pass re-scans the connection's trade and order
    history on every sync. Linear in history size.

ERROR POLICY:
    A failure in one kind is recorded and the remaining kinds still run.
    Rows already written stay written; the next sync repairs them.

============================================================================
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from firi_sync.database.ledger_store import LedgerStore
from firi_sync.errors import FiriSyncError
from firi_sync.exchange.market_directory import MarketInfo
from firi_sync.observability import metrics
from ledger_ingestion.ledger_normalizer import (
    NormalizerGapCode,
    enrich_trade_matches,
    find_unresolved_trade_matches,
    merge_fees,
    normalize,
    orders_from_raw,
)
from ledger_ingestion.schemas import (
    PROVIDER_FIRI,
    TRADE_LIKE_TYPES,
    NormalizedEntry,
    RawRecord,
    RecordKind,
    SyncCursorSet,
    TxnType,
    parse_timestamp,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Payload field carrying the event time, per kind
OCCURRED_AT_FIELDS = {
    RecordKind.TRANSACTION: "date",
    RecordKind.DEPOSIT: "deposited_at",
    RecordKind.ORDER: "created_at",
}


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class ProcessedData:
    """Outcome of one processing step."""
    raw_count: int = 0
    normalized_count: int = 0
    skipped: int = 0
    needs_review: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw_count": self.raw_count,
            "normalized_count": self.normalized_count,
            "skipped": self.skipped,
            "needs_review": self.needs_review,
            "errors": list(self.errors),
        }


@dataclass
class ProcessingSummary:
    """
    Result of process_all_data().

    total_normalized counts rows written by the per-kind steps; rows
    rewritten by the global pass are reported under details['enrichment'].
    """
    total_raw: int
    total_normalized: int
    errors: List[str]
    details: Dict[str, ProcessedData]
    needs_review: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_raw": self.total_raw,
            "total_normalized": self.total_normalized,
            "errors": list(self.errors),
            "needs_review": self.needs_review,
            "details": {name: step.to_dict() for name, step in self.details.items()},
        }


# =============================================================================
# Data Processor
# =============================================================================

class FiriDataProcessor:
    """
    Persists one sync's records for one connection.

    Reliability Level: L6 Critical
    Thread Safety: One processor per sync; the store handles concurrency
    """

    def __init__(
        self,
        store: LedgerStore,
        user_id: str,
        connection_id: str,
        correlation_id: Optional[str] = None
    ):
        self.store = store
        self.user_id = user_id
        self.connection_id = connection_id
        self.correlation_id = correlation_id

    def build_raw_records(
        self,
        kind: RecordKind,
        payloads: Iterable[Any]
    ) -> List[RawRecord]:
        """
        Wrap raw JSON items as RawRecords.

        Items without an exchange id have no natural key and are skipped.
        """
        records = []
        time_field = OCCURRED_AT_FIELDS[kind]
        for payload in payloads:
            if not isinstance(payload, Mapping):
                continue
            provider_tx_id = payload.get("id")
            if provider_tx_id is None or str(provider_tx_id) == "":
                continue
            records.append(RawRecord(
                provider=PROVIDER_FIRI,
                connection_id=self.connection_id,
                user_id=self.user_id,
                kind=kind,
                provider_tx_id=str(provider_tx_id),
                occurred_at=parse_timestamp(payload.get(time_field)),
                payload=dict(payload),
            ))
        return records

    def process_kind(
        self,
        kind: RecordKind,
        payloads: Sequence[Any],
        markets: Optional[Mapping[str, MarketInfo]] = None
    ) -> ProcessedData:
        """Upsert raw rows of one kind, then their normalized rows."""
        result = ProcessedData()
        if not payloads:
            return result

        records = self.build_raw_records(kind, payloads)
        result.skipped = len(payloads) - len(records)
        if result.skipped:
            logger.warning(
                f"[PROC] Records without id skipped | kind={kind.value} | "
                f"count={result.skipped} | correlation_id={self.correlation_id}"
            )

        try:
            stored = self.store.upsert_raw_records(records)
            result.raw_count = len(stored)
            metrics.record_ingested(kind.value, len(stored))

            entries: List[NormalizedEntry] = []
            for raw in stored:
                entry = normalize(raw, markets)
                if entry is None:
                    metrics.record_normalization_gap(NormalizerGapCode.UNRECOGNIZED)
                    continue
                entries.append(entry)

            result.normalized_count = self.store.upsert_normalized_entries(entries)
        except (FiriSyncError, ValueError, RuntimeError) as e:
            result.errors.append(f"{kind.value} processing error: {e}")
            logger.error(
                f"[PROC] Kind failed | kind={kind.value} | "
                f"error_type={type(e).__name__} | correlation_id={self.correlation_id}"
            )
        except Exception as e:
            # Driver errors (SQLAlchemy, network) must not stop the other kinds
            result.errors.append(f"{kind.value} processing error: {type(e).__name__}")
            logger.exception(
                f"[PROC] Kind failed unexpectedly | kind={kind.value} | "
                f"correlation_id={self.correlation_id}"
            )

        logger.info(
            f"[PROC] Kind processed | kind={kind.value} | raw={result.raw_count} | "
            f"normalized={result.normalized_count} | correlation_id={self.correlation_id}"
        )
        return result

    def enrich_and_merge_fees(
        self,
        markets: Optional[Mapping[str, MarketInfo]] = None
    ) -> ProcessedData:
        """
        Connection-wide repair: enrich trade matches, merge fee rows.

        Returns:
            ProcessedData with normalized_count = rows rewritten
        """
        result = ProcessedData()
        try:
            trades = self.store.select_normalized(self.connection_id, TRADE_LIKE_TYPES)
            orders = orders_from_raw(self.store.select_raw(self.connection_id, RecordKind.ORDER))
            enriched = enrich_trade_matches(trades, orders, markets)

            # Fee rows are rebuilt from raw so already-absorbed fees still count
            fee_entries = []
            for raw in self.store.select_raw(self.connection_id, RecordKind.TRANSACTION):
                entry = normalize(raw, markets)
                if entry is not None and entry.txn_type is TxnType.FEE:
                    fee_entries.append(entry)

            combined = enriched + fee_entries
            merged = merge_fees(combined)

            surviving = {e.source_raw_id for e in merged}
            absorbed = [e.source_raw_id for e in fee_entries if e.source_raw_id not in surviving]
            result.normalized_count = self.store.upsert_normalized_entries(merged)
            if absorbed:
                self.store.delete_normalized(self.connection_id, absorbed)

            unresolved = find_unresolved_trade_matches(merged)
            if unresolved:
                metrics.record_normalization_gap(
                    NormalizerGapCode.UNRESOLVED_MATCH, len(unresolved)
                )
                logger.warning(
                    f"[{NormalizerGapCode.UNRESOLVED_MATCH}] Trade matches need review | "
                    f"count={len(unresolved)} | correlation_id={self.correlation_id}"
                )
            result.needs_review = len(unresolved)

            logger.info(
                f"[PROC] Enrichment complete | trades={len(trades)} | orders={len(orders)} | "
                f"fees_absorbed={len(absorbed)} | needs_review={len(unresolved)} | "
                f"correlation_id={self.correlation_id}"
            )
        except (FiriSyncError, ValueError, RuntimeError) as e:
            result.errors.append(f"enrichment error: {e}")
            logger.error(
                f"[PROC] Enrichment failed | error_type={type(e).__name__} | "
                f"correlation_id={self.correlation_id}"
            )
        except Exception as e:
            result.errors.append(f"enrichment error: {type(e).__name__}")
            logger.exception(
                f"[PROC] Enrichment failed unexpectedly | correlation_id={self.correlation_id}"
            )
        return result

    def process_all_data(
        self,
        transactions: Sequence[Any],
        deposits: Sequence[Any],
        orders: Sequence[Any],
        cursors: Optional[SyncCursorSet] = None,
        markets: Optional[Mapping[str, MarketInfo]] = None
    ) -> ProcessingSummary:
        """
        Persist one sync's output and repair the connection's ledger.

        Args:
            transactions, deposits, orders: Raw JSON items per stream
            cursors: Cursor set of this sync (logged only; the sync service
                     persists it)
            markets: Market map for rows without an inline tag

        Returns:
            ProcessingSummary; errors list is empty on full success
        """
        details = {
            "transactions": self.process_kind(RecordKind.TRANSACTION, transactions, markets),
            "deposits": self.process_kind(RecordKind.DEPOSIT, deposits, markets),
            "orders": self.process_kind(RecordKind.ORDER, orders, markets),
        }
        details["enrichment"] = self.enrich_and_merge_fees(markets)

        kinds = ("transactions", "deposits", "orders")
        errors = [error for step in details.values() for error in step.errors]
        summary = ProcessingSummary(
            total_raw=sum(details[k].raw_count for k in kinds),
            total_normalized=sum(details[k].normalized_count for k in kinds),
            errors=errors,
            details=details,
            needs_review=details["enrichment"].needs_review,
        )

        logger.info(
            f"[PROC] Processing complete | total_raw={summary.total_raw} | "
            f"total_normalized={summary.total_normalized} | errors={len(errors)} | "
            f"last_sync={cursors.last_sync if cursors else None} | "
            f"correlation_id={self.correlation_id}"
        )
        return summary
