"""
============================================================================
Ledger Normalizer - Firi Records to Canonical Ledger Entries
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All amounts use decimal.Decimal
Traceability: Every entry carries source_raw_id and the original payload

LEDGER NORMALIZER:
    Three pure passes turn raw Firi records into ledger rows:

    1. normalize()             one raw record -> zero or one entry
    2. enrich_trade_matches()  provisional trade_match rows take their
                               terms from the matching order
    3. merge_fees()            standalone fee rows are absorbed into the
                               trade row that shares their order_id

SIGN CONVENTION (user perspective):
    buy  (side=bid):  base +amount, quote -(amount * price)
    sell (side=ask):  base -amount, quote +(amount * price)
    deposit / bonus / rebate: base +abs(amount)
    withdrawal / fee:         base -abs(amount)

ASSET RESOLUTION:
    Base and quote assets come from the market directory (or the inline
    _marketInfo tag written during sync). Market identifiers are never
    split into symbols; an unknown market leaves assets and amounts null.

Key Constraints:
- No I/O in this module
- Unrecognized shapes return None, never raise
- Re-running all passes on the same input yields the same rows
============================================================================
"""

import logging
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from firi_sync.exchange.market_directory import MarketInfo
from ledger_ingestion.schemas import (
    DepositPayload,
    NormalizedEntry,
    OrderPayload,
    RawRecord,
    RecordKind,
    TransactionPayload,
    TxnType,
)

# Configure module logger
logger = logging.getLogger(__name__)


MarketMap = Mapping[str, MarketInfo]


# =============================================================================
# Error Codes
# =============================================================================

class NormalizerGapCode:
    """Normalization gap codes (counted, never raised)."""
    UNRECOGNIZED = "NORM-001"
    UNRESOLVED_MARKET = "NORM-002"
    UNRESOLVED_MATCH = "NORM-003"


# =============================================================================
# Helpers
# =============================================================================

def _neg(value: Optional[Decimal]) -> Optional[Decimal]:
    return -abs(value) if value is not None else None


def _pos(value: Optional[Decimal]) -> Optional[Decimal]:
    return abs(value) if value is not None else None


def _resolve_market(
    market_id: Optional[str],
    inline: Optional[MarketInfo],
    markets: Optional[MarketMap]
) -> Optional[MarketInfo]:
    if inline is not None:
        return inline
    if market_id and markets:
        return markets.get(market_id)
    return None


def _trade_terms(order: OrderPayload, market: MarketInfo) -> Dict[str, object]:
    """Signed base/quote terms of an order from the user's perspective."""
    amount = abs(order.amount)
    quote = abs(amount * order.price) if order.price is not None else None

    if order.is_buy:
        base_amount, quote_amount = amount, _neg(quote)
    else:
        base_amount, quote_amount = -amount, quote

    return {
        'base_asset': market.base_asset,
        'base_amount': base_amount,
        'quote_asset': market.quote_asset,
        'quote_amount': quote_amount,
        'price': order.price,
    }


# =============================================================================
# Pass 1: normalize
# =============================================================================

def normalize(
    raw: RawRecord,
    markets: Optional[MarketMap] = None
) -> Optional[NormalizedEntry]:
    """
    Map one stored raw record to a ledger entry.

    Args:
        raw: Raw record with a store-assigned id
        markets: Optional market map used when the payload has no inline
                 _marketInfo tag

    Returns:
        NormalizedEntry, or None for shapes the ledger does not track

    Raises:
        ValueError: If raw.id is None (records must be stored first)
    """
    if raw.id is None:
        raise ValueError("Raw record must be persisted before normalization")

    payload = raw.parsed()
    base = {
        'source_raw_id': raw.id,
        'user_id': raw.user_id,
        'connection_id': raw.connection_id,
        'occurred_at': raw.occurred_at,
        'metadata': raw.payload,
    }

    if isinstance(payload, DepositPayload):
        return NormalizedEntry(
            txn_type=TxnType.DEPOSIT,
            base_asset=payload.currency,
            base_amount=_pos(payload.amount),
            txid=payload.transaction_hash,
            **base
        )

    if isinstance(payload, OrderPayload):
        return _normalize_order(payload, markets, base)

    if isinstance(payload, TransactionPayload):
        return _normalize_transaction(payload, base)

    return None


def _normalize_transaction(
    payload: TransactionPayload,
    base: Dict[str, object]
) -> Optional[NormalizedEntry]:
    if payload.match_id is not None:
        # Provisional: terms come from the order during enrichment
        return NormalizedEntry(
            txn_type=TxnType.TRADE_MATCH,
            order_id=payload.match_id,
            **base
        )

    if payload.withdraw_id is not None:
        return NormalizedEntry(
            txn_type=TxnType.WITHDRAWAL,
            base_asset=payload.currency,
            base_amount=_neg(payload.amount),
            txid=payload.withdraw_txid,
            **base
        )

    if payload.deposit_id is not None:
        return NormalizedEntry(
            txn_type=TxnType.DEPOSIT,
            base_asset=payload.currency,
            base_amount=_pos(payload.amount),
            txid=payload.deposit_txid,
            **base
        )

    if payload.type == "fee":
        return NormalizedEntry(
            txn_type=TxnType.FEE,
            base_asset=payload.currency,
            base_amount=_neg(payload.amount),
            fee_asset=payload.currency,
            fee_amount=_pos(payload.amount),
            order_id=payload.order_id,
            **base
        )

    if payload.type in ("bonus", "rebate"):
        return NormalizedEntry(
            txn_type=TxnType(payload.type),
            base_asset=payload.currency,
            base_amount=_pos(payload.amount),
            order_id=payload.order_id,
            **base
        )

    logger.debug(
        f"[{NormalizerGapCode.UNRECOGNIZED}] Transaction shape not tracked | "
        f"type={payload.type or None} | source_raw_id={base['source_raw_id']}"
    )
    return None


def _normalize_order(
    payload: OrderPayload,
    markets: Optional[MarketMap],
    base: Dict[str, object]
) -> NormalizedEntry:
    txn_type = TxnType.BUY if payload.is_buy else TxnType.SELL
    market = _resolve_market(payload.market, payload.market_info, markets)

    if market is None or payload.amount is None:
        logger.warning(
            f"[{NormalizerGapCode.UNRESOLVED_MARKET}] Order market unresolved | "
            f"market={payload.market} | source_raw_id={base['source_raw_id']}"
        )
        return NormalizedEntry(
            txn_type=txn_type,
            price=payload.price,
            order_id=payload.id,
            **base
        )

    return NormalizedEntry(
        txn_type=txn_type,
        fee_asset=market.quote_asset,
        order_id=payload.id,
        **_trade_terms(payload, market),
        **base
    )


# =============================================================================
# Pass 2: enrich trade matches
# =============================================================================

def orders_from_raw(raw_records: Iterable[RawRecord]) -> List[OrderPayload]:
    """Parse the order-kind records of a raw set."""
    return [
        r.parsed() for r in raw_records
        if r.kind is RecordKind.ORDER
    ]


def enrich_trade_matches(
    trade_matches: Sequence[NormalizedEntry],
    orders: Iterable[OrderPayload],
    markets: Optional[MarketMap] = None
) -> List[NormalizedEntry]:
    """
    Fill provisional trade_match rows from their orders.

    The order is authoritative for side, amount and price. A match whose
    order is missing, or whose market cannot be resolved, is returned
    unchanged and stays "needs review".

    Args:
        trade_matches: Ledger rows (non trade_match rows pass through)
        orders: Parsed order payloads, from this or any earlier sync
        markets: Optional market map for orders without an inline tag

    Returns:
        New list, same length and order as trade_matches
    """
    by_order_id: Dict[str, OrderPayload] = {}
    for order in orders:
        if order.id:
            by_order_id[order.id] = order

    result: List[NormalizedEntry] = []
    for entry in trade_matches:
        if entry.txn_type is not TxnType.TRADE_MATCH or not entry.order_id:
            result.append(entry)
            continue

        order = by_order_id.get(entry.order_id)
        market = (
            _resolve_market(order.market, order.market_info, markets)
            if order is not None else None
        )
        if order is None or market is None or order.amount is None:
            result.append(entry)
            continue

        result.append(replace(entry, **_trade_terms(order, market)))

    return result


def find_unresolved_trade_matches(
    entries: Iterable[NormalizedEntry]
) -> List[NormalizedEntry]:
    """Rows left provisional after enrichment."""
    return [e for e in entries if e.needs_review]


# =============================================================================
# Pass 3: merge fees
# =============================================================================

def _fee_magnitude(entry: NormalizedEntry) -> Decimal:
    if entry.fee_amount is not None:
        return abs(entry.fee_amount)
    if entry.base_amount is not None:
        return abs(entry.base_amount)
    return Decimal("0")


def merge_fees(entries: Sequence[NormalizedEntry]) -> List[NormalizedEntry]:
    """
    Absorb fee rows into the trade row sharing their order_id.

    For each order_id with at least one trade-like row (trade_match, buy,
    sell) and at least one fee row, the first trade-like row receives the
    summed fee magnitudes and the fee rows are dropped. The trade's own
    prior fee_amount is replaced, not added to, so repeated runs do not
    accumulate. Rows without order_id never merge.

    Returns:
        New list in input order without the absorbed fee rows
    """
    trades: Dict[str, List[int]] = {}
    fees: Dict[str, List[int]] = {}

    for idx, entry in enumerate(entries):
        if not entry.order_id:
            continue
        if entry.txn_type is TxnType.FEE:
            fees.setdefault(entry.order_id, []).append(idx)
        elif entry.is_trade_like:
            trades.setdefault(entry.order_id, []).append(idx)

    updated: Dict[int, NormalizedEntry] = {}
    absorbed = set()

    for order_id, fee_idxs in fees.items():
        trade_idxs = trades.get(order_id)
        if not trade_idxs:
            continue

        main_idx = trade_idxs[0]
        main = entries[main_idx]

        total = Decimal("0")
        fee_asset: Optional[str] = None
        for fi in fee_idxs:
            fee = entries[fi]
            total += _fee_magnitude(fee)
            if fee_asset is None and fee.fee_asset:
                fee_asset = fee.fee_asset
            absorbed.add(fi)

        if fee_asset is None:
            fee_asset = main.fee_asset or main.quote_asset

        updated[main_idx] = replace(main, fee_amount=total, fee_asset=fee_asset)

    if absorbed:
        logger.debug(
            f"[LEDGER] Fees merged | trades={len(updated)} | fee_rows_absorbed={len(absorbed)}"
        )

    return [
        updated.get(idx, entry)
        for idx, entry in enumerate(entries)
        if idx not in absorbed
    ]


# =============================================================================
# All passes
# =============================================================================

def build_ledger(
    raw_records: Sequence[RawRecord],
    markets: Optional[MarketMap] = None
) -> List[NormalizedEntry]:
    """
    normalize -> enrich -> merge for an in-memory batch.

    Records without a store id get their 1-based position as source_raw_id.

    Returns:
        Final ledger rows in input order
    """
    stored = [
        r if r.id is not None else replace(r, id=position)
        for position, r in enumerate(raw_records, start=1)
    ]

    normalized = [e for e in (normalize(r, markets) for r in stored) if e is not None]
    enriched = enrich_trade_matches(normalized, orders_from_raw(stored), markets)
    return merge_fees(enriched)
