"""
============================================================================
Ledger Ingestion Schemas - Raw Records, Ledger Entries and Cursors
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All amounts use decimal.Decimal, never float
Traceability: Every ledger entry points at exactly one raw record

RAW RECORD:
    One exchange event exactly as Firi returned it, stored for audit under
    the natural key (connection_id, provider, provider_tx_id, kind).

NORMALIZED ENTRY:
    The canonical ledger row. Amounts are signed from the user's point of
    view: inflow positive, outflow negative. For trades the quote amount
    always carries the opposite sign of the base amount. fee_amount is a
    non-negative magnitude.

PAYLOADS:
    Raw JSON is parsed into TransactionPayload / DepositPayload /
    OrderPayload so the normalizer dispatches on type instead of probing
    for field presence.

Key Constraints:
- One NormalizedEntry per RawRecord (source_raw_id unique)
- trade_match is provisional until enriched from its order
- All timestamps in UTC
============================================================================
"""

import json
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

from firi_sync.exchange.decimal_gateway import to_decimal
from firi_sync.exchange.market_directory import MarketInfo


# =============================================================================
# Constants
# =============================================================================

PROVIDER_FIRI = "firi"
EXCHANGE_FIRI = "firi"

# Inline market tag attached to raw order/transaction payloads during sync
MARKET_INFO_KEY = "_marketInfo"


# =============================================================================
# Enums
# =============================================================================

class RecordKind(Enum):
    """Raw record kind; part of the natural key."""
    TRANSACTION = "transaction"
    DEPOSIT = "deposit"
    ORDER = "order"


class SyncStream(Enum):
    """Paginated history stream, each with its own cursor."""
    TRANSACTIONS = "transactions"
    DEPOSITS = "deposits"
    ORDERS = "orders"

    @property
    def kind(self) -> RecordKind:
        return STREAM_KINDS[self]


STREAM_KINDS = {
    SyncStream.TRANSACTIONS: RecordKind.TRANSACTION,
    SyncStream.DEPOSITS: RecordKind.DEPOSIT,
    SyncStream.ORDERS: RecordKind.ORDER,
}


class TxnType(Enum):
    """Canonical ledger transaction type."""
    BUY = "buy"
    SELL = "sell"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    SEND = "send"
    TRANSFER = "transfer"
    STAKING = "staking"
    BONUS = "bonus"
    FEE = "fee"
    REBATE = "rebate"
    TRADE_MATCH = "trade_match"


TRADE_LIKE_TYPES: FrozenSet[TxnType] = frozenset(
    {TxnType.TRADE_MATCH, TxnType.BUY, TxnType.SELL}
)


class SyncStatus(Enum):
    """Lifecycle of a connection's most recent sync."""
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"


# =============================================================================
# Helpers
# =============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a Firi ISO-8601 timestamp into an aware UTC datetime.

    Returns:
        datetime in UTC, or None if missing or unparseable
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Cursors
# =============================================================================

@dataclass(frozen=True)
class SyncCursor:
    """
    Pagination state of one stream.

    has_more=False is terminal for the current attempt only; last_id is the
    exchange id of the last record seen and is sent back as from_id.
    """
    page: int = 0
    last_id: Optional[str] = None
    has_more: bool = True
    last_sync_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "SyncCursor":
        """Tolerates missing keys and the camelCase form."""
        if not data:
            return cls()
        last_id = data.get("last_id", data.get("lastId"))
        return cls(
            page=int(data.get("page") or 0),
            last_id=_str_or_none(last_id),
            has_more=bool(data.get("has_more", data.get("hasMore", True))),
            last_sync_at=data.get("last_sync_at", data.get("lastSyncAt")),
        )

    def resumed(self) -> "SyncCursor":
        """Cursor for a new attempt: page count restarts, position is kept."""
        return replace(self, page=0, has_more=True)


@dataclass(frozen=True)
class SyncCursorSet:
    """The three stream cursors persisted as one JSON document."""
    transactions: SyncCursor = field(default_factory=SyncCursor)
    deposits: SyncCursor = field(default_factory=SyncCursor)
    orders: SyncCursor = field(default_factory=SyncCursor)
    last_sync: Optional[str] = None

    def get(self, stream: SyncStream) -> SyncCursor:
        return getattr(self, stream.value)

    def with_stream(self, stream: SyncStream, cursor: SyncCursor) -> "SyncCursorSet":
        return replace(self, **{stream.value: cursor})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactions": self.transactions.to_dict(),
            "deposits": self.deposits.to_dict(),
            "orders": self.orders.to_dict(),
            "last_sync": self.last_sync,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "SyncCursorSet":
        if not data:
            return cls()
        return cls(
            transactions=SyncCursor.from_dict(data.get("transactions")),
            deposits=SyncCursor.from_dict(data.get("deposits")),
            orders=SyncCursor.from_dict(data.get("orders")),
            last_sync=data.get("last_sync", data.get("lastSync")),
        )

    @classmethod
    def from_json(cls, value: Union[str, Mapping[str, Any], None]) -> "SyncCursorSet":
        """Accepts the JSON text or an already-decoded mapping."""
        if value is None or value == "":
            return cls()
        if isinstance(value, str):
            value = json.loads(value)
        return cls.from_dict(value)


# =============================================================================
# Payload Tagged Union
# =============================================================================

@dataclass(frozen=True)
class TransactionPayload:
    """Item of /v2/history/transactions."""
    id: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    type: str
    date: Optional[str]
    market: Optional[str] = None
    match_id: Optional[str] = None
    withdraw_id: Optional[str] = None
    withdraw_txid: Optional[str] = None
    deposit_id: Optional[str] = None
    deposit_txid: Optional[str] = None
    order_id: Optional[str] = None
    market_info: Optional[MarketInfo] = None


@dataclass(frozen=True)
class DepositPayload:
    """Item of /v2/deposit/history."""
    id: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    transaction_hash: Optional[str]
    deposited_at: Optional[str]


@dataclass(frozen=True)
class OrderPayload:
    """Item of /v2/orders/history."""
    id: Optional[str]
    market: Optional[str]
    side: str
    price: Optional[Decimal]
    amount: Optional[Decimal]
    created_at: Optional[str]
    market_info: Optional[MarketInfo] = None

    @property
    def is_buy(self) -> bool:
        return self.side == "bid"


RawPayload = Union[TransactionPayload, DepositPayload, OrderPayload]


def parse_payload(kind: RecordKind, payload: Mapping[str, Any]) -> RawPayload:
    """
    Parse raw Firi JSON into the payload variant for its kind.

    Unknown or malformed fields become None; parsing never raises for a
    mapping input.
    """
    payload = payload if isinstance(payload, Mapping) else {}

    if kind is RecordKind.DEPOSIT:
        return DepositPayload(
            id=_str_or_none(payload.get("id")),
            amount=to_decimal(payload.get("amount")),
            currency=_str_or_none(payload.get("currency")),
            transaction_hash=_str_or_none(payload.get("transaction_hash")),
            deposited_at=_str_or_none(payload.get("deposited_at") or payload.get("date")),
        )

    if kind is RecordKind.ORDER:
        return OrderPayload(
            id=_str_or_none(payload.get("id")),
            market=_str_or_none(payload.get("market")),
            side=str(payload.get("side") or "").lower(),
            price=to_decimal(payload.get("price")),
            amount=to_decimal(payload.get("amount")),
            created_at=_str_or_none(payload.get("created_at") or payload.get("date")),
            market_info=MarketInfo.from_payload(payload.get(MARKET_INFO_KEY)),
        )

    details = payload.get("details")
    details = details if isinstance(details, Mapping) else {}
    return TransactionPayload(
        id=_str_or_none(payload.get("id")),
        amount=to_decimal(payload.get("amount")),
        currency=_str_or_none(payload.get("currency")),
        type=str(payload.get("type") or "").lower(),
        date=_str_or_none(payload.get("date")),
        market=_str_or_none(payload.get("market")),
        match_id=_str_or_none(details.get("match_id")),
        withdraw_id=_str_or_none(details.get("withdraw_id")),
        withdraw_txid=_str_or_none(details.get("withdraw_txid")),
        deposit_id=_str_or_none(details.get("deposit_id")),
        deposit_txid=_str_or_none(details.get("deposit_txid")),
        order_id=_str_or_none(payload.get("order_id")),
        market_info=MarketInfo.from_payload(payload.get(MARKET_INFO_KEY)),
    )


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class RawRecord:
    """
    One stored exchange event.

    id is assigned by the store on upsert.
    """
    provider: str
    connection_id: str
    user_id: str
    kind: RecordKind
    provider_tx_id: str
    occurred_at: Optional[datetime]
    payload: Dict[str, Any] = field(hash=False, compare=False)
    id: Optional[int] = None

    @property
    def natural_key(self):
        return (self.connection_id, self.provider, self.provider_tx_id, self.kind.value)

    def parsed(self) -> RawPayload:
        return parse_payload(self.kind, self.payload)


@dataclass(frozen=True)
class NormalizedEntry:
    """
    Canonical ledger row.

    Reliability Level: L6 Critical
    Input Constraints: amounts Decimal or None, fee_amount >= 0
    Side Effects: None (immutable)
    """
    source_raw_id: int
    txn_type: TxnType
    user_id: Optional[str] = None
    connection_id: Optional[str] = None
    base_asset: Optional[str] = None
    base_amount: Optional[Decimal] = None
    quote_asset: Optional[str] = None
    quote_amount: Optional[Decimal] = None
    fee_asset: Optional[str] = None
    fee_amount: Optional[Decimal] = None
    price: Optional[Decimal] = None
    txid: Optional[str] = None
    order_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    id: Optional[int] = field(default=None, compare=False)

    @property
    def is_trade_like(self) -> bool:
        return self.txn_type in TRADE_LIKE_TYPES

    @property
    def needs_review(self) -> bool:
        """Provisional trade match that enrichment could not resolve."""
        return self.txn_type is TxnType.TRADE_MATCH and self.base_asset is None


@dataclass
class ExchangeConnection:
    """
    A user's stored Firi credentials and sync bookkeeping.

    api_secret holds the encrypted blob in its storage representation
    (see firi_sync.crypto.wire_codec); it is never the plaintext.
    """
    id: str
    user_id: str
    api_key: str
    client_id: str
    api_secret: Any = field(repr=False)
    exchange: str = EXCHANGE_FIRI
    sync_cursor: Optional[Dict[str, Any]] = None
    last_synced_at: Optional[datetime] = None
    sync_status: SyncStatus = SyncStatus.IDLE
    sync_error: Optional[str] = None
    sync_metadata: Dict[str, Any] = field(default_factory=dict)

    def cursors(self) -> SyncCursorSet:
        return SyncCursorSet.from_json(self.sync_cursor)
