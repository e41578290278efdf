"""
============================================================================
Firi Sync Manager - Paginated History Retrieval
============================================================================

Reliability Level: L6 Critical
Traceability: Every page logged with stream, page number and from_id

SYNC MANAGER:
    Pulls the three Firi history streams one after another, each with its
    own cursor:

        transactions  GET /v2/history/transactions
        deposits      GET /v2/deposit/history
        orders        GET /v2/orders/history

    Per stream the state machine is

        Pending(cursor) -> Fetching -> PageReceived (advance cursor)
                                    -> Exhausted    (has_more = False)
                                    -> Errored      (stop, keep cursor)

    A page shorter than the requested batch size is the end-of-data
    signal; the exchange sends no total count. max_pages bounds a
    misbehaving server.

ERROR POLICY:
    - Transient/stream errors stop only that stream (last_error recorded)
    - FiriAuthError and cancellation abort the whole sync

Key Constraints:
- Market directory is warmed before any page is fetched
- Pages within a stream are strictly sequential
- No background threads
============================================================================
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from firi_sync.errors import FiriSyncError, SyncCancelledError
from firi_sync.exchange.firi_client import FiriAuthError, FiriClient
from firi_sync.exchange.hmac_signer import FiriCredentials
from firi_sync.exchange.market_directory import MarketDirectory, MarketInfo
from firi_sync.observability import metrics
from ledger_ingestion.schemas import (
    MARKET_INFO_KEY,
    SyncCursor,
    SyncCursorSet,
    SyncStream,
    utc_now_iso,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

STREAM_PATHS = {
    SyncStream.TRANSACTIONS: "/v2/history/transactions",
    SyncStream.DEPOSITS: "/v2/deposit/history",
    SyncStream.ORDERS: "/v2/orders/history",
}

# Streams whose items may reference a market and get the inline tag
MARKET_TAGGED_STREAMS = (SyncStream.TRANSACTIONS, SyncStream.ORDERS)

SYNC_ORDER = (SyncStream.TRANSACTIONS, SyncStream.DEPOSITS, SyncStream.ORDERS)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class SyncOptions:
    """Pagination tuning."""
    batch_size: int = 500
    max_pages: int = 1000
    page_delay_seconds: float = 0.1


@dataclass
class PageResult:
    """One fetched page and the cursor that follows it."""
    records: List[Dict[str, Any]]
    cursor: SyncCursor
    has_more: bool


@dataclass
class StreamProgress:
    pages: int = 0
    count: int = 0
    has_more: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pages': self.pages,
            'count': self.count,
            'has_more': self.has_more,
            'error': self.error,
        }


@dataclass
class SyncProgress:
    """Counters for one sync_all() run."""
    transactions: StreamProgress = field(default_factory=StreamProgress)
    deposits: StreamProgress = field(default_factory=StreamProgress)
    orders: StreamProgress = field(default_factory=StreamProgress)
    total_raw: int = 0
    has_more: bool = False
    last_error: Optional[str] = None
    rate_limit_stats: Dict[str, Any] = field(default_factory=dict)

    def stream(self, stream: SyncStream) -> StreamProgress:
        return getattr(self, stream.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transactions': self.transactions.to_dict(),
            'deposits': self.deposits.to_dict(),
            'orders': self.orders.to_dict(),
            'total_raw': self.total_raw,
            'has_more': self.has_more,
            'last_error': self.last_error,
            'rate_limit_stats': self.rate_limit_stats,
        }


@dataclass
class SyncResult:
    """Everything collected by sync_all()."""
    transactions: List[Dict[str, Any]]
    deposits: List[Dict[str, Any]]
    orders: List[Dict[str, Any]]
    cursors: SyncCursorSet
    progress: SyncProgress
    markets: Dict[str, MarketInfo] = field(default_factory=dict)

    def records(self, stream: SyncStream) -> List[Dict[str, Any]]:
        return getattr(self, stream.value)


# =============================================================================
# Sync Manager
# =============================================================================

class FiriSyncManager:
    """
    Orchestrates paginated retrieval for one connection.

    Reliability Level: L6 Critical
    Thread Safety: One manager per sync invocation; the client's rate
                   limiter is the shared synchronization point
    """

    def __init__(
        self,
        client: FiriClient,
        credentials: FiriCredentials,
        market_directory: MarketDirectory,
        options: Optional[SyncOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        correlation_id: Optional[str] = None
    ):
        self.client = client
        self.credentials = credentials
        self.market_directory = market_directory
        self.options = options or SyncOptions()
        self.cancel_event = cancel_event
        self.correlation_id = correlation_id
        self._sleep = sleep
        self._markets: Optional[Dict[str, MarketInfo]] = None

    @property
    def markets(self) -> Dict[str, MarketInfo]:
        return self._markets or {}

    def initialize(self) -> Dict[str, MarketInfo]:
        """
        Warm the market directory. Required before order pages are tagged.

        Raises:
            MarketDirectoryError: If markets cannot be loaded at all
        """
        self._markets = self.market_directory.get_markets(
            self.client, self.credentials, cancel_event=self.cancel_event
        )
        logger.info(
            f"[SYNC] Initialized | markets={len(self._markets)} | "
            f"correlation_id={self.correlation_id}"
        )
        return self._markets

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SyncCancelledError("Sync cancelled by caller")

    def _tag_markets(self, records: List[Any]) -> List[Any]:
        tagged = []
        for record in records:
            if isinstance(record, dict):
                market = self.markets.get(record.get("market")) if record.get("market") else None
                record = dict(record)
                record[MARKET_INFO_KEY] = market.to_payload() if market is not None else None
            tagged.append(record)
        return tagged

    def fetch_page(self, stream: SyncStream, cursor: SyncCursor) -> PageResult:
        """
        Fetch the page after cursor.

        Returns:
            PageResult; has_more is False on a short or empty page
        """
        if not cursor.has_more or cursor.page >= self.options.max_pages:
            return PageResult(records=[], cursor=replace(cursor, has_more=False), has_more=False)

        if stream is SyncStream.ORDERS and self._markets is None:
            self.initialize()

        self._check_cancelled()

        params: Dict[str, Any] = {"count": self.options.batch_size}
        if cursor.last_id:
            params["from_id"] = cursor.last_id

        logger.info(
            f"[SYNC] Fetching page | stream={stream.value} | page={cursor.page + 1} | "
            f"from_id={cursor.last_id or 'start'} | correlation_id={self.correlation_id}"
        )

        data = self.client.fetch_json(
            STREAM_PATHS[stream],
            self.credentials,
            params=params,
            cancel_event=self.cancel_event,
        )
        metrics.record_page(stream.value)

        if not isinstance(data, list):
            logger.warning(
                f"[SYNC] Non-list page ends stream | stream={stream.value} | "
                f"type={type(data).__name__} | correlation_id={self.correlation_id}"
            )
            data = []

        if not data:
            done = replace(cursor, page=cursor.page + 1, has_more=False, last_sync_at=utc_now_iso())
            return PageResult(records=[], cursor=done, has_more=False)

        if stream in MARKET_TAGGED_STREAMS:
            data = self._tag_markets(data)

        last = data[-1]
        last_id = last.get("id") if isinstance(last, dict) else None
        has_more = len(data) == self.options.batch_size

        next_cursor = SyncCursor(
            page=cursor.page + 1,
            last_id=str(last_id) if last_id is not None else cursor.last_id,
            has_more=has_more,
            last_sync_at=utc_now_iso(),
        )
        return PageResult(records=data, cursor=next_cursor, has_more=has_more)

    def sync_stream(
        self,
        stream: SyncStream,
        cursor: Optional[SyncCursor] = None,
        progress: Optional[StreamProgress] = None
    ):
        """
        Page through one stream until exhausted, errored or capped.

        Returns:
            (records, final_cursor, error_message_or_None)

        Raises:
            FiriAuthError: Credentials rejected (aborts the whole sync)
            SyncCancelledError: Cancelled by caller
        """
        cursor = cursor or SyncCursor()
        progress = progress if progress is not None else StreamProgress()
        collected: List[Dict[str, Any]] = []
        error: Optional[str] = None

        while cursor.has_more and cursor.page < self.options.max_pages:
            try:
                result = self.fetch_page(stream, cursor)
            except (FiriAuthError, SyncCancelledError):
                raise
            except FiriSyncError as e:
                error = e.message
                logger.error(
                    f"[SYNC] Stream stopped | stream={stream.value} | "
                    f"page={cursor.page + 1} | error_code={e.error_code} | "
                    f"correlation_id={self.correlation_id}"
                )
                break

            cursor = result.cursor
            collected.extend(result.records)
            progress.pages = cursor.page
            progress.count += len(result.records)

            if not result.has_more:
                break

            if self.options.page_delay_seconds > 0:
                self._sleep(self.options.page_delay_seconds)

        if cursor.page >= self.options.max_pages and cursor.has_more:
            logger.warning(
                f"[SYNC] Page ceiling reached | stream={stream.value} | "
                f"max_pages={self.options.max_pages} | correlation_id={self.correlation_id}"
            )

        progress.has_more = cursor.has_more
        progress.error = error
        return collected, cursor, error

    def sync_all(self, existing: Optional[SyncCursorSet] = None) -> SyncResult:
        """
        Run all three streams sequentially.

        Stored cursors are resumed: the page counter restarts and has_more
        is reset, the last_id position is kept.

        Raises:
            FiriAuthError: Credentials rejected
            SyncCancelledError: Cancelled by caller
            MarketDirectoryError: Markets unavailable and nothing cached
        """
        started = time.monotonic()
        self.initialize()

        existing = existing or SyncCursorSet()
        cursors = SyncCursorSet(last_sync=utc_now_iso())
        progress = SyncProgress()
        collected: Dict[SyncStream, List[Dict[str, Any]]] = {}

        for stream in SYNC_ORDER:
            self._check_cancelled()
            logger.info(
                f"[SYNC] Starting stream | stream={stream.value} | "
                f"correlation_id={self.correlation_id}"
            )
            records, cursor, error = self.sync_stream(
                stream,
                existing.get(stream).resumed(),
                progress.stream(stream),
            )
            collected[stream] = records
            cursors = cursors.with_stream(stream, cursor)
            progress.total_raw += len(records)
            if error is not None:
                progress.last_error = error

        progress.has_more = any(progress.stream(s).has_more for s in SYNC_ORDER)
        progress.rate_limit_stats = self.client.get_rate_limit_status()

        logger.info(
            f"[SYNC] Sync complete | total_raw={progress.total_raw} | "
            f"has_more={progress.has_more} | last_error={progress.last_error} | "
            f"elapsed={time.monotonic() - started:.2f}s | "
            f"correlation_id={self.correlation_id}"
        )

        return SyncResult(
            transactions=collected[SyncStream.TRANSACTIONS],
            deposits=collected[SyncStream.DEPOSITS],
            orders=collected[SyncStream.ORDERS],
            cursors=cursors,
            progress=progress,
            markets=dict(self.markets),
        )
