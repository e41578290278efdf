"""
============================================================================
Property-Based Tests for Paginated History Retrieval
============================================================================

Reliability Level: SOVEREIGN TIER

Properties tested:
- K full pages followed by a short page take exactly K+1 requests
- The final cursor is exhausted and points at the last record seen
- Every record is collected exactly once, in order

============================================================================
"""

from typing import Any, Dict, List

from hypothesis import given, settings
from hypothesis import strategies as st

from firi_sync.exchange.hmac_signer import FiriCredentials
from firi_sync.exchange.market_directory import MARKETS_PATH, MarketDirectory
from ledger_ingestion.schemas import SyncCursor, SyncStream
from ledger_ingestion.sync_manager import STREAM_PATHS, FiriSyncManager, SyncOptions


class ScriptedClient:
    """Serves a fixed list of pages per path; empty list once exhausted."""

    def __init__(self, pages: Dict[str, List[List[Dict[str, Any]]]]):
        self.pages = {path: list(items) for path, items in pages.items()}
        self.calls: List[Dict[str, Any]] = []

    def fetch_json(self, path, credentials, params=None, cancel_event=None):
        self.calls.append({"path": path, "params": dict(params or {})})
        if path == MARKETS_PATH:
            return []
        remaining = self.pages.get(path, [])
        return remaining.pop(0) if remaining else []

    def calls_to(self, path: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["path"] == path]

    def get_rate_limit_status(self) -> Dict[str, Any]:
        return {}

    def close(self) -> None:
        pass


def build_pages(full_pages: int, batch_size: int, tail: int) -> List[List[Dict[str, Any]]]:
    pages = []
    counter = 0
    for _ in range(full_pages):
        page = []
        for _ in range(batch_size):
            counter += 1
            page.append({"id": str(counter), "type": "deposit", "amount": "1"})
        pages.append(page)
    last = []
    for _ in range(tail):
        counter += 1
        last.append({"id": str(counter), "type": "deposit", "amount": "1"})
    pages.append(last)
    return pages


def make_manager(client: ScriptedClient, batch_size: int, max_pages: int = 1000) -> FiriSyncManager:
    return FiriSyncManager(
        client,
        FiriCredentials("key", "client", "secret"),
        MarketDirectory(),
        options=SyncOptions(batch_size=batch_size, max_pages=max_pages, page_delay_seconds=0),
    )


class TestPaginationTermination:

    @settings(max_examples=100)
    @given(
        full_pages=st.integers(min_value=0, max_value=6),
        batch_size=st.integers(min_value=1, max_value=20),
        data=st.data(),
    )
    def test_short_page_ends_stream(self, full_pages, batch_size, data) -> None:
        tail = data.draw(st.integers(min_value=0, max_value=batch_size - 1))
        path = STREAM_PATHS[SyncStream.TRANSACTIONS]
        client = ScriptedClient({path: build_pages(full_pages, batch_size, tail)})

        records, cursor, error = make_manager(client, batch_size).sync_stream(
            SyncStream.TRANSACTIONS
        )

        assert error is None
        assert len(client.calls_to(path)) == full_pages + 1
        assert cursor.has_more is False
        assert cursor.page == full_pages + 1
        assert len(records) == full_pages * batch_size + tail
        assert [r["id"] for r in records] == [str(i) for i in range(1, len(records) + 1)]
        if records:
            assert cursor.last_id == records[-1]["id"]
        else:
            assert cursor.last_id is None

    @settings(max_examples=100)
    @given(
        full_pages=st.integers(min_value=1, max_value=5),
        batch_size=st.integers(min_value=1, max_value=10),
    )
    def test_each_request_continues_from_previous_page(self, full_pages, batch_size) -> None:
        path = STREAM_PATHS[SyncStream.DEPOSITS]
        client = ScriptedClient({path: build_pages(full_pages, batch_size, 0)})

        make_manager(client, batch_size).sync_stream(SyncStream.DEPOSITS)

        calls = client.calls_to(path)
        assert "from_id" not in calls[0]["params"]
        for page_number, call in enumerate(calls[1:], start=1):
            assert call["params"]["from_id"] == str(page_number * batch_size)
            assert call["params"]["count"] == batch_size

    @settings(max_examples=100)
    @given(
        batch_size=st.integers(min_value=1, max_value=10),
        max_pages=st.integers(min_value=1, max_value=5),
    )
    def test_page_ceiling_bounds_requests(self, batch_size, max_pages) -> None:
        path = STREAM_PATHS[SyncStream.TRANSACTIONS]
        client = ScriptedClient({path: build_pages(max_pages + 3, batch_size, 0)})

        records, cursor, _ = make_manager(client, batch_size, max_pages).sync_stream(
            SyncStream.TRANSACTIONS, SyncCursor()
        )

        assert len(client.calls_to(path)) == max_pages
        assert len(records) == max_pages * batch_size
        assert cursor.has_more is True
