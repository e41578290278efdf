"""
============================================================================
Unit Tests - FiriDataProcessor
============================================================================

Reliability Level: L6 Critical

Runs against InMemoryLedgerStore. Covers raw record construction, per-kind
isolation and the connection-wide enrichment / fee merge pass across
separate syncs.

============================================================================
"""

from datetime import datetime, timezone
from decimal import Decimal

from firi_sync.database.memory_store import InMemoryLedgerStore
from firi_sync.exchange.market_directory import MarketInfo
from ledger_ingestion.data_processor import FiriDataProcessor
from ledger_ingestion.schemas import RecordKind, TxnType

MARKETS = {"BTCNOK": MarketInfo("BTCNOK", "BTC", "NOK", "BTC/NOK")}

MATCH = {"id": "m1", "type": "Match", "amount": "0.1", "currency": "BTC",
         "date": "2024-01-01T10:00:00Z", "details": {"match_id": "o1"}}
FEE = {"id": "f1", "type": "Fee", "amount": "-25", "currency": "NOK",
       "order_id": "o1", "date": "2024-01-01T10:00:00Z"}
ORDER = {"id": "o1", "market": "BTCNOK", "side": "bid", "amount": "0.1",
         "price": "500000", "created_at": "2024-01-01T09:59:59Z"}
DEPOSIT = {"id": "d1", "amount": "100000", "currency": "NOK",
           "deposited_at": "2024-01-01T08:00:00Z"}


def make_processor(store=None):
    store = store or InMemoryLedgerStore()
    return store, FiriDataProcessor(store, "user-1", "conn-1", correlation_id="cid")


class TestBuildRawRecords:

    def test_records_without_id_skipped(self):
        _, processor = make_processor()
        records = processor.build_raw_records(
            RecordKind.TRANSACTION, [MATCH, {"type": "fee"}, {"id": ""}, "junk"]
        )
        assert [r.provider_tx_id for r in records] == ["m1"]

    def test_occurred_at_field_per_kind(self):
        _, processor = make_processor()
        [deposit] = processor.build_raw_records(RecordKind.DEPOSIT, [DEPOSIT])
        [order] = processor.build_raw_records(RecordKind.ORDER, [ORDER])

        assert deposit.occurred_at == datetime(2024, 1, 1, 8, tzinfo=timezone.utc)
        assert order.occurred_at == datetime(2024, 1, 1, 9, 59, 59, tzinfo=timezone.utc)
        assert deposit.provider == "firi"
        assert deposit.user_id == "user-1"

    def test_skipped_count_reported(self):
        _, processor = make_processor()
        result = processor.process_kind(RecordKind.DEPOSIT, [DEPOSIT, {"amount": "1"}])
        assert result.raw_count == 1
        assert result.skipped == 1


class TestProcessAllData:

    def test_single_sync(self):
        store, processor = make_processor()

        summary = processor.process_all_data([MATCH, FEE], [DEPOSIT], [ORDER], markets=MARKETS)

        assert summary.errors == []
        assert summary.total_raw == 4
        assert summary.total_normalized == 4
        assert summary.needs_review == 0

        ledger = {e.metadata["id"]: e for e in store.select_normalized("conn-1")}
        assert set(ledger) == {"m1", "d1", "o1"}
        assert ledger["m1"].base_amount == Decimal("0.1")
        assert ledger["m1"].quote_amount == Decimal("-50000.0")
        assert ledger["m1"].fee_amount == Decimal("25")
        assert ledger["o1"].txn_type is TxnType.BUY

    def test_unrecognized_rows_not_normalized(self):
        store, processor = make_processor()
        mystery = {"id": "x1", "type": "Airdrop", "amount": "1", "currency": "NOK"}

        summary = processor.process_all_data([mystery], [], [])

        assert summary.total_raw == 1
        assert summary.total_normalized == 0
        assert len(store.select_raw("conn-1")) == 1

    def test_order_from_later_sync_resolves_match(self):
        store, processor = make_processor()

        first = processor.process_all_data([MATCH], [], [], markets=MARKETS)
        assert first.needs_review == 1

        second = processor.process_all_data([], [], [ORDER], markets=MARKETS)
        assert second.needs_review == 0

        [match] = store.select_normalized("conn-1", [TxnType.TRADE_MATCH])
        assert match.base_asset == "BTC"
        assert match.base_amount == Decimal("0.1")

    def test_fee_from_later_sync_is_merged(self):
        store, processor = make_processor()
        processor.process_all_data([MATCH], [], [ORDER], markets=MARKETS)

        processor.process_all_data([FEE], [], [], markets=MARKETS)

        assert store.select_normalized("conn-1", [TxnType.FEE]) == []
        [match] = store.select_normalized("conn-1", [TxnType.TRADE_MATCH])
        assert match.fee_amount == Decimal("25")
        assert match.fee_asset == "NOK"

    def test_unmatched_fee_kept_as_row(self):
        store, processor = make_processor()
        orphan = dict(FEE, id="f2", order_id="o-missing")

        processor.process_all_data([orphan], [], [], markets=MARKETS)

        [fee] = store.select_normalized("conn-1", [TxnType.FEE])
        assert fee.base_amount == Decimal("-25")

    def test_failure_in_one_kind_is_isolated(self):

        class FailingDepositStore(InMemoryLedgerStore):
            def upsert_raw_records(self, records):
                if records and records[0].kind is RecordKind.DEPOSIT:
                    raise RuntimeError("deadlock detected")
                return super().upsert_raw_records(records)

        store, processor = make_processor(FailingDepositStore())

        summary = processor.process_all_data([MATCH], [DEPOSIT], [ORDER], markets=MARKETS)

        assert len(summary.errors) == 1
        assert summary.errors[0].startswith("deposit processing error")
        assert summary.details["deposits"].raw_count == 0
        assert summary.details["orders"].raw_count == 1
        assert summary.needs_review == 0

    def test_summary_serializes(self):
        _, processor = make_processor()
        data = processor.process_all_data([MATCH], [], [], markets=MARKETS).to_dict()

        assert set(data["details"]) == {"transactions", "deposits", "orders", "enrichment"}
        assert data["needs_review"] == 1
