"""
============================================================================
Unit Tests - Ledger Normalizer
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All expected values are Decimal

Covers each Firi shape, the order sign convention, trade match
enrichment, fee merge and the full build_ledger chain.

============================================================================
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from firi_sync.exchange.market_directory import MarketInfo
from ledger_ingestion.ledger_normalizer import (
    build_ledger,
    enrich_trade_matches,
    find_unresolved_trade_matches,
    merge_fees,
    normalize,
)
from ledger_ingestion.schemas import (
    MARKET_INFO_KEY,
    NormalizedEntry,
    RawRecord,
    RecordKind,
    TxnType,
)

MARKETS = {"BTCNOK": MarketInfo("BTCNOK", "BTC", "NOK", "BTC/NOK")}


def raw(kind, payload, raw_id=1):
    return RawRecord(
        provider="firi",
        connection_id="conn-1",
        user_id="user-1",
        kind=kind,
        provider_tx_id=str(payload.get("id")),
        occurred_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        payload=payload,
        id=raw_id,
    )


class TestNormalizeTransactions:

    def test_match_is_provisional(self):
        entry = normalize(raw(RecordKind.TRANSACTION, {
            "id": "t1", "type": "Match", "amount": "0.1", "currency": "BTC",
            "details": {"match_id": "o1"},
        }))
        assert entry.txn_type is TxnType.TRADE_MATCH
        assert entry.order_id == "o1"
        assert entry.base_asset is None and entry.base_amount is None
        assert entry.needs_review

    def test_withdrawal_is_negative(self):
        entry = normalize(raw(RecordKind.TRANSACTION, {
            "id": "t2", "type": "Withdrawal", "amount": "0.5", "currency": "BTC",
            "details": {"withdraw_id": "w1", "withdraw_txid": "0xfeed"},
        }))
        assert entry.txn_type is TxnType.WITHDRAWAL
        assert entry.base_amount == Decimal("-0.5")
        assert entry.txid == "0xfeed"

    def test_crypto_deposit_via_transactions(self):
        entry = normalize(raw(RecordKind.TRANSACTION, {
            "id": "t3", "type": "Deposit", "amount": "-2", "currency": "ETH",
            "details": {"deposit_id": "d1", "deposit_txid": "0xbeef"},
        }))
        assert entry.txn_type is TxnType.DEPOSIT
        assert entry.base_amount == Decimal("2")
        assert entry.txid == "0xbeef"

    def test_fee_is_negative_with_positive_magnitude(self):
        entry = normalize(raw(RecordKind.TRANSACTION, {
            "id": "t4", "type": "Fee", "amount": "-3.5", "currency": "NOK", "order_id": "o1",
        }))
        assert entry.txn_type is TxnType.FEE
        assert entry.base_amount == Decimal("-3.5")
        assert entry.fee_amount == Decimal("3.5")
        assert entry.fee_asset == "NOK"
        assert entry.order_id == "o1"

    @pytest.mark.parametrize("kind", ["bonus", "rebate"])
    def test_bonus_and_rebate_positive(self, kind):
        entry = normalize(raw(RecordKind.TRANSACTION, {
            "id": "t5", "type": kind, "amount": "-1", "currency": "NOK",
        }))
        assert entry.txn_type is TxnType(kind)
        assert entry.base_amount == Decimal("1")

    def test_unknown_shape_is_dropped(self):
        assert normalize(raw(RecordKind.TRANSACTION, {
            "id": "t6", "type": "InternalTransfer", "amount": "1", "currency": "NOK",
        })) is None

    def test_requires_stored_record(self):
        record = raw(RecordKind.DEPOSIT, {"id": "d"}, raw_id=None)
        with pytest.raises(ValueError):
            normalize(record)

    def test_provenance_carried(self):
        payload = {"id": "d1", "amount": "100", "currency": "NOK", "transaction_hash": "h"}
        entry = normalize(raw(RecordKind.DEPOSIT, payload, raw_id=42))
        assert entry.source_raw_id == 42
        assert entry.metadata == payload
        assert entry.user_id == "user-1" and entry.connection_id == "conn-1"
        assert entry.txid == "h"


class TestNormalizeOrders:

    def test_buy(self):
        entry = normalize(raw(RecordKind.ORDER, {
            "id": "o1", "market": "BTCNOK", "side": "bid", "amount": "2", "price": "100",
        }), MARKETS)
        assert entry.txn_type is TxnType.BUY
        assert (entry.base_asset, entry.base_amount) == ("BTC", Decimal("2"))
        assert (entry.quote_asset, entry.quote_amount) == ("NOK", Decimal("-200"))
        assert entry.price == Decimal("100")
        assert entry.fee_asset == "NOK"

    def test_sell(self):
        entry = normalize(raw(RecordKind.ORDER, {
            "id": "o2", "market": "BTCNOK", "side": "ask", "amount": "2", "price": "100",
        }), MARKETS)
        assert entry.txn_type is TxnType.SELL
        assert entry.base_amount == Decimal("-2")
        assert entry.quote_amount == Decimal("200")

    def test_inline_market_tag_wins(self):
        entry = normalize(raw(RecordKind.ORDER, {
            "id": "o3", "market": "ETHBTC", "side": "bid", "amount": "1", "price": "0.05",
            MARKET_INFO_KEY: {"id": "ETHBTC", "base": "ETH", "quote": "BTC"},
        }))
        assert (entry.base_asset, entry.quote_asset) == ("ETH", "BTC")
        assert entry.quote_amount == Decimal("-0.05")

    def test_unknown_market_leaves_assets_null(self):
        # Never split "DOGENOK" into symbols
        entry = normalize(raw(RecordKind.ORDER, {
            "id": "o4", "market": "DOGENOK", "side": "bid", "amount": "1", "price": "1",
        }), MARKETS)
        assert entry.txn_type is TxnType.BUY
        assert entry.base_asset is None and entry.quote_asset is None
        assert entry.base_amount is None and entry.quote_amount is None
        assert entry.order_id == "o4"


class TestEnrichAndMerge:

    def test_enrichment_from_order(self):
        match = NormalizedEntry(source_raw_id=1, txn_type=TxnType.TRADE_MATCH, order_id="o1")
        order = raw(RecordKind.ORDER, {
            "id": "o1", "market": "BTCNOK", "side": "ask", "amount": "0.5", "price": "400000",
        }).parsed()

        [enriched] = enrich_trade_matches([match], [order], MARKETS)

        assert enriched.txn_type is TxnType.TRADE_MATCH
        assert enriched.base_amount == Decimal("-0.5")
        assert enriched.quote_amount == Decimal("200000.0")
        assert not enriched.needs_review
        assert find_unresolved_trade_matches([enriched]) == []

    def test_non_match_rows_pass_through(self):
        deposit = NormalizedEntry(source_raw_id=1, txn_type=TxnType.DEPOSIT, order_id="o1")
        assert enrich_trade_matches([deposit], [], MARKETS) == [deposit]

    def test_merge_prefers_first_trade_and_fee_asset(self):
        first = NormalizedEntry(source_raw_id=1, txn_type=TxnType.TRADE_MATCH, order_id="o1",
                                quote_asset="NOK")
        second = NormalizedEntry(source_raw_id=2, txn_type=TxnType.TRADE_MATCH, order_id="o1")
        fee_a = NormalizedEntry(source_raw_id=3, txn_type=TxnType.FEE, order_id="o1",
                                fee_asset="BTC", fee_amount=Decimal("0.001"))
        fee_b = NormalizedEntry(source_raw_id=4, txn_type=TxnType.FEE, order_id="o1",
                                base_amount=Decimal("-0.002"))

        merged = merge_fees([first, second, fee_a, fee_b])

        assert [e.source_raw_id for e in merged] == [1, 2]
        assert merged[0].fee_amount == Decimal("0.003")
        assert merged[0].fee_asset == "BTC"
        assert merged[1].fee_amount is None

    def test_fee_asset_falls_back_to_quote(self):
        trade = NormalizedEntry(source_raw_id=1, txn_type=TxnType.BUY, order_id="o1", quote_asset="NOK")
        fee = NormalizedEntry(source_raw_id=2, txn_type=TxnType.FEE, order_id="o1",
                              fee_amount=Decimal("1"))
        assert merge_fees([trade, fee])[0].fee_asset == "NOK"

    def test_rows_without_order_id_never_merge(self):
        trade = NormalizedEntry(source_raw_id=1, txn_type=TxnType.BUY)
        fee = NormalizedEntry(source_raw_id=2, txn_type=TxnType.FEE, fee_amount=Decimal("1"))
        assert merge_fees([trade, fee]) == [trade, fee]


class TestBuildLedger:

    def test_full_chain(self):
        records = [
            raw(RecordKind.TRANSACTION, {"id": "m1", "type": "Match", "amount": "0.1",
                                         "currency": "BTC", "details": {"match_id": "o1"}}, None),
            raw(RecordKind.TRANSACTION, {"id": "f1", "type": "Fee", "amount": "-5",
                                         "currency": "NOK", "order_id": "o1"}, None),
            raw(RecordKind.TRANSACTION, {"id": "x1", "type": "Mystery", "amount": "1"}, None),
            raw(RecordKind.DEPOSIT, {"id": "d1", "amount": "1000", "currency": "NOK"}, None),
            raw(RecordKind.ORDER, {"id": "o1", "market": "BTCNOK", "side": "bid",
                                   "amount": "0.1", "price": "500000"}, None),
        ]

        ledger = build_ledger(records, MARKETS)

        assert [e.txn_type for e in ledger] == [TxnType.TRADE_MATCH, TxnType.DEPOSIT, TxnType.BUY]
        match = ledger[0]
        assert match.source_raw_id == 1
        assert match.base_amount == Decimal("0.1")
        assert match.quote_amount == Decimal("-50000.0")
        assert match.fee_amount == Decimal("5")
        assert match.fee_asset == "NOK"

    def test_rerun_is_stable(self):
        records = [
            raw(RecordKind.TRANSACTION, {"id": "m1", "type": "Match", "details": {"match_id": "o9"}}, 1),
            raw(RecordKind.TRANSACTION, {"id": "f1", "type": "Fee", "amount": "-1",
                                         "currency": "NOK", "order_id": "o9"}, 2),
        ]
        assert build_ledger(records, MARKETS) == build_ledger(records, MARKETS)
