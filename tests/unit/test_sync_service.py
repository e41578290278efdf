"""
============================================================================
Unit Tests - FiriSyncService
============================================================================

Reliability Level: L6 Critical

connect validation, encrypted storage, status bookkeeping, cursor
persistence and credential failures. Exchange traffic goes through a
FiriClient on a scripted session; persistence is InMemoryLedgerStore.

============================================================================
"""

import pytest
import requests

from conftest import FakeResponse
from firi_sync.config import SyncConfig
from firi_sync.crypto.secret_cipher import SecretCipher
from firi_sync.crypto.wire_codec import from_wire
from firi_sync.database.memory_store import InMemoryLedgerStore
from firi_sync.exchange.firi_client import FiriAuthError
from firi_sync.exchange.hmac_signer import HEADER_ACCESS_KEY, FiriCredentials
from firi_sync.exchange.market_directory import MARKETS_PATH, MarketDirectory
from ledger_ingestion.schemas import SyncStatus, SyncStream
from ledger_ingestion.sync_manager import STREAM_PATHS, SyncOptions
from ledger_ingestion.sync_service import (
    MAX_SECRET_LENGTH,
    ConnectionNotFoundError,
    ConnectionValidationError,
    CredentialAccessError,
    FiriSyncService,
    build_sync_service,
)

TX_PATH = STREAM_PATHS[SyncStream.TRANSACTIONS]
DEPOSIT_PATH = STREAM_PATHS[SyncStream.DEPOSITS]
ORDER_PATH = STREAM_PATHS[SyncStream.ORDERS]


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def service(store, cipher, session, make_client):
    return FiriSyncService(
        store=store,
        cipher=cipher,
        client_factory=lambda correlation_id: make_client(session, correlation_id=correlation_id),
        market_directory=MarketDirectory(),
        options=SyncOptions(batch_size=2, page_delay_seconds=0),
    )


def script_exchange(session):
    session.add(MARKETS_PATH, FakeResponse(200, [{"id": "BTCNOK", "base": "BTC", "quote": "NOK"}]))
    session.add(TX_PATH, FakeResponse(200, [
        {"id": "m1", "type": "Match", "amount": "0.1", "currency": "BTC",
         "details": {"match_id": "o1"}},
    ]))
    session.add(DEPOSIT_PATH, FakeResponse(200, [
        {"id": "d1", "amount": "1000", "currency": "NOK", "deposited_at": "2024-01-01T00:00:00Z"},
    ]))
    session.add(ORDER_PATH, FakeResponse(200, [
        {"id": "o1", "market": "BTCNOK", "side": "bid", "amount": "0.1", "price": "500000"},
    ]))


class TestConnect:

    def test_secret_stored_encrypted(self, service, store, cipher):
        connection = service.connect("user-1", "key-123456789", "client-1", "my-secret")

        stored = store.get_connection(connection.id)
        assert stored.api_secret.startswith("\\x")
        assert "my-secret" not in stored.api_secret
        assert cipher.decrypt(from_wire(stored.api_secret)) == "my-secret"
        assert stored.sync_status is SyncStatus.IDLE

    def test_reconnect_replaces_credentials(self, service, store):
        first = service.connect("user-1", "key-a", "client-1", "secret-a")
        store.update_connection_sync_state(first.id, SyncStatus.COMPLETED, sync_cursor={"x": 1})

        second = service.connect("user-1", "key-b", "client-1", "secret-b")

        assert second.id == first.id
        assert store.get_connection(first.id).api_key == "key-b"
        assert store.get_connection(first.id).sync_cursor == {}

    @pytest.mark.parametrize("api_key,client_id,secret", [
        (None, "client", "secret"),
        ("key", "", "secret"),
        ("key", "client", None),
        (123, "client", "secret"),
        ("key", ["client"], "secret"),
        ("k" * 101, "client", "secret"),
        ("key", "client", "s" * (MAX_SECRET_LENGTH + 1)),
    ])
    def test_invalid_fields_rejected(self, service, store, api_key, client_id, secret):
        with pytest.raises(ConnectionValidationError) as exc_info:
            service.connect("user-1", api_key, client_id, secret)

        assert exc_info.value.error_code == "FIRI-SYNC-001"
        assert store.find_connection("user-1") is None

    def test_error_message_never_contains_secret(self, service):
        secret = "s" * (MAX_SECRET_LENGTH + 1)
        with pytest.raises(ConnectionValidationError) as exc_info:
            service.connect("user-1", "key", "client", secret)
        assert secret not in str(exc_info.value)


class TestSync:

    def test_full_sync_completes(self, service, store, session):
        script_exchange(session)
        connection = service.connect("user-1", "key-123456789", "client-1", "my-secret")

        summary = service.sync(connection_id=connection.id, user_id="user-1")

        assert summary.success
        assert summary.total_raw == 3
        assert summary.needs_review == 0
        assert summary.has_more is False
        assert summary.correlation_id

        stored = store.get_connection(connection.id)
        assert stored.sync_status is SyncStatus.COMPLETED
        assert stored.sync_error is None
        assert stored.last_synced_at is not None
        assert stored.sync_cursor["transactions"]["last_id"] == "m1"
        assert stored.sync_metadata["correlation_id"] == summary.correlation_id
        assert session.closed

    def test_second_sync_resumes_from_cursor(self, service, session):
        script_exchange(session)
        connection = service.connect("user-1", "key-123456789", "client-1", "my-secret")
        service.sync(connection_id=connection.id)

        service.sync(user_id="user-1")

        tx_calls = session.calls_to(TX_PATH)
        assert "from_id" not in tx_calls[0]["params"]
        assert tx_calls[1]["params"]["from_id"] == "m1"

    def test_fresh_credentials_restart_streams(self, service, session):
        script_exchange(session)
        connection = service.connect("user-1", "key-123456789", "client-1", "my-secret")
        service.sync(connection_id=connection.id)

        summary = service.sync_with_credentials(
            "user-1", FiriCredentials("rotated-key-0001", "client-1", "new-secret")
        )

        last_tx = session.calls_to(TX_PATH)[-1]
        assert "from_id" not in last_tx["params"]
        assert last_tx["headers"][HEADER_ACCESS_KEY] == "rotated-key-0001"
        assert summary.connection_id == connection.id

    def test_auth_failure_recorded(self, service, store, session):
        script_exchange(session)
        session.routes[TX_PATH].clear()
        session.add(TX_PATH, FakeResponse(401, {"error": "Invalid signature"}))
        connection = service.connect("user-1", "key-123456789", "client-1", "my-secret")

        with pytest.raises(FiriAuthError):
            service.sync(connection_id=connection.id)

        stored = store.get_connection(connection.id)
        assert stored.sync_status is SyncStatus.ERROR
        assert stored.sync_error == "Invalid signature"
        assert stored.sync_metadata["error_code"] == "FIRI-CLI-401"
        assert session.closed

    def test_stream_error_marks_sync_failed(self, service, store, session):
        script_exchange(session)
        session.routes[DEPOSIT_PATH].clear()
        session.add(DEPOSIT_PATH, FakeResponse(404, {"error": "gone"}))
        connection = service.connect("user-1", "key-123456789", "client-1", "my-secret")

        summary = service.sync(connection_id=connection.id)

        assert not summary.success
        assert any("sync stream error" in e for e in summary.errors)
        assert summary.total_raw == 2
        assert store.get_connection(connection.id).sync_status is SyncStatus.ERROR

    def test_unexpected_failure_leaves_error_status(self, service, store, session):
        script_exchange(session)
        session.routes[TX_PATH].clear()
        session.add(TX_PATH, RuntimeError("driver exploded"))
        connection = service.connect("user-1", "key-123456789", "client-1", "my-secret")

        with pytest.raises(RuntimeError):
            service.sync(connection_id=connection.id)

        stored = store.get_connection(connection.id)
        assert stored.sync_status is SyncStatus.ERROR
        assert stored.sync_error == "Unexpected RuntimeError"
        assert stored.sync_metadata["error_type"] == "RuntimeError"
        assert session.closed

    def test_broken_transfer_recorded_as_stream_error(self, service, store, session):
        script_exchange(session)
        session.routes[TX_PATH].clear()
        session.add(TX_PATH, requests.exceptions.ChunkedEncodingError("connection broken"))
        connection = service.connect("user-1", "key-123456789", "client-1", "my-secret")

        summary = service.sync(connection_id=connection.id)

        assert not summary.success
        assert summary.total_raw == 2
        assert store.get_connection(connection.id).sync_status is SyncStatus.ERROR

    def test_unknown_connection(self, service):
        with pytest.raises(ConnectionNotFoundError):
            service.sync(connection_id="missing")
        with pytest.raises(ConnectionNotFoundError):
            service.sync(user_id="nobody")

    def test_other_users_connection_not_found(self, service):
        connection = service.connect("user-1", "key-123456789", "client-1", "my-secret")
        with pytest.raises(ConnectionNotFoundError):
            service.sync(connection_id=connection.id, user_id="user-2")


class TestCredentialAccess:

    def test_malformed_stored_secret(self, service, store, session):
        connection = store.upsert_connection("user-1", "key", "client", "%%% not a blob %%%")

        with pytest.raises(CredentialAccessError) as exc_info:
            service.sync(connection_id=connection.id)

        assert exc_info.value.error_code == "FIRI-SEC-003"
        assert session.calls == []

    def test_wrong_key(self, service, store, session, make_client):
        service.connect("user-1", "key-123456789", "client-1", "my-secret")
        other = FiriSyncService(
            store=store,
            cipher=SecretCipher(b"\x01" * 32),
            client_factory=lambda cid: make_client(session),
            market_directory=MarketDirectory(),
        )

        with pytest.raises(CredentialAccessError):
            other.sync(user_id="user-1")

        assert "my-secret" not in repr(store.find_connection("user-1"))


class TestBuildSyncService:

    def test_wires_options_from_config(self, store, cipher):
        config = SyncConfig(sync_batch_size=50, sync_max_pages=7, market_cache_ttl_seconds=30)

        service = build_sync_service(store, cipher, config)

        assert service.options.batch_size == 50
        assert service.options.max_pages == 7
        assert service.market_directory.ttl_seconds == 30

        first = service.client_factory("a")
        second = service.client_factory("b")
        assert first.rate_limiter is second.rate_limiter
        first.close()
        second.close()
