"""
============================================================================
Firi Sync Service - Connect and Sync Operations
============================================================================

Reliability Level: L6 Critical
Input Constraints: Caller is already authenticated; user_id is trusted
Side Effects: Exchange HTTP calls, LedgerStore writes

OPERATIONS:
    connect(user_id, api_key, client_id, secret)
        Validate, encrypt the secret, upsert the connection.

    sync(connection_id | user_id | credentials)
        Load connection -> decode wire blob -> decrypt -> status "syncing"
        -> sync_all (resume stored cursors) -> process -> store cursors,
        last_synced_at, status "completed" / "error", metadata.

STATUS MACHINE (exchange_connections.sync_status):
    idle -> syncing -> completed
                    -> error   (auth failure, cancellation, processing
                                errors, stream errors)

SECRET HANDLING:
    The plaintext secret exists only inside sync(); it is never logged,
    never returned and never part of an error message.

============================================================================
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from firi_sync.config import SyncConfig
from firi_sync.crypto.secret_cipher import SecretCipher, SecretDecryptionError
from firi_sync.crypto.wire_codec import WireFormatError, from_wire, to_wire
from firi_sync.database.ledger_store import LedgerStore
from firi_sync.errors import FiriSyncError
from firi_sync.exchange.firi_client import FiriClient
from firi_sync.exchange.hmac_signer import FiriCredentials
from firi_sync.exchange.market_directory import MarketDirectory
from firi_sync.exchange.rate_limiter import SlidingWindowRateLimiter
from firi_sync.observability import metrics
from firi_sync.observability.secure_logging import redact_key
from ledger_ingestion.data_processor import FiriDataProcessor, ProcessingSummary
from ledger_ingestion.schemas import (
    EXCHANGE_FIRI,
    ExchangeConnection,
    SyncCursorSet,
    SyncStatus,
)
from ledger_ingestion.sync_manager import FiriSyncManager, SyncOptions

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_API_KEY_LENGTH = 100
MAX_CLIENT_ID_LENGTH = 100
MAX_SECRET_LENGTH = 500


# =============================================================================
# Exceptions
# =============================================================================

class ConnectionValidationError(FiriSyncError):
    """Connect request fields missing, mistyped or too long (FIRI-SYNC-001)."""
    error_code = "FIRI-SYNC-001"


class ConnectionNotFoundError(FiriSyncError):
    """No stored connection for the requested id or user (FIRI-SYNC-003)."""
    error_code = "FIRI-SYNC-003"


class CredentialAccessError(FiriSyncError):
    """
    Stored secret could not be decoded or decrypted (FIRI-SEC-003).

    Covers a wrong key, a tampered blob and a malformed column alike.
    """
    error_code = "FIRI-SEC-003"


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class SyncSummary:
    """Result of one sync() call."""
    connection_id: str
    total_raw: int
    total_normalized: int
    errors: List[str]
    needs_review: int
    has_more: bool
    progress: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "success": self.success,
            "total_raw": self.total_raw,
            "total_normalized": self.total_normalized,
            "errors": list(self.errors),
            "needs_review": self.needs_review,
            "has_more": self.has_more,
            "progress": self.progress,
            "correlation_id": self.correlation_id,
        }


ClientFactory = Callable[[Optional[str]], FiriClient]


# =============================================================================
# Service
# =============================================================================

class FiriSyncService:
    """
    Entry point for connecting accounts and running syncs.

    Reliability Level: L6 Critical
    Thread Safety: Stateless between calls; the injected market directory
                   and the clients' shared rate limiter are thread-safe
    """

    def __init__(
        self,
        store: LedgerStore,
        cipher: SecretCipher,
        client_factory: ClientFactory,
        market_directory: MarketDirectory,
        options: Optional[SyncOptions] = None
    ):
        """
        Args:
            store: Ledger persistence
            cipher: Secret cipher built from SECRETS_ENC_KEY
            client_factory: Builds a FiriClient for a correlation id
            market_directory: Process-wide market cache
            options: Pagination tuning
        """
        self.store = store
        self.cipher = cipher
        self.client_factory = client_factory
        self.market_directory = market_directory
        self.options = options or SyncOptions()

    # ========================================================================
    # connect
    # ========================================================================

    @staticmethod
    def validate_connect_fields(api_key: Any, client_id: Any, secret: Any) -> None:
        """
        Raises:
            ConnectionValidationError: Describes types and lengths only
        """
        if not api_key or not client_id or not secret:
            raise ConnectionValidationError(
                "Missing required fields: api_key, client_id and secret are required"
            )
        if not all(isinstance(v, str) for v in (api_key, client_id, secret)):
            raise ConnectionValidationError(
                f"All fields must be strings | api_key_type={type(api_key).__name__} | "
                f"client_id_type={type(client_id).__name__} | "
                f"secret_type={type(secret).__name__}"
            )
        if (len(api_key) > MAX_API_KEY_LENGTH
                or len(client_id) > MAX_CLIENT_ID_LENGTH
                or len(secret) > MAX_SECRET_LENGTH):
            raise ConnectionValidationError(
                f"Field lengths exceed limits | api_key_length={len(api_key)} | "
                f"client_id_length={len(client_id)} | secret_length={len(secret)}"
            )

    def connect(
        self,
        user_id: str,
        api_key: Any,
        client_id: Any,
        secret: Any
    ) -> ExchangeConnection:
        """
        Store (or replace) a user's Firi credentials.

        Returns:
            The stored connection (secret in encrypted wire form)
        """
        self.validate_connect_fields(api_key, client_id, secret)

        blob = self.cipher.encrypt(secret)
        connection = self.store.upsert_connection(
            user_id=user_id,
            api_key=api_key,
            client_id=client_id,
            api_secret=to_wire(blob),
            exchange=EXCHANGE_FIRI,
        )
        logger.info(
            f"[SYNC-SVC] Connection stored | connection_id={connection.id} | "
            f"api_key={redact_key(api_key)} | secret_length={len(secret)}"
        )
        return connection

    # ========================================================================
    # sync
    # ========================================================================

    def _load_connection(
        self,
        connection_id: Optional[str],
        user_id: Optional[str]
    ) -> ExchangeConnection:
        connection = None
        if connection_id:
            connection = self.store.get_connection(connection_id)
            # A caller may only sync its own connection
            if connection is not None and user_id and connection.user_id != user_id:
                connection = None
        elif user_id:
            connection = self.store.find_connection(user_id, EXCHANGE_FIRI)

        if connection is None:
            raise ConnectionNotFoundError(
                f"No Firi connection | connection_id={connection_id} | "
                f"by_user={user_id is not None}"
            )
        return connection

    def decrypt_credentials(self, connection: ExchangeConnection) -> FiriCredentials:
        """
        Decode and decrypt the stored secret.

        Raises:
            CredentialAccessError: On any decode or decrypt failure
        """
        try:
            secret_plain = self.cipher.decrypt(from_wire(connection.api_secret))
        except (WireFormatError, SecretDecryptionError) as e:
            logger.error(
                f"[{CredentialAccessError.error_code}] Stored secret unusable | "
                f"connection_id={connection.id} | cause={e.error_code}"
            )
            raise CredentialAccessError(
                f"Stored credentials could not be decrypted | connection_id={connection.id}"
            ) from e

        return FiriCredentials(
            api_key=connection.api_key,
            client_id=connection.client_id,
            secret_plain=secret_plain,
        )

    def sync(
        self,
        connection_id: Optional[str] = None,
        credentials: Optional[FiriCredentials] = None,
        user_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> SyncSummary:
        """
        Run one full sync for a stored connection.

        With credentials supplied the stored secret is not used and the
        streams start from scratch instead of the stored cursors; results
        are still persisted under the connection.

        Raises:
            ConnectionNotFoundError: No connection to sync into
            CredentialAccessError: Stored secret undecryptable
            FiriAuthError: Firi rejected the credentials
            SyncCancelledError: cancel_event was set
        """
        correlation_id = str(uuid.uuid4())
        connection = self._load_connection(connection_id, user_id)

        if credentials is None:
            credentials = self.decrypt_credentials(connection)
            existing = connection.cursors()
        else:
            existing = SyncCursorSet()

        return self._run(connection, credentials, existing, cancel_event, correlation_id)

    def sync_with_credentials(
        self,
        user_id: str,
        credentials: FiriCredentials,
        cancel_event: Optional[threading.Event] = None
    ) -> SyncSummary:
        """Full re-sync of a user's connection with fresh credentials."""
        return self.sync(user_id=user_id, credentials=credentials, cancel_event=cancel_event)

    def _run(
        self,
        connection: ExchangeConnection,
        credentials: FiriCredentials,
        existing: SyncCursorSet,
        cancel_event: Optional[threading.Event],
        correlation_id: str
    ) -> SyncSummary:
        started = time.monotonic()
        self.store.update_connection_sync_state(connection.id, SyncStatus.SYNCING)
        logger.info(
            f"[SYNC-SVC] Sync started | connection_id={connection.id} | "
            f"api_key={credentials.redacted_key()} | correlation_id={correlation_id}"
        )

        client = self.client_factory(correlation_id)
        try:
            manager = FiriSyncManager(
                client,
                credentials,
                self.market_directory,
                options=self.options,
                cancel_event=cancel_event,
                correlation_id=correlation_id,
            )
            result = manager.sync_all(existing)
        except FiriSyncError as e:
            duration = time.monotonic() - started
            self.store.update_connection_sync_state(
                connection.id,
                SyncStatus.ERROR,
                sync_error=e.message,
                sync_metadata={
                    "correlation_id": correlation_id,
                    "error_code": e.error_code,
                    "duration_seconds": round(duration, 3),
                },
            )
            metrics.observe_sync_duration(duration, "error", correlation_id)
            logger.error(
                f"[SYNC-SVC] Sync aborted | connection_id={connection.id} | "
                f"error_code={e.error_code} | correlation_id={correlation_id}"
            )
            raise
        except Exception as e:
            duration = time.monotonic() - started
            self.store.update_connection_sync_state(
                connection.id,
                SyncStatus.ERROR,
                sync_error=f"Unexpected {type(e).__name__}",
                sync_metadata={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "duration_seconds": round(duration, 3),
                },
            )
            metrics.observe_sync_duration(duration, "error", correlation_id)
            logger.error(
                f"[SYNC-SVC] Sync failed unexpectedly | connection_id={connection.id} | "
                f"error_type={type(e).__name__} | correlation_id={correlation_id}"
            )
            raise
        finally:
            client.close()

        processor = FiriDataProcessor(
            self.store, connection.user_id, connection.id, correlation_id=correlation_id
        )
        processing: ProcessingSummary = processor.process_all_data(
            result.transactions,
            result.deposits,
            result.orders,
            result.cursors,
            result.markets,
        )

        errors = list(processing.errors)
        if result.progress.last_error:
            errors.append(f"sync stream error: {result.progress.last_error}")

        status = SyncStatus.ERROR if errors else SyncStatus.COMPLETED
        duration = time.monotonic() - started
        progress = result.progress.to_dict()

        self.store.update_connection_sync_state(
            connection.id,
            status,
            sync_error="; ".join(errors) if errors else None,
            sync_cursor=result.cursors.to_dict(),
            last_synced_at=datetime.now(timezone.utc),
            sync_metadata={
                "correlation_id": correlation_id,
                "duration_seconds": round(duration, 3),
                "progress": progress,
                "processing": processing.to_dict(),
            },
        )
        metrics.observe_sync_duration(duration, status.value, correlation_id)

        logger.info(
            f"[SYNC-SVC] Sync finished | connection_id={connection.id} | "
            f"status={status.value} | total_raw={processing.total_raw} | "
            f"total_normalized={processing.total_normalized} | "
            f"needs_review={processing.needs_review} | duration={duration:.2f}s | "
            f"correlation_id={correlation_id}"
        )

        return SyncSummary(
            connection_id=connection.id,
            total_raw=processing.total_raw,
            total_normalized=processing.total_normalized,
            errors=errors,
            needs_review=processing.needs_review,
            has_more=result.progress.has_more,
            progress=progress,
            correlation_id=correlation_id,
        )


def build_sync_service(
    store: LedgerStore,
    cipher: SecretCipher,
    config: SyncConfig,
    market_directory: Optional[MarketDirectory] = None
) -> FiriSyncService:
    """
    Wire a service from configuration with one shared rate limiter.

    All clients built by the service draw from the same limiter so
    concurrent syncs in this process respect the exchange limit together.
    """
    limiter = SlidingWindowRateLimiter(
        max_requests=config.rate_limit_max_requests,
        window_seconds=config.rate_limit_window_seconds,
        min_delay_seconds=config.rate_limit_delay_seconds,
    )

    def client_factory(correlation_id: Optional[str]) -> FiriClient:
        return FiriClient.from_config(config, rate_limiter=limiter, correlation_id=correlation_id)

    return FiriSyncService(
        store=store,
        cipher=cipher,
        client_factory=client_factory,
        market_directory=market_directory or MarketDirectory(
            ttl_seconds=config.market_cache_ttl_seconds
        ),
        options=SyncOptions(
            batch_size=config.sync_batch_size,
            max_pages=config.sync_max_pages,
        ),
    )
