# ============================================================================
# Firi Ledger Sync v1.0.0
# Exchange & Security API Endpoints
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Thin HTTP surface over FiriSyncService
#
# Endpoints:
#   POST /api/exchanges/firi/connect - Store encrypted Firi credentials
#   POST /api/exchanges/firi/sync    - Run a sync for the caller's connection
#   GET  /api/security/health        - Configuration / encryption / database
#
# Authentication:
#   - The gateway in front of this service authenticates the caller and
#     forwards the user id in the X-User-Id header
#   - Requests without X-User-Id are rejected with 401
#
# Error Codes:
#   FIRI-API-401: Missing caller identity
#   FIRI-SYNC-001: Invalid connect fields (400)
#   FIRI-SYNC-003: No connection (404)
#   FIRI-CLI-401: Firi rejected credentials (401)
#   FIRI-SEC-003: Stored secret unusable (500)
#   FIRI-RATE-001: Exchange rate limit exhausted (429)
#
# ============================================================================

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from firi_sync.config import ConfigurationError, get_config
from firi_sync.crypto.secret_cipher import SecretCipher, unconfigured_health
from firi_sync.database.ledger_store import SqlLedgerStore
from firi_sync.database.session import check_database_connection, get_engine
from firi_sync.errors import FiriSyncError, SyncCancelledError
from firi_sync.exchange.firi_client import FiriAuthError, FiriRateLimitError
from firi_sync.exchange.hmac_signer import FiriCredentials
from firi_sync.exchange.market_directory import get_market_directory
from ledger_ingestion.sync_service import (
    ConnectionNotFoundError,
    ConnectionValidationError,
    CredentialAccessError,
    FiriSyncService,
    build_sync_service,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Routers
# ============================================================================

exchange_router = APIRouter()
security_router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class ConnectRequest(BaseModel):
    """Credentials as issued by Firi. Presence, types and lengths are checked by the service."""
    api_key: Any = Field(None, alias="apiKey", description="Firi API key")
    client_id: Any = Field(None, alias="clientId", description="Firi client id")
    secret: Any = Field(None, description="Firi API secret (stored encrypted)")

    model_config = ConfigDict(populate_by_name=True)


class ConnectResponse(BaseModel):
    success: bool
    connection_id: str
    timestamp: str


class SyncCredentials(BaseModel):
    api_key: str = Field(..., alias="apiKey", min_length=1, max_length=100)
    client_id: str = Field(..., alias="clientId", min_length=1, max_length=100)
    secret: str = Field(..., min_length=1, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class SyncRequest(BaseModel):
    """Empty body syncs the caller's stored connection."""
    connection_id: Optional[str] = Field(None, alias="connectionId")
    credentials: Optional[SyncCredentials] = None

    model_config = ConfigDict(populate_by_name=True)


class SyncResponse(BaseModel):
    success: bool
    connection_id: str
    total_raw: int
    total_normalized: int
    errors: List[str]
    needs_review: int
    has_more: bool
    progress: Dict[str, Any]
    correlation_id: Optional[str]


class ComponentHealth(BaseModel):
    status: str
    details: Dict[str, Any] = Field(default_factory=dict)


class SecurityHealthResponse(BaseModel):
    timestamp: str
    overall: bool
    components: Dict[str, ComponentHealth]


# ============================================================================
# Dependencies
# ============================================================================

_service: Optional[FiriSyncService] = None


def get_sync_service() -> FiriSyncService:
    """
    Process-wide service on the PostgreSQL store.

    Overridden in tests through app.dependency_overrides.
    """
    global _service
    if _service is None:
        config = get_config()
        _service = build_sync_service(
            store=SqlLedgerStore(get_engine()),
            cipher=SecretCipher(config.encryption_key),
            config=config,
            market_directory=get_market_directory(),
        )
    return _service


def get_database_probe() -> Callable[[], bool]:
    return check_database_connection


def require_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(
            status_code=401,
            detail={"error_code": "FIRI-API-401", "message": "Authentication required"}
        )
    return x_user_id


def _error(status_code: int, error: FiriSyncError) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error_code": error.error_code, "message": error.message}
    )


# ============================================================================
# Exchange Endpoints
# ============================================================================

@exchange_router.post(
    "/connect",
    response_model=ConnectResponse,
    summary="Connect Firi Account",
    description="Validates and stores Firi API credentials. The secret is encrypted at rest.",
    tags=["Exchanges"]
)
def connect_firi(
    request: ConnectRequest,
    user_id: str = Depends(require_user_id),
    service: FiriSyncService = Depends(get_sync_service)
) -> ConnectResponse:
    """
    Reliability Level: SOVEREIGN TIER
    Side Effects: Upserts exchange_connections
    """
    try:
        connection = service.connect(
            user_id, request.api_key, request.client_id, request.secret
        )
    except ConnectionValidationError as e:
        logger.warning(f"[{e.error_code}] Connect rejected | reason={e.message}")
        raise _error(400, e)

    return ConnectResponse(
        success=True,
        connection_id=connection.id,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@exchange_router.post(
    "/sync",
    response_model=SyncResponse,
    summary="Sync Firi History",
    description=(
        "Fetches transactions, deposits and orders from Firi, stores the raw "
        "records and rebuilds the caller's ledger. Blocks until finished."
    ),
    tags=["Exchanges"]
)
def sync_firi(
    request: Optional[SyncRequest] = None,
    user_id: str = Depends(require_user_id),
    service: FiriSyncService = Depends(get_sync_service)
) -> SyncResponse:
    """
    Reliability Level: SOVEREIGN TIER
    Side Effects: Exchange HTTP calls, ledger writes
    """
    request = request or SyncRequest()
    credentials = None
    if request.credentials is not None:
        credentials = FiriCredentials(
            api_key=request.credentials.api_key,
            client_id=request.credentials.client_id,
            secret_plain=request.credentials.secret,
        )

    try:
        summary = service.sync(
            connection_id=request.connection_id,
            credentials=credentials,
            user_id=user_id,
        )
    except ConnectionNotFoundError as e:
        raise _error(404, e)
    except FiriAuthError as e:
        raise _error(401, e)
    except FiriRateLimitError as e:
        raise _error(429, e)
    except CredentialAccessError as e:
        raise _error(500, e)
    except SyncCancelledError as e:
        raise _error(409, e)
    except FiriSyncError as e:
        raise _error(502, e)

    return SyncResponse(**summary.to_dict())


# ============================================================================
# Security Endpoints
# ============================================================================

@security_router.get(
    "/health",
    response_model=SecurityHealthResponse,
    summary="Security Health",
    description="Reports configuration validity, encryption self-test and database reachability.",
    tags=["Security"]
)
def security_health(
    user_id: str = Depends(require_user_id),
    database_probe: Callable[[], bool] = Depends(get_database_probe)
) -> SecurityHealthResponse:
    """
    Never returns key material or configuration values, only statuses.
    """
    components: Dict[str, ComponentHealth] = {}

    try:
        config = get_config()
        components["environment"] = ComponentHealth(status="healthy")
        encryption = SecretCipher(config.encryption_key).health_check()
    except ConfigurationError as e:
        components["environment"] = ComponentHealth(
            status="unhealthy", details={"issues": e.message.count(";") + 1}
        )
        encryption = unconfigured_health()

    components["encryption"] = ComponentHealth(
        status="healthy" if encryption.healthy else "unhealthy",
        details=encryption.to_dict(),
    )

    database_ok = database_probe()
    components["database"] = ComponentHealth(
        status="healthy" if database_ok else "unhealthy"
    )

    overall = all(c.status == "healthy" for c in components.values())
    logger.info(
        f"[FIRI-API] Security health | overall={overall} | "
        f"encryption={components['encryption'].status} | database={components['database'].status}"
    )

    return SecurityHealthResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        overall=overall,
        components=components,
    )
