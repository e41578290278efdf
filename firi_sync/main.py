"""
============================================================================
Firi Ledger Sync v1.0.0
FastAPI Application Entry Point
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Callers authenticated upstream (X-User-Id header)
Side Effects: Exchange HTTP calls, database writes

SOVEREIGN MANDATE:
- Refuse to start with invalid configuration (FIRI-CFG-001)
- Secrets never appear in logs (SecretRedactionFilter on every handler)
- Zero tolerance for floating-point amounts

Run:
    uvicorn firi_sync.main:app

============================================================================
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from firi_sync import __version__
from firi_sync.api.routes import exchange_router, security_router
from firi_sync.config import ConfigurationError, get_config, reset_config
from firi_sync.database.session import dispose_engine
from firi_sync.observability.secure_logging import configure_logging

logger = logging.getLogger(__name__)


# ============================================================================
# APPLICATION LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
        - Install secret redaction on the root logger
        - Validate configuration (raises, so the server does not start)
    Shutdown:
        - Dispose pooled database connections
    """
    configure_logging(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))

    reset_config()
    try:
        config = get_config()
    except ConfigurationError as e:
        logger.critical(f"[{e.error_code}] Startup refused | {e.message}")
        raise

    logger.info(
        f"[FIRI-APP] Started | version={__version__} | base_url={config.base_url} | "
        f"started_at={datetime.now(timezone.utc).isoformat()}"
    )

    yield

    dispose_engine()
    logger.info("[FIRI-APP] Shutdown complete")


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

def create_app() -> FastAPI:
    """Build the application with routers, error handler and /metrics."""
    app = FastAPI(
        title="Firi Ledger Sync",
        description=(
            "Imports Firi exchange history into a normalized ledger.\n\n"
            "**SOVEREIGN MANDATE:** Secrets encrypted at rest, never logged."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """No silent failures; no internals in the response."""
        error_code = "FIRI-500"
        logger.error(
            f"[{error_code}] Unhandled exception | path={request.url.path} | "
            f"error_type={type(exc).__name__}"
        )
        return JSONResponse(
            status_code=500,
            content={
                "error_code": error_code,
                "message": "Internal server error. This incident has been logged.",
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )

    app.include_router(
        exchange_router,
        prefix="/api/exchanges/firi",
        tags=["Exchanges"]
    )
    app.include_router(
        security_router,
        prefix="/api/security",
        tags=["Security"]
    )

    @app.get(
        "/metrics",
        summary="Prometheus Metrics",
        description="Exposes Prometheus metrics for observability.",
        tags=["Observability"]
    )
    async def metrics():
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )

    return app


app = create_app()
