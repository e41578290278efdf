"""
============================================================================
Firi Ledger Sync v1.0.0
Database Session - SQLAlchemy Engine Management
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: PostgreSQL reachable at SyncConfig.database_url
Side Effects: Database connections

SOVEREIGN MANDATE:
- Connection pooling with pre-ping
- Every connection runs in UTC
- Engine created lazily so importing this module never connects

============================================================================
"""

import logging
import os
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

from firi_sync.config import get_config

logger = logging.getLogger(__name__)


# ============================================================================
# SQLALCHEMY ENGINE
# ============================================================================

def create_db_engine(database_url: str) -> Engine:
    """
    Create a pooled engine with the UTC session listener installed.

    Args:
        database_url: SQLAlchemy URL

    Returns:
        Engine
    """
    engine = create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=os.getenv("DB_ECHO", "false").lower() == "true",
        execution_options={
            "isolation_level": "READ COMMITTED"
        }
    )

    @event.listens_for(engine, "connect")
    def set_timezone(dbapi_connection, connection_record):
        """All timestamps must be UTC."""
        cursor = dbapi_connection.cursor()
        cursor.execute("SET timezone TO 'UTC'")
        cursor.close()

    return engine


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Process-wide engine built from validated configuration."""
    global _engine
    if _engine is None:
        _engine = create_db_engine(get_config().database_url)
        logger.info("[FIRI-DB] Engine created | pool=QueuePool")
    return _engine


def dispose_engine() -> None:
    """Close pooled connections (shutdown and tests)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


# ============================================================================
# HEALTH CHECK
# ============================================================================

def check_database_connection(engine: Optional[Engine] = None) -> bool:
    """
    Verify database connectivity.

    Returns:
        True if the database answers SELECT 1, False otherwise
    """
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"[FIRI-DB] Database connection failed | error_type={type(e).__name__}")
        return False
