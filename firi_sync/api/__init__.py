# ============================================================================
# Firi Ledger Sync v1.0.0
# API Routes Module
# ============================================================================

from firi_sync.api.routes import exchange_router, security_router

__all__ = ["exchange_router", "security_router"]
