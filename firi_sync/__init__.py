# ============================================================================
# Firi Ledger Sync v1.0.0
# Infrastructure Package - Crypto, Exchange Client, Persistence, API
# ============================================================================

from firi_sync.errors import FiriSyncError, SyncCancelledError

__version__ = "1.0.0"

__all__ = ["FiriSyncError", "SyncCancelledError", "__version__"]
