# ============================================================================
# Firi Ledger Sync v1.0.0
# Error Base - Coded Exceptions
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Common base for every coded exception raised by the sync pipeline
#
# SOVEREIGN MANDATE:
#   - Every raised error carries a stable error code for audit grepping
#   - Messages describe types and lengths, never secret values
#
# ============================================================================

from typing import Optional


class FiriSyncError(Exception):
    """
    Base exception for all Firi sync errors.

    The rendered message is prefixed with the error code so log lines and
    API responses can be correlated without parsing.
    """

    error_code = "FIRI-000"

    def __init__(self, message: str, error_code: Optional[str] = None):
        if error_code is not None:
            self.error_code = error_code
        self.message = message
        super().__init__(f"[{self.error_code}] {message}")


class SyncCancelledError(FiriSyncError):
    """
    Raised when a caller-supplied cancellation event is set (FIRI-SYNC-002).

    Shared by the rate limiter, the client retry loop and the sync manager,
    all of which poll the same threading.Event.
    """

    error_code = "FIRI-SYNC-002"
