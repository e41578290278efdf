# ============================================================================
# Firi Ledger Sync v1.0.0
# Observability Module - Logging Hygiene and Prometheus Metrics
# ============================================================================

from firi_sync.observability.secure_logging import (
    SecretRedactionFilter,
    configure_logging,
    redact_key,
    redact_text,
    redact_value,
)
from firi_sync.observability import metrics

__all__ = [
    'SecretRedactionFilter',
    'configure_logging',
    'redact_key',
    'redact_text',
    'redact_value',
    'metrics',
]
