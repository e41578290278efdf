# ============================================================================
# Firi Ledger Sync v1.0.0
# Exchange Module - Firi API Integration
# ============================================================================
#
# Components:
#   - FiriSigner: HMAC-SHA256 time-boxed request signing
#   - SlidingWindowRateLimiter: 6 requests / rolling second
#   - FiriClient: Signed, retrying JSON client
#   - MarketDirectory: TTL-cached market metadata
#   - DecimalGateway: Exact amount parsing
#
# ============================================================================

from firi_sync.exchange.hmac_signer import (
    FiriCredentials,
    FiriSigner,
    SignerValidationError,
    signature_payload,
    validate_headers,
)
from firi_sync.exchange.rate_limiter import SlidingWindowRateLimiter, ExponentialBackoff
from firi_sync.exchange.firi_client import (
    FiriClient,
    FiriClientError,
    FiriAuthError,
    FiriRateLimitError,
    FiriResponseError,
    FiriRetryExhaustedError,
)
from firi_sync.exchange.market_directory import (
    MarketDirectory,
    MarketDirectoryError,
    MarketInfo,
    get_market_directory,
    reset_market_directory,
)
from firi_sync.exchange.decimal_gateway import DecimalGateway, to_decimal

__all__ = [
    # Signing
    'FiriCredentials',
    'FiriSigner',
    'SignerValidationError',
    'signature_payload',
    'validate_headers',
    # Rate limiting
    'SlidingWindowRateLimiter',
    'ExponentialBackoff',
    # Client
    'FiriClient',
    'FiriClientError',
    'FiriAuthError',
    'FiriRateLimitError',
    'FiriResponseError',
    'FiriRetryExhaustedError',
    # Markets
    'MarketDirectory',
    'MarketDirectoryError',
    'MarketInfo',
    'get_market_directory',
    'reset_market_directory',
    # Decimal
    'DecimalGateway',
    'to_decimal',
]
