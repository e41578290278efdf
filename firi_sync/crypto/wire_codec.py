# ============================================================================
# Firi Ledger Sync v1.0.0
# Binary Transport Codec - bytea Wire Format
# ============================================================================
#
# Purpose: Carry opaque byte blobs (encrypted secrets) through text-based
#          storage transports using the PostgreSQL "\x<hex>" convention
#
# Accepted inputs for from_wire():
#   - bytes / bytearray / memoryview (driver already decoded the column)
#   - list of ints (rare JSON client representation)
#   - "\x"-prefixed hex string (PostgREST / text protocol)
#   - base64 string (fallback for clients that re-encode bytea)
#
# Error Codes:
#   - FIRI-SEC-004: Unsupported wire representation
#
# ============================================================================

import base64
import binascii
import logging
from typing import Any

from firi_sync.errors import FiriSyncError

logger = logging.getLogger(__name__)


HEX_PREFIX = "\\x"


class WireFormatError(FiriSyncError):
    """Raised when a value cannot be decoded into bytes (FIRI-SEC-004)."""
    error_code = "FIRI-SEC-004"


def to_wire(data: bytes) -> str:
    """
    Encode bytes as a backslash-x prefixed lowercase hex string.

    Args:
        data: Raw bytes

    Returns:
        e.g. "\\x0a1b2c"
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise WireFormatError(
            f"Expected bytes-like value, got type={type(data).__name__}"
        )
    return HEX_PREFIX + bytes(data).hex()


def from_wire(value: Any) -> bytes:
    """
    Decode a stored binary column back into bytes.

    Raises:
        WireFormatError: If the value has an unsupported shape
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)

    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError):
            raise WireFormatError(
                f"Integer list is not a valid byte sequence | length={len(value)}"
            )

    if isinstance(value, str):
        text = value.strip()
        if text[:2] in ("\\x", "\\X"):
            try:
                return bytes.fromhex(text[2:])
            except ValueError:
                raise WireFormatError(
                    f"Invalid hex payload after \\x prefix | length={len(text)}"
                )
        try:
            return base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError):
            raise WireFormatError(
                f"String is neither \\x-hex nor base64 | length={len(text)}"
            )

    logger.warning(
        f"[FIRI-SEC-004] Unsupported wire value | type={type(value).__name__}"
    )
    raise WireFormatError(
        f"Unsupported binary representation, got type={type(value).__name__}"
    )
