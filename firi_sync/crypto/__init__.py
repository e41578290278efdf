# ============================================================================
# Firi Ledger Sync v1.0.0
# Crypto Module - Credential Protection at Rest
# ============================================================================
#
# Components:
#   - SecretCipher: AES-256-GCM encrypt/decrypt with health check
#   - to_wire / from_wire: bytea transport codec
#
# ============================================================================

from firi_sync.crypto.secret_cipher import (
    SecretCipher,
    SecretEncryptionError,
    SecretDecryptionError,
    EncryptionHealth,
    generate_key_hex,
    unconfigured_health,
)
from firi_sync.crypto.wire_codec import to_wire, from_wire, WireFormatError

__all__ = [
    'SecretCipher',
    'SecretEncryptionError',
    'SecretDecryptionError',
    'EncryptionHealth',
    'generate_key_hex',
    'unconfigured_health',
    'to_wire',
    'from_wire',
    'WireFormatError',
]
