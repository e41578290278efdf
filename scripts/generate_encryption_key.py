"""
============================================================================
Firi Ledger Sync v1.0.0
Encryption Key Generator
============================================================================

Reliability Level: DEVELOPMENT/OPERATIONS
Input Constraints: None
Side Effects: Prints a new key to stdout (nothing is written to disk)

PURPOSE
-------
Generate a fresh 32-byte SECRETS_ENC_KEY for .env. Changing the key makes
every stored exchange secret undecryptable; users must reconnect.

EXECUTION
---------
    python scripts/generate_encryption_key.py

============================================================================
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from firi_sync.config import ENV_ENCRYPTION_KEY
from firi_sync.crypto.secret_cipher import SecretCipher, generate_key_hex


def main() -> int:
    key_hex = generate_key_hex()

    # Self-test before handing the key out
    health = SecretCipher.from_hex(key_hex).health_check()
    if not health.healthy:
        print("[CRITICAL] Generated key failed the encryption self-test")
        return 1

    print("=" * 60)
    print("FIRI LEDGER SYNC - ENCRYPTION KEY")
    print("=" * 60)
    print(f"\n{ENV_ENCRYPTION_KEY}={key_hex}\n")
    print("Add this line to .env. Keep it out of version control.")
    print("Rotating the key requires every user to reconnect Firi.")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
