"""
============================================================================
Firi Ledger Sync v1.0.0
Firi Account Check - Credential and Connectivity Verification
============================================================================

Reliability Level: DEVELOPMENT/TESTING
Input Constraints: FIRI_API_KEY, FIRI_CLIENT_ID, FIRI_SECRET in .env
Side Effects: Read-only API calls to Firi

PURPOSE
-------
Verify that credentials sign correctly before connecting them:
  1. GET /time            (unauthenticated, clock skew)
  2. GET /v2/markets      (signed)
  3. First page of each history stream (signed, count=5)

EXECUTION
---------
    python scripts/check_firi_account.py

============================================================================
"""

import os
import sys
import time
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv

# Load environment
load_dotenv()

from firi_sync.config import load_config
from firi_sync.errors import FiriSyncError
from firi_sync.exchange.firi_client import FiriAuthError, FiriClient
from firi_sync.exchange.hmac_signer import FiriCredentials
from firi_sync.exchange.market_directory import MarketDirectory
from firi_sync.observability.secure_logging import configure_logging, redact_key
from ledger_ingestion.sync_manager import STREAM_PATHS


def main() -> int:
    configure_logging()

    api_key = os.getenv("FIRI_API_KEY", "")
    client_id = os.getenv("FIRI_CLIENT_ID", "")
    secret = os.getenv("FIRI_SECRET", "")
    if not (api_key and client_id and secret):
        print("[ERROR] Set FIRI_API_KEY, FIRI_CLIENT_ID and FIRI_SECRET in .env")
        return 1

    credentials = FiriCredentials(api_key=api_key, client_id=client_id, secret_plain=secret)

    print("=" * 60)
    print("FIRI LEDGER SYNC - ACCOUNT CHECK")
    print("=" * 60)
    print(f"API key: {redact_key(api_key)}")

    with FiriClient.from_config(load_config()) as client:
        server_time = client.server_time()
        print(f"\nServer time: {server_time} | skew={server_time - int(time.time())}s")

        try:
            markets = MarketDirectory().get_markets(client, credentials)
            print(f"Markets: {len(markets)}")

            for stream, path in STREAM_PATHS.items():
                page = client.fetch_json(path, credentials, params={"count": 5})
                size = len(page) if isinstance(page, list) else 0
                print(f"{stream.value:<14} first page items={size}")
        except FiriAuthError as e:
            print(f"\n[AUTH FAILED] {e.message}")
            print(f"   details={e.auth_details}")
            return 2
        except FiriSyncError as e:
            print(f"\n[FAILED] {e}")
            return 3

    print("\nCredentials OK")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
