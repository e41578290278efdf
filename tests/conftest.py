"""
============================================================================
Firi Ledger Sync v1.0.0
Shared Test Fixtures
============================================================================

Reliability Level: L6 Critical
Side Effects: None (no network, no database)

FAKES:
- FakeClock:    monotonic clock whose sleep() advances time
- FakeResponse: requests.Response stand-in
- FakeSession:  scripted responses per path, records every call

============================================================================
"""

import os
import sys
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from firi_sync.crypto.secret_cipher import SecretCipher
from firi_sync.exchange.firi_client import FiriClient
from firi_sync.exchange.hmac_signer import FiriCredentials
from firi_sync.exchange.rate_limiter import ExponentialBackoff, SlidingWindowRateLimiter


SERVER_TIME = 1640995200
TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

_NO_JSON = object()


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Monotonic time that only moves when something sleeps."""

    def __init__(self, start: float = 1000.0):
        self.current = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.current += seconds


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        json_data: Any = _NO_JSON,
        text: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        self.status_code = status_code
        self._json = json_data
        self.text = text if text is not None else ("" if json_data is _NO_JSON else str(json_data))
        self.headers = headers or {}

    def json(self) -> Any:
        if self._json is _NO_JSON:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """
    Scripted session.

    Each path has a queue of responses (or exceptions to raise, or
    callables taking params). The last entry repeats once the queue is
    down to one. /time answers with SERVER_TIME unless scripted.
    """

    def __init__(self):
        self.routes: Dict[str, Deque[Any]] = defaultdict(deque)
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def add(self, path: str, *responses: Any) -> "FakeSession":
        self.routes[path].extend(responses)
        return self

    def calls_to(self, path: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["path"] == path]

    def get(self, url, headers=None, params=None, timeout=None):
        path = "/" + url.split("://", 1)[-1].split("/", 1)[-1]
        self.calls.append({
            "path": path,
            "headers": dict(headers or {}),
            "params": dict(params or {}),
            "timeout": timeout,
        })

        queue = self.routes.get(path)
        if not queue:
            if path == "/time":
                return FakeResponse(200, {"time": SERVER_TIME})
            return FakeResponse(404, {"error": "not found"})

        item = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item) and not isinstance(item, FakeResponse):
            return item(params or {})
        return item

    def close(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credentials() -> FiriCredentials:
    return FiriCredentials(
        api_key="test-api-key-0001",
        client_id="client-42",
        secret_plain="test-secret-value",
    )


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher.from_hex(TEST_KEY_HEX)


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def limiter(fake_clock: FakeClock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(
        max_requests=6,
        window_seconds=1.0,
        min_delay_seconds=0.0,
        clock=fake_clock.now,
        sleep=fake_clock.sleep,
    )


@pytest.fixture
def make_client(limiter, fake_clock) -> Callable[..., FiriClient]:
    """Client wired to fakes; no real sleeping or network."""

    def _make(session: FakeSession, **overrides) -> FiriClient:
        options = dict(
            rate_limiter=limiter,
            session=session,
            max_retries=3,
            backoff=ExponentialBackoff(jitter=0.0),
            rate_limit_cooldown=0.15,
            sleep=fake_clock.sleep,
            wall_clock=lambda: float(SERVER_TIME),
        )
        options.update(overrides)
        return FiriClient(**options)

    return _make
