"""
Unit Tests - SyncConfig loading and validation
"""

import pytest

from conftest import TEST_KEY_HEX
from firi_sync.config import (
    ENV_ENCRYPTION_KEY,
    PLACEHOLDER_ENCRYPTION_KEY,
    ConfigurationError,
    SyncConfig,
    get_config,
    load_config,
    reset_config,
)


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    for name in (
        ENV_ENCRYPTION_KEY,
        "FIRI_BASE_URL",
        "FIRI_SYNC_BATCH_SIZE",
        "FIRI_RATE_LIMIT_MAX_REQUESTS",
        "FIRI_RATE_LIMIT_DELAY_SECONDS",
        "FIRI_MARKET_CACHE_TTL_SECONDS",
        "DB_HOST",
        "DB_PASSWORD",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


class TestLoadConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv(ENV_ENCRYPTION_KEY, TEST_KEY_HEX)
        config = load_config()

        assert config.base_url == "https://api.firi.com"
        assert config.rate_limit_max_requests == 6
        assert config.rate_limit_window_seconds == 1.0
        assert config.rate_limit_delay_seconds == 0.15
        assert config.sync_batch_size == 500
        assert config.market_cache_ttl_seconds == 600
        assert config.encryption_key == bytes.fromhex(TEST_KEY_HEX)

    def test_overrides_from_environment(self, monkeypatch):
        monkeypatch.setenv(ENV_ENCRYPTION_KEY, TEST_KEY_HEX)
        monkeypatch.setenv("FIRI_BASE_URL", "https://sandbox.example/")
        monkeypatch.setenv("FIRI_SYNC_BATCH_SIZE", "100")
        monkeypatch.setenv("FIRI_RATE_LIMIT_DELAY_SECONDS", "0.5")
        monkeypatch.setenv("DB_HOST", "db.internal")
        monkeypatch.setenv("DB_PASSWORD", "pw")

        config = load_config()

        assert config.base_url == "https://sandbox.example"
        assert config.sync_batch_size == 100
        assert config.rate_limit_delay_seconds == 0.5
        assert config.database_url == "postgresql://firi_sync:pw@db.internal:5432/firi_ledger"

    def test_non_numeric_value_rejected(self, monkeypatch):
        monkeypatch.setenv("FIRI_SYNC_BATCH_SIZE", "lots")
        with pytest.raises(ConfigurationError):
            load_config()


class TestValidate:

    def test_valid_config_passes(self):
        SyncConfig(encryption_key_hex=TEST_KEY_HEX).validate()

    @pytest.mark.parametrize("key", [None, "", PLACEHOLDER_ENCRYPTION_KEY, "abc123", "z" * 64])
    def test_bad_encryption_key(self, key):
        with pytest.raises(ConfigurationError) as exc_info:
            SyncConfig(encryption_key_hex=key or None).validate()
        assert ENV_ENCRYPTION_KEY in exc_info.value.message

    def test_collects_every_problem(self):
        config = SyncConfig(
            encryption_key_hex=None,
            base_url="ftp://nowhere",
            sync_batch_size=0,
            max_retries=-1,
        )
        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()

        message = exc_info.value.message
        assert message.count(";") == 3
        assert "FIRI_BASE_URL" in message
        assert "FIRI_SYNC_BATCH_SIZE" in message
        assert "FIRI_MAX_RETRIES" in message

    def test_key_value_never_echoed(self):
        bad = "g" * 64
        with pytest.raises(ConfigurationError) as exc_info:
            SyncConfig(encryption_key_hex=bad).validate()
        assert bad not in str(exc_info.value)


class TestGetConfig:

    def test_cached_until_reset(self, monkeypatch):
        monkeypatch.setenv(ENV_ENCRYPTION_KEY, TEST_KEY_HEX)
        first = get_config()
        assert get_config() is first

        reset_config()
        assert get_config() is not first

    def test_invalid_environment_raises(self):
        with pytest.raises(ConfigurationError):
            get_config()
