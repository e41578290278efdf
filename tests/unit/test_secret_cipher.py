"""
Unit Tests - SecretCipher and the binary wire codec
"""

import pytest

from conftest import TEST_KEY_HEX
from firi_sync.config import ConfigurationError
from firi_sync.crypto.secret_cipher import (
    SecretCipher,
    SecretDecryptionError,
    generate_key_hex,
    unconfigured_health,
)
from firi_sync.crypto.wire_codec import WireFormatError, from_wire, to_wire


class TestSecretCipher:

    def test_round_trip(self, cipher):
        blob = cipher.encrypt("firi-secret")
        assert isinstance(blob, bytes)
        assert b"firi-secret" not in blob
        assert cipher.decrypt(blob) == "firi-secret"

    def test_decrypt_error_is_generic(self, cipher):
        with pytest.raises(SecretDecryptionError) as exc_info:
            cipher.decrypt(b"\x00" * 40)
        assert exc_info.value.message == "Unable to decrypt secret"
        assert exc_info.value.error_code == "FIRI-SEC-002"

    @pytest.mark.parametrize("key", [b"short", b"x" * 31, b"x" * 33, "0" * 32])
    def test_wrong_key_length_rejected(self, key):
        with pytest.raises(ConfigurationError):
            SecretCipher(key)

    @pytest.mark.parametrize("key_hex", ["", "zz" * 32, "00" * 16])
    def test_from_hex_rejects_malformed(self, key_hex):
        with pytest.raises(ConfigurationError):
            SecretCipher.from_hex(key_hex)

    def test_health_check(self, cipher):
        health = cipher.health_check()
        assert health.healthy
        assert health.algorithm == "aes-256-gcm"
        assert health.key_length == 32
        assert health.encryption_working

    def test_unconfigured_health(self):
        health = unconfigured_health()
        assert not health.healthy
        assert not health.key_configured

    def test_generated_key_is_usable(self):
        key_hex = generate_key_hex()
        assert len(key_hex) == 64
        assert key_hex != generate_key_hex()
        SecretCipher.from_hex(key_hex)

    def test_fixture_key_matches_constant(self, cipher):
        assert SecretCipher.from_hex(TEST_KEY_HEX).decrypt(cipher.encrypt("x")) == "x"


class TestWireCodec:

    def test_hex_form(self):
        assert to_wire(b"\x01\xab") == "\\x01ab"
        assert from_wire("\\x01ab") == b"\x01\xab"
        assert from_wire("\\X01AB") == b"\x01\xab"

    def test_base64_form(self):
        assert from_wire("Aas=") == b"\x01\xab"

    @pytest.mark.parametrize("value", [
        None,
        12345,
        {"type": "Buffer"},
        "\\xnothex",
        "not base64 !!",
        [1, 2, 300],
    ])
    def test_unsupported_values(self, value):
        with pytest.raises(WireFormatError) as exc_info:
            from_wire(value)
        assert exc_info.value.error_code == "FIRI-SEC-004"
