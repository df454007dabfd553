# tests/test_security.py
"""Tests for pixelgate/transport/security.py — security utilities."""
from __future__ import annotations

import base64
import hashlib
import hmac as hmac_mod

import pytest

from pixelgate.core.errors import ForbiddenError, InvalidInputError
from pixelgate.transport.security import (
    MIN_TOKEN_LENGTH,
    canonical_query,
    check_api_key,
    check_configured_tokens,
    decode_signature,
    generate_secure_token,
    sign_url_path,
    signing_string,
    validate_token_strength,
    verify_url_signature,
)
from conftest import make_settings

KEY = "Zx8pQ2mN7vR4tY6uW1aS3dF5gH9jK0lB"


# ============================================================================
# Token validation
# ============================================================================

class TestTokenStrength:
    def test_strong_token_has_no_warnings(self):
        assert validate_token_strength(KEY) == []

    def test_short_token(self):
        warnings = validate_token_strength("aA1")
        assert any("too short" in w for w in warnings)

    def test_weak_pattern(self):
        warnings = validate_token_strength("Password" + "aA1" * 10)
        assert any("weak pattern 'password'" in w for w in warnings)

    def test_low_diversity(self):
        warnings = validate_token_strength("a" * 40)
        assert any("low character diversity" in w for w in warnings)

    def test_generated_token_length(self):
        assert len(generate_secure_token()) >= MIN_TOKEN_LENGTH

    def test_check_configured_tokens(self):
        s = make_settings(api_key="short", url_signature_key=KEY)
        warnings = check_configured_tokens(s)
        assert warnings
        assert all(w.startswith("SECURITY: API_KEY") for w in warnings)

    def test_no_tokens_configured(self):
        assert check_configured_tokens(make_settings()) == []


class TestApiKey:
    def test_match(self):
        assert check_api_key("secret-key", "secret-key")

    def test_mismatch(self):
        assert not check_api_key("wrong", "secret-key")

    def test_missing(self):
        assert not check_api_key(None, "secret-key")
        assert not check_api_key("", "secret-key")


# ============================================================================
# Signed URLs
# ============================================================================

class TestCanonicalQuery:
    def test_sorts_keys_and_drops_sign(self):
        assert canonical_query("width=300&url=a&sign=xyz") == "url=a&width=300"

    def test_reencodes_values(self):
        assert canonical_query("url=https://a.com/x.jpg") == "url=https%3A%2F%2Fa.com%2Fx.jpg"

    def test_signing_string(self):
        assert signing_string("/resize", "b=2&a=1") == "/resizea=1&b=2"


class TestUrlSignature:
    def test_matches_manual_hmac(self):
        expected = hmac_mod.new(KEY.encode(), b"/resizeheight=200&width=300", hashlib.sha256).digest()
        encoded = base64.urlsafe_b64encode(expected).rstrip(b"=").decode()
        assert sign_url_path(KEY, "/resize", "width=300&height=200") == encoded

    def test_signature_is_unpadded(self):
        assert "=" not in sign_url_path(KEY, "/resize", "width=300")

    def test_valid_signature(self):
        sig = sign_url_path(KEY, "/resize", "width=300&url=x")
        # Parameter order and the sign parameter itself do not matter
        verify_url_signature(KEY, "/resize", f"url=x&sign={sig}&width=300", sig)

    def test_tampered_query(self):
        sig = sign_url_path(KEY, "/resize", "width=300")
        with pytest.raises(ForbiddenError) as exc_info:
            verify_url_signature(KEY, "/resize", "width=3000", sig)
        assert exc_info.value.status == 403

    def test_tampered_path(self):
        sig = sign_url_path(KEY, "/resize", "width=300")
        with pytest.raises(ForbiddenError):
            verify_url_signature(KEY, "/crop", "width=300", sig)

    def test_wrong_key(self):
        sig = sign_url_path("another-key-" + KEY, "/resize", "width=300")
        with pytest.raises(ForbiddenError):
            verify_url_signature(KEY, "/resize", "width=300", sig)

    def test_any_flipped_digest_byte_is_mismatch(self):
        digest = decode_signature(sign_url_path(KEY, "/resize", "width=300"))
        for i in range(len(digest)):
            flipped = bytearray(digest)
            flipped[i] ^= 0x01
            sig = base64.urlsafe_b64encode(bytes(flipped)).rstrip(b"=").decode()
            with pytest.raises(ForbiddenError) as exc_info:
                verify_url_signature(KEY, "/resize", "width=300", sig)
            assert exc_info.value.message == "URL signature mismatch"

    @pytest.mark.parametrize("value", ["", "not base64!", "abcde", "a+b/"])
    def test_malformed_signature_is_format_error(self, value):
        with pytest.raises(InvalidInputError) as exc_info:
            verify_url_signature(KEY, "/resize", "width=300", value)
        assert exc_info.value.status == 400
        assert exc_info.value.message == "Invalid URL signature"

    def test_decode_signature_pads(self):
        assert decode_signature("YWJj") == b"abc"
        assert decode_signature("YWI") == b"ab"
