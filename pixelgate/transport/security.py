# pixelgate/transport/security.py
"""
Security utilities for the gateway.

Security features:
- Constant-time comparison for API keys and URL signatures
- Token strength validation (weak key detection at startup)
- Signed URLs: HMAC-SHA256 over the canonical path + query
"""
import base64
import binascii
import hashlib
import hmac
import re
import secrets
from urllib.parse import parse_qsl, urlencode

from pixelgate.config import Settings
from pixelgate.core.errors import invalid_url_signature, url_signature_mismatch
from pixelgate.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length for security (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32
# Minimum entropy check - reject obviously weak tokens
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

SIGNATURE_PARAM = "sign"
API_KEY_HEADER = "API-Key"
API_KEY_PARAM = "key"

_URLSAFE_B64 = re.compile(r"^[A-Za-z0-9_-]*$")


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Validate that a token meets minimum security requirements.
    Returns list of warnings (empty if token is strong).
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token"
            )
            break

    has_upper = any(c.isupper() for c in token)
    has_lower = any(c.islower() for c in token)
    has_digit = any(c.isdigit() for c in token)

    if not (has_upper and has_lower and has_digit):
        warnings.append(
            f"{token_name} has low character diversity. "
            "Recommended: mix of uppercase, lowercase, and numbers"
        )

    return warnings


def generate_secure_token(length: int = 32) -> str:
    """Cryptographically secure URL-safe token, suitable for API_KEY or URL_SIGNATURE_KEY."""
    return secrets.token_urlsafe(length)


def check_configured_tokens(s: Settings) -> list[str]:
    """Strength warnings for every configured secret."""
    warnings = []
    if s.api_key:
        warnings.extend(validate_token_strength(s.api_key, "API_KEY"))
    if s.url_signature_key:
        warnings.extend(validate_token_strength(s.url_signature_key, "URL_SIGNATURE_KEY"))
    return [f"SECURITY: {w}" for w in warnings]


def check_api_key(provided: str | None, expected: str) -> bool:
    """Constant-time API key comparison."""
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


# =============================================================================
# Signed URLs
# =============================================================================
# The client signs the request path plus its query string (without the
# "sign" parameter, keys sorted, re-encoded) and appends the result:
#
#   sign = base64url_nopad(HMAC-SHA256(key, path + canonical_query))
#
# A signature that cannot be decoded is a format error (400); a decodable
# signature that does not match is an integrity error (403).
# =============================================================================

def canonical_query(query: str) -> str:
    """Query string without ``sign``, keys sorted, re-encoded."""
    pairs = [
        (k, v) for k, v in parse_qsl(query, keep_blank_values=True)
        if k != SIGNATURE_PARAM
    ]
    pairs.sort(key=lambda kv: kv[0])
    return urlencode(pairs)


def signing_string(path: str, query: str) -> str:
    return path + canonical_query(query)


def compute_url_signature(key: str, path: str, query: str) -> bytes:
    return hmac.new(
        key.encode("utf-8"),
        signing_string(path, query).encode("utf-8"),
        hashlib.sha256,
    ).digest()


def sign_url_path(key: str, path: str, query: str) -> str:
    """URL-safe unpadded base64 signature for ``path`` + ``query``."""
    digest = compute_url_signature(key, path, query)
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def decode_signature(value: str) -> bytes:
    """
    Decode an unpadded URL-safe base64 signature.

    Raises:
        InvalidInputError: If the value is not valid unpadded base64url
    """
    if not value or not _URLSAFE_B64.match(value) or len(value) % 4 == 1:
        raise invalid_url_signature()
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        raise invalid_url_signature()


def verify_url_signature(key: str, path: str, query: str, signature: str) -> None:
    """
    Check a signed URL.

    Raises:
        InvalidInputError: Malformed signature (format error)
        ForbiddenError: Signature does not match (integrity error)
    """
    provided = decode_signature(signature)
    expected = compute_url_signature(key, path, query)
    if not hmac.compare_digest(provided, expected):
        logger.warning(f"URL signature mismatch for path={path}")
        raise url_signature_mismatch()
