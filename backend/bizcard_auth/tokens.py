"""Compact signed tokens.

Session tokens are HS256 JWTs signed with the backend's shared JWT secret so
that the managed backend (PostgREST, storage) accepts them as its own
``authenticated`` role. They are encoded and verified here with ``hmac``
directly.

The ES256 client assertion Apple requires as ``client_secret`` is signed with
python-jose. It authenticates this service to Apple, never an end user.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from jose import jwt
from jose.exceptions import JOSEError

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 60 * 60 * 24 * 7  # 7 days
EXPIRY_SKEW_SECONDS = 300  # consumers treat tokens as expired 5 min early
SESSION_ROLE = "authenticated"

APPLE_AUDIENCE = "https://appleid.apple.com"
CLIENT_ASSERTION_TTL_SECONDS = 86400 * 180  # Apple allows at most 6 months

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenError(Exception):
    """Raised when a token fails signature or structure checks."""


# -----------------------------
# base64url
# -----------------------------

def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _json_segment(obj: dict[str, Any]) -> str:
    return b64url_encode(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


def _sign(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    return b64url_encode(digest)


# -----------------------------
# HS256
# -----------------------------

def encode(payload: dict[str, Any], secret: str) -> str:
    """Sign ``payload`` as ``header.payload.signature`` with HMAC-SHA256."""
    if not secret:
        raise TokenError("signing secret is empty")
    signing_input = f"{_json_segment(_HEADER)}.{_json_segment(payload)}"
    return f"{signing_input}.{_sign(signing_input, secret)}"


def decode(token: str, secret: str) -> dict[str, Any]:
    """Verify the signature and return the claims.

    Expiry is not checked here; callers apply their own policy via
    ``is_expired``.
    """
    parts = str(token or "").split(".")
    if len(parts) != 3:
        raise TokenError("token must have three segments")
    header_b64, payload_b64, signature = parts
    if not (header_b64.isascii() and payload_b64.isascii()):
        raise TokenError("token segments must be base64url")
    try:
        header = json.loads(b64url_decode(header_b64))
    except (ValueError, UnicodeDecodeError, binascii.Error) as e:
        raise TokenError(f"unreadable header: {e}") from e
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise TokenError("unsupported token algorithm")

    expected = _sign(f"{header_b64}.{payload_b64}", secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
        raise TokenError("signature mismatch")

    try:
        claims = json.loads(b64url_decode(payload_b64))
    except (ValueError, UnicodeDecodeError, binascii.Error) as e:
        raise TokenError(f"unreadable payload: {e}") from e
    if not isinstance(claims, dict):
        raise TokenError("payload is not a JSON object")
    return claims


def verify(token: str, secret: str) -> bool:
    try:
        decode(token, secret)
    except TokenError:
        return False
    return True


def decode_claims_unsafe(token: str) -> dict[str, Any]:
    """Decode the payload segment WITHOUT checking the signature.

    Returns ``{}`` for anything malformed; never raises.
    """
    try:
        parts = str(token or "").split(".")
        if len(parts) < 2:
            return {}
        claims = json.loads(b64url_decode(parts[1]))
    except (ValueError, TypeError, UnicodeDecodeError, binascii.Error):
        return {}
    return claims if isinstance(claims, dict) else {}


def decode_subject_unsafe(token: str) -> str:
    """Claimed ``sub`` of a token the caller already trusts, or ``""``."""
    sub = decode_claims_unsafe(token).get("sub")
    return str(sub).strip() if sub else ""


def is_expired(token: str, now: Optional[float] = None) -> bool:
    """True if ``exp`` is missing/unparseable or within the 5 minute skew."""
    exp = decode_claims_unsafe(token).get("exp")
    if isinstance(exp, bool):
        return True
    try:
        exp_value = float(exp)
    except (TypeError, ValueError):
        return True
    current = time.time() if now is None else now
    return current > exp_value - EXPIRY_SKEW_SECONDS


# -----------------------------
# Session issuance
# -----------------------------

@dataclass(frozen=True)
class SessionGrant:
    access_token: str
    expires_in: int
    expires_at: int
    user_id: str
    email: Optional[str] = None


def issue_session_token(
    user_id: str,
    secret: str,
    email: Optional[str] = None,
    now: Optional[int] = None,
) -> SessionGrant:
    """Issue a 7-day session token for an internal user id."""
    issued_at = int(time.time()) if now is None else int(now)
    expires_at = issued_at + SESSION_TTL_SECONDS
    payload: dict[str, Any] = {
        "aud": SESSION_ROLE,
        "role": SESSION_ROLE,
        "sub": user_id,
        "iat": issued_at,
        "exp": expires_at,
    }
    if email:
        payload["email"] = email
    return SessionGrant(
        access_token=encode(payload, secret),
        expires_in=SESSION_TTL_SECONDS,
        expires_at=expires_at,
        user_id=user_id,
        email=email or None,
    )


# -----------------------------
# ES256 client assertion (Apple)
# -----------------------------

def create_client_assertion(
    team_id: str,
    client_id: str,
    key_id: str,
    private_key: str,
    now: Optional[int] = None,
) -> str:
    """Build the ES256 ``client_secret`` JWT Apple expects.

    Fresh per request. Raises TokenError if the key can't sign.
    """
    issued_at = int(time.time()) if now is None else int(now)
    payload: dict[str, Any] = {
        "iss": team_id,
        "iat": issued_at,
        "exp": issued_at + CLIENT_ASSERTION_TTL_SECONDS,
        "aud": APPLE_AUDIENCE,
        "sub": client_id,
    }
    try:
        return jwt.encode(payload, private_key, algorithm="ES256", headers={"kid": key_id})
    except (JOSEError, ValueError, TypeError) as e:
        logger.error("Client assertion signing failed: %s", type(e).__name__)
        raise TokenError(f"client assertion signing failed: {e}") from e
