"""Provider public keys (JWKS) and id_token verification.

Used to verify Apple id_tokens before their claims are trusted. Keys are
cached per process and refetched when stale or when a token names a
``kid`` we haven't seen (Apple rotates keys).
"""

import logging
import time
from typing import Any, Optional

import httpx
from jose import jwt
from jose.exceptions import JOSEError

logger = logging.getLogger(__name__)

JWKS_CACHE_TTL_SECONDS = 3600
JWKS_FETCH_TIMEOUT = 5.0


class KeySetError(Exception):
    """Raised when keys can't be fetched or a token fails verification."""


class JWKSCache:
    """Fetches and caches a JSON Web Key Set.

    Args:
        url: JWKS endpoint.
        ttl: Seconds before cached keys are considered stale.
        transport: Optional httpx transport (tests).
    """

    def __init__(
        self,
        url: str,
        ttl: int = JWKS_CACHE_TTL_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.ttl = ttl
        self._transport = transport
        self._keys: dict[str, dict[str, Any]] = {}
        self._fetched_at = 0.0

    def _stale(self) -> bool:
        return not self._keys or time.monotonic() - self._fetched_at > self.ttl

    async def refresh(self) -> None:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=JWKS_FETCH_TIMEOUT) as client:
                resp = await client.get(self.url)
        except httpx.HTTPError as e:
            raise KeySetError(f"JWKS fetch failed: {type(e).__name__}") from e

        if resp.status_code != 200:
            raise KeySetError(f"JWKS fetch returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise KeySetError("JWKS response is not JSON") from e
        keys = body.get("keys") if isinstance(body, dict) else None
        if not isinstance(keys, list):
            raise KeySetError("JWKS response has no key list")

        self._keys = {k["kid"]: k for k in keys if isinstance(k, dict) and k.get("kid")}
        self._fetched_at = time.monotonic()
        logger.info("Loaded %d signing keys from %s", len(self._keys), self.url)

    async def get_key(self, kid: str) -> dict[str, Any]:
        if self._stale() or kid not in self._keys:
            await self.refresh()
        try:
            return self._keys[kid]
        except KeyError:
            raise KeySetError(f"unknown signing key id: {kid}") from None


async def verify_id_token(
    token: str,
    keys: JWKSCache,
    audience: str,
    issuer: str,
) -> dict[str, Any]:
    """Verify an RS256 id_token's signature, issuer, audience and expiry.

    Returns the claims. Raises KeySetError on any failure.
    """
    try:
        header = jwt.get_unverified_header(token)
    except JOSEError as e:
        raise KeySetError("malformed id_token") from e

    if header.get("alg") != "RS256" or not header.get("kid"):
        raise KeySetError("unexpected id_token header")

    key = await keys.get_key(header["kid"])
    try:
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=audience,
            issuer=issuer,
            # at_hash would need the access token, which the browser never has
            options={"verify_at_hash": False},
        )
    except JOSEError as e:
        logger.warning("id_token verification failed: %s", str(e))
        raise KeySetError(f"id_token verification failed: {e}") from e
