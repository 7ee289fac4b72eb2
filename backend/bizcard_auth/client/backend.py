"""Request clients for the managed backend, and the sessions that feed them.

Two credentials can authorize backend calls:
- the self-issued session token from the exchange endpoints, kept in durable
  storage under ``BIZCARD_SESSION_TOKEN`` (never refreshed, re-login on expiry)
- a managed-auth session (access + refresh token pair) kept under
  ``BIZCARD_MANAGED_SESSION`` and refreshed through ``/auth/v1/token``
"""

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional, Protocol

import httpx

from bizcard_auth.client.browser import KeyValueStorage, safe_get, safe_remove, safe_set
from bizcard_auth.tokens import EXPIRY_SKEW_SECONDS

logger = logging.getLogger(__name__)

SESSION_TOKEN_KEY = "BIZCARD_SESSION_TOKEN"
MANAGED_SESSION_KEY = "BIZCARD_MANAGED_SESSION"

BACKEND_TIMEOUT = 8.0


# -----------------------------
# Request client
# -----------------------------

class BackendClient:
    """httpx client bound to one bearer credential.

    Args:
        base_url: Backend root, e.g. ``https://xyz.supabase.co``.
        api_key: Public API key, sent as ``apikey`` on every call.
        access_token: Bearer credential. Defaults to the public key (anonymous).
        auto_refresh: Whether the credential behind this client refreshes.
            Descriptive only: the client never refreshes anything itself.
            A refreshed managed session gets a new client from the
            resolver's cache; clients for self-issued tokens stay False.
        transport: Optional httpx transport (tests).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: Optional[str] = None,
        auto_refresh: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token or api_key
        self.auto_refresh = auto_refresh
        self.headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {self.access_token}",
        }
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=BACKEND_TIMEOUT,
                transport=self._transport,
            )
        return self._client

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self.http.request(method, path, **kwargs)

    async def select(self, table: str, **filters: str) -> httpx.Response:
        """PostgREST select with ``eq.`` filters, e.g. ``select("cards", user_id=uid)``."""
        params = {"select": "*", **{k: f"eq.{v}" for k, v in filters.items()}}
        return await self.request("GET", f"/rest/v1/{table}", params=params)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# -----------------------------
# Self-issued session token
# -----------------------------

class SessionTokenStore:
    """The exchange endpoint's session token in durable storage."""

    def __init__(self, storage: KeyValueStorage):
        self.storage = storage

    def get(self) -> str:
        return safe_get(self.storage, SESSION_TOKEN_KEY)

    def set(self, token: str) -> bool:
        token = str(token or "").strip()
        if not token:
            return False
        return safe_set(self.storage, SESSION_TOKEN_KEY, token)

    def clear(self) -> None:
        safe_remove(self.storage, SESSION_TOKEN_KEY)


# -----------------------------
# Managed-auth session
# -----------------------------

class ManagedSessionError(Exception):
    """The managed session exists but can't be used (refresh rejected, unreachable)."""


@dataclass
class ManagedSession:
    access_token: str
    refresh_token: str
    expires_at: int
    user_id: str
    email: Optional[str] = None

    @classmethod
    def from_token_response(cls, data: dict[str, Any], now: Optional[float] = None) -> "ManagedSession":
        """Build from an ``/auth/v1/token`` response body."""
        current = int(time.time() if now is None else now)
        user = data.get("user") or {}
        expires_at = data.get("expires_at") or current + int(data.get("expires_in") or 0)
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data.get("refresh_token") or ""),
            expires_at=int(expires_at),
            user_id=str(user.get("id") or ""),
            email=user.get("email"),
        )

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current > self.expires_at - EXPIRY_SKEW_SECONDS

    def as_session(self) -> dict[str, Any]:
        return {"access_token": self.access_token, "user": {"id": self.user_id, "email": self.email}}


class ManagedSessionSource(Protocol):
    async def get_session(self) -> Optional[ManagedSession]:
        """Current session, refreshed if needed. Raises ManagedSessionError."""
        ...

    async def sign_out(self) -> None:
        ...


class StoredManagedSession:
    """Managed session persisted as JSON in durable storage."""

    def __init__(
        self,
        storage: KeyValueStorage,
        backend_url: str,
        api_key: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage
        self.token_url = f"{backend_url.rstrip('/')}/auth/v1/token"
        self.api_key = api_key
        self._transport = transport

    def load(self) -> Optional[ManagedSession]:
        raw = safe_get(self.storage, MANAGED_SESSION_KEY)
        if not raw:
            return None
        try:
            return ManagedSession(**json.loads(raw))
        except (ValueError, TypeError):
            logger.warning("Discarding unreadable managed session")
            safe_remove(self.storage, MANAGED_SESSION_KEY)
            return None

    def save(self, session: ManagedSession) -> None:
        safe_set(self.storage, MANAGED_SESSION_KEY, json.dumps(asdict(session)))

    async def get_session(self) -> Optional[ManagedSession]:
        session = self.load()
        if session is None or not session.is_expired():
            return session
        if not session.refresh_token:
            safe_remove(self.storage, MANAGED_SESSION_KEY)
            return None
        refreshed = await self.refresh(session.refresh_token)
        self.save(refreshed)
        return refreshed

    async def refresh(self, refresh_token: str) -> ManagedSession:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=BACKEND_TIMEOUT) as client:
                resp = await client.post(
                    self.token_url,
                    params={"grant_type": "refresh_token"},
                    json={"refresh_token": refresh_token},
                    headers={"apikey": self.api_key},
                )
        except httpx.HTTPError as e:
            raise ManagedSessionError(f"refresh failed: {type(e).__name__}") from e

        if resp.status_code != 200:
            logger.warning("Managed session refresh rejected (%s)", resp.status_code)
            raise ManagedSessionError(f"refresh rejected ({resp.status_code})")
        try:
            return ManagedSession.from_token_response(resp.json())
        except (ValueError, KeyError, TypeError) as e:
            raise ManagedSessionError("refresh returned an unusable session") from e

    async def sign_out(self) -> None:
        safe_remove(self.storage, MANAGED_SESSION_KEY)
