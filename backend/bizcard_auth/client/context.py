"""Who is calling: pick the credential for every authenticated backend call.

Resolution order, evaluated fresh on every call:

1. The self-issued session token from the exchange endpoints, if present and
   not expired. It always beats a managed session.
2. An expired (or subject-less) session token is cleared together with its
   cached client, never used.
3. The managed-auth session, if one exists.
4. Otherwise a failure with a reason.

Only request clients are cached (per token string, in ``ClientCache``); the
decision itself is never cached.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union
from urllib.parse import quote

import httpx

from bizcard_auth import tokens
from bizcard_auth.client.backend import (
    BackendClient,
    ManagedSessionError,
    ManagedSessionSource,
    SessionTokenStore,
)
from bizcard_auth.client.browser import BrowsingContext
from bizcard_auth.client.login import ClientConfig

logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "Sign-in is not configured: set the backend URL and public API key."


class AuthMode(str, Enum):
    CUSTOM = "custom"
    MANAGED = "managed"


class AuthFailureReason(str, Enum):
    NOT_CONFIGURED = "not-configured"
    SESSION_ERROR = "session-error"
    NO_SESSION = "no-session"
    JWT_EXPIRED = "jwt-expired"


@dataclass
class AuthContext:
    mode: AuthMode
    user_id: str
    client: BackendClient
    session: dict[str, Any]
    ok: bool = field(default=True, init=False)


@dataclass
class AuthFailure:
    reason: AuthFailureReason
    error: Optional[str] = None
    ok: bool = field(default=False, init=False)


AuthResult = Union[AuthContext, AuthFailure]


class ClientCache:
    """Token string -> request client, for the life of the browsing context.

    Entries are only added or dropped whole, never mutated. Cleared on logout.
    """

    def __init__(self):
        self._clients: dict[str, BackendClient] = {}

    def get_or_create(self, token: str, factory: Callable[[], BackendClient]) -> BackendClient:
        client = self._clients.get(token)
        if client is None:
            client = factory()
            self._clients[token] = client
        return client

    async def discard(self, token: str) -> None:
        client = self._clients.pop(token, None)
        if client is not None:
            await client.aclose()

    async def clear(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

    def __contains__(self, token: str) -> bool:
        return token in self._clients

    def __len__(self) -> int:
        return len(self._clients)


class AuthContextResolver:
    """Resolves the AuthContext for one browsing context.

    Args:
        config: Front-end configuration.
        browser: Storage tiers and navigator.
        cache: Process-wide client cache, shared by every resolver of the tab.
        managed: Managed-auth session source, if the deployment has one.
        transport: Optional httpx transport for the request clients (tests).
    """

    def __init__(
        self,
        config: ClientConfig,
        browser: BrowsingContext,
        cache: ClientCache,
        managed: Optional[ManagedSessionSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.browser = browser
        self.cache = cache
        self.managed = managed
        self.session_tokens = SessionTokenStore(browser.local)
        self._transport = transport

    def _client_for(self, token: str, auto_refresh: bool) -> BackendClient:
        return self.cache.get_or_create(
            token,
            lambda: BackendClient(
                self.config.backend_url,
                self.config.public_api_key,
                access_token=token,
                auto_refresh=auto_refresh,
                transport=self._transport,
            ),
        )

    async def resolve(self) -> AuthResult:
        if not self.config.is_configured:
            return AuthFailure(AuthFailureReason.NOT_CONFIGURED)

        custom_expired = False
        token = self.session_tokens.get()
        if token:
            user_id = tokens.decode_subject_unsafe(token)
            if user_id and not tokens.is_expired(token):
                client = self._client_for(token, auto_refresh=False)
                return AuthContext(AuthMode.CUSTOM, user_id, client, {"access_token": token, "user": {"id": user_id}})

            logger.warning("Session token expired or unreadable, clearing it")
            custom_expired = True
            self.session_tokens.clear()
            await self.cache.discard(token)

        if self.managed is None:
            return AuthFailure(AuthFailureReason.JWT_EXPIRED if custom_expired else AuthFailureReason.NO_SESSION)

        try:
            session = await self.managed.get_session()
        except ManagedSessionError as e:
            logger.warning("Managed session unusable: %s", e)
            return AuthFailure(AuthFailureReason.SESSION_ERROR, str(e))

        if session is None or not session.user_id:
            return AuthFailure(AuthFailureReason.JWT_EXPIRED if custom_expired else AuthFailureReason.NO_SESSION)

        client = self._client_for(session.access_token, auto_refresh=True)
        return AuthContext(AuthMode.MANAGED, session.user_id, client, session.as_session())

    async def require_auth(self, next_target: Optional[str] = None) -> AuthResult:
        """Resolve, or send the browser to the login page.

        Navigates, so only call it from an interactive page; background work
        should call ``resolve`` and handle the failure itself.
        """
        if not self.config.is_configured:
            self.browser.navigator.alert(NOT_CONFIGURED_MESSAGE)
            return AuthFailure(AuthFailureReason.NOT_CONFIGURED)

        result = await self.resolve()
        if result.ok:
            return result

        target = next_target or self.config.default_next
        self.browser.navigator.replace(f"{self.config.login_page}?next={quote(target, safe='')}")
        return result

    async def get_session(self) -> tuple[Optional[dict[str, Any]], Optional[str]]:
        """``(session, None)`` when signed in, else ``(None, reason)``."""
        result = await self.resolve()
        if isinstance(result, AuthContext):
            return result.session, None
        return None, result.reason.value

    async def logout(self) -> None:
        self.session_tokens.clear()
        if self.managed is not None:
            await self.managed.sign_out()
        await self.cache.clear()
        logger.info("Signed out")
