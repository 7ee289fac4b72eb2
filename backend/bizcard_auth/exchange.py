"""Authorization code -> session token exchange.

The trusted half of the login flow. It needs provider client secrets (or
Apple's private key) and the backend's JWT secret, so it never runs in the
browser.

Flow, strictly sequential:
1. Check configuration
2. (Apple) sign a fresh client assertion
3. Exchange the code at the provider's token endpoint
4. Resolve the provider user id (profile endpoint or id_token claims)
5. Resolve or create the identity link
6. Issue a 7-day session token

Authorization codes are single use, so nothing here retries.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

import httpx

from bizcard_auth import tokens
from bizcard_auth.config import Settings
from bizcard_auth.identity_store import (
    IdentityStore,
    IdentityStoreError,
    build_identity_store,
    get_pool,
)
from bizcard_auth.jwks import JWKSCache, KeySetError, verify_id_token
from bizcard_auth.models import (
    ExchangeRequest,
    ExchangeResponse,
    IdentityLink,
    ProviderIdentity,
)
from bizcard_auth.providers import APPLE_ISSUER, APPLE_KEYS_URL, ProviderDescriptor

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT_TIMEOUT = 8.0
PROFILE_ENDPOINT_TIMEOUT = 5.0

# Schedules a best-effort coroutine function without waiting for it.
Scheduler = Callable[..., Any]


# -----------------------------
# Errors
# -----------------------------

class ExchangeError(Exception):
    """An exchange failure with its HTTP status and wire error code."""
    status_code = 500

    def __init__(self, error: str, detail: Any = None, status_code: Optional[int] = None):
        self.error = error
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code
        super().__init__(error)


class ConfigurationError(ExchangeError):
    """Deployment is missing secrets. Operational, not the user's fault."""
    status_code = 500


class RequestError(ExchangeError):
    """The caller sent an unusable request."""
    status_code = 400


class ProviderError(ExchangeError):
    """The identity provider rejected the code or answered unusably."""
    status_code = 400


class StoreError(ExchangeError):
    """The identity store failed. Infrastructure, alert on it."""
    status_code = 500


def _short(value: str) -> str:
    return value[:8] + "..." if len(value) > 8 else value


def _json_or_marker(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return {"non_json_response": True}


# -----------------------------
# Apple keys (process-wide)
# -----------------------------

_APPLE_KEYS: Optional[JWKSCache] = None


def get_apple_keys() -> JWKSCache:
    global _APPLE_KEYS
    if _APPLE_KEYS is None:
        _APPLE_KEYS = JWKSCache(APPLE_KEYS_URL)
    return _APPLE_KEYS


# -----------------------------
# Service
# -----------------------------

class ExchangeService:
    """Runs one code exchange per call. Holds no per-user state.

    Args:
        settings: Loaded configuration.
        store: Identity store. Built from settings when omitted.
        transport: Optional httpx transport for provider calls (tests).
        apple_keys: JWKS cache used to verify Apple id_tokens.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[IdentityStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        apple_keys: Optional[JWKSCache] = None,
    ):
        self.settings = settings
        self.store = store if store is not None else build_identity_store(settings)
        self._transport = transport
        self._apple_keys = apple_keys
        self._background: set[asyncio.Task] = set()

    # -- configuration --

    def check_configuration(self, provider: ProviderDescriptor) -> None:
        missing = self.settings.missing_backend(has_pool=get_pool() is not None)
        if missing or self.store is None:
            logger.error("Exchange misconfigured, missing backend secrets: %s", missing)
            raise ConfigurationError("MISSING_BACKEND_SECRETS", {"missing": missing})
        missing = self.settings.missing_provider(provider.name)
        if missing:
            logger.error("Exchange misconfigured, missing %s secrets: %s", provider.name, missing)
            raise ConfigurationError(f"MISSING_{provider.error_prefix}_SECRETS", {"missing": missing})

    # -- public entry point --

    async def exchange(
        self,
        provider: ProviderDescriptor,
        request: ExchangeRequest,
        schedule: Optional[Scheduler] = None,
    ) -> ExchangeResponse:
        """Exchange ``request.code`` for a session. Raises ExchangeError."""
        self.check_configuration(provider)

        code = (request.code or "").strip()
        redirect_uri = (request.redirect_uri or "").strip()
        if not code:
            raise RequestError("MISSING_CODE")
        if not redirect_uri:
            raise RequestError("MISSING_REDIRECT_URI")

        identity = await self.resolve_identity(provider, code, redirect_uri, request)
        link = await self.link_identity(identity, schedule)

        grant = tokens.issue_session_token(link.user_id, self.settings.jwt_secret, email=identity.email or None)
        logger.info("Issued %s session for user %s", provider.name, _short(link.user_id))
        return ExchangeResponse(
            access_token=grant.access_token,
            token_type="bearer",
            expires_in=grant.expires_in,
            user_id=link.user_id,
            email=identity.email or None,
            display_name=identity.display_name or None,
        )

    # -- provider half --

    def _client_secret(self, provider: ProviderDescriptor) -> str:
        creds = self.settings.credentials(provider.name)
        if not provider.requires_client_assertion:
            return creds.client_secret
        try:
            return tokens.create_client_assertion(creds.team_id, creds.client_id, creds.key_id, creds.private_key)
        except tokens.TokenError as e:
            raise ConfigurationError(provider.error("CLIENT_ASSERTION_FAILED"), str(e)) from e

    async def resolve_identity(
        self,
        provider: ProviderDescriptor,
        code: str,
        redirect_uri: str,
        request: ExchangeRequest,
    ) -> ProviderIdentity:
        client_secret = self._client_secret(provider)
        creds = self.settings.credentials(provider.name)

        async with httpx.AsyncClient(transport=self._transport) as client:
            token_data = await self._call_provider(
                provider, "TOKEN_EXCHANGE_FAILED",
                client.post(
                    provider.token_url,
                    data={
                        "grant_type": "authorization_code",
                        "code": code,
                        # must match the authorize request byte for byte
                        "redirect_uri": redirect_uri,
                        "client_id": creds.client_id,
                        "client_secret": client_secret,
                    },
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    timeout=TOKEN_ENDPOINT_TIMEOUT,
                ),
            )

            if provider.profile_url is None:
                return await self._identity_from_id_token(provider, token_data, request)

            access_token = str(token_data.get("access_token") or "")
            if not access_token:
                raise ProviderError(provider.error("NO_ACCESS_TOKEN"), token_data)

            profile = await self._call_provider(
                provider, "PROFILE_FAILED",
                client.get(
                    provider.profile_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                    timeout=PROFILE_ENDPOINT_TIMEOUT,
                ),
            )

        identity = provider.identity_from(profile)
        if not identity.provider_user_id:
            raise ProviderError(provider.error("NO_USER_ID"), profile)
        return identity

    async def _call_provider(
        self,
        provider: ProviderDescriptor,
        failure: str,
        call: Awaitable[httpx.Response],
    ) -> dict[str, Any]:
        try:
            resp = await call
        except httpx.TimeoutException as e:
            logger.error("%s %s timed out", provider.label, failure.lower())
            raise ProviderError(provider.error("UPSTREAM_TIMEOUT"), "TIMEOUT") from e
        except httpx.HTTPError as e:
            logger.error("%s request failed: %s", provider.label, type(e).__name__)
            raise ProviderError(provider.error(failure), f"{type(e).__name__}: {e}") from e

        data = _json_or_marker(resp)
        if resp.status_code != 200:
            logger.error("%s %s (%s): %s", provider.label, failure.lower(), resp.status_code, data)
            raise ProviderError(provider.error(failure), data)
        if not isinstance(data, dict):
            raise ProviderError(provider.error(failure), data)
        return data

    async def _identity_from_id_token(
        self,
        provider: ProviderDescriptor,
        token_data: dict[str, Any],
        request: ExchangeRequest,
    ) -> ProviderIdentity:
        """Apple: identity lives in the id_token.

        The token from Apple's token endpoint wins over one the browser
        relayed. Either way its signature, issuer and audience are checked
        against Apple's published keys before any claim is used.
        """
        id_token = str(token_data.get("id_token") or "").strip() or (request.id_token or "").strip()
        if not id_token:
            raise ProviderError(provider.error("NO_ID_TOKEN"), token_data)

        keys = self._apple_keys or get_apple_keys()
        try:
            claims = await verify_id_token(
                id_token,
                keys,
                audience=self.settings.credentials(provider.name).client_id,
                issuer=APPLE_ISSUER,
            )
        except KeySetError as e:
            raise ProviderError(provider.error("INVALID_ID_TOKEN"), str(e)) from e

        identity = provider.identity_from(claims)
        if not identity.provider_user_id:
            raise ProviderError(provider.error("INVALID_ID_TOKEN"))

        # Name is only posted on first authorization
        display_name = request.user.display_name() if request.user else ""
        email = identity.email or (request.user.email if request.user and request.user.email else "")
        return ProviderIdentity(
            provider=identity.provider,
            provider_user_id=identity.provider_user_id,
            display_name=display_name,
            email=email,
            picture=identity.picture,
        )

    # -- identity link --

    async def link_identity(
        self,
        identity: ProviderIdentity,
        schedule: Optional[Scheduler] = None,
    ) -> IdentityLink:
        """Existing link for the identity, or a newly created one.

        Creation is insert-if-absent, so concurrent first logins for one
        identity agree on a single user id. Profile refresh for returning
        users is detached and best effort.
        """
        assert self.store is not None
        try:
            link = await self.store.get(identity.provider, identity.provider_user_id)
            created = False
            if link is None:
                candidate = IdentityLink.from_identity(identity, str(uuid.uuid4()))
                link, created = await self.store.insert_if_absent(candidate)
        except IdentityStoreError as e:
            logger.error("Identity store failure (%s): %s", e.code, e.detail)
            raise StoreError(e.code, e.detail) from e

        if created:
            logger.info("Linked new %s identity %s -> %s",
                        identity.provider, _short(identity.provider_user_id), _short(link.user_id))
        else:
            self._spawn(self._touch_quietly, identity, schedule=schedule)
        return link

    async def _touch_quietly(self, identity: ProviderIdentity) -> None:
        assert self.store is not None
        try:
            await self.store.touch(identity)
        except IdentityStoreError as e:
            logger.warning("Profile refresh for %s identity %s failed: %s",
                           identity.provider, _short(identity.provider_user_id), e.code)

    def _spawn(self, func: Callable[..., Awaitable[None]], *args: Any,
               schedule: Optional[Scheduler] = None) -> None:
        if schedule is not None:
            schedule(func, *args)
            return
        task = asyncio.get_running_loop().create_task(func(*args))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for detached work. Tests and graceful shutdown only."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
