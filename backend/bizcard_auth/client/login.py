"""Client half of the provider logins.

One ``OAuthLoginAdapter`` per provider, all driven by the same code and
differing only by their ``ProviderDescriptor``:

    adapters = build_adapters(config, browser)
    adapters["line"].begin_login("editor.html")      # redirects to LINE
    ...
    outcome = await complete_any_login(adapters.values(), browser.navigator.current_url)

All providers share one redirect page; the state prefix tells the adapters
which callback is whose.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from bizcard_auth.client.backend import SessionTokenStore
from bizcard_auth.client.browser import BrowsingContext
from bizcard_auth.client.results import (
    ConfigError,
    InfraError,
    LoginOutcome,
    LoginSucceeded,
    NotHandled,
    ProtocolError,
    TransportError,
)
from bizcard_auth.client.state_guard import RoundTripStore, generate_state, verify_state
from bizcard_auth.config import normalize_secret
from bizcard_auth.providers import PROVIDERS, ProviderDescriptor, recognizes_state

logger = logging.getLogger(__name__)

EXCHANGE_TIMEOUT = 15.0
DIAG_TIMEOUT = 8.0


# -----------------------------
# Client configuration
# -----------------------------

@dataclass(frozen=True)
class ClientConfig:
    """Public (non-secret) settings of the front end."""
    backend_url: str = ""
    public_api_key: str = ""
    # Shared callback page for all providers
    redirect_uri: str = ""
    client_ids: Mapping[str, str] = field(default_factory=dict)
    # Per-provider callback override (Apple posts to the backend relay)
    redirect_uris: Mapping[str, str] = field(default_factory=dict)
    login_page: str = "auth.html"
    default_next: str = "directory.html"

    @property
    def is_configured(self) -> bool:
        return bool(self.backend_url and self.public_api_key)

    def client_id(self, provider: str) -> str:
        return self.client_ids.get(provider, "")

    def redirect_uri_for(self, provider: str) -> str:
        return self.redirect_uris.get(provider) or self.redirect_uri

    def exchange_endpoint(self, descriptor: ProviderDescriptor) -> str:
        return self.backend_url.rstrip("/") + descriptor.exchange_path

    def api_headers(self) -> dict[str, str]:
        return {"apikey": self.public_api_key, "Authorization": f"Bearer {self.public_api_key}"}

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ClientConfig":
        env = os.environ if environ is None else environ

        def get(*names: str) -> str:
            for name in names:
                value = normalize_secret(env.get(name))
                if value:
                    return value
            return ""

        redirect_uris = {}
        for name in PROVIDERS:
            override = get(f"BIZCARD_{name.upper()}_REDIRECT_URI")
            if override:
                redirect_uris[name] = override

        return cls(
            backend_url=get("BIZCARD_BACKEND_URL", "SUPABASE_URL").rstrip("/"),
            public_api_key=get("BIZCARD_PUBLIC_API_KEY", "SUPABASE_ANON_KEY"),
            redirect_uri=get("BIZCARD_REDIRECT_URI"),
            client_ids={
                "line": get("LINE_CHANNEL_ID", "LINE_LOGIN_CHANNEL_ID"),
                "google": get("GOOGLE_CLIENT_ID"),
                "apple": get("APPLE_CLIENT_ID"),
            },
            redirect_uris=redirect_uris,
            login_page=get("BIZCARD_LOGIN_PAGE") or "auth.html",
            default_next=get("BIZCARD_DEFAULT_NEXT") or "directory.html",
        )


def _first(query: dict[str, list[str]], key: str) -> str:
    values = query.get(key) or [""]
    return values[0].strip()


def _json_or_marker(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return {"non_json_response": True}


# -----------------------------
# Adapter
# -----------------------------

class OAuthLoginAdapter:
    """Starts and completes one provider's authorization-code login.

    Args:
        provider: Descriptor of the identity provider.
        config: Front-end configuration.
        browser: Storage tiers and navigator of the current tab.
        transport: Optional httpx transport for the exchange call (tests).
    """

    def __init__(
        self,
        provider: ProviderDescriptor,
        config: ClientConfig,
        browser: BrowsingContext,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider = provider
        self.config = config
        self.browser = browser
        self.round_trip = RoundTripStore(browser, provider.name)
        self.session_tokens = SessionTokenStore(browser.local)
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return self.config.exchange_endpoint(self.provider)

    @property
    def redirect_uri(self) -> str:
        return self.config.redirect_uri_for(self.provider.name)

    def check_configuration(self) -> Optional[ConfigError]:
        problem = self.provider.client_id_problem(self.config.client_id(self.provider.name))
        if problem:
            return ConfigError(self.provider.error("CLIENT_ID_INVALID"), problem)
        if not self.redirect_uri:
            return ConfigError(self.provider.error("NO_REDIRECT_URI"),
                               f"{self.provider.label} login is not configured: the redirect URI is empty.")
        return None

    def authorize_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.config.client_id(self.provider.name),
            "redirect_uri": self.redirect_uri,
            "state": state,
            "scope": self.provider.scope,
            **self.provider.authorize_params,
        }
        return f"{self.provider.authorize_url}?{urlencode(params)}"

    def begin_login(self, next_target: Optional[str] = None) -> bool:
        """Redirect to the provider. False (after alerting) if misconfigured."""
        problem = self.check_configuration()
        if problem is not None:
            logger.warning("%s login blocked: %s", self.provider.label, problem.error)
            self.browser.navigator.alert(problem.detail or problem.error)
            return False

        state = generate_state(self.provider.state_prefix)
        self.round_trip.save(state, next_target or self.config.default_next)
        self.browser.navigator.assign(self.authorize_url(state))
        return True

    async def complete_login(self, current_url: Optional[str] = None) -> LoginOutcome:
        """Finish the login if ``current_url`` is this provider's callback.

        Never raises: every failure comes back as an outcome.
        """
        url = self.browser.navigator.current_url if current_url is None else current_url
        try:
            query = parse_qs(urlsplit(url).query)
        except (ValueError, TypeError) as e:
            return ProtocolError(self.provider.error("URL_PARSE_ERROR"), str(e))

        try:
            return await self._complete(query)
        except Exception as e:
            logger.exception("%s callback failed unexpectedly", self.provider.label)
            return ProtocolError(self.provider.error("CALLBACK_ERROR"), str(e) or type(e).__name__)

    async def _complete(self, query: dict[str, list[str]]) -> LoginOutcome:
        provider = self.provider
        state = _first(query, "state")
        if not recognizes_state(provider, state):
            return NotHandled()

        if _first(query, "error"):
            return ProtocolError(provider.error("PROVIDER_ERROR"), {
                "error": _first(query, "error"),
                "error_description": _first(query, "error_description"),
            })

        code = _first(query, "code")
        if not code:
            return ProtocolError(provider.error("NO_CODE"))

        if not self.config.is_configured:
            return ConfigError(provider.error("NOT_CONFIGURED"), "backend url or public api key is empty")

        expected = self.round_trip.expected_state()
        if not expected:
            logger.warning("%s callback state can't be verified (storage unavailable)", provider.label)
        elif not verify_state(state, expected):
            logger.warning("%s callback state mismatch", provider.label)
            return ProtocolError(provider.error("BAD_STATE"))

        payload: dict[str, Any] = {"code": code, "redirect_uri": self.redirect_uri}
        id_token = _first(query, "id_token")
        if id_token:
            payload["id_token"] = id_token
        user = _first(query, "user")
        if user:
            try:
                payload["user"] = json.loads(user)
            except ValueError:
                logger.warning("Ignoring unparseable %s user payload", provider.label)

        endpoint = self.endpoint
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=EXCHANGE_TIMEOUT) as client:
                resp = await client.post(endpoint, json=payload, headers=self.config.api_headers())
        except httpx.TimeoutException:
            return TransportError(provider.error("FETCH_FAILED"), "TIMEOUT", endpoint)
        except httpx.HTTPError as e:
            return TransportError(provider.error("FETCH_FAILED"), str(e) or type(e).__name__, endpoint)

        data = _json_or_marker(resp)
        if resp.status_code >= 500:
            logger.error("%s exchange endpoint failed (%s)", provider.label, resp.status_code)
            return InfraError(provider.error("EXCHANGE_FAILED"), data, resp.status_code)
        if not resp.is_success:
            return ProtocolError(provider.error("EXCHANGE_FAILED"), data, resp.status_code)

        body = data if isinstance(data, dict) else {}
        token = str(body.get("access_token") or "").strip()
        user_id = str(body.get("user_id") or "").strip()
        if not token or not user_id:
            return ProtocolError(provider.error("NO_TOKEN"), data)

        if not self.session_tokens.set(token):
            logger.warning("%s session token could not be persisted", provider.label)
        self.round_trip.clear_state()
        next_target = self.round_trip.pop_next(self.config.default_next)
        self.browser.navigator.replace(next_target)
        logger.info("%s login complete", provider.label)
        return LoginSucceeded(user_id=user_id, next_target=next_target)

    async def diagnose(self) -> dict[str, Any]:
        """Ask the exchange endpoint which secrets it has. Never raises."""
        endpoint = self.endpoint
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=DIAG_TIMEOUT) as client:
                resp = await client.get(endpoint, headers=self.config.api_headers())
        except httpx.TimeoutException:
            return {"ok": False, "error": self.provider.error("DIAG_FAILED"), "detail": "TIMEOUT", "endpoint": endpoint}
        except httpx.HTTPError as e:
            return {"ok": False, "error": self.provider.error("DIAG_FAILED"), "detail": str(e), "endpoint": endpoint}

        data = _json_or_marker(resp)
        return {"ok": resp.is_success, "status": resp.status_code, "data": data, "endpoint": endpoint}


def build_adapters(
    config: ClientConfig,
    browser: BrowsingContext,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[str, OAuthLoginAdapter]:
    return {name: OAuthLoginAdapter(p, config, browser, transport) for name, p in PROVIDERS.items()}


async def complete_any_login(
    adapters: Iterable[OAuthLoginAdapter],
    current_url: Optional[str] = None,
) -> LoginOutcome:
    """First outcome any adapter handled, else NotHandled."""
    for adapter in adapters:
        outcome = await adapter.complete_login(current_url)
        if outcome.handled:
            return outcome
    return NotHandled()
