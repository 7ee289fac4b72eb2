"""
Shared fixtures for the bizcard_auth test suite.

Outbound HTTP (providers, Apple keys, the REST store, the exchange endpoint)
is served by ``FakeUpstream`` through ``httpx.MockTransport``; identity links
live in ``InMemoryIdentityStore``. Keys are minted per session with
``cryptography``.
"""

import time
from typing import Any, Callable, Optional, Union

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jose import jwt

from bizcard_auth.client.browser import BrowsingContext, MemoryStorage
from bizcard_auth.client.login import ClientConfig
from bizcard_auth.config import ProviderCredentials, Settings
from bizcard_auth.exchange import ExchangeService
from bizcard_auth.identity_store import IdentityStoreError
from bizcard_auth.jwks import JWKSCache
from bizcard_auth.models import IdentityLink, ProviderIdentity
from bizcard_auth.providers import APPLE_ISSUER, APPLE_KEYS_URL, APPLE, GOOGLE, LINE
from bizcard_auth.tokens import b64url_encode

JWT_SECRET = "test-jwt-secret-0123456789abcdef"
PUBLIC_API_KEY = "anon-key"
BACKEND_URL = "https://backend.test"
APPLE_CLIENT_ID = "com.example.bizcard.web"
APPLE_KEY_ID = "ABC123DEFG"
APPLE_SIGNING_KID = "apple-test-kid"
REDIRECT_URI = "https://example.com/auth"


# ============================================================================
# Keys
# ============================================================================

@pytest.fixture(scope="session")
def ec_key_pair() -> tuple[str, str]:
    """(private PEM, public PEM) on P-256."""
    key = ec.generate_private_key(ec.SECP256R1())
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture(scope="session")
def rsa_signing_key() -> dict[str, Any]:
    """RSA key standing in for Apple's id_token signing key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    numbers = key.public_key().public_numbers()

    def b64_int(value: int) -> str:
        return b64url_encode(value.to_bytes((value.bit_length() + 7) // 8, "big"))

    return {
        "private_pem": key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode(),
        "jwk": {
            "kty": "RSA",
            "kid": APPLE_SIGNING_KID,
            "use": "sig",
            "alg": "RS256",
            "n": b64_int(numbers.n),
            "e": b64_int(numbers.e),
        },
    }


@pytest.fixture
def make_apple_id_token(rsa_signing_key) -> Callable[..., str]:
    def make(
        sub: str = "001234.apple-user",
        email: Optional[str] = "taro@privaterelay.appleid.com",
        aud: str = APPLE_CLIENT_ID,
        iss: str = APPLE_ISSUER,
        kid: str = APPLE_SIGNING_KID,
        expires_in: int = 600,
    ) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {"iss": iss, "aud": aud, "sub": sub, "iat": now, "exp": now + expires_in}
        if email:
            claims["email"] = email
        return jwt.encode(claims, rsa_signing_key["private_pem"], algorithm="RS256", headers={"kid": kid})

    return make


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def settings(ec_key_pair) -> Settings:
    return Settings(
        backend_url=BACKEND_URL,
        service_role_key="service-role-key",
        jwt_secret=JWT_SECRET,
        public_api_key=PUBLIC_API_KEY,
        build_id="test-build",
        apple_frontend_callback_url="https://app.test/auth.html",
        providers={
            "line": ProviderCredentials(client_id="2008810712", client_secret="line-secret"),
            "google": ProviderCredentials(client_id="google-client.apps.googleusercontent.com",
                                          client_secret="google-secret"),
            "apple": ProviderCredentials(
                client_id=APPLE_CLIENT_ID,
                team_id="TEAM123456",
                key_id=APPLE_KEY_ID,
                private_key=ec_key_pair[0],
            ),
        },
    )


# ============================================================================
# Upstream HTTP
# ============================================================================

Route = Union[Exception, Callable[[httpx.Request], httpx.Response]]


def _bare(request: httpx.Request) -> str:
    return str(request.url).split("?", 1)[0]


class FakeUpstream:
    """Routes requests by (method, url without query) and records them."""

    def __init__(self):
        self.routes: dict[tuple[str, str], Route] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url: str, route: Route) -> None:
        self.routes[(method.upper(), url)] = route

    def json(self, method: str, url: str, body: Any, status: int = 200) -> None:
        self.add(method, url, lambda request: httpx.Response(status, json=body))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, _bare(request))
        route = self.routes.get(key)
        if route is None:
            return httpx.Response(404, json={"error": "no route", "url": str(request.url)})
        if isinstance(route, Exception):
            raise route
        return route(request)

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if _bare(r) == url]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def line_upstream(upstream) -> FakeUpstream:
    """LINE answering with user U1234567890."""
    upstream.json("POST", LINE.token_url, {"access_token": "line-access-token", "token_type": "Bearer"})
    upstream.json("GET", LINE.profile_url, {
        "userId": "U1234567890",
        "displayName": "Taro",
        "pictureUrl": "https://profile.line-scdn.net/taro",
    })
    return upstream


@pytest.fixture
def google_upstream(upstream) -> FakeUpstream:
    upstream.json("POST", GOOGLE.token_url, {"access_token": "google-access-token", "id_token": "ignored"})
    upstream.json("GET", GOOGLE.profile_url, {
        "id": "109876543210",
        "name": "Hanako",
        "email": "hanako@example.com",
        "picture": "https://lh3.googleusercontent.com/hanako",
    })
    return upstream


@pytest.fixture
def apple_upstream(upstream, rsa_signing_key, make_apple_id_token) -> FakeUpstream:
    upstream.json("POST", APPLE.token_url, {"access_token": "apple-at", "id_token": make_apple_id_token()})
    upstream.json("GET", APPLE_KEYS_URL, {"keys": [rsa_signing_key["jwk"]]})
    return upstream


# ============================================================================
# Identity store
# ============================================================================

class InMemoryIdentityStore:
    """Identity links in a dict.

    Check-and-insert has no await in between, so it is atomic under asyncio
    just like ON CONFLICT DO NOTHING is at the database.
    """

    def __init__(self, fail_with: Optional[str] = None):
        self.rows: dict[tuple[str, str], IdentityLink] = {}
        self.insert_attempts = 0
        self.touched: list[ProviderIdentity] = []
        self.fail_with = fail_with
        self.fail_touch = False

    async def get(self, provider: str, provider_user_id: str) -> Optional[IdentityLink]:
        if self.fail_with:
            raise IdentityStoreError(self.fail_with, "store unreachable")
        return self.rows.get((provider, provider_user_id))

    async def insert_if_absent(self, link: IdentityLink) -> tuple[IdentityLink, bool]:
        self.insert_attempts += 1
        existing = self.rows.get(link.key)
        if existing is not None:
            return existing, False
        self.rows[link.key] = link
        return link, True

    async def touch(self, identity: ProviderIdentity) -> None:
        if self.fail_touch:
            raise IdentityStoreError("DB_UPDATE_FAILED", "store unreachable")
        self.touched.append(identity)

    def rows_for(self, provider: str, provider_user_id: str) -> list[IdentityLink]:
        return [link for key, link in self.rows.items() if key == (provider, provider_user_id)]


@pytest.fixture
def store() -> InMemoryIdentityStore:
    return InMemoryIdentityStore()


@pytest.fixture
def service(settings, store, upstream) -> ExchangeService:
    return ExchangeService(
        settings,
        store=store,
        transport=upstream.transport,
        apple_keys=JWKSCache(APPLE_KEYS_URL, transport=upstream.transport),
    )


# ============================================================================
# Browsing context
# ============================================================================

class RecordingNavigator:
    def __init__(self, current_url: str = "https://example.com/auth"):
        self.current_url = current_url
        self.assigned: list[str] = []
        self.replaced: list[str] = []
        self.alerts: list[str] = []

    def assign(self, url: str) -> None:
        self.assigned.append(url)

    def replace(self, url: str) -> None:
        self.replaced.append(url)

    def alert(self, message: str) -> None:
        self.alerts.append(message)


@pytest.fixture
def navigator() -> RecordingNavigator:
    return RecordingNavigator()


@pytest.fixture
def browser(navigator) -> BrowsingContext:
    return BrowsingContext(navigator=navigator, local=MemoryStorage(), session=MemoryStorage())


@pytest.fixture
def client_config() -> ClientConfig:
    return ClientConfig(
        backend_url=BACKEND_URL,
        public_api_key=PUBLIC_API_KEY,
        redirect_uri=REDIRECT_URI,
        client_ids={
            "line": "2008810712",
            "google": "google-client.apps.googleusercontent.com",
            "apple": APPLE_CLIENT_ID,
        },
        redirect_uris={"apple": f"{BACKEND_URL}/auth/apple/callback"},
    )
