"""Tests for auth-context resolution, the client cache and managed sessions."""

import json
import time
from typing import Optional

import httpx
import pytest

from bizcard_auth import tokens
from bizcard_auth.client.backend import (
    MANAGED_SESSION_KEY,
    SESSION_TOKEN_KEY,
    BackendClient,
    ManagedSession,
    ManagedSessionError,
    StoredManagedSession,
)
from bizcard_auth.client.browser import BrowsingContext, MemoryStorage
from bizcard_auth.client.context import (
    AuthContext,
    AuthContextResolver,
    AuthFailure,
    AuthFailureReason,
    AuthMode,
    ClientCache,
)
from bizcard_auth.client.login import ClientConfig

from tests.conftest import BACKEND_URL, JWT_SECRET, PUBLIC_API_KEY

TOKEN_URL = f"{BACKEND_URL}/auth/v1/token"


def session_token(user_id: str = "user-1") -> str:
    return tokens.issue_session_token(user_id, JWT_SECRET).access_token


def expired_token(user_id: str = "user-1") -> str:
    now = int(time.time())
    return tokens.encode({"sub": user_id, "iat": now - 7200, "exp": now - 60}, JWT_SECRET)


def managed_session(user_id: str = "managed-1", expires_in: int = 3600, refresh: str = "rt-1") -> ManagedSession:
    return ManagedSession(
        access_token=f"managed-at-{user_id}",
        refresh_token=refresh,
        expires_at=int(time.time()) + expires_in,
        user_id=user_id,
        email="m@example.com",
    )


class FakeManagedSource:
    def __init__(self, session: Optional[ManagedSession] = None, error: Optional[str] = None):
        self.session = session
        self.error = error
        self.signed_out = False

    async def get_session(self) -> Optional[ManagedSession]:
        if self.error:
            raise ManagedSessionError(self.error)
        return self.session

    async def sign_out(self) -> None:
        self.signed_out = True
        self.session = None


@pytest.fixture
def cache() -> ClientCache:
    return ClientCache()


@pytest.fixture
def make_resolver(client_config, browser, cache, upstream):
    def make(managed=None, config: Optional[ClientConfig] = None) -> AuthContextResolver:
        return AuthContextResolver(config or client_config, browser, cache, managed=managed,
                                   transport=upstream.transport)

    return make


class TestResolve:
    @pytest.mark.asyncio
    async def test_custom_token_wins_over_managed(self, make_resolver, browser):
        token = session_token("user-1")
        browser.local.set_item(SESSION_TOKEN_KEY, token)
        resolver = make_resolver(FakeManagedSource(managed_session()))

        result = await resolver.resolve()

        assert isinstance(result, AuthContext)
        assert result.ok
        assert result.mode is AuthMode.CUSTOM
        assert result.user_id == "user-1"
        assert result.session == {"access_token": token, "user": {"id": "user-1"}}
        assert result.client.auto_refresh is False
        assert result.client.headers == {"apikey": PUBLIC_API_KEY, "Authorization": f"Bearer {token}"}

    @pytest.mark.asyncio
    async def test_expired_token_is_cleared_and_falls_back(self, make_resolver, browser, cache):
        token = expired_token()
        browser.local.set_item(SESSION_TOKEN_KEY, token)
        stale_http = cache.get_or_create(token, lambda: BackendClient(BACKEND_URL, PUBLIC_API_KEY, token)).http

        result = await make_resolver(FakeManagedSource(managed_session("managed-1"))).resolve()

        assert result.mode is AuthMode.MANAGED
        assert result.user_id == "managed-1"
        assert result.client.auto_refresh is True
        assert result.session["user"]["id"] == "managed-1"
        assert browser.local.get_item(SESSION_TOKEN_KEY) is None
        assert token not in cache
        assert stale_http.is_closed

    @pytest.mark.asyncio
    async def test_token_within_skew_counts_as_expired(self, make_resolver, browser):
        now = int(time.time())
        browser.local.set_item(SESSION_TOKEN_KEY, tokens.encode({"sub": "u", "exp": now + 120}, JWT_SECRET))

        result = await make_resolver().resolve()

        assert isinstance(result, AuthFailure)
        assert result.reason is AuthFailureReason.JWT_EXPIRED

    @pytest.mark.asyncio
    async def test_token_without_subject_is_discarded(self, make_resolver, browser):
        now = int(time.time())
        browser.local.set_item(SESSION_TOKEN_KEY, tokens.encode({"exp": now + 3600}, JWT_SECRET))

        result = await make_resolver().resolve()

        assert result.reason is AuthFailureReason.JWT_EXPIRED
        assert browser.local.get_item(SESSION_TOKEN_KEY) is None

    @pytest.mark.asyncio
    async def test_garbage_token_is_discarded(self, make_resolver, browser):
        browser.local.set_item(SESSION_TOKEN_KEY, "not-a-token")
        result = await make_resolver(FakeManagedSource()).resolve()
        assert result.reason is AuthFailureReason.JWT_EXPIRED
        assert browser.local.get_item(SESSION_TOKEN_KEY) is None

    @pytest.mark.asyncio
    async def test_no_credentials(self, make_resolver):
        assert (await make_resolver().resolve()).reason is AuthFailureReason.NO_SESSION
        assert (await make_resolver(FakeManagedSource()).resolve()).reason is AuthFailureReason.NO_SESSION

    @pytest.mark.asyncio
    async def test_not_configured(self, make_resolver, browser):
        browser.local.set_item(SESSION_TOKEN_KEY, session_token())
        result = await make_resolver(config=ClientConfig()).resolve()
        assert result.reason is AuthFailureReason.NOT_CONFIGURED
        # nothing touched
        assert browser.local.get_item(SESSION_TOKEN_KEY)

    @pytest.mark.asyncio
    async def test_managed_session_error(self, make_resolver):
        result = await make_resolver(FakeManagedSource(error="refresh rejected (400)")).resolve()
        assert result.reason is AuthFailureReason.SESSION_ERROR
        assert result.error == "refresh rejected (400)"

    @pytest.mark.asyncio
    async def test_managed_session_without_user(self, make_resolver):
        result = await make_resolver(FakeManagedSource(managed_session(user_id=""))).resolve()
        assert result.reason is AuthFailureReason.NO_SESSION

    @pytest.mark.asyncio
    async def test_decision_is_not_cached(self, make_resolver, browser):
        resolver = make_resolver()
        assert (await resolver.resolve()).reason is AuthFailureReason.NO_SESSION

        browser.local.set_item(SESSION_TOKEN_KEY, session_token("late-user"))
        assert (await resolver.resolve()).user_id == "late-user"

    @pytest.mark.asyncio
    async def test_blocked_storage_means_no_session(self, client_config, navigator, cache):
        browser = BrowsingContext(navigator, local=MemoryStorage(blocked=True), session=MemoryStorage(blocked=True))
        result = await AuthContextResolver(client_config, browser, cache).resolve()
        assert result.reason is AuthFailureReason.NO_SESSION


class TestClientCache:
    @pytest.mark.asyncio
    async def test_same_token_same_client(self, make_resolver, browser, cache):
        browser.local.set_item(SESSION_TOKEN_KEY, session_token())
        resolver = make_resolver()

        first = await resolver.resolve()
        second = await make_resolver().resolve()

        assert first.client is second.client
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_new_token_new_client(self, make_resolver, browser, cache):
        browser.local.set_item(SESSION_TOKEN_KEY, session_token("a"))
        first = await make_resolver().resolve()
        browser.local.set_item(SESSION_TOKEN_KEY, session_token("b"))
        second = await make_resolver().resolve()

        assert first.client is not second.client
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_refreshed_managed_session_gets_new_client(self, make_resolver):
        source = FakeManagedSource(managed_session("managed-1"))
        resolver = make_resolver(source)
        before = await resolver.resolve()

        source.session = ManagedSession(
            access_token="refreshed-at",
            refresh_token="rt-2",
            expires_at=int(time.time()) + 3600,
            user_id="managed-1",
        )
        after = await resolver.resolve()

        assert after.client is not before.client
        assert after.client.headers["Authorization"] == "Bearer refreshed-at"
        assert before.client.headers["Authorization"] == "Bearer managed-at-managed-1"

    @pytest.mark.asyncio
    async def test_client_sends_token(self, make_resolver, browser, upstream):
        token = session_token("user-9")
        browser.local.set_item(SESSION_TOKEN_KEY, token)
        upstream.json("GET", f"{BACKEND_URL}/rest/v1/cards", [{"id": 1}])

        context = await make_resolver().resolve()
        resp = await context.client.select("cards", user_id="user-9")

        assert resp.json() == [{"id": 1}]
        request = upstream.requests[0]
        assert request.headers["authorization"] == f"Bearer {token}"
        assert request.headers["apikey"] == PUBLIC_API_KEY
        assert request.url.params["user_id"] == "eq.user-9"
        await context.client.aclose()

    @pytest.mark.asyncio
    async def test_clear_closes_clients(self, cache):
        client = cache.get_or_create("t", lambda: BackendClient(BACKEND_URL, PUBLIC_API_KEY, "t"))
        http = client.http
        await cache.clear()
        assert len(cache) == 0
        assert http.is_closed


class TestRequireAuth:
    @pytest.mark.asyncio
    async def test_redirects_to_login_with_next(self, make_resolver, navigator):
        result = await make_resolver().require_auth("card.html?id=7")

        assert result.reason is AuthFailureReason.NO_SESSION
        assert navigator.replaced == ["auth.html?next=card.html%3Fid%3D7"]

    @pytest.mark.asyncio
    async def test_default_next(self, make_resolver, navigator):
        await make_resolver().require_auth()
        assert navigator.replaced == ["auth.html?next=directory.html"]

    @pytest.mark.asyncio
    async def test_signed_in_stays(self, make_resolver, browser, navigator):
        browser.local.set_item(SESSION_TOKEN_KEY, session_token())
        result = await make_resolver().require_auth("editor.html")
        assert result.ok
        assert navigator.replaced == []

    @pytest.mark.asyncio
    async def test_not_configured_alerts_instead(self, make_resolver, navigator):
        result = await make_resolver(config=ClientConfig()).require_auth()
        assert result.reason is AuthFailureReason.NOT_CONFIGURED
        assert len(navigator.alerts) == 1
        assert navigator.replaced == []


class TestGetSessionAndLogout:
    @pytest.mark.asyncio
    async def test_get_session(self, make_resolver, browser):
        resolver = make_resolver()
        assert await resolver.get_session() == (None, "no-session")

        token = session_token("u1")
        browser.local.set_item(SESSION_TOKEN_KEY, token)
        session, error = await resolver.get_session()
        assert error is None
        assert session == {"access_token": token, "user": {"id": "u1"}}

    @pytest.mark.asyncio
    async def test_logout(self, make_resolver, browser, cache):
        managed = FakeManagedSource(managed_session())
        browser.local.set_item(SESSION_TOKEN_KEY, session_token())
        resolver = make_resolver(managed)
        await resolver.resolve()
        assert len(cache) == 1

        await resolver.logout()

        assert browser.local.get_item(SESSION_TOKEN_KEY) is None
        assert managed.signed_out
        assert len(cache) == 0
        assert (await resolver.resolve()).reason is AuthFailureReason.NO_SESSION


class TestStoredManagedSession:
    @pytest.fixture
    def storage(self) -> MemoryStorage:
        return MemoryStorage()

    @pytest.fixture
    def source(self, storage, upstream) -> StoredManagedSession:
        return StoredManagedSession(storage, BACKEND_URL, PUBLIC_API_KEY, transport=upstream.transport)

    @pytest.mark.asyncio
    async def test_fresh_session_returned_as_is(self, source, upstream):
        session = managed_session()
        source.save(session)
        assert await source.get_session() == session
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_expired_session_refreshed_and_persisted(self, source, storage, upstream):
        source.save(managed_session(expires_in=-10, refresh="old-rt"))
        upstream.json("POST", TOKEN_URL, {
            "access_token": "new-at",
            "refresh_token": "new-rt",
            "expires_in": 3600,
            "user": {"id": "managed-1", "email": "m@example.com"},
        })

        refreshed = await source.get_session()

        assert refreshed.access_token == "new-at"
        assert not refreshed.is_expired()
        request = upstream.requests[0]
        assert request.url.params["grant_type"] == "refresh_token"
        assert json.loads(request.content) == {"refresh_token": "old-rt"}
        assert json.loads(storage.get_item(MANAGED_SESSION_KEY))["refresh_token"] == "new-rt"

    @pytest.mark.asyncio
    async def test_rejected_refresh(self, source, upstream):
        source.save(managed_session(expires_in=-10))
        upstream.json("POST", TOKEN_URL, {"error": "invalid_grant"}, status=400)
        with pytest.raises(ManagedSessionError, match="400"):
            await source.get_session()

    @pytest.mark.asyncio
    async def test_unreachable_refresh(self, source, upstream):
        source.save(managed_session(expires_in=-10))
        upstream.add("POST", TOKEN_URL, httpx.ConnectError("refused"))
        with pytest.raises(ManagedSessionError, match="ConnectError"):
            await source.get_session()

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_is_dropped(self, source, storage):
        source.save(managed_session(expires_in=-10, refresh=""))
        assert await source.get_session() is None
        assert storage.get_item(MANAGED_SESSION_KEY) is None

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_dropped(self, source, storage):
        storage.set_item(MANAGED_SESSION_KEY, "{broken")
        assert await source.get_session() is None
        assert storage.get_item(MANAGED_SESSION_KEY) is None

    @pytest.mark.asyncio
    async def test_resolver_reports_failed_refresh(self, source, upstream, client_config, browser, cache):
        source.save(managed_session(expires_in=-10))
        upstream.json("POST", TOKEN_URL, {"error": "invalid_grant"}, status=400)

        result = await AuthContextResolver(client_config, browser, cache, managed=source).resolve()

        assert result.reason is AuthFailureReason.SESSION_ERROR

    @pytest.mark.asyncio
    async def test_sign_out(self, source, storage):
        source.save(managed_session())
        await source.sign_out()
        assert storage.get_item(MANAGED_SESSION_KEY) is None
