"""Identity link storage.

Maps (provider, provider_user_id) to the internal user id every session
token is issued for.

Two backends:
- PostgreSQL through an asyncpg pool, used when DATABASE_URL is set.
- The managed backend's REST surface (PostgREST), authenticated with the
  service role key. This is how the hosted deployment talks to its data.

Both guarantee one internal id per provider identity: creation is an
insert-if-absent against UNIQUE(provider, provider_user_id), followed by a
read-back, so two concurrent first logins end up with the same id.

Table:
- identity_links: provider, provider_user_id, user_id (uuid), display_name,
  email, picture, last_login_at, created_at
"""

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Optional, Protocol

import asyncpg
import httpx
from asyncpg import Pool

from bizcard_auth.config import DEFAULT_IDENTITY_TABLE, Settings
from bizcard_auth.models import IdentityLink, ProviderIdentity, utcnow

logger = logging.getLogger(__name__)

STORE_TIMEOUT = 5.0

_TABLE_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

# InterfaceError covers pool/connection misuse (closing pool, released connection)
_PG_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class IdentityStoreError(Exception):
    """Raised when the identity store can't be read or written.

    ``code`` is the wire error code (DB_QUERY_FAILED, DB_INSERT_FAILED,
    DB_UPDATE_FAILED).
    """

    def __init__(self, code: str, detail: Any = None):
        self.code = code
        self.detail = detail
        super().__init__(f"{code}: {detail}" if detail else code)


class IdentityStore(Protocol):
    async def get(self, provider: str, provider_user_id: str) -> Optional[IdentityLink]:
        ...

    async def insert_if_absent(self, link: IdentityLink) -> tuple[IdentityLink, bool]:
        """Insert ``link`` unless its key exists. Returns (stored link, created)."""
        ...

    async def touch(self, identity: ProviderIdentity) -> None:
        """Refresh profile fields and last_login_at. Empty fields are left alone."""
        ...


def _profile_updates(identity: ProviderIdentity) -> dict[str, Any]:
    updates: dict[str, Any] = {}
    if identity.display_name:
        updates["display_name"] = identity.display_name
    if identity.email:
        updates["email"] = identity.email
    if identity.picture:
        updates["picture"] = identity.picture
    return updates


def _checked_table(table: str) -> str:
    if not _TABLE_NAME.fullmatch(table):
        raise ValueError(f"invalid table name: {table!r}")
    return table


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return utcnow()


def link_from_row(row: Any) -> IdentityLink:
    return IdentityLink(
        provider=row["provider"],
        provider_user_id=row["provider_user_id"],
        user_id=str(row["user_id"]),
        display_name=row.get("display_name") or "",
        email=row.get("email") or "",
        picture=row.get("picture") or "",
        last_login_at=_parse_timestamp(row.get("last_login_at")),
        created_at=_parse_timestamp(row.get("created_at")),
    )


# -----------------------------
# Connection Management
# -----------------------------

_pool: Optional[Pool] = None


async def init_db(database_url: str, table: str = DEFAULT_IDENTITY_TABLE) -> None:
    """Initialize the connection pool and create the table."""
    global _pool

    if not database_url:
        logger.info("DATABASE_URL not set - identity links go through the REST backend")
        return

    try:
        _pool = await asyncpg.create_pool(
            database_url,
            min_size=1,
            max_size=10,
            command_timeout=STORE_TIMEOUT,
        )
        logger.info("Database connection pool created")
        await _create_tables(_pool, table)
    except Exception as e:
        logger.error("Failed to initialize database: %s", str(e))
        raise


async def close_db() -> None:
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database connection pool closed")


def get_pool() -> Optional[Pool]:
    return _pool


async def _create_tables(pool: Pool, table: str) -> None:
    table = _checked_table(table)
    async with pool.acquire() as conn:
        await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                provider VARCHAR(20) NOT NULL,
                provider_user_id VARCHAR(255) NOT NULL,
                user_id UUID NOT NULL UNIQUE,
                display_name TEXT,
                email TEXT,
                picture TEXT,
                last_login_at TIMESTAMPTZ DEFAULT NOW(),
                created_at TIMESTAMPTZ DEFAULT NOW(),
                PRIMARY KEY (provider, provider_user_id)
            );
        """)
    logger.info("Identity table %s created/verified", table)


# -----------------------------
# PostgreSQL
# -----------------------------

class PostgresIdentityStore:
    def __init__(self, pool: Pool, table: str = DEFAULT_IDENTITY_TABLE):
        self._pool = pool
        self._table = _checked_table(table)

    async def get(self, provider: str, provider_user_id: str) -> Optional[IdentityLink]:
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT provider, provider_user_id, user_id, display_name, email,
                           picture, last_login_at, created_at
                    FROM {self._table}
                    WHERE provider = $1 AND provider_user_id = $2
                    """,
                    provider, provider_user_id
                )
        except _PG_ERRORS as e:
            raise IdentityStoreError("DB_QUERY_FAILED", str(e)) from e
        return link_from_row(dict(row)) if row else None

    async def insert_if_absent(self, link: IdentityLink) -> tuple[IdentityLink, bool]:
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO {self._table}
                        (provider, provider_user_id, user_id, display_name, email, picture,
                         last_login_at, created_at)
                    VALUES ($1, $2, $3::uuid, $4, $5, $6, $7, $7)
                    ON CONFLICT (provider, provider_user_id) DO NOTHING
                    RETURNING provider, provider_user_id, user_id, display_name, email,
                              picture, last_login_at, created_at
                    """,
                    link.provider, link.provider_user_id, link.user_id,
                    link.display_name or None, link.email or None, link.picture or None,
                    link.created_at,
                )
        except _PG_ERRORS as e:
            raise IdentityStoreError("DB_INSERT_FAILED", str(e)) from e

        if row:
            return link_from_row(dict(row)), True

        # Lost the race: a new statement sees the committed winner.
        existing = await self.get(link.provider, link.provider_user_id)
        if existing is None:
            raise IdentityStoreError("DB_INSERT_FAILED", "conflicting row not readable")
        return existing, False

    async def touch(self, identity: ProviderIdentity) -> None:
        updates = _profile_updates(identity)
        columns = list(updates)
        assignments = ", ".join(f"{col} = ${i + 3}" for i, col in enumerate(columns))
        assignments = f"{assignments}, last_login_at = NOW()" if assignments else "last_login_at = NOW()"
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    f"""
                    UPDATE {self._table}
                    SET {assignments}
                    WHERE provider = $1 AND provider_user_id = $2
                    """,
                    identity.provider, identity.provider_user_id, *[updates[c] for c in columns]
                )
        except _PG_ERRORS as e:
            raise IdentityStoreError("DB_UPDATE_FAILED", str(e)) from e


# -----------------------------
# REST (PostgREST)
# -----------------------------

class RestIdentityStore:
    """Identity links through the managed backend's REST interface.

    Needs the service role key: identity rows are not visible to end users.
    """

    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        table: str = DEFAULT_IDENTITY_TABLE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = f"{base_url.rstrip('/')}/rest/v1/{_checked_table(table)}"
        self._headers = {
            # PostgREST behind the gateway wants both
            "apikey": service_role_key,
            "Authorization": f"Bearer {service_role_key}",
            "Accept": "application/json",
        }
        self._transport = transport

    async def _request(
        self,
        code: str,
        method: str,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=STORE_TIMEOUT) as client:
                resp = await client.request(method, self._url, headers={**self._headers, **(headers or {})}, **kwargs)
        except httpx.TimeoutException as e:
            raise IdentityStoreError(code, "TIMEOUT") from e
        except httpx.HTTPError as e:
            raise IdentityStoreError(code, f"{type(e).__name__}: {e}") from e

        if resp.status_code >= 300:
            raise IdentityStoreError(code, _body(resp))
        return resp

    async def get(self, provider: str, provider_user_id: str) -> Optional[IdentityLink]:
        resp = await self._request(
            "DB_QUERY_FAILED", "GET",
            params={
                "select": "*",
                "provider": f"eq.{provider}",
                "provider_user_id": f"eq.{provider_user_id}",
                "limit": "1",
            },
        )
        rows = _body(resp)
        if not isinstance(rows, list):
            raise IdentityStoreError("DB_QUERY_FAILED", rows)
        return link_from_row(rows[0]) if rows else None

    async def insert_if_absent(self, link: IdentityLink) -> tuple[IdentityLink, bool]:
        row = {
            "provider": link.provider,
            "provider_user_id": link.provider_user_id,
            "user_id": link.user_id,
            "display_name": link.display_name or None,
            "email": link.email or None,
            "picture": link.picture or None,
            "last_login_at": link.last_login_at.isoformat(),
        }
        resp = await self._request(
            "DB_INSERT_FAILED", "POST",
            params={"on_conflict": "provider,provider_user_id"},
            headers={
                "Content-Type": "application/json",
                "Prefer": "resolution=ignore-duplicates,return=representation",
            },
            json=[row],
        )
        inserted = _body(resp)
        if isinstance(inserted, list) and inserted:
            return link_from_row(inserted[0]), True

        existing = await self.get(link.provider, link.provider_user_id)
        if existing is None:
            raise IdentityStoreError("DB_INSERT_FAILED", "conflicting row not readable")
        return existing, False

    async def touch(self, identity: ProviderIdentity) -> None:
        updates = {**_profile_updates(identity), "last_login_at": utcnow().isoformat()}
        await self._request(
            "DB_UPDATE_FAILED", "PATCH",
            params={
                "provider": f"eq.{identity.provider}",
                "provider_user_id": f"eq.{identity.provider_user_id}",
            },
            headers={"Content-Type": "application/json", "Prefer": "return=minimal"},
            json=updates,
        )


def _body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return {"non_json_response": True, "status": resp.status_code}


def build_identity_store(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[IdentityStore]:
    """Pick the store for this deployment. None if neither is configured."""
    pool = get_pool()
    if pool is not None:
        return PostgresIdentityStore(pool, settings.identity_table)
    if settings.has_rest_store:
        return RestIdentityStore(
            settings.backend_url,
            settings.service_role_key,
            settings.identity_table,
            transport=transport,
        )
    return None
