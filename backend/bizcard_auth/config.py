"""Configuration for the identity bridge.

Exchange endpoints run one request per invocation, so server settings are
read from the environment on every call (``load_settings``). Secrets can
also come from GCP Secret Manager when ``GCP_PROJECT_ID`` is set.

Secret values pasted into hosting dashboards often carry stray quotes or
whitespace, and PEM keys arrive with literal ``\\n`` sequences. Everything
goes through ``normalize_secret`` before use.
"""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_BUILD_ID = "2026-10-19-1"
DEFAULT_IDENTITY_TABLE = "identity_links"


# -----------------------------
# Secret loading
# -----------------------------

@lru_cache(maxsize=64)
def _get_secret_from_gcp(project_id: str, secret_name: str) -> Optional[str]:
    """Fetch a secret from GCP Secret Manager.

    Returns None if the client library is missing or the secret doesn't exist.
    Caches the result for the lifetime of the process.
    """
    try:
        from google.cloud import secretmanager
    except ImportError:
        logger.debug("google-cloud-secret-manager not installed, using env vars")
        return None

    try:
        client = secretmanager.SecretManagerServiceClient()
        name = f"projects/{project_id}/secrets/{secret_name}/versions/latest"
        response = client.access_secret_version(request={"name": name})
        return response.payload.data.decode("UTF-8")
    except Exception as e:
        logger.warning("Failed to fetch secret %s from GCP: %s", secret_name, str(e))
        return None


def normalize_secret(value: Optional[str]) -> str:
    """Trim whitespace and one pair of surrounding quotes."""
    s = str(value or "").strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        return s[1:-1].strip()
    return s


def normalize_pem(value: Optional[str]) -> str:
    return normalize_secret(value).replace("\\n", "\n")


def _first_env(environ: Mapping[str, str], *names: str) -> str:
    for name in names:
        value = normalize_secret(environ.get(name))
        if value:
            return value
    return ""


def _secret(environ: Mapping[str, str], secret_name: str, *env_names: str) -> str:
    """Secret Manager first (if configured), then the env var aliases in order."""
    project_id = normalize_secret(environ.get("GCP_PROJECT_ID"))
    if project_id:
        value = _get_secret_from_gcp(project_id, secret_name)
        if value:
            return normalize_secret(value)
    return _first_env(environ, *env_names)


# -----------------------------
# Settings
# -----------------------------

@dataclass(frozen=True)
class ProviderCredentials:
    """Server-side credentials for one identity provider."""
    client_id: str = ""
    client_secret: str = ""
    # Apple only
    team_id: str = ""
    key_id: str = ""
    private_key: str = ""

    def required(self, provider: str) -> dict[str, str]:
        """Name -> value of every credential the provider needs."""
        if provider == "apple":
            return {
                "apple_client_id": self.client_id,
                "apple_team_id": self.team_id,
                "apple_key_id": self.key_id,
                "apple_private_key": self.private_key,
            }
        return {
            f"{provider}_client_id": self.client_id,
            f"{provider}_client_secret": self.client_secret,
        }


@dataclass(frozen=True)
class Settings:
    backend_url: str = ""
    service_role_key: str = ""
    jwt_secret: str = ""
    public_api_key: str = ""
    database_url: str = ""
    identity_table: str = DEFAULT_IDENTITY_TABLE
    build_id: str = DEFAULT_BUILD_ID
    apple_frontend_callback_url: str = ""
    providers: dict[str, ProviderCredentials] = field(default_factory=dict)

    def credentials(self, provider: str) -> ProviderCredentials:
        return self.providers.get(provider, ProviderCredentials())

    @property
    def has_rest_store(self) -> bool:
        return bool(self.backend_url and self.service_role_key)

    def backend_secrets(self) -> dict[str, str]:
        return {
            "supabase_url": self.backend_url,
            "service_role_key": self.service_role_key,
            "jwt_secret": self.jwt_secret,
        }

    def missing_backend(self, has_pool: bool = False) -> list[str]:
        """Names of missing backend secrets.

        A live database pool satisfies the identity store requirement on its
        own; otherwise the REST url and service key are both needed.
        """
        missing = [] if self.jwt_secret else ["jwt_secret"]
        if not has_pool and not self.has_rest_store:
            if not self.backend_url:
                missing.append("supabase_url")
            if not self.service_role_key:
                missing.append("service_role_key")
        return missing

    def missing_provider(self, provider: str) -> list[str]:
        required = self.credentials(provider).required(provider)
        return [name for name, value in required.items() if not value]

    def presence(self, provider: str) -> dict[str, dict]:
        """Presence/length report for the diagnostic endpoint. Never values."""
        values = {**self.backend_secrets(), **self.credentials(provider).required(provider)}
        return {
            "has": {name: bool(value) for name, value in values.items()},
            "len": {
                name: len(value)
                for name, value in values.items()
                if name not in ("supabase_url", "service_role_key")
            },
        }


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the environment (``os.environ`` by default)."""
    env = os.environ if environ is None else environ

    providers = {
        "line": ProviderCredentials(
            client_id=_first_env(env, "LINE_CHANNEL_ID", "LINE_LOGIN_CHANNEL_ID"),
            client_secret=_secret(env, "line-channel-secret",
                                  "LINE_CHANNEL_SECRET", "LINE_LOGIN_CHANNEL_SECRET"),
        ),
        "google": ProviderCredentials(
            client_id=_first_env(env, "GOOGLE_CLIENT_ID"),
            client_secret=_secret(env, "google-client-secret", "GOOGLE_CLIENT_SECRET"),
        ),
        "apple": ProviderCredentials(
            client_id=_first_env(env, "APPLE_CLIENT_ID"),
            team_id=_first_env(env, "APPLE_TEAM_ID"),
            key_id=_first_env(env, "APPLE_KEY_ID"),
            private_key=normalize_pem(_secret(env, "apple-private-key", "APPLE_PRIVATE_KEY")),
        ),
    }

    return Settings(
        backend_url=_first_env(env, "SUPABASE_URL", "PROJECT_URL", "URL").rstrip("/"),
        service_role_key=_secret(env, "service-role-key",
                                 "SUPABASE_SERVICE_ROLE_KEY", "SERVICE_ROLE_KEY", "SERVICE_ROLE"),
        jwt_secret=_secret(env, "jwt-secret", "JWT_SECRET", "SUPABASE_JWT_SECRET"),
        public_api_key=_first_env(env, "SUPABASE_ANON_KEY", "ANON_KEY", "PUBLIC_API_KEY"),
        database_url=_first_env(env, "DATABASE_URL"),
        identity_table=_first_env(env, "IDENTITY_TABLE") or DEFAULT_IDENTITY_TABLE,
        build_id=_first_env(env, "BUILD_ID") or DEFAULT_BUILD_ID,
        apple_frontend_callback_url=_first_env(env, "APPLE_FRONTEND_CALLBACK_URL"),
        providers=providers,
    )
