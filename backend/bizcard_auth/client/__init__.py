"""
Client half of the identity bridge.

Runs in the browsing context (or any host that models one): starts provider
logins, completes callbacks against the exchange endpoints, and resolves
which credential governs each backend call.
"""

from bizcard_auth.client.backend import (
    BackendClient,
    ManagedSession,
    ManagedSessionError,
    SessionTokenStore,
    StoredManagedSession,
)
from bizcard_auth.client.browser import (
    BrowsingContext,
    JsonFileStorage,
    MemoryStorage,
    StorageUnavailableError,
    WebbrowserNavigator,
)
from bizcard_auth.client.context import (
    AuthContext,
    AuthContextResolver,
    AuthFailure,
    AuthFailureReason,
    AuthMode,
    ClientCache,
)
from bizcard_auth.client.login import (
    ClientConfig,
    OAuthLoginAdapter,
    build_adapters,
    complete_any_login,
)
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

__all__ = [
    # Backend
    "BackendClient",
    "ManagedSession",
    "ManagedSessionError",
    "SessionTokenStore",
    "StoredManagedSession",
    # Browser
    "BrowsingContext",
    "JsonFileStorage",
    "MemoryStorage",
    "StorageUnavailableError",
    "WebbrowserNavigator",
    # Auth context
    "AuthContext",
    "AuthContextResolver",
    "AuthFailure",
    "AuthFailureReason",
    "AuthMode",
    "ClientCache",
    # Login
    "ClientConfig",
    "OAuthLoginAdapter",
    "build_adapters",
    "complete_any_login",
    # Outcomes
    "ConfigError",
    "InfraError",
    "LoginOutcome",
    "LoginSucceeded",
    "NotHandled",
    "ProtocolError",
    "TransportError",
    # State
    "RoundTripStore",
    "generate_state",
    "verify_state",
]
