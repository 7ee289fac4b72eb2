"""Provider descriptor shared by the exchange endpoints and the login adapters.

Each identity provider is described by data only: endpoints, scope, the
extra authorize parameters, how its callbacks are told apart on a shared
redirect URI, and where the profile fields live. One generic exchange and
one generic login adapter consume these descriptors.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from bizcard_auth.models import ProviderIdentity


@dataclass(frozen=True)
class ProfileFields:
    """Field names in the provider's profile document (or id_token claims)."""
    user_id: str
    display_name: str = ""
    email: str = ""
    picture: str = ""


@dataclass(frozen=True)
class ProviderDescriptor:
    name: str
    label: str
    authorize_url: str
    token_url: str
    scope: str
    profile: ProfileFields
    # None means identity comes from the id_token in the token response
    profile_url: Optional[str] = None
    authorize_params: Mapping[str, str] = field(default_factory=dict)
    # Callback discriminator. Empty prefix claims every state that carries
    # no other provider's prefix.
    state_prefix: str = ""
    requires_client_assertion: bool = False
    client_id_pattern: Optional[str] = None
    client_id_hint: str = ""

    @property
    def error_prefix(self) -> str:
        return self.name.upper()

    def error(self, suffix: str) -> str:
        """Provider-scoped error code, e.g. ``GOOGLE_BAD_STATE``."""
        return f"{self.error_prefix}_{suffix}"

    @property
    def exchange_path(self) -> str:
        return f"/functions/v1/{self.name}-auth"

    def client_id_problem(self, client_id: str) -> Optional[str]:
        """User-facing reason the client id can't be used, or None."""
        if not client_id:
            return f"{self.label} login is not configured: the client id is empty."
        if self.client_id_pattern and not re.fullmatch(self.client_id_pattern, client_id):
            return f"{self.label} login is misconfigured: {self.client_id_hint}"
        return None

    def identity_from(self, document: Mapping[str, Any]) -> ProviderIdentity:
        """Map a profile document or claim set to a ProviderIdentity."""
        def pick(key: str) -> str:
            if not key:
                return ""
            value = document.get(key)
            return str(value).strip() if value is not None else ""

        return ProviderIdentity(
            provider=self.name,
            provider_user_id=pick(self.profile.user_id),
            display_name=pick(self.profile.display_name),
            email=pick(self.profile.email),
            picture=pick(self.profile.picture),
        )
