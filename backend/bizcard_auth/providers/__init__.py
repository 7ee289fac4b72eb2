"""
Identity provider descriptors.

LINE, Google and Apple share one exchange flow and one login adapter; the
per-provider differences live in these descriptors.
"""

from typing import Optional

from bizcard_auth.providers.base import ProfileFields, ProviderDescriptor
from bizcard_auth.providers.line import LINE
from bizcard_auth.providers.google import GOOGLE
from bizcard_auth.providers.apple import APPLE, APPLE_ISSUER, APPLE_KEYS_URL

PROVIDERS: dict[str, ProviderDescriptor] = {p.name: p for p in (LINE, GOOGLE, APPLE)}

STATE_PREFIXES: tuple[str, ...] = tuple(p.state_prefix for p in PROVIDERS.values() if p.state_prefix)


class UnknownProviderError(KeyError):
    """Raised for a provider name we have no descriptor for."""


def get_provider(name: str) -> ProviderDescriptor:
    try:
        return PROVIDERS[str(name or "").strip().lower()]
    except KeyError:
        raise UnknownProviderError(name) from None


def recognizes_state(provider: ProviderDescriptor, state: Optional[str]) -> bool:
    """Whether a callback ``state`` belongs to ``provider``.

    Several providers share one redirect URI. Tagged providers match on their
    prefix; the untagged one matches any state that no tagged provider claims.
    """
    if not state:
        return False
    if provider.state_prefix:
        return state.startswith(provider.state_prefix)
    return not state.startswith(STATE_PREFIXES)


__all__ = [
    "ProfileFields",
    "ProviderDescriptor",
    "LINE",
    "GOOGLE",
    "APPLE",
    "APPLE_ISSUER",
    "APPLE_KEYS_URL",
    "PROVIDERS",
    "STATE_PREFIXES",
    "UnknownProviderError",
    "get_provider",
    "recognizes_state",
]
