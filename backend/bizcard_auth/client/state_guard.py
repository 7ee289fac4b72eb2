"""CSRF state for the OAuth redirect round trip."""

import hmac
import logging
import secrets
from typing import Optional

from bizcard_auth.client.browser import BrowsingContext, safe_get, safe_remove, safe_set

logger = logging.getLogger(__name__)

STATE_BYTES = 24


def generate_state(prefix: str = "") -> str:
    """Fresh unguessable state, tagged with the provider's prefix."""
    return prefix + secrets.token_urlsafe(STATE_BYTES)


def verify_state(received: Optional[str], expected: Optional[str]) -> bool:
    """Exact match. An empty ``expected`` means it can't be checked: True."""
    if not expected:
        return True
    return hmac.compare_digest(str(received or "").encode("utf-8"), expected.encode("utf-8"))


class RoundTripStore:
    """Pending ``state`` and ``next`` for one provider's login attempt.

    State goes to both storage tiers so that losing one (partitioned or
    blocked storage in in-app browsers) still leaves the other.
    """

    def __init__(self, browser: BrowsingContext, provider: str):
        self.browser = browser
        self.state_key = f"BIZCARD_{provider.upper()}_STATE"
        self.next_key = f"BIZCARD_{provider.upper()}_NEXT"

    def save(self, state: str, next_target: str) -> None:
        safe_set(self.browser.local, self.next_key, next_target)
        stored_local = safe_set(self.browser.local, self.state_key, state)
        stored_session = safe_set(self.browser.session, self.state_key, state)
        if not (stored_local or stored_session):
            logger.warning("Could not persist login state for %s; callback won't be verifiable",
                           self.state_key)

    def expected_state(self) -> str:
        return safe_get(self.browser.local, self.state_key) or safe_get(self.browser.session, self.state_key)

    def clear_state(self) -> None:
        safe_remove(self.browser.local, self.state_key)
        safe_remove(self.browser.session, self.state_key)

    def pop_next(self, default: str) -> str:
        target = safe_get(self.browser.local, self.next_key)
        safe_remove(self.browser.local, self.next_key)
        return target or default
