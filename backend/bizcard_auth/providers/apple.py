"""Sign in with Apple.

Differences from the other providers:
- ``client_secret`` is an ES256 JWT we sign per request (see
  ``tokens.create_client_assertion``).
- There is no profile endpoint. The user id (``sub``) and email are claims of
  the id_token returned by the token endpoint.
- The display name is posted once, on first authorization, as a ``user``
  JSON document alongside the code.
- Apple answers with ``response_mode=form_post``, so the browser lands on our
  ``/auth/apple/callback`` first and is redirected on with the values in the
  query string.
"""

from bizcard_auth.providers.base import ProfileFields, ProviderDescriptor

APPLE_ISSUER = "https://appleid.apple.com"
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"

APPLE = ProviderDescriptor(
    name="apple",
    label="Apple",
    authorize_url="https://appleid.apple.com/auth/authorize",
    token_url="https://appleid.apple.com/auth/token",
    profile_url=None,
    scope="name email",
    authorize_params={"response_type": "code id_token", "response_mode": "form_post"},
    profile=ProfileFields(user_id="sub", email="email"),
    state_prefix="apple_",
    requires_client_assertion=True,
)
