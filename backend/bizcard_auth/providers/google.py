"""Google OAuth 2.0.

``access_type=offline`` with ``prompt=consent`` matches what the web client
has always requested. Identity comes from the userinfo endpoint, called with
the fresh access token.
"""

from bizcard_auth.providers.base import ProfileFields, ProviderDescriptor

GOOGLE = ProviderDescriptor(
    name="google",
    label="Google",
    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
    token_url="https://oauth2.googleapis.com/token",
    profile_url="https://www.googleapis.com/oauth2/v2/userinfo",
    scope="openid email profile",
    authorize_params={"access_type": "offline", "prompt": "consent"},
    profile=ProfileFields(
        user_id="id",
        display_name="name",
        email="email",
        picture="picture",
    ),
    state_prefix="google_",
)
