"""LINE Login (v2.1).

The token response carries an access token only; the stable user id comes
from the profile endpoint. LINE states carry no prefix, so this provider
owns every callback state that no other provider has tagged.

Reference: https://developers.line.biz/en/reference/line-login/
"""

from bizcard_auth.providers.base import ProfileFields, ProviderDescriptor

LINE = ProviderDescriptor(
    name="line",
    label="LINE",
    authorize_url="https://access.line.me/oauth2/v2.1/authorize",
    token_url="https://api.line.me/oauth2/v2.1/token",
    profile_url="https://api.line.me/v2/profile",
    scope="profile openid",
    profile=ProfileFields(
        user_id="userId",
        display_name="displayName",
        picture="pictureUrl",
    ),
    state_prefix="",
    # LINE Login channel ids are numeric. Anything else is usually a LINE
    # official account id pasted by mistake and LINE rejects it upstream.
    client_id_pattern=r"\d+",
    client_id_hint=(
        "the channel id should be digits only. Copy it from LINE Developers -> "
        "your LINE Login channel -> Basic settings."
    ),
)
