"""Identity resolution: Discord OAuth2 client, hints, and the resolver."""

from portal.identity.discord import DiscordOAuthClient, DiscordProfile
from portal.identity.hints import IdentityHintSet
from portal.identity.resolver import IdentityResolver, Resolution

__all__ = [
    "DiscordOAuthClient",
    "DiscordProfile",
    "IdentityHintSet",
    "IdentityResolver",
    "Resolution",
]
