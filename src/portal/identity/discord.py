"""Discord OAuth2 client: code exchange, profile fetch, and guild join."""

import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from portal.config.settings import AppConfig
from portal.errors import ProviderError
from portal.identity.hints import IdentityHintSet

logger = logging.getLogger(__name__)

CDN_BASE = "https://cdn.discordapp.com"
OAUTH_SCOPES = "identify email guilds.join"


@dataclass
class DiscordProfile:
    """Subset of the Discord user object the portal uses."""

    id: str
    username: str
    email: str | None
    avatar_ref: str | None

    def to_hints(self, prior_account_id: str | None = None) -> IdentityHintSet:
        return IdentityHintSet(
            external_subject_id=self.id,
            external_email=self.email,
            prior_account_id=prior_account_id,
            handle=self.username,
            avatar_ref=self.avatar_ref,
        )


def avatar_url(user_id: str, avatar_hash: str | None) -> str | None:
    """CDN URL for a Discord avatar hash, or None when the user has none."""
    if not avatar_hash:
        return None
    return f"{CDN_BASE}/avatars/{user_id}/{avatar_hash}.png"


class DiscordOAuthClient:
    """Identity provider operations against the Discord REST API.

    Every call opens its own session with a bounded timeout.
    """

    def __init__(self, config: AppConfig):
        config.require(
            "discord_client_id",
            "discord_client_secret",
            "discord_redirect_uri",
        )
        self.base_url = config.discord_api_base_url.rstrip("/")
        self.client_id = config.discord_client_id
        self.client_secret = config.discord_client_secret.get_secret_value()
        self.redirect_uri = config.discord_redirect_uri
        self.bot_token = config.discord_bot_token.get_secret_value()
        self.guild_id = config.discord_guild_id
        self.timeout = config.discord_timeout_seconds

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float | None = None,
        **kwargs,
    ) -> tuple[int, Any]:
        """Send one request and return (status, decoded JSON or None).

        Raises:
            ProviderError: On transport failure or a 4xx/5xx response
            asyncio.TimeoutError: When the bounded wait is exceeded
        """
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.request(method, f"{self.base_url}{path}", **kwargs) as resp:
                    body = None
                    if resp.content_type == "application/json":
                        body = await resp.json()
                    if resp.status >= 400:
                        raise ProviderError("discord", f"{method} {path} -> {resp.status}: {body}", resp.status)
                    return resp.status, body
        except aiohttp.ClientError as e:
            raise ProviderError("discord", f"{method} {path} failed: {e}") from e

    async def exchange_code(self, code: str) -> str:
        """Exchange an authorization code for a user access token.

        Raises:
            ProviderError: If Discord rejects the code
        """
        _, body = await self._request(
            "POST",
            "/oauth2/token",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        token = (body or {}).get("access_token")
        if not token:
            raise ProviderError("discord", "token response missing access_token")
        return token

    async def fetch_profile(self, access_token: str) -> DiscordProfile:
        """Fetch the caller's profile with their access token.

        Raises:
            ProviderError: On API failure or a malformed profile
        """
        _, body = await self._request(
            "GET",
            "/users/@me",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not body or not body.get("id"):
            raise ProviderError("discord", "profile response missing id")

        return DiscordProfile(
            id=str(body["id"]),
            username=body.get("global_name") or body.get("username") or "User",
            email=body.get("email") if body.get("verified", True) else None,
            avatar_ref=avatar_url(str(body["id"]), body.get("avatar")),
        )

    async def add_to_guild(self, user_id: str, access_token: str, timeout: float) -> bool:
        """Add the caller to the community guild using their join-capable token.

        Returns:
            True if the caller was added or was already a member

        Raises:
            ProviderError: On API failure or missing bot configuration
            asyncio.TimeoutError: When the bounded wait is exceeded
        """
        if not self.bot_token or not self.guild_id:
            raise ProviderError("discord", "bot token or guild id not configured")

        status, _ = await self._request(
            "PUT",
            f"/guilds/{self.guild_id}/members/{user_id}",
            json={"access_token": access_token},
            headers={"Authorization": f"Bot {self.bot_token}"},
            timeout=timeout,
        )
        # 201 = added, 204 = already a member
        logger.info(f"Guild join for {user_id} returned {status}")
        return status in (200, 201, 204)
