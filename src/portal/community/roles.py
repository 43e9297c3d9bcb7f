"""Community role services: paid-member role assignment and membership checks."""

import logging
from abc import ABC, abstractmethod
from typing import Any

import aiohttp
import discord

from portal.config.settings import AppConfig
from portal.errors import ProviderError

logger = logging.getLogger(__name__)


class CommunityRoleService(ABC):
    """Abstract role service keyed by member id and role id."""

    role_id: str

    @abstractmethod
    async def is_member(self, member_id: str) -> bool:
        """Whether the user is currently in the community guild."""

    @abstractmethod
    async def has_role(self, member_id: str) -> bool:
        """Whether the member holds the paid role."""

    @abstractmethod
    async def assign_role(self, member_id: str) -> bool:
        """
        Grant the paid role.

        Returns:
            True on a success payload, False on a structured failure

        Raises:
            ProviderError: On transport or API errors
        """

    @abstractmethod
    async def remove_role(self, member_id: str) -> bool:
        """Revoke the paid role (same contract as assign_role)."""

    async def close(self) -> None:
        """Release held connections."""


class BotApiRoleService(CommunityRoleService):
    """Role service backed by the community bot's HTTP API.

    Endpoints (bearer-key authenticated):
        GET    /members/{member}
        GET    /members/{member}/roles/{role}
        PUT    /members/{member}/roles/{role}
        DELETE /members/{member}/roles/{role}

    Responses carry {"success": {...}} or {"error": ...}.
    """

    def __init__(self, config: AppConfig):
        config.require("community_api_base_url", "community_api_key", "community_paid_role_id")
        self.base_url = config.community_api_base_url.rstrip("/")
        self.api_key = config.community_api_key.get_secret_value()
        self.role_id = config.community_paid_role_id
        # Outer bound only; the sync agent applies the per-operation timeouts
        self.timeout = aiohttp.ClientTimeout(total=config.community_join_timeout_seconds)

    async def _request(self, method: str, path: str) -> tuple[int, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, f"{self.base_url}{path}", headers=headers) as resp:
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError:
                        body = None
                    return resp.status, body
        except aiohttp.ClientError as e:
            raise ProviderError("community", f"{method} {path} failed: {e}") from e

    @staticmethod
    def _success(body: Any) -> dict | None:
        if isinstance(body, dict) and body.get("success"):
            success = body["success"]
            return success if isinstance(success, dict) else {}
        return None

    async def is_member(self, member_id: str) -> bool:
        status, body = await self._request("GET", f"/members/{member_id}")
        if status == 404:
            return False
        if status >= 400:
            raise ProviderError("community", f"membership check -> {status}: {body}", status)
        return self._success(body) is not None

    async def has_role(self, member_id: str) -> bool:
        status, body = await self._request("GET", f"/members/{member_id}/roles/{self.role_id}")
        if status == 404:
            return False
        if status >= 400:
            raise ProviderError("community", f"role check -> {status}: {body}", status)
        success = self._success(body)
        return bool(success and success.get("hasRole"))

    async def _change_role(self, method: str, member_id: str) -> bool:
        status, body = await self._request(method, f"/members/{member_id}/roles/{self.role_id}")
        if status >= 400:
            raise ProviderError("community", f"{method} role -> {status}: {body}", status)
        success = self._success(body)
        if success is None:
            logger.warning(f"Bot API returned no success for {method} role on {member_id}: {body}")
            return False
        if success.get("message"):
            logger.info(f"Bot API: {success['message']}")
        return True

    async def assign_role(self, member_id: str) -> bool:
        return await self._change_role("PUT", member_id)

    async def remove_role(self, member_id: str) -> bool:
        return await self._change_role("DELETE", member_id)


class GatewayRoleService(CommunityRoleService):
    """Role service that talks to Discord directly through discord.py.

    Uses REST only (login without opening the gateway), so it can run
    inside the web process.
    """

    def __init__(self, config: AppConfig, client: discord.Client | None = None):
        config.require("discord_bot_token", "discord_guild_id", "community_paid_role_id")
        self.role_id = config.community_paid_role_id
        self._token = config.discord_bot_token.get_secret_value()
        self._guild_id = int(config.discord_guild_id)
        self._client = client or discord.Client(intents=discord.Intents.none())
        self._logged_in = client is not None
        self._guild: discord.Guild | None = None

    async def _get_guild(self) -> discord.Guild:
        try:
            if not self._logged_in:
                await self._client.login(self._token)
                self._logged_in = True
            if self._guild is None:
                self._guild = await self._client.fetch_guild(self._guild_id)
        except discord.HTTPException as e:
            raise ProviderError("discord", f"guild {self._guild_id} unavailable: {e}") from e
        return self._guild

    async def _fetch_member(self, member_id: str) -> discord.Member | None:
        guild = await self._get_guild()
        try:
            return await guild.fetch_member(int(member_id))
        except discord.NotFound:
            return None
        except discord.HTTPException as e:
            raise ProviderError("discord", f"fetch member {member_id} failed: {e}", e.status) from e

    async def is_member(self, member_id: str) -> bool:
        return await self._fetch_member(member_id) is not None

    async def has_role(self, member_id: str) -> bool:
        member = await self._fetch_member(member_id)
        if member is None:
            return False
        return any(str(role.id) == self.role_id for role in member.roles)

    async def assign_role(self, member_id: str) -> bool:
        member = await self._fetch_member(member_id)
        if member is None:
            logger.warning(f"User {member_id} not found in guild - role assignment skipped")
            return False
        try:
            await member.add_roles(discord.Object(id=int(self.role_id)), reason="Subscription active")
        except discord.HTTPException as e:
            raise ProviderError("discord", f"add role to {member_id} failed: {e}", e.status) from e
        logger.info(f"Granted paid role to {member_id}")
        return True

    async def remove_role(self, member_id: str) -> bool:
        member = await self._fetch_member(member_id)
        if member is None:
            return False
        try:
            await member.remove_roles(
                discord.Object(id=int(self.role_id)), reason="Subscription inactive"
            )
        except discord.HTTPException as e:
            raise ProviderError("discord", f"remove role from {member_id} failed: {e}", e.status) from e
        logger.info(f"Revoked paid role from {member_id}")
        return True

    async def close(self) -> None:
        if self._logged_in:
            await self._client.close()


def build_role_service(config: AppConfig) -> CommunityRoleService:
    """Construct the configured role backend."""
    if config.community_role_backend == "gateway":
        return GatewayRoleService(config)
    return BotApiRoleService(config)
