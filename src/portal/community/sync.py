"""Detached, best-effort reconciliation of community membership and paid role.

The access decision never waits for this module. Work is spawned as asyncio
tasks held in a task set so it is not garbage collected mid-flight; each task
has its own timeouts and error boundary, and drain() lets tests (and
shutdown) wait for in-flight work.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable

from portal.community.roles import CommunityRoleService
from portal.config.settings import AppConfig
from portal.errors import ProviderError, SyncTimeoutError
from portal.identity.discord import DiscordOAuthClient

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    """Progress of one grant reconciliation."""

    NOT_CHECKED = "not_checked"
    JOIN_ATTEMPTED = "join_attempted"
    JOINED = "joined"
    JOIN_FAILED = "join_failed"
    ROLE_CHECKED = "role_checked"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_SKIPPED = "role_skipped"
    ROLE_FAILED = "role_failed"


@dataclass
class SyncReport:
    """Observable outcome of a grant reconciliation."""

    member_id: str
    state: SyncState = SyncState.NOT_CHECKED
    history: list[SyncState] = field(default_factory=lambda: [SyncState.NOT_CHECKED])
    inconclusive: list[str] = field(default_factory=list)

    def advance(self, state: SyncState) -> None:
        self.state = state
        self.history.append(state)


class CommunitySyncAgent:
    """Join the caller to the guild and reconcile the paid role."""

    def __init__(
        self,
        roles: CommunityRoleService,
        config: AppConfig,
        joiner: DiscordOAuthClient | None = None,
    ):
        self.roles = roles
        self.joiner = joiner
        self.join_timeout = config.community_join_timeout_seconds
        self.check_timeout = config.community_check_timeout_seconds
        self.assign_timeout = config.community_assign_timeout_seconds
        self.remove_timeout = config.community_remove_timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    # ---- detached scheduling ----

    def schedule_grant(self, member_id: str, join_token: str | None = None) -> asyncio.Task:
        """Start grant reconciliation without waiting for it."""
        return self._spawn(self.run_grant(member_id, join_token), f"community-grant-{member_id}")

    def schedule_revoke(self, member_id: str) -> asyncio.Task:
        """Start best-effort role removal without waiting for it."""
        return self._spawn(self.run_revoke(member_id), f"community-revoke-{member_id}")

    def _spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"{task.get_name()} cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{task.get_name()} crashed: {error}", exc_info=error)
            return
        logger.info(f"{task.get_name()} finished: {task.result()}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> list:
        """Wait for all in-flight work and return its results."""
        if not self._tasks:
            return []
        return await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---- bounded calls ----

    async def _bounded(self, operation: str, call: Awaitable, timeout: float):
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(operation, timeout) from e

    async def _verify_member(self, member_id: str) -> bool:
        try:
            return await self._bounded(
                "membership_check", self.roles.is_member(member_id), self.check_timeout
            )
        except (SyncTimeoutError, ProviderError) as e:
            logger.warning(f"Membership check for {member_id} failed: {e}")
            return False

    async def _verify_role(self, member_id: str) -> bool:
        try:
            return await self._bounded(
                "role_check", self.roles.has_role(member_id), self.check_timeout
            )
        except (SyncTimeoutError, ProviderError) as e:
            logger.warning(f"Role check for {member_id} failed: {e}")
            return False

    # ---- grant ----

    async def run_grant(self, member_id: str, join_token: str | None = None) -> SyncReport:
        """Reconcile membership and the paid role for a granted caller.

        Never raises: every failure ends in a terminal SyncState.
        """
        report = SyncReport(member_id=member_id)
        try:
            is_member = await self._join_step(report, join_token)
            report.advance(SyncState.ROLE_CHECKED)
            if not is_member:
                logger.info(f"{member_id} is not a guild member - role assignment skipped")
                report.advance(SyncState.ROLE_SKIPPED)
                return report
            await self._role_step(report)
        except Exception as e:
            # Error boundary for detached work
            logger.exception(f"Community grant for {member_id} failed: {e}")
            report.advance(SyncState.ROLE_FAILED)
        return report

    async def _join_step(self, report: SyncReport, join_token: str | None) -> bool:
        member_id = report.member_id
        if not join_token or self.joiner is None:
            # Server-initiated login: no fresh grant, so only existing members proceed
            return await self._verify_member(member_id)

        report.advance(SyncState.JOIN_ATTEMPTED)
        try:
            joined = await self._bounded(
                "join",
                self.joiner.add_to_guild(member_id, join_token, self.join_timeout),
                self.join_timeout,
            )
        except SyncTimeoutError as e:
            logger.warning(f"Guild join for {member_id} inconclusive ({e}) - re-verifying")
            report.inconclusive.append("join")
            joined = await self._verify_member(member_id)
        except ProviderError as e:
            logger.warning(f"Guild join for {member_id} failed ({e}) - re-verifying")
            joined = await self._verify_member(member_id)

        report.advance(SyncState.JOINED if joined else SyncState.JOIN_FAILED)
        return joined

    async def _role_step(self, report: SyncReport) -> None:
        member_id = report.member_id
        if await self._verify_role(member_id):
            report.advance(SyncState.ROLE_ASSIGNED)
            return

        try:
            assigned = await self._bounded(
                "assign_role", self.roles.assign_role(member_id), self.assign_timeout
            )
        except SyncTimeoutError as e:
            logger.warning(f"Role assignment for {member_id} inconclusive ({e}) - re-verifying")
            report.inconclusive.append("assign_role")
            assigned = await self._verify_role(member_id)
        except ProviderError as e:
            logger.warning(f"Role assignment for {member_id} failed ({e}) - re-verifying")
            assigned = await self._verify_role(member_id)

        report.advance(SyncState.ROLE_ASSIGNED if assigned else SyncState.ROLE_FAILED)

    # ---- revoke ----

    async def run_revoke(self, member_id: str) -> bool:
        """Best-effort paid-role removal after a deny. Swallows every error."""
        try:
            removed = await self._bounded(
                "remove_role", self.roles.remove_role(member_id), self.remove_timeout
            )
        except Exception as e:
            logger.warning(f"Role removal for {member_id} not completed: {e}")
            return False
        if removed:
            logger.info(f"Removed paid role from {member_id}")
        return removed
