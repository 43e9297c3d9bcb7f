"""Discord community membership and paid-role reconciliation."""

from portal.community.roles import (
    BotApiRoleService,
    CommunityRoleService,
    GatewayRoleService,
    build_role_service,
)
from portal.community.sync import CommunitySyncAgent, SyncReport, SyncState

__all__ = [
    "BotApiRoleService",
    "CommunityRoleService",
    "CommunitySyncAgent",
    "GatewayRoleService",
    "SyncReport",
    "SyncState",
    "build_role_service",
]
