"""Access decision and portal credentials."""

from portal.access.gate import DEFAULT_GRACE_DAYS, can_access, grace_ends_at
from portal.access.tokens import EntryPath, TokenClaims, TokenIssuer

__all__ = [
    "DEFAULT_GRACE_DAYS",
    "EntryPath",
    "TokenClaims",
    "TokenIssuer",
    "can_access",
    "grace_ends_at",
]
