"""Access decision for the protected portal.

Pure functions only: every entry path (login callbacks, code linking, the
bearer-token check) decides through can_access.
"""

from datetime import datetime, timedelta

from portal.db.models import ENTITLED_STATUSES, SubscriptionRecord, SubscriptionStatus
from portal.payments.status import normalize_status

DEFAULT_GRACE_DAYS = 2


def grace_ends_at(
    current_period_end: datetime | None,
    grace_days: int = DEFAULT_GRACE_DAYS,
) -> datetime | None:
    """End of the grace window that follows a billing period."""
    if current_period_end is None:
        return None
    return current_period_end + timedelta(days=grace_days)


def can_access(
    subscription: SubscriptionRecord | None,
    manual_override: bool,
    now: datetime,
    grace_days: int = DEFAULT_GRACE_DAYS,
) -> bool:
    """Decide whether a caller may use the portal.

    Args:
        subscription: The caller's subscription record, if any
        manual_override: Manual entitlement (admins, comped accounts)
        now: Decision time (UTC, timezone-aware)
        grace_days: Fallback grace window when the record has no grace_ends_at

    Returns:
        True to grant, False to deny

    Rules:
        - manual_override grants regardless of subscription
        - no subscription denies
        - active/trialing grants
        - past_due grants while now < grace_ends_at
        - everything else (unpaid, canceled, unrecognized) denies
    """
    if manual_override:
        return True
    if subscription is None:
        return False

    status = normalize_status(subscription.status)
    if status in ENTITLED_STATUSES:
        return True

    if status == SubscriptionStatus.PAST_DUE:
        window_end = subscription.grace_ends_at or grace_ends_at(
            subscription.current_period_end, grace_days
        )
        return window_end is not None and now < window_end

    return False
