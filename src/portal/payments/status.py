"""Provider status normalization.

Every place that turns a Stripe status string into a local status goes
through normalize_status. Unknown values fail closed.
"""

import logging

from portal.db.models import SubscriptionStatus

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
}


def normalize_status(raw: str | SubscriptionStatus | None) -> SubscriptionStatus:
    """Map a provider status to the local enum.

    Total over all inputs: anything unrecognized (including Stripe's
    "incomplete", "incomplete_expired" and "paused") becomes CANCELED.

    Args:
        raw: Provider status string, an existing enum member, or None

    Returns:
        SubscriptionStatus
    """
    if isinstance(raw, SubscriptionStatus):
        return raw

    status = _STATUS_MAP.get((raw or "").strip().lower())
    if status is None:
        logger.warning(f"Unrecognized subscription status {raw!r} - treating as canceled")
        return SubscriptionStatus.CANCELED
    return status
