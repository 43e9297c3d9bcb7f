"""Table-name constants, status enums, and canonical record schemas."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


# Table name constants
class Table:
    """Database table names."""

    ACCOUNTS = "accounts"
    SUBSCRIPTIONS = "subscriptions"
    SCHEMA_MIGRATIONS = "schema_migrations"


class SubscriptionStatus(str, Enum):
    """Local subscription status (closed set)."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class Account:
    """Canonical application user record."""

    id: str
    payment_email: str | None
    handle: str
    external_subject_id: str | None = None  # Discord user id
    external_email: str | None = None  # secondary, provider-sourced
    avatar_ref: str | None = None
    is_admin: bool = False
    is_manually_entitled: bool = False
    is_entitled: bool = False  # set by the linker, never cleared there
    subscription_ref: str | None = None
    verification_code: str | None = None
    verification_code_expires_at: datetime | None = None  # UTC
    created_at: datetime | None = None  # UTC
    updated_at: datetime | None = None  # UTC

    def public_profile(self) -> dict:
        """Profile shape returned to the browser and API callers."""
        return {
            "id": self.id,
            "discordId": self.external_subject_id,
            "username": self.handle,
            "email": self.payment_email or self.external_email,
            "avatar": self.avatar_ref,
            "isAdmin": self.is_admin,
            "isEntitled": self.is_entitled,
        }


@dataclass
class SubscriptionRecord:
    """Local mirror of one payment-provider subscription."""

    id: str
    account_ref: str
    provider_customer_id: str
    provider_subscription_id: str  # globally unique
    status: SubscriptionStatus
    current_period_start: datetime | None = None  # UTC
    current_period_end: datetime | None = None  # UTC
    cancel_at_period_end: bool = False
    grace_ends_at: datetime | None = None  # UTC
    canceled_at: datetime | None = None  # UTC
    created_at: datetime | None = None  # UTC
    updated_at: datetime | None = None  # UTC

    def public_status(self) -> dict:
        """Subscription shape returned by the status endpoint."""
        return {
            "status": SubscriptionStatus(self.status).value,
            "currentPeriodStart": _isoformat(self.current_period_start),
            "currentPeriodEnd": _isoformat(self.current_period_end),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "canceledAt": _isoformat(self.canceled_at),
            "gracePeriodEnd": _isoformat(self.grace_ends_at),
        }


# Columns the resolver and linker are allowed to patch on an account
ACCOUNT_MUTABLE_FIELDS = frozenset(
    {
        "external_subject_id",
        "external_email",
        "payment_email",
        "handle",
        "avatar_ref",
        "is_entitled",
        "subscription_ref",
        "verification_code",
        "verification_code_expires_at",
    }
)

SUBSCRIPTION_MUTABLE_FIELDS = frozenset(
    {
        "account_ref",
        "provider_customer_id",
        "status",
        "current_period_start",
        "current_period_end",
        "cancel_at_period_end",
        "grace_ends_at",
        "canceled_at",
    }
)


@dataclass
class NewAccount:
    """Field set for an account that does not exist yet."""

    payment_email: str | None
    handle: str
    external_subject_id: str | None = None
    external_email: str | None = None
    avatar_ref: str | None = None


@dataclass
class NewSubscription:
    """Field set for a subscription record that does not exist yet."""

    account_ref: str
    provider_customer_id: str
    provider_subscription_id: str
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    grace_ends_at: datetime | None = None
    canceled_at: datetime | None = None
