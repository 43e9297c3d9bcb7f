"""Stripe read/stamp operations used by identity resolution and linking.

Stripe's Python client is synchronous; each call runs in a worker thread so
the request flow still suspends instead of blocking the event loop.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial

import stripe

from portal.config.settings import AppConfig
from portal.errors import ProviderError

logger = logging.getLogger(__name__)

# Metadata keys stamped on Stripe customers and subscriptions
SUBJECT_METADATA_KEY = "discord_user_id"
ACCOUNT_METADATA_KEY = "account_id"

# Higher ranks are preferred when a caller owns several subscriptions
_STATUS_RANK = {
    "active": 3,
    "trialing": 3,
    "past_due": 2,
    "unpaid": 1,
}


@dataclass
class ProviderSubscription:
    """Payment provider's view of one subscription."""

    id: str
    customer_id: str
    status: str  # raw provider value, normalized by the linker
    customer_email: str | None = None
    current_period_start: datetime | None = None  # UTC
    current_period_end: datetime | None = None  # UTC
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None  # UTC
    customer_metadata: dict[str, str] = field(default_factory=dict)
    subscription_metadata: dict[str, str] = field(default_factory=dict)
    client_reference_id: str | None = None  # set from a Checkout Session

    def metadata_value(self, key: str) -> str | None:
        """Read a stamped metadata key, subscription first, then customer."""
        return self.subscription_metadata.get(key) or self.customer_metadata.get(key) or None


def _ts(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _period_field(subscription, name: str):
    """Period fields live on the subscription or, in newer API versions, its items."""
    value = subscription.get(name)
    if value:
        return value
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items[0].get(name)
    return None


def to_provider_subscription(subscription, customer=None) -> ProviderSubscription:
    """Convert a Stripe Subscription (and optional Customer) object."""
    if customer is None and isinstance(subscription.get("customer"), dict):
        customer = subscription["customer"]

    customer_id = subscription.get("customer")
    if isinstance(customer_id, dict):
        customer_id = customer_id.get("id")

    return ProviderSubscription(
        id=subscription["id"],
        customer_id=customer_id or (customer or {}).get("id", ""),
        status=subscription.get("status") or "",
        customer_email=(customer or {}).get("email"),
        current_period_start=_ts(_period_field(subscription, "current_period_start")),
        current_period_end=_ts(_period_field(subscription, "current_period_end")),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        canceled_at=_ts(subscription.get("canceled_at")),
        customer_metadata=dict((customer or {}).get("metadata") or {}),
        subscription_metadata=dict(subscription.get("metadata") or {}),
    )


class PaymentGateway(ABC):
    """Abstract payment provider interface."""

    @abstractmethod
    async def find_subscription_for_caller(
        self,
        subject_id: str | None,
        emails: list[str],
    ) -> ProviderSubscription | None:
        """
        Find the caller's best current subscription.

        Customers are searched by stamped subject metadata first, then by each
        email in order. Canceled and incomplete subscriptions are ignored.

        Raises:
            ProviderError: On provider API failures
        """

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        """
        Read one subscription with its customer.

        Raises:
            ProviderError: On provider API failures
        """

    @abstractmethod
    async def retrieve_checkout_subscription(self, session_id: str) -> ProviderSubscription | None:
        """
        Read the subscription created by a completed Checkout Session.

        The session's client_reference_id is carried on the result.

        Raises:
            ProviderError: On provider API failures
        """

    @abstractmethod
    async def stamp_metadata(
        self, subscription: ProviderSubscription, values: dict[str, str]
    ) -> None:
        """
        Write metadata keys missing from the customer and subscription.

        Raises:
            ProviderError: On provider API failures
        """


class StripePayments(PaymentGateway):
    """PaymentGateway backed by the Stripe API."""

    def __init__(self, config: AppConfig):
        config.require("stripe_secret")
        self._api_key = config.stripe_secret.get_secret_value()

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(partial(fn, *args, api_key=self._api_key, **kwargs))
        except stripe.StripeError as e:
            raise ProviderError("stripe", str(e), getattr(e, "http_status", None)) from e

    async def _customers_for_caller(self, subject_id: str | None, emails: list[str]) -> list:
        customers = []
        seen = set()

        if subject_id:
            escaped = subject_id.replace("'", "\\'")
            result = await self._call(
                stripe.Customer.search,
                query=f"metadata['{SUBJECT_METADATA_KEY}']:'{escaped}'",
                limit=10,
            )
            for customer in result.get("data", []):
                if customer["id"] not in seen:
                    seen.add(customer["id"])
                    customers.append(customer)

        for email in emails:
            result = await self._call(stripe.Customer.list, email=email, limit=10)
            for customer in result.get("data", []):
                if customer["id"] not in seen:
                    seen.add(customer["id"])
                    customers.append(customer)

        return customers

    async def find_subscription_for_caller(
        self,
        subject_id: str | None,
        emails: list[str],
    ) -> ProviderSubscription | None:
        customers = await self._customers_for_caller(subject_id, emails)
        if not customers:
            logger.debug(f"No Stripe customer for subject={subject_id} emails={emails}")
            return None

        best: ProviderSubscription | None = None
        best_key = None
        for customer in customers:
            result = await self._call(
                stripe.Subscription.list,
                customer=customer["id"],
                status="all",
                limit=10,
            )
            for subscription in result.get("data", []):
                rank = _STATUS_RANK.get(subscription.get("status"))
                if rank is None:
                    continue
                candidate = to_provider_subscription(subscription, customer)
                period_end = candidate.current_period_end or datetime.min.replace(tzinfo=timezone.utc)
                key = (rank, period_end)
                if best_key is None or key > best_key:
                    best, best_key = candidate, key

        if best is not None:
            logger.info(
                f"Found Stripe subscription {best.id} ({best.status}) "
                f"for customer {best.customer_id}"
            )
        return best

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        subscription = await self._call(
            stripe.Subscription.retrieve,
            subscription_id,
            expand=["customer"],
        )
        return to_provider_subscription(subscription)

    async def stamp_metadata(
        self, subscription: ProviderSubscription, values: dict[str, str]
    ) -> None:
        # Stripe merges metadata keys on modify, so only missing keys are sent
        customer_missing = {
            k: v for k, v in values.items() if v and not subscription.customer_metadata.get(k)
        }
        subscription_missing = {
            k: v for k, v in values.items() if v and not subscription.subscription_metadata.get(k)
        }

        if customer_missing and subscription.customer_id:
            await self._call(
                stripe.Customer.modify, subscription.customer_id, metadata=customer_missing
            )
            subscription.customer_metadata.update(customer_missing)
        if subscription_missing:
            await self._call(
                stripe.Subscription.modify, subscription.id, metadata=subscription_missing
            )
            subscription.subscription_metadata.update(subscription_missing)

        if customer_missing or subscription_missing:
            logger.info(
                f"Stamped metadata {sorted(set(customer_missing) | set(subscription_missing))} "
                f"on Stripe subscription {subscription.id}"
            )

    async def retrieve_checkout_subscription(self, session_id: str) -> ProviderSubscription | None:
        session = await self._call(
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["subscription", "subscription.customer"],
        )
        subscription = session.get("subscription")
        if not subscription:
            logger.warning(f"Checkout session {session_id} has no subscription")
            return None
        if isinstance(subscription, str):
            state = await self.retrieve_subscription(subscription)
        else:
            state = to_provider_subscription(subscription)
        state.client_reference_id = session.get("client_reference_id")
        if not state.customer_email:
            state.customer_email = (session.get("customer_details") or {}).get("email")
        return state
