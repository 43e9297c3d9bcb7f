"""Subscription linking: one local record per Stripe subscription id."""

import logging
from datetime import datetime, timezone
from typing import Callable

from portal.access.gate import grace_ends_at
from portal.config.settings import AppConfig
from portal.db.models import (
    ENTITLED_STATUSES,
    Account,
    NewSubscription,
    SubscriptionRecord,
    SubscriptionStatus,
)
from portal.db.store import AccountStore
from portal.errors import DuplicateCreationError, ProviderError
from portal.payments.provider import (
    ACCOUNT_METADATA_KEY,
    SUBJECT_METADATA_KEY,
    PaymentGateway,
    ProviderSubscription,
)
from portal.payments.status import normalize_status

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionLinker:
    """Attach and refresh subscription records for resolved accounts.

    Idempotent per provider subscription id: the store's unique index on
    provider_subscription_id turns a concurrent second create into a
    DuplicateCreationError, which is converted into a refresh of the record
    that won the race.

    The linker sets Account.is_entitled when a subscription is active or
    trialing but never clears it, and never touches is_manually_entitled.
    Revocation is decided by the access gate at request time.
    """

    def __init__(
        self,
        store: AccountStore,
        payments: PaymentGateway,
        config: AppConfig,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.payments = payments
        self.grace_days = config.grace_period_days
        self.clock = clock

    def _record_fields(self, state: ProviderSubscription) -> dict:
        status = normalize_status(state.status)
        canceled_at = state.canceled_at
        if status == SubscriptionStatus.CANCELED and canceled_at is None:
            canceled_at = self.clock()
        return {
            "status": status,
            "current_period_start": state.current_period_start,
            "current_period_end": state.current_period_end,
            "cancel_at_period_end": state.cancel_at_period_end,
            "grace_ends_at": grace_ends_at(state.current_period_end, self.grace_days),
            "canceled_at": canceled_at,
        }

    async def link(self, account: Account, state: ProviderSubscription) -> SubscriptionRecord:
        """Create or refresh the record for a provider subscription.

        Args:
            account: Resolved canonical account
            state: Payment provider's view of the subscription

        Returns:
            The single SubscriptionRecord for state.id
        """
        fields = self._record_fields(state)
        record = await self.store.get_subscription_by_provider_id(state.id)

        if record is None:
            try:
                record = await self.store.create_subscription(
                    NewSubscription(
                        account_ref=account.id,
                        provider_customer_id=state.customer_id,
                        provider_subscription_id=state.id,
                        **fields,
                    )
                )
            except DuplicateCreationError:
                logger.info(
                    f"Subscription {state.id} was linked concurrently - refreshing instead"
                )
                record = await self.store.get_subscription_by_provider_id(state.id)
                if record is None:
                    raise
                record = await self._refresh(record, account, state, fields)
        else:
            record = await self._refresh(record, account, state, fields)

        if record.account_ref == account.id:
            await self._point_account(account, record)

        await self._stamp_metadata(account, state)

        logger.info(
            f"Linked subscription {state.id} -> account {record.account_ref} "
            f"(status={record.status.value})"
        )
        return record

    async def _refresh(
        self,
        record: SubscriptionRecord,
        account: Account,
        state: ProviderSubscription,
        fields: dict,
    ) -> SubscriptionRecord:
        updates = dict(fields)
        updates["provider_customer_id"] = state.customer_id
        if record.account_ref != account.id and await self._owner_is_replaceable(record):
            logger.info(
                f"Re-pointing subscription {record.provider_subscription_id} "
                f"from {record.account_ref} to {account.id}"
            )
            updates["account_ref"] = account.id
        return await self.store.update_subscription(record.id, **updates)

    async def _owner_is_replaceable(self, record: SubscriptionRecord) -> bool:
        """An owner is replaceable when it is gone or a never-logged-in placeholder."""
        owner = await self.store.get_account(record.account_ref)
        if owner is None:
            return True
        if owner.external_subject_id is None:
            return True
        logger.warning(
            f"Subscription {record.provider_subscription_id} belongs to account "
            f"{owner.id} (subject={owner.external_subject_id}) - not re-pointing"
        )
        return False

    async def _point_account(self, account: Account, record: SubscriptionRecord) -> None:
        updates = {}
        if account.subscription_ref != record.id:
            updates["subscription_ref"] = record.id
        if record.status in ENTITLED_STATUSES and not account.is_entitled:
            updates["is_entitled"] = True
        if updates:
            await self.store.update_account(account.id, **updates)

    async def _stamp_metadata(self, account: Account, state: ProviderSubscription) -> None:
        values = {ACCOUNT_METADATA_KEY: account.id}
        if account.external_subject_id:
            values[SUBJECT_METADATA_KEY] = account.external_subject_id
        try:
            await self.payments.stamp_metadata(state, values)
        except ProviderError as e:
            logger.warning(f"Could not stamp metadata on {state.id}: {e}")

    async def refresh(self, account: Account) -> SubscriptionRecord | None:
        """Re-read the account's current subscription from the provider.

        Used when the caller no longer shows an active subscription, so a
        stale record is refreshed (never deleted). Falls back to the stored
        record if the provider is unreachable.
        """
        if not account.subscription_ref:
            return None

        record = await self.store.get_subscription(account.subscription_ref)
        if record is None:
            logger.warning(
                f"Account {account.id} points at missing subscription {account.subscription_ref}"
            )
            return None

        try:
            state = await self.payments.retrieve_subscription(record.provider_subscription_id)
        except ProviderError as e:
            logger.warning(
                f"Stripe refresh failed for {record.provider_subscription_id}, "
                f"using stored state: {e}"
            )
            return record

        return await self.link(account, state)
