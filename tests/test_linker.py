"""Tests for subscription linking."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fakes import provider_subscription
from portal.db.models import SubscriptionStatus
from portal.payments.linker import SubscriptionLinker
from portal.payments.provider import ACCOUNT_METADATA_KEY, SUBJECT_METADATA_KEY


@pytest.fixture
def linker(store, payments, config) -> SubscriptionLinker:
    return SubscriptionLinker(store, payments, config)


class TestLink:
    """One record per provider subscription id."""

    @pytest.mark.asyncio
    async def test_creates_record_and_points_account(self, linker, store):
        account = store.seed_account(external_subject_id="D1", payment_email="pay@x.com")
        state = provider_subscription()

        record = await linker.link(account, state)

        assert record.account_ref == account.id
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.grace_ends_at == state.current_period_end + timedelta(days=2)
        stored = store.accounts[account.id]
        assert stored.subscription_ref == record.id
        assert stored.is_entitled is True

    @pytest.mark.asyncio
    async def test_link_twice_is_idempotent(self, linker, store):
        account = store.seed_account(external_subject_id="D1")
        state = provider_subscription()

        first = await linker.link(account, state)
        second = await linker.link(account, state)

        assert first.id == second.id
        assert len(store.subscriptions) == 1

    @pytest.mark.asyncio
    async def test_concurrent_links_create_one_record(self, linker, store):
        account = store.seed_account(external_subject_id="D1")

        records = await asyncio.gather(
            *(linker.link(account, provider_subscription()) for _ in range(5))
        )

        assert len({record.id for record in records}) == 1
        assert len(store.subscriptions) == 1
        assert store.subscription_creates == 1

    @pytest.mark.asyncio
    async def test_unknown_status_stored_as_canceled(self, linker, store):
        account = store.seed_account(external_subject_id="D1")

        record = await linker.link(account, provider_subscription(status="incomplete_expired"))

        assert record.status == SubscriptionStatus.CANCELED
        assert record.canceled_at is not None
        assert store.accounts[account.id].is_entitled is False

    @pytest.mark.asyncio
    async def test_entitlement_flag_never_cleared(self, linker, store):
        account = store.seed_account(external_subject_id="D1", is_manually_entitled=True)
        await linker.link(account, provider_subscription())

        await linker.link(account, provider_subscription(status="canceled"))

        stored = store.accounts[account.id]
        assert stored.is_entitled is True
        assert stored.is_manually_entitled is True

    @pytest.mark.asyncio
    async def test_stamps_missing_metadata(self, linker, store, payments):
        account = store.seed_account(external_subject_id="D1")
        state = payments.add(provider_subscription())

        await linker.link(account, state)

        assert payments.stamped == [
            ("sub_1", {ACCOUNT_METADATA_KEY: account.id, SUBJECT_METADATA_KEY: "D1"})
        ]

    @pytest.mark.asyncio
    async def test_stamp_failure_does_not_fail_link(self, linker, store, payments):
        account = store.seed_account(external_subject_id="D1")
        payments.fail = True

        record = await linker.link(account, provider_subscription())

        assert record.account_ref == account.id


class TestOwnership:
    """Re-pointing rules for records owned by another account."""

    @pytest.mark.asyncio
    async def test_repoints_from_placeholder(self, linker, store):
        placeholder = store.seed_account(payment_email="pay@x.com")
        store.seed_subscription(
            account_ref=placeholder.id, provider_subscription_id="sub_1", status="active"
        )
        account = store.seed_account(external_subject_id="D1")

        record = await linker.link(account, provider_subscription())

        assert record.account_ref == account.id

    @pytest.mark.asyncio
    async def test_repoints_orphaned_record(self, linker, store):
        store.seed_subscription(
            account_ref="deleted-account", provider_subscription_id="sub_1", status="active"
        )
        account = store.seed_account(external_subject_id="D1")

        record = await linker.link(account, provider_subscription())

        assert record.account_ref == account.id

    @pytest.mark.asyncio
    async def test_keeps_real_owner(self, linker, store):
        owner = store.seed_account(external_subject_id="D9")
        store.seed_subscription(
            account_ref=owner.id, provider_subscription_id="sub_1", status="active"
        )
        account = store.seed_account(external_subject_id="D1")

        record = await linker.link(account, provider_subscription())

        assert record.account_ref == owner.id
        assert store.accounts[account.id].subscription_ref is None


class TestRefresh:
    """Refreshing a stale record instead of deleting it."""

    @pytest.mark.asyncio
    async def test_active_to_canceled_refreshes_record(self, linker, store, payments):
        account = store.seed_account(external_subject_id="D1")
        payments.add(provider_subscription())
        record = await linker.link(account, await payments.retrieve_subscription("sub_1"))

        payments.set_status("sub_1", "canceled")
        refreshed = await linker.refresh(store.accounts[account.id])

        assert refreshed.id == record.id
        assert refreshed.status == SubscriptionStatus.CANCELED
        assert len(store.subscriptions) == 1

    @pytest.mark.asyncio
    async def test_provider_down_uses_stored_record(self, linker, store, payments):
        account = store.seed_account(external_subject_id="D1")
        payments.add(provider_subscription())
        await linker.link(account, await payments.retrieve_subscription("sub_1"))

        payments.fail = True
        refreshed = await linker.refresh(store.accounts[account.id])

        assert refreshed.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_no_subscription_ref(self, linker, store):
        account = store.seed_account(external_subject_id="D1")
        assert await linker.refresh(account) is None

    @pytest.mark.asyncio
    async def test_canceled_at_kept_from_provider(self, linker, store):
        account = store.seed_account(external_subject_id="D1")
        canceled_at = datetime(2026, 2, 1, tzinfo=timezone.utc)

        record = await linker.link(
            account, provider_subscription(status="canceled", canceled_at=canceled_at)
        )

        assert record.canceled_at == canceled_at
