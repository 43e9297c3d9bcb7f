"""Ordered account lookup strategies.

Each strategy is an async (context, store) -> Account | None function with no
side effects. first_match runs them in priority order; the first non-None
result wins. Keeping them separate lets each step be tested on its own.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Sequence

from portal.db.models import Account
from portal.db.store import AccountStore
from portal.errors import ProviderError
from portal.identity.hints import IdentityHintSet
from portal.payments.provider import ACCOUNT_METADATA_KEY, PaymentGateway, ProviderSubscription

logger = logging.getLogger(__name__)


@dataclass
class ResolutionContext:
    """Hints plus a lazily fetched payment-provider view for one resolution."""

    hints: IdentityHintSet
    now: datetime
    payments: PaymentGateway | None = None
    _payment: ProviderSubscription | None = field(default=None, repr=False)
    _payment_loaded: bool = field(default=False, repr=False)

    @classmethod
    def preloaded(
        cls,
        hints: IdentityHintSet,
        now: datetime,
        payment: ProviderSubscription | None,
    ) -> "ResolutionContext":
        """Context whose payment state is already known (webhook path)."""
        return cls(hints=hints, now=now, _payment=payment, _payment_loaded=True)

    async def payment_state(self) -> ProviderSubscription | None:
        """Caller's current subscription at the provider, fetched at most once.

        A provider failure is logged and treated as "no payment signal".
        """
        if self._payment_loaded:
            return self._payment
        self._payment_loaded = True

        emails = self.hints.emails()
        if self.payments is None or not (self.hints.external_subject_id or emails):
            return None

        try:
            self._payment = await self.payments.find_subscription_for_caller(
                self.hints.external_subject_id, emails
            )
        except ProviderError as e:
            logger.warning(f"Payment lookup failed, resolving without it: {e}")
            self._payment = None
        return self._payment


Strategy = Callable[[ResolutionContext, AccountStore], Awaitable[Account | None]]


def compatible(account: Account | None, hints: IdentityHintSet) -> bool:
    """False when the account is already bound to a different Discord user."""
    if account is None:
        return False
    if (
        hints.external_subject_id
        and account.external_subject_id
        and account.external_subject_id != hints.external_subject_id
    ):
        logger.warning(
            f"Account {account.id} is bound to subject {account.external_subject_id}, "
            f"not {hints.external_subject_id} - ignoring match"
        )
        return False
    return True


async def prior_account(ctx: ResolutionContext, store: AccountStore) -> Account | None:
    """Session continuation by account id, or manual linking by verification code."""
    hints = ctx.hints
    if hints.prior_account_id:
        account = await store.get_account(hints.prior_account_id)
        if compatible(account, hints):
            return account
    if hints.verification_code:
        account = await store.get_account_by_verification_code(hints.verification_code, ctx.now)
        if compatible(account, hints):
            return account
    return None


async def subscription_owner(ctx: ResolutionContext, store: AccountStore) -> Account | None:
    """Account already linked to the caller's current provider subscription."""
    payment = await ctx.payment_state()
    if payment is None:
        return None
    record = await store.get_subscription_by_provider_id(payment.id)
    if record is None:
        return None
    account = await store.get_account(record.account_ref)
    return account if compatible(account, ctx.hints) else None


async def external_subject(ctx: ResolutionContext, store: AccountStore) -> Account | None:
    """Account bound to the caller's Discord user id."""
    if not ctx.hints.external_subject_id:
        return None
    return await store.get_account_by_subject(ctx.hints.external_subject_id)


async def payment_email(ctx: ResolutionContext, store: AccountStore) -> Account | None:
    """Account whose payment email equals the caller's payment or Discord email."""
    for email in ctx.hints.emails():
        account = await store.get_account_by_payment_email(email)
        if compatible(account, ctx.hints):
            return account
    return None


async def stamped_metadata(ctx: ResolutionContext, store: AccountStore) -> Account | None:
    """Account id previously stamped into Stripe customer/subscription metadata."""
    payment = await ctx.payment_state()
    if payment is None:
        return None
    account_id = payment.metadata_value(ACCOUNT_METADATA_KEY)
    if not account_id:
        return None
    account = await store.get_account(account_id)
    return account if compatible(account, ctx.hints) else None


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    prior_account,
    subscription_owner,
    external_subject,
    payment_email,
    stamped_metadata,
)

# Lookups repeated immediately before a create
REQUERY_STRATEGIES: tuple[Strategy, ...] = (
    external_subject,
    payment_email,
)


async def first_match(
    strategies: Sequence[Strategy],
    ctx: ResolutionContext,
    store: AccountStore,
) -> tuple[str, Account] | None:
    """Run strategies in order and return (strategy name, account) for the first hit."""
    for strategy in strategies:
        account = await strategy(ctx, store)
        if account is not None:
            logger.debug(f"Resolved account {account.id} via {strategy.__name__}")
            return strategy.__name__, account
    return None
