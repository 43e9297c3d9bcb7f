"""Find-or-create exactly one canonical account per real payer."""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from portal.config.settings import AppConfig
from portal.db.models import Account, NewAccount
from portal.db.store import AccountStore
from portal.errors import DuplicateCreationError, NotFoundError
from portal.identity.hints import IdentityHintSet
from portal.identity.strategies import (
    DEFAULT_STRATEGIES,
    REQUERY_STRATEGIES,
    ResolutionContext,
    Strategy,
    first_match,
)
from portal.payments.provider import PaymentGateway, ProviderSubscription

logger = logging.getLogger(__name__)

# Unambiguous characters for codes read off an email
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_verification_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def _same_email(a: str | None, b: str | None) -> bool:
    return bool(a and b and a.lower() == b.lower())


def _is_bare_duplicate(account: Account, hints: IdentityHintSet) -> bool:
    """No subscription, no entitlement, and no payment email of its own."""
    if account.subscription_ref or account.is_entitled:
        return False
    if account.is_admin or account.is_manually_entitled:
        return False
    return account.payment_email is None or _same_email(
        account.payment_email, hints.external_email
    )


@dataclass
class Resolution:
    """Outcome of one resolution."""

    account: Account
    payment: ProviderSubscription | None
    matched_by: str  # strategy name, or "created"


class IdentityResolver:
    """Resolve identity hints to one canonical account.

    Lookup order is the strategy tuple (see portal.identity.strategies);
    later signals only fill fields that are not already set authoritatively.
    Creation re-queries first and treats a unique violation as "someone else
    just created it", so concurrent duplicate logins converge on one row.
    """

    def __init__(
        self,
        store: AccountStore,
        payments: PaymentGateway | None,
        config: AppConfig,
        strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
        clock: Callable[[], datetime] = _utcnow,
        max_create_attempts: int = 3,
    ):
        self.store = store
        self.payments = payments
        self.strategies = tuple(strategies)
        self.clock = clock
        self.max_create_attempts = max_create_attempts
        self.code_ttl = timedelta(days=config.verification_code_ttl_days)

    async def resolve(self, hints: IdentityHintSet) -> Account:
        """Return the canonical account for these hints, creating it if needed."""
        return (await self.resolve_detailed(hints)).account

    async def resolve_detailed(
        self,
        hints: IdentityHintSet,
        payment: ProviderSubscription | None = None,
    ) -> Resolution:
        """Resolve and also report the payment state consulted and the matching step.

        Args:
            hints: Identity hints from the authentication event
            payment: Known provider subscription (webhook path); skips the lookup

        Returns:
            Resolution

        Raises:
            ValueError: If the hint set is empty and no payment state is known
            NotFoundError: If only an account id or code was given and nothing matched
        """
        if hints.is_empty() and payment is None:
            raise ValueError("Cannot resolve an identity without any hints")

        now = self.clock()
        if payment is not None:
            ctx = ResolutionContext.preloaded(hints, now, payment)
        else:
            ctx = ResolutionContext(hints=hints, now=now, payments=self.payments)

        match = await first_match(self.strategies, ctx, self.store)
        if match is not None:
            name, account = match
            account = await self._merge(account, ctx)
            return Resolution(account, await ctx.payment_state(), name)

        return await self._create(ctx)

    async def _create(self, ctx: ResolutionContext) -> Resolution:
        payment = await ctx.payment_state()
        hints = ctx.hints
        billing_email = payment.customer_email if payment else None
        if not (hints.external_subject_id or hints.emails() or billing_email):
            # An account id or code alone never mints a new account
            raise NotFoundError("No account matches the supplied reference")

        for attempt in range(1, self.max_create_attempts + 1):
            match = await first_match(REQUERY_STRATEGIES, ctx, self.store)
            if match is not None:
                _, account = match
                account = await self._merge(account, ctx)
                return Resolution(account, payment, "requery")

            new = await self._new_account(ctx, payment)
            try:
                account = await self.store.create_account(new)
            except DuplicateCreationError as e:
                logger.info(
                    f"Concurrent create on {e.key} for subject={ctx.hints.external_subject_id} "
                    f"(attempt {attempt}) - re-querying"
                )
                continue

            logger.info(
                f"Created account {account.id} for subject={account.external_subject_id} "
                f"payment_email={account.payment_email}"
            )
            return Resolution(account, payment, "created")

        match = await first_match(REQUERY_STRATEGIES, ctx, self.store)
        if match is not None:
            return Resolution(await self._merge(match[1], ctx), payment, "requery")
        raise DuplicateCreationError(
            "accounts",
            f"could not create or find account for subject={ctx.hints.external_subject_id}",
        )

    async def _email_available(self, email: str, account_id: str | None) -> bool:
        holder = await self.store.get_account_by_payment_email(email)
        if holder is None or holder.id == account_id:
            return True
        logger.warning(f"Payment email already belongs to account {holder.id} - not copying")
        return False

    async def _new_account(
        self, ctx: ResolutionContext, payment: ProviderSubscription | None
    ) -> NewAccount:
        hints = ctx.hints
        billing_email = hints.payment_email or (payment.customer_email if payment else None)
        candidate = None
        for email in (billing_email, hints.external_email):
            if email and await self._email_available(email, None):
                candidate = email
                break

        external_email = hints.external_email
        if _same_email(external_email, candidate):
            external_email = None

        return NewAccount(
            payment_email=candidate.lower() if candidate else None,
            handle=hints.handle or "User",
            external_subject_id=hints.external_subject_id,
            external_email=external_email,
            avatar_ref=hints.avatar_ref,
        )

    async def _merge(self, account: Account, ctx: ResolutionContext) -> Account:
        """Fill in fields the matched account lacks; never demote a payment email."""
        hints = ctx.hints
        payment = await ctx.payment_state()
        updates: dict = {}

        if (
            hints.external_subject_id
            and not account.external_subject_id
            and await self._release_subject(hints.external_subject_id, account, hints)
        ):
            updates["external_subject_id"] = hints.external_subject_id

        billing_email = hints.payment_email or (payment.customer_email if payment else None)
        external = hints.external_email

        if not account.payment_email:
            candidate = billing_email or external
            if candidate and await self._email_available(candidate, account.id):
                updates["payment_email"] = candidate.lower()
        elif (
            billing_email
            and _same_email(account.payment_email, external)
            and not _same_email(billing_email, external)
            and await self._email_available(billing_email, account.id)
        ):
            # Payment email was promoted from Discord; the real billing email wins
            updates["payment_email"] = billing_email.lower()

        effective_payment = updates.get("payment_email", account.payment_email)
        if (
            external
            and not _same_email(external, effective_payment)
            and not _same_email(external, account.external_email)
        ):
            updates["external_email"] = external

        if hints.handle and hints.handle != account.handle:
            updates["handle"] = hints.handle
        if hints.avatar_ref and hints.avatar_ref != account.avatar_ref:
            updates["avatar_ref"] = hints.avatar_ref

        if not updates:
            return account

        try:
            return await self.store.update_account(account.id, **updates)
        except DuplicateCreationError as e:
            logger.info(f"Merge into {account.id} lost a race on {e.key} - keeping existing keys")
            for key in ("payment_email", "external_subject_id"):
                updates.pop(key, None)
            if not updates:
                return await self.store.get_account(account.id) or account
            return await self.store.update_account(account.id, **updates)

    async def _release_subject(
        self, subject_id: str, account: Account, hints: IdentityHintSet
    ) -> bool:
        """Make the Discord subject id free to bind to account.

        A bare duplicate (a Discord login that never paid) holding the
        subject is folded into account: its subject id, and a payment email
        promoted from the same Discord email, are cleared.

        Returns:
            True if the subject id can be bound to account
        """
        holder = await self.store.get_account_by_subject(subject_id)
        if holder is None or holder.id == account.id:
            return True
        if not _is_bare_duplicate(holder, hints):
            logger.warning(
                f"Subject {subject_id} belongs to account {holder.id} - "
                f"not binding it to {account.id}"
            )
            return False

        released = {"external_subject_id": None}
        if holder.payment_email:
            released["payment_email"] = None
        await self.store.update_account(holder.id, **released)
        logger.info(f"Folded duplicate account {holder.id} into {account.id} ({subject_id})")
        return True

    async def issue_verification_code(self, account: Account) -> str:
        """Attach a one-time linking code to the account (reused while unexpired)."""
        now = self.clock()
        if (
            account.verification_code
            and account.verification_code_expires_at
            and account.verification_code_expires_at > now
        ):
            return account.verification_code

        for _ in range(5):
            code = generate_verification_code()
            try:
                await self.store.update_account(
                    account.id,
                    verification_code=code,
                    verification_code_expires_at=now + self.code_ttl,
                )
            except DuplicateCreationError:
                continue
            logger.info(f"Issued verification code for account {account.id}")
            return code

        raise DuplicateCreationError("verification_code", "could not allocate a unique code")

    async def consume_verification_code(self, account: Account) -> Account:
        """Clear a used linking code."""
        if not account.verification_code:
            return account
        return await self.store.update_account(
            account.id,
            verification_code=None,
            verification_code_expires_at=None,
        )
