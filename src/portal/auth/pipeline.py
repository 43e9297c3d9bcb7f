"""Access pipeline: resolve -> link -> gate -> credential or remediation.

Every entry path (Discord login, post-payment, verification-code linking)
runs the same decision. Community role sync is scheduled after the decision
and never delays it.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable

from portal.access.gate import can_access
from portal.access.tokens import EntryPath, TokenIssuer
from portal.community.sync import CommunitySyncAgent
from portal.config.settings import AppConfig
from portal.db.models import ENTITLED_STATUSES, Account, SubscriptionRecord
from portal.errors import AccessDeniedError, ConfigurationError, NotFoundError
from portal.identity.discord import DiscordOAuthClient, DiscordProfile
from portal.identity.hints import IdentityHintSet
from portal.identity.resolver import IdentityResolver
from portal.payments.linker import SubscriptionLinker
from portal.payments.provider import (
    ACCOUNT_METADATA_KEY,
    SUBJECT_METADATA_KEY,
    PaymentGateway,
    ProviderSubscription,
)
from portal.payments.status import normalize_status

logger = logging.getLogger(__name__)

SUBSCRIPTION_REQUIRED = "subscription_required"
INVALID_CODE = "invalid_code"

_MESSAGES = {
    SUBSCRIPTION_REQUIRED: "An active subscription is required to access the portal.",
    INVALID_CODE: "Verification code is invalid or has expired.",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AccessOutcome:
    """Result of one access decision."""

    granted: bool
    entry_path: EntryPath
    account: Account | None = None
    subscription: SubscriptionRecord | None = None
    token: str | None = None
    error: str | None = None
    matched_by: str | None = None

    @property
    def message(self) -> str | None:
        return _MESSAGES.get(self.error) if self.error else None

    def to_response(self) -> dict:
        """JSON body for API callers."""
        if self.granted:
            return {"token": self.token, "user": self.account.public_profile()}
        return {"error": self.error, "message": self.message}


class AccessPipeline:
    """Wire identity resolution, linking, the gate, credentials and community sync."""

    def __init__(
        self,
        resolver: IdentityResolver,
        linker: SubscriptionLinker,
        issuer: TokenIssuer,
        config: AppConfig,
        sync: CommunitySyncAgent | None = None,
        oauth: DiscordOAuthClient | None = None,
        payments: PaymentGateway | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.resolver = resolver
        self.linker = linker
        self.issuer = issuer
        self.sync = sync
        self.oauth = oauth
        self.payments = payments
        self.grace_days = config.grace_period_days
        self.clock = clock

    @property
    def store(self):
        return self.resolver.store

    # ---- core decision ----

    async def authenticate(
        self,
        hints: IdentityHintSet,
        entry_path: EntryPath,
        join_token: str | None = None,
    ) -> AccessOutcome:
        """
        Decide access for one authentication event.

        Args:
            hints: Identity hints from the event
            entry_path: Which entry path produced the hints
            join_token: Caller-scoped OAuth token allowing a guild join

        Returns:
            AccessOutcome (granted with a credential, or denied with an error code)
        """
        resolution = await self.resolver.resolve_detailed(hints)
        account = resolution.account
        record = await self._current_record(account, resolution.payment)
        return await self._decide(
            account, record, EntryPath(entry_path), join_token, resolution.matched_by
        )

    async def _current_record(
        self, account: Account, payment: ProviderSubscription | None
    ) -> SubscriptionRecord | None:
        if payment is not None:
            record = await self.linker.link(account, payment)
            if record.account_ref == account.id:
                return record
            logger.warning(
                f"Subscription {payment.id} stays with account {record.account_ref}; "
                f"checking account {account.id}'s own record"
            )
            account = await self.store.get_account(account.id) or account

        # No current payment signal: refresh whatever the account already links to
        record = await self.linker.refresh(account)
        if record is not None and record.account_ref != account.id:
            return None
        return record

    async def _decide(
        self,
        account: Account,
        record: SubscriptionRecord | None,
        entry_path: EntryPath,
        join_token: str | None,
        matched_by: str | None,
        issue_token: bool = True,
    ) -> AccessOutcome:
        # Linking may have updated subscription_ref / is_entitled
        account = await self.store.get_account(account.id) or account
        if record is None and account.subscription_ref:
            # A concurrent webhook linked a subscription after our read
            record = await self._own_record(account)
        override = account.is_manually_entitled or account.is_admin
        now = self.clock()

        if not can_access(record, override, now, self.grace_days):
            logger.info(
                f"Access denied for account {account.id} via {entry_path.value} "
                f"(subscription={record.status.value if record else None})"
            )
            if self.sync and account.external_subject_id:
                self.sync.schedule_revoke(account.external_subject_id)
            return AccessOutcome(
                granted=False,
                entry_path=entry_path,
                account=account,
                subscription=record,
                error=SUBSCRIPTION_REQUIRED,
                matched_by=matched_by,
            )

        token = self.issuer.issue(account, entry_path) if issue_token else None
        logger.info(
            f"Access granted for account {account.id} via {entry_path.value} "
            f"(matched_by={matched_by})"
        )
        if self.sync and account.external_subject_id:
            self.sync.schedule_grant(account.external_subject_id, join_token)
        return AccessOutcome(
            granted=True,
            entry_path=entry_path,
            account=account,
            subscription=record,
            token=token,
            matched_by=matched_by,
        )

    async def _own_record(self, account: Account) -> SubscriptionRecord | None:
        record = await self.store.get_subscription(account.subscription_ref)
        if record is not None and record.account_ref != account.id:
            return None
        return record

    # ---- entry paths ----

    async def _discord_profile(self, code: str) -> tuple[DiscordProfile, str]:
        if self.oauth is None:
            raise ConfigurationError("Discord login is not configured")
        access_token = await self.oauth.exchange_code(code)
        profile = await self.oauth.fetch_profile(access_token)
        return profile, access_token

    async def login_with_discord(
        self, code: str | None, prior_account_id: str | None = None
    ) -> AccessOutcome:
        """
        Discord OAuth2 login.

        Raises:
            NotFoundError: If no authorization code was supplied
            ProviderError: If the code exchange or profile fetch fails
        """
        if not code:
            raise NotFoundError("No authorization code provided")

        profile, access_token = await self._discord_profile(code)
        logger.info(f"Discord login for {profile.username} ({profile.id})")
        return await self.authenticate(
            profile.to_hints(prior_account_id),
            EntryPath.DISCORD_LOGIN,
            join_token=access_token,
        )

    async def link_with_code(
        self, verification_code: str | None, discord_code: str | None = None
    ) -> AccessOutcome:
        """
        Manual account linking with a verification code.

        With a Discord authorization code the caller's Discord identity is
        bound to the account holding the verification code. The code is
        consumed once it has produced a credential.

        Raises:
            NotFoundError: If no verification code was supplied
            ProviderError: If the Discord code exchange or profile fetch fails
        """
        hints = IdentityHintSet(verification_code=verification_code)
        if not hints.verification_code:
            raise NotFoundError("No verification code provided")

        holder = await self.store.get_account_by_verification_code(
            hints.verification_code, self.clock()
        )
        if holder is None:
            logger.info("Verification code not recognised or expired")
            return AccessOutcome(granted=False, entry_path=EntryPath.CODE_LINK, error=INVALID_CODE)

        join_token = None
        if discord_code:
            profile, join_token = await self._discord_profile(discord_code)
            logger.info(f"Linking Discord user {profile.id} to account {holder.id} by code")
            hints = replace(profile.to_hints(), verification_code=hints.verification_code)

        outcome = await self.authenticate(hints, EntryPath.CODE_LINK, join_token=join_token)
        if outcome.granted and outcome.account.id == holder.id:
            outcome.account = await self.resolver.consume_verification_code(outcome.account)
        return outcome

    async def complete_payment(self, session_id: str | None) -> AccessOutcome | None:
        """
        Post-payment login from a completed Checkout Session.

        Raises:
            NotFoundError: If no session id was supplied
            ProviderError: If the session cannot be read from Stripe
        """
        if not session_id:
            raise NotFoundError("No checkout session provided")
        if self.payments is None:
            raise ConfigurationError("Payments are not configured")
        state = await self.payments.retrieve_checkout_subscription(session_id)
        if state is None:
            return None
        return await self.apply_payment(state, issue_token=True)

    async def apply_payment(
        self, state: ProviderSubscription, issue_token: bool = False
    ) -> AccessOutcome | None:
        """
        Reconcile a provider subscription pushed by the payment provider.

        Identity comes from the stamped subject id, the checkout client
        reference, and the customer email; a stamped account id is matched by
        its own resolution step. Accounts are only created for entitled
        subscriptions; a lapsed subscription nobody has linked yet is ignored.
        The first entitled link issues a verification code so the payer can
        claim the account by code.

        Args:
            state: Provider view of the subscription
            issue_token: Sign a credential when access is granted (only when
                a caller is waiting for one)

        Returns:
            AccessOutcome, or None when the event was skipped
        """
        hints = IdentityHintSet(
            external_subject_id=state.metadata_value(SUBJECT_METADATA_KEY)
            or state.client_reference_id,
            payment_email=state.customer_email,
        )
        if hints.is_empty() and not state.metadata_value(ACCOUNT_METADATA_KEY):
            logger.warning(f"Subscription {state.id} carries no identity hints - skipping")
            return None

        status = normalize_status(state.status)
        existing = await self.store.get_subscription_by_provider_id(state.id)
        if existing is None and status not in ENTITLED_STATUSES:
            logger.info(f"Ignoring {status.value} subscription {state.id} with no linked account")
            return None

        try:
            resolution = await self.resolver.resolve_detailed(hints, payment=state)
        except NotFoundError:
            logger.warning(f"Subscription {state.id} names a missing account - skipping")
            return None
        account = resolution.account
        record = await self.linker.link(account, state)
        if record.account_ref != account.id:
            record = None

        first_entitled = existing is None or existing.status not in ENTITLED_STATUSES
        if record is not None and status in ENTITLED_STATUSES and first_entitled:
            account = await self.store.get_account(account.id) or account
            await self.resolver.issue_verification_code(account)

        return await self._decide(
            account,
            record,
            EntryPath.POST_PAYMENT,
            None,
            resolution.matched_by,
            issue_token=issue_token,
        )

    # ---- bearer credential check ----

    async def _bearer_account(self, token: str | None) -> Account:
        claims = self.issuer.verify(token or "")
        account = await self.store.get_account(claims.account_id)
        if account is None:
            raise NotFoundError(f"Account {claims.account_id} not found")
        return account

    async def check_access(self, token: str | None) -> Account:
        """
        Re-apply the gate for a bearer credential.

        Raises:
            TokenValidationError: If the credential is invalid or expired
            NotFoundError: If the account no longer exists
            AccessDeniedError: If the account is no longer entitled
        """
        account = await self._bearer_account(token)

        record = None
        if account.subscription_ref:
            record = await self._own_record(account)

        override = account.is_manually_entitled or account.is_admin
        if not can_access(record, override, self.clock(), self.grace_days):
            raise AccessDeniedError(_MESSAGES[SUBSCRIPTION_REQUIRED])
        return account

    async def subscription_status(self, token: str | None) -> dict:
        """
        Current subscription for a bearer credential, refreshed from Stripe.

        Falls back to the stored record when Stripe is unreachable. Unlike
        check_access this never raises for a lapsed subscription.

        Raises:
            TokenValidationError: If the credential is invalid or expired
            NotFoundError: If the account no longer exists
        """
        account = await self._bearer_account(token)
        record = await self.linker.refresh(account)
        if record is not None and record.account_ref != account.id:
            record = None

        override = account.is_manually_entitled or account.is_admin
        return {
            "hasSubscription": record is not None,
            "canAccess": can_access(record, override, self.clock(), self.grace_days),
            "subscription": record.public_status() if record else None,
        }
