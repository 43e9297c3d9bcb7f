"""Account store interface and the asyncpg-backed implementation.

The store offers single-record reads and writes only. Uniqueness of
external_subject_id, payment_email, verification_code and
provider_subscription_id is enforced by indexes; a violation surfaces as
DuplicateCreationError so callers can re-query instead of failing.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime

import asyncpg

from portal.db.models import (
    ACCOUNT_MUTABLE_FIELDS,
    SUBSCRIPTION_MUTABLE_FIELDS,
    Account,
    NewAccount,
    NewSubscription,
    SubscriptionRecord,
    SubscriptionStatus,
    Table,
)
from portal.errors import DuplicateCreationError

logger = logging.getLogger(__name__)


class AccountStore(ABC):
    """Abstract account store interface."""

    @abstractmethod
    async def get_account(self, account_id: str) -> Account | None:
        """Fetch an account by id."""

    @abstractmethod
    async def get_account_by_subject(self, subject_id: str) -> Account | None:
        """Fetch the account bound to a Discord user id."""

    @abstractmethod
    async def get_account_by_payment_email(self, email: str) -> Account | None:
        """Fetch the account whose payment email matches (case-insensitive)."""

    @abstractmethod
    async def get_account_by_verification_code(
        self, code: str, now: datetime
    ) -> Account | None:
        """Fetch the account holding an unexpired verification code."""

    @abstractmethod
    async def create_account(self, new: NewAccount) -> Account:
        """
        Insert a new account.

        Raises:
            DuplicateCreationError: If a unique key is already taken
        """

    @abstractmethod
    async def update_account(self, account_id: str, **fields) -> Account:
        """
        Patch mutable account columns and return the updated record.

        Raises:
            DuplicateCreationError: If a unique key is already taken
            LookupError: If the account does not exist
        """

    @abstractmethod
    async def get_subscription(self, record_id: str) -> SubscriptionRecord | None:
        """Fetch a subscription record by local id."""

    @abstractmethod
    async def get_subscription_by_provider_id(
        self, provider_subscription_id: str
    ) -> SubscriptionRecord | None:
        """Fetch a subscription record by Stripe subscription id."""

    @abstractmethod
    async def create_subscription(self, new: NewSubscription) -> SubscriptionRecord:
        """
        Insert a new subscription record.

        Raises:
            DuplicateCreationError: If provider_subscription_id is already taken
        """

    @abstractmethod
    async def update_subscription(self, record_id: str, **fields) -> SubscriptionRecord:
        """
        Patch mutable subscription columns and return the updated record.

        Raises:
            LookupError: If the record does not exist
        """


_ACCOUNT_COLUMNS = """
    id, external_subject_id, external_email, payment_email, handle, avatar_ref,
    is_admin, is_manually_entitled, is_entitled, subscription_ref,
    verification_code, verification_code_expires_at, created_at, updated_at
"""

_SUBSCRIPTION_COLUMNS = """
    id, account_ref, provider_customer_id, provider_subscription_id, status,
    current_period_start, current_period_end, cancel_at_period_end,
    grace_ends_at, canceled_at, created_at, updated_at
"""


def _row_to_account(row: asyncpg.Record | None) -> Account | None:
    if row is None:
        return None
    return Account(**dict(row))


def _row_to_subscription(row: asyncpg.Record | None) -> SubscriptionRecord | None:
    if row is None:
        return None
    data = dict(row)
    data["status"] = SubscriptionStatus(data["status"])
    return SubscriptionRecord(**data)


def _set_clause(fields: dict, allowed: frozenset[str]) -> tuple[str, list]:
    """Build "col = $n" assignments for a whitelisted patch."""
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Cannot update columns: {sorted(unknown)}")

    assignments = []
    values = []
    for i, (column, value) in enumerate(sorted(fields.items()), start=2):
        if isinstance(value, SubscriptionStatus):
            value = value.value
        assignments.append(f"{column} = ${i}")
        values.append(value)
    assignments.append("updated_at = now()")
    return ", ".join(assignments), values


class PostgresAccountStore(AccountStore):
    """AccountStore backed by an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def _fetch_account(self, where: str, *args) -> Account | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ACCOUNT_COLUMNS} FROM {Table.ACCOUNTS} WHERE {where}",
                *args,
            )
        return _row_to_account(row)

    async def get_account(self, account_id: str) -> Account | None:
        return await self._fetch_account("id = $1", account_id)

    async def get_account_by_subject(self, subject_id: str) -> Account | None:
        return await self._fetch_account("external_subject_id = $1", subject_id)

    async def get_account_by_payment_email(self, email: str) -> Account | None:
        return await self._fetch_account(
            "lower(payment_email) = lower($1)", email.strip()
        )

    async def get_account_by_verification_code(
        self, code: str, now: datetime
    ) -> Account | None:
        return await self._fetch_account(
            "verification_code = $1 AND verification_code_expires_at > $2",
            code.strip().upper(),
            now,
        )

    async def create_account(self, new: NewAccount) -> Account:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO {Table.ACCOUNTS}
                        (external_subject_id, external_email, payment_email, handle, avatar_ref)
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    new.external_subject_id,
                    new.external_email,
                    new.payment_email,
                    new.handle,
                    new.avatar_ref,
                )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateCreationError(e.constraint_name or "accounts") from e

        account = _row_to_account(row)
        logger.info(
            f"Created account {account.id} (subject={account.external_subject_id})"
        )
        return account

    async def update_account(self, account_id: str, **fields) -> Account:
        set_clause, values = _set_clause(fields, ACCOUNT_MUTABLE_FIELDS)
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE {Table.ACCOUNTS}
                    SET {set_clause}
                    WHERE id = $1
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    account_id,
                    *values,
                )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateCreationError(e.constraint_name or "accounts") from e

        if row is None:
            raise LookupError(f"Account {account_id} not found")
        return _row_to_account(row)

    async def get_subscription(self, record_id: str) -> SubscriptionRecord | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM {Table.SUBSCRIPTIONS} WHERE id = $1",
                record_id,
            )
        return _row_to_subscription(row)

    async def get_subscription_by_provider_id(
        self, provider_subscription_id: str
    ) -> SubscriptionRecord | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_SUBSCRIPTION_COLUMNS}
                FROM {Table.SUBSCRIPTIONS}
                WHERE provider_subscription_id = $1
                """,
                provider_subscription_id,
            )
        return _row_to_subscription(row)

    async def create_subscription(self, new: NewSubscription) -> SubscriptionRecord:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO {Table.SUBSCRIPTIONS}
                        (account_ref, provider_customer_id, provider_subscription_id,
                         status, current_period_start, current_period_end,
                         cancel_at_period_end, grace_ends_at, canceled_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    RETURNING {_SUBSCRIPTION_COLUMNS}
                    """,
                    new.account_ref,
                    new.provider_customer_id,
                    new.provider_subscription_id,
                    new.status.value,
                    new.current_period_start,
                    new.current_period_end,
                    new.cancel_at_period_end,
                    new.grace_ends_at,
                    new.canceled_at,
                )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateCreationError(e.constraint_name or "subscriptions") from e

        record = _row_to_subscription(row)
        logger.info(
            f"Created subscription record {record.id} for "
            f"{record.provider_subscription_id} (account={record.account_ref})"
        )
        return record

    async def update_subscription(self, record_id: str, **fields) -> SubscriptionRecord:
        set_clause, values = _set_clause(fields, SUBSCRIPTION_MUTABLE_FIELDS)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {Table.SUBSCRIPTIONS}
                SET {set_clause}
                WHERE id = $1
                RETURNING {_SUBSCRIPTION_COLUMNS}
                """,
                record_id,
                *values,
            )
        if row is None:
            raise LookupError(f"Subscription record {record_id} not found")
        return _row_to_subscription(row)
