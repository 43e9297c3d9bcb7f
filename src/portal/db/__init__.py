"""Persistence: pool factory, record schemas, and the account store."""

from portal.db.models import (
    Account,
    NewAccount,
    NewSubscription,
    SubscriptionRecord,
    SubscriptionStatus,
    Table,
)
from portal.db.pool import close_pool, create_pool
from portal.db.store import AccountStore, PostgresAccountStore

__all__ = [
    "Account",
    "AccountStore",
    "NewAccount",
    "NewSubscription",
    "PostgresAccountStore",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "Table",
    "close_pool",
    "create_pool",
]
