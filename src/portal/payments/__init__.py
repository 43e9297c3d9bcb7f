"""Stripe subscription state: provider reads, status mapping, and linking.

The linker lives in portal.payments.linker and is imported from there; it
depends on the access gate, which itself depends on status normalization.
"""

from portal.payments.provider import (
    ACCOUNT_METADATA_KEY,
    SUBJECT_METADATA_KEY,
    PaymentGateway,
    ProviderSubscription,
    StripePayments,
)
from portal.payments.status import normalize_status

__all__ = [
    "ACCOUNT_METADATA_KEY",
    "SUBJECT_METADATA_KEY",
    "PaymentGateway",
    "ProviderSubscription",
    "StripePayments",
    "normalize_status",
]
