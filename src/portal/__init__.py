"""Identity reconciliation and subscription-gated access for the community portal."""

__version__ = "0.1.0"
