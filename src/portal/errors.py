"""Error taxonomy for the access pipeline.

Only ConfigurationError and unrecoverable store errors are allowed to fail a
request. Everything else is caught at a known seam and turned into a defined
outcome (fallback, re-query, redirect, or log line).
"""


class PortalError(Exception):
    """Base class for all portal errors."""

    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ConfigurationError(PortalError):
    """A required secret or endpoint is not configured."""

    code = "configuration_error"


class NotFoundError(PortalError):
    """A required authorization code or credential is missing."""

    code = "not_found"


class ProviderError(PortalError):
    """A call to Discord, Stripe, or the community bot API failed."""

    code = "provider_error"

    def __init__(self, provider: str, message: str, status: int | None = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status = status


class AccessDeniedError(PortalError):
    """The resolved account lacks entitlement."""

    code = "subscription_required"


class DuplicateCreationError(PortalError):
    """The store rejected a write that would duplicate a unique key."""

    code = "duplicate"

    def __init__(self, key: str, message: str = ""):
        super().__init__(message or f"duplicate value for {key}")
        self.key = key


class SyncTimeoutError(PortalError):
    """A bounded community call did not finish in time (inconclusive)."""

    code = "sync_timeout"

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} exceeded {timeout:.1f}s")
        self.operation = operation
        self.timeout = timeout


class TokenValidationError(PortalError):
    """A credential is malformed, tampered with, or expired."""

    code = "invalid_token"
