"""Identity hints gathered from an authentication event (never persisted)."""

from dataclasses import dataclass, replace


def _clean_email(value: str | None) -> str | None:
    if not value:
        return None
    value = value.strip().lower()
    return value or None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


@dataclass(frozen=True)
class IdentityHintSet:
    """Signals that may identify a caller.

    handle and avatar_ref are display data only and never used for matching.
    """

    external_subject_id: str | None = None
    external_email: str | None = None
    payment_email: str | None = None
    prior_account_id: str | None = None
    verification_code: str | None = None
    handle: str | None = None
    avatar_ref: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "external_subject_id", _clean(self.external_subject_id))
        object.__setattr__(self, "external_email", _clean_email(self.external_email))
        object.__setattr__(self, "payment_email", _clean_email(self.payment_email))
        object.__setattr__(self, "prior_account_id", _clean(self.prior_account_id))
        code = _clean(self.verification_code)
        object.__setattr__(self, "verification_code", code.upper() if code else None)

    def emails(self) -> list[str]:
        """Candidate billing emails, strongest first, without duplicates."""
        result = []
        for email in (self.payment_email, self.external_email):
            if email and email not in result:
                result.append(email)
        return result

    def is_empty(self) -> bool:
        return not (
            self.external_subject_id
            or self.external_email
            or self.payment_email
            or self.prior_account_id
            or self.verification_code
        )

    def with_prior_account(self, account_id: str | None) -> "IdentityHintSet":
        return replace(self, prior_account_id=account_id)
