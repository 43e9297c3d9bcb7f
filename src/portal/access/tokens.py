"""Short-lived portal credentials (HS256 JWT)."""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

import jwt
from pydantic import BaseModel, ValidationError

from portal.config.settings import AppConfig
from portal.db.models import Account
from portal.errors import TokenValidationError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class EntryPath(str, Enum):
    """How the caller reached the access decision."""

    DISCORD_LOGIN = "discord_login"
    POST_PAYMENT = "post_payment"
    CODE_LINK = "code_link"


class TokenClaims(BaseModel):
    """Decoded credential payload."""

    account_id: str
    subject_id: str | None = None
    entry: EntryPath
    iss: str
    iat: int
    exp: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Issue and verify portal credentials. There is no refresh flow."""

    def __init__(self, config: AppConfig, clock: Callable[[], datetime] = _utcnow):
        config.require("jwt_secret")
        self._secret = config.jwt_secret.get_secret_value()
        self.issuer = config.jwt_issuer
        self.clock = clock
        self.lifetimes = {
            EntryPath.DISCORD_LOGIN: timedelta(hours=config.token_ttl_hours_login),
            EntryPath.POST_PAYMENT: timedelta(hours=config.token_ttl_hours_payment),
            EntryPath.CODE_LINK: timedelta(hours=config.token_ttl_hours_code),
        }

    def issue(self, account: Account, entry_path: EntryPath) -> str:
        """
        Sign a credential for an account that passed the access gate.

        Args:
            account: Canonical account
            entry_path: Entry path; selects the lifetime

        Returns:
            Encoded JWT
        """
        entry_path = EntryPath(entry_path)
        now = self.clock()
        exp = now + self.lifetimes[entry_path]
        payload = {
            "account_id": account.id,
            "subject_id": account.external_subject_id,
            "entry": entry_path.value,
            "iss": self.issuer,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
        }
        token = jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        logger.info(
            f"Issued {entry_path.value} credential for account {account.id} "
            f"(expires {exp.isoformat()})"
        )
        return token

    def verify(self, token: str) -> TokenClaims:
        """
        Decode and validate a credential.

        Raises:
            TokenValidationError: If the token is expired, tampered with, or malformed
        """
        if not token:
            raise TokenValidationError("Missing token")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={"require": ["exp", "iat", "iss"]},
            )
            return TokenClaims(**payload)
        except jwt.ExpiredSignatureError as e:
            raise TokenValidationError("Token has expired") from e
        except jwt.InvalidTokenError as e:
            raise TokenValidationError(f"Invalid token: {e}") from e
        except ValidationError as e:
            raise TokenValidationError("Token payload is malformed") from e
