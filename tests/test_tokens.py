"""Tests for portal credentials."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from fakes import build_config
from portal.access.tokens import ALGORITHM, EntryPath, TokenIssuer
from portal.db.models import Account
from portal.errors import ConfigurationError, TokenValidationError

ACCOUNT = Account(id="acct-1", payment_email="pay@x.com", handle="dee", external_subject_id="D1")


@pytest.fixture
def issuer(config) -> TokenIssuer:
    return TokenIssuer(config)


class TestIssue:
    """Claims and lifetimes per entry path."""

    def test_claims(self, issuer, config):
        token = issuer.issue(ACCOUNT, EntryPath.DISCORD_LOGIN)

        payload = jwt.decode(
            token, config.jwt_secret.get_secret_value(), algorithms=[ALGORITHM]
        )
        assert payload["account_id"] == "acct-1"
        assert payload["subject_id"] == "D1"
        assert payload["entry"] == "discord_login"
        assert payload["iss"] == config.jwt_issuer

    @pytest.mark.parametrize(
        "entry,hours",
        [
            (EntryPath.DISCORD_LOGIN, 24),
            (EntryPath.POST_PAYMENT, 72),
            (EntryPath.CODE_LINK, 168),
        ],
    )
    def test_lifetime_per_entry_path(self, issuer, entry, hours):
        claims = issuer.verify(issuer.issue(ACCOUNT, entry))
        assert claims.exp - claims.iat == hours * 3600
        assert claims.entry == entry

    def test_accepts_entry_value_string(self, issuer):
        claims = issuer.verify(issuer.issue(ACCOUNT, "code_link"))
        assert claims.entry == EntryPath.CODE_LINK

    def test_requires_secret(self):
        with pytest.raises(ConfigurationError, match="JWT_SECRET"):
            TokenIssuer(build_config(jwt_secret=""))


class TestVerify:
    """Rejection of bad credentials."""

    def test_round_trip(self, issuer):
        claims = issuer.verify(issuer.issue(ACCOUNT, EntryPath.DISCORD_LOGIN))
        assert claims.account_id == "acct-1"
        assert claims.subject_id == "D1"

    def test_expired(self, config):
        past = datetime.now(timezone.utc) - timedelta(days=2)
        stale = TokenIssuer(config, clock=lambda: past)
        token = stale.issue(ACCOUNT, EntryPath.DISCORD_LOGIN)

        with pytest.raises(TokenValidationError, match="expired"):
            TokenIssuer(config).verify(token)

    def test_wrong_secret(self, issuer):
        other = TokenIssuer(build_config(jwt_secret="another-secret-that-is-long-enough-too"))
        token = other.issue(ACCOUNT, EntryPath.DISCORD_LOGIN)

        with pytest.raises(TokenValidationError):
            issuer.verify(token)

    def test_wrong_issuer(self, issuer):
        other = TokenIssuer(build_config(jwt_issuer="someone-else"))
        token = other.issue(ACCOUNT, EntryPath.DISCORD_LOGIN)

        with pytest.raises(TokenValidationError):
            issuer.verify(token)

    def test_garbage(self, issuer):
        with pytest.raises(TokenValidationError):
            issuer.verify("not-a-jwt")

    def test_missing(self, issuer):
        with pytest.raises(TokenValidationError):
            issuer.verify("")

    def test_payload_without_account(self, issuer, config):
        now = int(datetime.now(timezone.utc).timestamp())
        token = jwt.encode(
            {"iss": config.jwt_issuer, "iat": now, "exp": now + 60, "entry": "code_link"},
            config.jwt_secret.get_secret_value(),
            algorithm=ALGORITHM,
        )

        with pytest.raises(TokenValidationError, match="malformed"):
            issuer.verify(token)
