"""Application configuration schema and validation."""

from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from portal.errors import ConfigurationError


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    # Credential signing
    jwt_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Shared HS256 secret for portal credentials",
    )
    jwt_issuer: str = Field(
        default="portal-access",
        description="Issuer claim stamped on every credential",
    )
    token_ttl_hours_login: int = Field(
        default=24,
        ge=1,
        le=168,
        description="Credential lifetime for Discord login (hours)",
    )
    token_ttl_hours_payment: int = Field(
        default=72,
        ge=1,
        le=168,
        description="Credential lifetime for post-payment login (hours)",
    )
    token_ttl_hours_code: int = Field(
        default=168,
        ge=1,
        le=336,
        description="Credential lifetime for verification-code linking (hours)",
    )

    # Discord OAuth2 (identity provider)
    discord_api_base_url: str = Field(
        default="https://discord.com/api/v10",
        description="Discord REST API base URL",
    )
    discord_client_id: str = Field(
        default="",
        description="Discord OAuth2 application client ID",
    )
    discord_client_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Discord OAuth2 application client secret",
    )
    discord_redirect_uri: str = Field(
        default="",
        description="Discord OAuth2 redirect URI registered for the portal",
    )
    discord_bot_token: SecretStr = Field(
        default=SecretStr(""),
        description="Discord bot token (guild joins and gateway role backend)",
    )
    discord_guild_id: str = Field(
        default="",
        description="Discord guild (server) ID of the community",
    )
    discord_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Timeout for OAuth2 token exchange and profile fetch",
    )

    # Community role service
    community_role_backend: Literal["bot_api", "gateway"] = Field(
        default="bot_api",
        description="Role backend: HTTP bot API or discord.py REST client",
    )
    community_api_base_url: str = Field(
        default="",
        description="Base URL of the community bot API",
    )
    community_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Bearer key for the community bot API",
    )
    community_paid_role_id: str = Field(
        default="",
        description="Role ID granted to paying members",
    )
    community_join_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        le=60,
        description="Bounded wait for the guild join call",
    )
    community_check_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        le=30,
        description="Bounded wait for membership and role checks",
    )
    community_assign_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Bounded wait for role assignment",
    )
    community_remove_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=30,
        description="Bounded wait for best-effort role removal",
    )

    # Stripe (payment provider)
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe webhook signing secret",
    )
    grace_period_days: int = Field(
        default=2,
        ge=0,
        le=14,
        description="Days of access kept after a lapsed payment period",
    )
    verification_code_ttl_days: int = Field(
        default=7,
        ge=1,
        le=30,
        description="Lifetime of account-linking verification codes (days)",
    )

    # HTTP shell
    frontend_url: str = Field(
        default="https://localhost:3000",
        description="Frontend URL that receives login redirects",
    )
    server_host: str = Field(
        default="0.0.0.0",
        description="Bind address for the HTTP server",
    )
    server_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for the HTTP server",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @field_validator("frontend_url")
    @classmethod
    def normalize_frontend_url(cls, v: str) -> str:
        """Strip stray quotes and default to https when no scheme is given."""
        v = v.strip().strip("'\"").rstrip("/")
        if v and not v.startswith("http"):
            v = f"https://{v}"
        return v

    def require(self, *names: str) -> None:
        """Raise ConfigurationError if any of the named settings is empty.

        Args:
            names: Attribute names on this config

        Raises:
            ConfigurationError: Listing every missing setting
        """
        missing = []
        for name in names:
            value = getattr(self, name)
            if isinstance(value, SecretStr):
                value = value.get_secret_value()
            if not value:
                missing.append(name.upper())
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the process-wide AppConfig used by entry points."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
