"""Application configuration loaded from environment variables.

Settings for the database, the HTTP surface, identity, and the quota ledger
tuning knobs. Uses pydantic-settings for validation and .env file support.
"""

import uuid

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_settings() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "quota_dev_password"  # nosec B105

# Minimum length for AUTH_SECRET in production (256 bits = 32 bytes)
_MIN_AUTH_SECRET_LENGTH = 32

_VALID_POOL_TYPES = ("trial", "subscription", "paygo")
_VALID_MEASUREMENT_TYPES = ("dollar", "unit")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "quota_ledger"
    database_user: str = "quota_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    # CORS (Security)
    # Never set to ["*"]: the session cookie requires credentialed requests
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Application
    environment: str = "development"
    log_level: str = "INFO"

    # Identity
    # Local mode: DEFAULT_USER_ID provides user context without JWT
    # Hosted mode: auth_enabled=True, JWT cookie required on every request
    default_user_id: uuid.UUID | None = None
    auth_enabled: bool = False
    auth_secret: SecretStr = SecretStr("")
    auth_issuer: str = "quota-ledger"
    auth_audience: str = "quota-ledger"
    auth_cookie_name: str = "quota_ledger.session-token"

    # Service cost lookup
    service_cost_cache_ttl_seconds: float = 300.0

    # FIFO consumption walk (tuning only, no semantic effect)
    quota_consume_batch_size: int = 1000
    quota_consume_max_batches: int = 10

    # Sign-up grant
    initial_quota_enabled: bool = False
    initial_quota_amount: float = 0.0
    initial_quota_valid_days: int = 0
    initial_quota_pool_type: str = "subscription"
    initial_quota_measurement_type: str = "unit"
    initial_quota_description: str = "Initial quota"

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def database_url_sync(self) -> str:
        """Sync database URL for Alembic."""
        return (
            f"postgresql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_settings(self) -> "Settings":
        """Validate ledger tuning and production security requirements.

        Checks:
        - FIFO batch size and batch cap must be at least 1
        - Cache TTL and sign-up grant amount cannot be negative
        - Sign-up pool and measurement types must be known values
        - CORS must not use wildcard origin (incompatible with credentials)
        - Database password must not be the default in production
        - AUTH_SECRET must be set and >= 32 chars when auth is enabled in production
        """
        if self.quota_consume_batch_size < 1 or self.quota_consume_max_batches < 1:
            msg = (
                "QUOTA_CONSUME_BATCH_SIZE and QUOTA_CONSUME_MAX_BATCHES must be "
                f"at least 1. Got: {self.quota_consume_batch_size}, "
                f"{self.quota_consume_max_batches}"
            )
            raise ValueError(msg)
        if self.service_cost_cache_ttl_seconds < 0:
            msg = (
                "SERVICE_COST_CACHE_TTL_SECONDS cannot be negative. "
                f"Got: {self.service_cost_cache_ttl_seconds}"
            )
            raise ValueError(msg)
        if self.initial_quota_amount < 0:
            msg = (
                "INITIAL_QUOTA_AMOUNT cannot be negative. "
                f"Got: {self.initial_quota_amount}"
            )
            raise ValueError(msg)
        if self.initial_quota_pool_type not in _VALID_POOL_TYPES:
            msg = (
                f"INITIAL_QUOTA_POOL_TYPE must be one of {_VALID_POOL_TYPES}. "
                f"Got: {self.initial_quota_pool_type}"
            )
            raise ValueError(msg)
        if self.initial_quota_measurement_type not in _VALID_MEASUREMENT_TYPES:
            msg = (
                "INITIAL_QUOTA_MEASUREMENT_TYPE must be one of "
                f"{_VALID_MEASUREMENT_TYPES}. "
                f"Got: {self.initial_quota_measurement_type}"
            )
            raise ValueError(msg)

        if "*" in self.allowed_origins:
            msg = (
                "ALLOWED_ORIGINS must not contain '*' (wildcard). "
                "This application uses credentials (cookies) which are "
                "incompatible with wildcard CORS origins."
            )
            raise ValueError(msg)

        if self.environment == "production":
            if self.database_password == _INSECURE_DEFAULT_PASSWORD:
                msg = (
                    "Cannot use default database password in production. "
                    "Set DATABASE_PASSWORD environment variable to a secure value."
                )
                raise ValueError(msg)

            if self.auth_enabled:
                secret_value = self.auth_secret.get_secret_value()
                if len(secret_value) < _MIN_AUTH_SECRET_LENGTH:
                    msg = (
                        "AUTH_SECRET must be set and at least "
                        f"{_MIN_AUTH_SECRET_LENGTH} characters when "
                        "AUTH_ENABLED=true in production."
                    )
                    raise ValueError(msg)

        return self


settings = Settings()
