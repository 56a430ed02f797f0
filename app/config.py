from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    DATABASE_URL: str = "postgresql://localhost:5432/deadman"

    # Custodied share encryption (32 bytes, base64 or hex encoded)
    ENCRYPTION_KEY: str | None = None

    # Bearer credentials
    CRON_SECRET: str | None = None
    ADMIN_TOKEN: str | None = None

    # Owner session tokens (issued by the external auth service)
    JWT_SECRET: str | None = None
    JWT_AUDIENCE: str = "authenticated"

    # Email delivery
    EMAIL_PROVIDER: str = "console"
    SENDGRID_API_KEY: str | None = None
    EMAIL_FROM: str = "noreply@deadmansswitch.local"
    ADMIN_ALERT_EMAIL: str | None = None
    SITE_URL: str = "http://localhost:3000"

    # Proxy handling for client IPs in request context
    TRUST_X_FORWARDED_FOR: bool = False
    TRUSTED_PROXY_IPS: list[str] = []

    # =================================================================
    # TRIGGER SCAN SETTINGS
    # =================================================================
    REMINDER_BATCH_SIZE: int = 100
    SECRET_BATCH_SIZE: int = 100
    DISCLOSURE_RETRY_BATCH_SIZE: int = 50
    MAX_CONCURRENT_SENDS: int = 5
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 5.0
    SCAN_INTERVAL_MINUTES: int = 5
    # How long a disclosure send owns its secret before another scan may take it over
    DISCLOSURE_LEASE_SECONDS: int = 300

    # Business floor for check-in intervals
    MIN_CHECK_IN_DAYS: int = 2

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def dashboard_url(self) -> str:
        """Owner dashboard linked from reminder emails."""
        return f"{self.SITE_URL.rstrip('/')}/dashboard"

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update({"min_size": 1, "max_size": 5, "timeout": 15.0})

        return config


settings = Settings()
