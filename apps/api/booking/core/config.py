"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.02.00"

    # Database
    DATABASE_URL: str

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute, 0 disables)
    RATE_LIMIT_API: int = 120

    # Logging
    LOG_LEVEL: str = "INFO"

    # Idempotency ledger retention window
    IDEMPOTENCY_TTL_HOURS: int = 168

    # System mode probes
    HEALTH_PROBE_ENABLED: bool = True
    HEALTH_PROBE_INTERVAL_SECONDS: float = 15.0
    QUEUE_STALE_SECONDS: float = 120.0

    # Offline holds (client default expiry for a locally captured hold)
    OFFLINE_HOLD_TTL_MINUTES: int = 60

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


settings = Settings()
