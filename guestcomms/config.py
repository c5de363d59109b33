from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Service settings, read from the environment with `.env` as fallback.

    Only DATABASE_URL and LOG_LEVEL are required; everything that tunes the
    claim loop, delivery and planning has a production default.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    DATABASE_URL: str
    LOG_LEVEL: str

    # HMAC-SHA256 key for X-Signature on PMS webhooks; empty disables the check
    WEBHOOK_SECRET: str = ""

    # Claim loop
    RUN_CLAIM_LOOP: bool = True
    CLAIM_INTERVAL_SECONDS: float = Field(60.0, gt=0)
    CLAIM_BATCH_SIZE: int = Field(25, ge=1)
    CLAIM_MAX_ITERATIONS: int = Field(10, ge=1)
    # Processing rows older than this are claimable again; 0 disables re-claiming
    PROCESSING_LEASE_SECONDS: int = Field(900, ge=0)

    # Delivery
    LISTING_CACHE_TTL_SECONDS: int = Field(1800, ge=0)

    # Planning
    POST_BOOKING_FOLLOWUP_HOURS: float = Field(6.0, ge=0)

    @field_validator("LOG_LEVEL")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


settings = get_settings()
