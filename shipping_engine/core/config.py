"""
Engine configuration

Values come from the environment (or a local .env file). Defaults are the
production behaviour: retries on, pincode validation on, priority selection.
"""
import logging
from typing import Dict

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # App
    APP_NAME: str = "Shipping Engine"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database (shipment creation records)
    DATABASE_URL: str = "sqlite+aiosqlite:///./shipping_engine.db"

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v):
        """Convert plain postgres:// URLs to the asyncpg dialect."""
        if not v:
            return v
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://") and "+asyncpg" not in v:
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600  # 1 hour

    # Redis (webhook idempotency). Empty = in-process store.
    REDIS_URL: str = ""

    # Outbound HTTP
    SHIPPING_HTTP_TIMEOUT_MS: int = 10000
    SHIPPING_HTTP_MAX_RETRIES: int = 2
    SHIPPING_HTTP_BACKOFF_MS: int = 500

    # Selection defaults
    SELECTION_STRATEGY: str = "priority"
    FREE_SHIPPING_THRESHOLD: float = 500.0
    DEFAULT_SHIPPING_COST: float = 50.0
    DEFAULT_SHIPPING_METHOD: str = "Standard Shipping"
    DEFAULT_SHIPPING_CARRIER: str = "India Post"
    DEFAULT_SHIPPING_DAYS: int = 7
    PINCODE_VALIDATION_ENABLED: bool = True

    @field_validator("SELECTION_STRATEGY", mode="before")
    @classmethod
    def normalize_strategy(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in ("priority", "cheapest", "fastest"):
                logger.warning(f"Unknown SELECTION_STRATEGY {v!r}, using priority")
                return "priority"
        return v

    # Webhooks
    SHIPPING_WEBHOOK_SECRET: str = ""
    SHIPROCKET_WEBHOOK_SECRET: str = ""
    SHIPWAY_WEBHOOK_SECRET: str = ""
    SHIPYAARI_WEBHOOK_SECRET: str = ""
    WEBHOOK_IDEMPOTENCY_TTL_HOURS: int = 24

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def webhook_secrets(self) -> Dict[str, str]:
        """Per-provider webhook secrets; empty string means not set."""
        return {
            "shiprocket": self.SHIPROCKET_WEBHOOK_SECRET,
            "shipway": self.SHIPWAY_WEBHOOK_SECRET,
            "shipyaari": self.SHIPYAARI_WEBHOOK_SECRET,
        }

    def webhook_secret_for(self, provider_id: str) -> str:
        return self.webhook_secrets.get(provider_id) or self.SHIPPING_WEBHOOK_SECRET

    @property
    def http_timeout_seconds(self) -> float:
        return self.SHIPPING_HTTP_TIMEOUT_MS / 1000


settings = Settings()
