import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/profile_insights"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql://; we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    encryption_key: str = ""

    # Klaviyo
    klaviyo_api_key: str = ""  # Fallback private key when no account is stored
    klaviyo_base_url: str = "https://a.klaviyo.com/api"
    klaviyo_revision: str = "2025-04-15"
    klaviyo_timeout_seconds: float = 30.0

    # Metric catalog cache
    metric_cache_ttl_seconds: int = 600
    metric_refresh_interval_seconds: int = 600  # 0 disables the background warm-up

    # Event fetch sizes
    events_page_size: int = 100
    events_max_pages: int = 200  # per timeline fetch; results past it are flagged truncated
    stats_page_size: int = 10

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        if self.metric_cache_ttl_seconds <= 0:
            raise ValueError("METRIC_CACHE_TTL_SECONDS must be positive.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
