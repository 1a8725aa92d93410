"""Application configuration loaded from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed settings exposed via dependency injection throughout the app."""

    # Read .env with BOM tolerance; case-sensitive keys
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=True,
    )

    APP_NAME: str = "Delivery Locations API"
    ENV: str = "dev"  # dev | staging | prod
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ALLOWED_ORIGINS: list[str] = Field(default_factory=list)

    # DB
    DB_URL: str | None = None  # full async URL; overrides the DB_* parts below
    DB_HOST: str = "127.0.0.1"
    DB_PORT: int = 3306
    DB_USER: str = "appadmin"
    DB_PASSWORD: str = ""  # set via env/.env
    DB_NAME: str = "delivery_locations"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_RETRY_ATTEMPTS: int = 4
    DB_RETRY_BASE_DELAY: float = 0.05
    DB_RETRY_JITTER: float = 0.025

    # Redis cache (optional - falls back to in-process memory)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None
    REDIS_ENABLED: bool = True

    MAX_UPLOAD_BYTES: int = 1 * 1024 * 1024  # 1 MB

    # Delivery partners. Keys are the partner names used in mapping rows.
    PARTNER_API_URLS: dict[str, str] = Field(
        default_factory=lambda: {
            "alwaseet": "https://api.alwaseet-iq.net/v1/merchant",
        }
    )
    DEFAULT_DELIVERY_PARTNER: str = "alwaseet"
    PARTNER_REQUEST_TIMEOUT_SEC: float = 30.0
    PARTNER_REQUEST_RETRIES: int = 3
    PARTNER_RETRY_BASE_DELAY: float = 1.0

    # Background sync
    SYNC_REGION_BATCH_SIZE: int = 100
    # 1 keeps the original sequential behaviour; raise to fan out across cities.
    SYNC_CITY_CONCURRENCY: int = 1
    SYNC_STALE_AFTER_MINUTES: int = 60
    SYNC_DEACTIVATE_MISSING: bool = True

    # In-process location cache
    LOCATION_CACHE_PAGE_SIZE: int = 1000
    LOCATION_CACHE_PAGE_DELAY_SEC: float = 0.02

    # Location resolver
    GEMINI_API_KEY: str | None = Field(default=None, description="Google Generative Language API key")
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_MODELS: list[str] = Field(
        default_factory=lambda: ["gemini-2.5-flash", "gemini-2.0-flash", "gemini-2.5-flash-lite"]
    )
    AI_TEMPERATURE: float = 0.1
    AI_MAX_OUTPUT_TOKENS: int = 500
    AI_TIMEOUT_SEC: float = 20.0
    RESOLUTION_CACHE_TTL_SEC: int = 7 * 24 * 3600

    # Rate limits, see delivery_locations.core.rate_limit.limiter for syntax.
    RESOLVE_RATE: str = "60/minute"
    SYNC_RATE: str = "5/minute"

    @property
    def DATABASE_URL(self) -> str:
        if self.DB_URL:
            return self.DB_URL
        return (
            f"mysql+aiomysql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}?charset=utf8mb4"
        )

    @property
    def ai_enabled(self) -> bool:
        return bool(self.GEMINI_API_KEY)


settings = Settings()
