from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Webhook Security - signatures are only checked when a secret is set
    WEBHOOK_SECRET: str = ""

    # Messaging gateway - required from .env
    GATEWAY_BASE_URL: str
    GATEWAY_API_KEY: str
    GATEWAY_TIMEOUT: float = 30.0

    # Media blob storage
    MEDIA_ROOT: str = "./media"
    MEDIA_BASE_URL: str = "/media"
    MEDIA_SIGNING_SECRET: str = "change-me"
    MEDIA_URL_EXPIRES_IN: int = 3600

    # Sync rate limiting. Burst-like backfill traffic gets channels suspended
    # by the gateway's anti-abuse detection, so these delays are mandatory.
    SYNC_CHAT_PAGE_SIZE: int = 100
    SYNC_MAX_CHAT_PAGES: int = 50
    SYNC_CHATS_PER_BATCH: int = 10
    SYNC_CHAT_BATCH_DELAY: float = 1.0
    SYNC_PER_CHAT_DELAY: float = 0.5
    SYNC_MESSAGES_PER_BATCH: int = 50
    SYNC_MESSAGE_BATCH_DELAY: float = 2.0
    SYNC_MEDIA_FETCH_DELAY: float = 1.0
    SYNC_MAX_MESSAGES_PER_CHAT: int = 1000


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
