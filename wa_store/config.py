from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # SQLAlchemy async URL, e.g. sqlite+aiosqlite:///./wa_store.db
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # Default page size for GET /{session_id}/messages
    MESSAGES_PAGE_SIZE: int = 25

    # Default pause between items of a bulk send, in milliseconds
    BULK_SEND_DELAY_MS: int = 1000


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
