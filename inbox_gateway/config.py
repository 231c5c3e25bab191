from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Provider credentials here are only the fallback used when no
    instance has been saved through the admin API.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./inbox.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Admin gate (X-Admin-Token header)
    ADMIN_TOKEN: Optional[str] = None

    # Meta WhatsApp Cloud API fallback credentials
    META_TOKEN: Optional[str] = None
    META_PHONE_NUMBER_ID: Optional[str] = None
    META_VERIFY_TOKEN: Optional[str] = None
    META_APP_SECRET: Optional[str] = None
    META_GRAPH_API_URL: str = "https://graph.facebook.com/v17.0"
    PROVIDER_TIMEOUT_SECONDS: float = 15.0

    # Base URL used to turn relative media paths into public links
    PUBLIC_BASE_URL: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
