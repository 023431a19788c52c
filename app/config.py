"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="WatchSync", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    jellyfin_url: HttpUrl = Field(
        default="http://localhost:8096", alias="JELLYFIN_URL"
    )
    jellyfin_token: str | None = Field(default=None, alias="JELLYFIN_TOKEN")
    jellyfin_user_id: str | None = Field(default=None, alias="JELLYFIN_USER_ID")
    request_retry_limit: int = Field(
        default=3, alias="REQUEST_RETRY_LIMIT", ge=0, le=10
    )

    page_size: int = Field(default=20, alias="PAGE_SIZE", ge=1, le=200)
    progress_cache_ttl_seconds: int = Field(
        default=86_400, alias="PROGRESS_CACHE_TTL", ge=0
    )
    movie_cache_ttl_seconds: int = Field(
        default=86_400, alias="MOVIE_CACHE_TTL", ge=0
    )
    watchlist_cache_ttl_seconds: int = Field(
        default=300, alias="WATCHLIST_CACHE_TTL", ge=0
    )
    watchlist_poll_seconds: float = Field(
        default=60, alias="WATCHLIST_POLL_INTERVAL", ge=1
    )
    cache_key_prefix: str = Field(default="watchsync_", alias="CACHE_KEY_PREFIX")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./watchsync.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("jellyfin_token", "jellyfin_user_id", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        """Treat blank credentials as missing."""

        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @property
    def owner_key(self) -> str:
        """Identity that scopes every persisted cache entry."""

        return self.jellyfin_user_id or "anonymous"

    @property
    def server_url(self) -> str:
        return str(self.jellyfin_url).rstrip("/")

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
