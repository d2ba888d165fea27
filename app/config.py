"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


IMAGE_SIZES: tuple[str, ...] = ("w200", "w300", "w500", "w780", "original")


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="ReelFeed", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_image_base_url: HttpUrl = Field(
        default="https://image.tmdb.org/t/p", alias="TMDB_IMAGE_BASE_URL"
    )
    tmdb_language: str = Field(default="en-US", alias="TMDB_LANGUAGE")
    placeholder_poster: str = Field(
        default="/placeholder-poster.jpg", alias="PLACEHOLDER_POSTER"
    )

    catalog_timeout_seconds: float = Field(
        default=15.0, alias="CATALOG_TIMEOUT", gt=0, le=120
    )
    store_timeout_seconds: float = Field(
        default=10.0, alias="STORE_TIMEOUT", gt=0, le=120
    )
    feed_limit: int = Field(default=50, alias="FEED_LIMIT", ge=1, le=200)

    database_url: str = Field(
        default="sqlite+aiosqlite:///./reelfeed.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("tmdb_api_key", mode="before")
    @classmethod
    def _blank_api_key_is_missing(cls, value: object) -> object:
        """Treat empty TMDB keys from the environment as unset."""

        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def image_base_url(self) -> str:
        """Return the image CDN root without a trailing slash."""

        return str(self.tmdb_image_base_url).rstrip("/")

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
