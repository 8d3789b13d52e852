"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="ChooseAMovie", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_read_token: str | None = Field(
        default=None,
        alias="TMDB_READ_TOKEN",
        validation_alias=AliasChoices("TMDB_READ_TOKEN", "TMDB_BEARER_TOKEN"),
    )
    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_language: str = Field(default="en-US", alias="TMDB_LANGUAGE")
    certification_country: str = Field(
        default="US", alias="TMDB_CERTIFICATION_COUNTRY", min_length=2, max_length=2
    )
    certification_concurrency: int = Field(
        default=8, alias="CERTIFICATION_CONCURRENCY", ge=1, le=64
    )

    queue_low_watermark: int = Field(
        default=10, alias="QUEUE_LOW_WATERMARK", ge=1, le=500
    )
    queue_target_size: int = Field(
        default=80, alias="QUEUE_TARGET_SIZE", ge=1, le=1_000
    )
    queue_max_pages_per_refill: int = Field(
        default=5, alias="QUEUE_MAX_PAGES_PER_REFILL", ge=1, le=50
    )
    queue_max_seen: int = Field(default=300, alias="QUEUE_MAX_SEEN", ge=1, le=10_000)

    database_url: str = Field(
        default="sqlite+aiosqlite:///./chooseamovie.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("tmdb_read_token", "tmdb_api_key", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @field_validator("certification_country", mode="before")
    @classmethod
    def _upper_country(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _check_queue_bounds(self) -> "Settings":
        """Ensure a refill can actually lift the queue above its watermark."""

        if self.queue_target_size < self.queue_low_watermark:
            raise ValueError(
                "QUEUE_TARGET_SIZE must be greater than or equal to QUEUE_LOW_WATERMARK"
            )
        return self

    @property
    def tmdb_configured(self) -> bool:
        return bool(self.tmdb_read_token or self.tmdb_api_key)

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
