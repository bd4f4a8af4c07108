"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


MIN_SYNC_INTERVAL_MINUTES = 5
MAX_SYNC_INTERVAL_MINUTES = 1_440


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="StashMirror", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./stashmirror.db", alias="DATABASE_URL"
    )
    admin_token: str | None = Field(default=None, alias="ADMIN_TOKEN")

    stash_url: str | None = Field(
        default=None,
        alias="STASH_URL",
        validation_alias=AliasChoices("STASH_URL", "STASH_GRAPHQL_URL"),
    )
    stash_api_key: str | None = Field(default=None, alias="STASH_API_KEY")
    stash_instance_name: str = Field(default="Stash", alias="STASH_INSTANCE_NAME")
    upstream_max_retries: int = Field(
        default=3, alias="UPSTREAM_MAX_RETRIES", ge=0, le=10
    )
    upstream_timeout_seconds: float = Field(
        default=60.0, alias="UPSTREAM_TIMEOUT", gt=0, le=600
    )

    sync_page_size: int = Field(default=500, alias="SYNC_PAGE_SIZE", ge=1, le=5_000)
    sync_batch_size: int = Field(default=200, alias="SYNC_BATCH_SIZE", ge=1, le=1_000)
    cleanup_page_size: int = Field(
        default=5_000, alias="CLEANUP_PAGE_SIZE", ge=1, le=50_000
    )
    sync_interval_minutes: int = Field(
        default=60,
        alias="SYNC_INTERVAL",
        ge=MIN_SYNC_INTERVAL_MINUTES,
        le=MAX_SYNC_INTERVAL_MINUTES,
    )
    sync_on_startup: bool = Field(default=True, alias="SYNC_ON_STARTUP")
    webhook_enabled: bool = Field(default=False, alias="WEBHOOK_ENABLED")
    scan_subscription_enabled: bool = Field(
        default=True, alias="SCAN_SUBSCRIPTION_ENABLED"
    )
    cursor_subsecond_guard: bool = Field(default=True, alias="CURSOR_SUBSECOND_GUARD")
    incremental_deletion_sweep: bool = Field(
        default=True, alias="INCREMENTAL_DELETION_SWEEP"
    )

    auto_reconcile: bool = Field(default=True, alias="AUTO_RECONCILE")
    match_candidate_limit: int = Field(
        default=25, alias="MATCH_CANDIDATE_LIMIT", ge=1, le=500
    )
    near_match_distance: int = Field(
        default=6, alias="NEAR_MATCH_DISTANCE", ge=0, le=7
    )

    restriction_cascade_depth: int = Field(
        default=1, alias="RESTRICTION_CASCADE_DEPTH", ge=0, le=3
    )
    restriction_include_descendants: bool = Field(
        default=True, alias="RESTRICTION_INCLUDE_DESCENDANTS"
    )
    hide_empty_containers: bool = Field(default=False, alias="HIDE_EMPTY_CONTAINERS")
    exclusion_concurrency: int = Field(
        default=4, alias="EXCLUSION_CONCURRENCY", ge=1, le=64
    )
    exclusion_retry_limit: int = Field(
        default=2, alias="EXCLUSION_RETRY_LIMIT", ge=0, le=10
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("stash_url", mode="before")
    @classmethod
    def _normalise_stash_url(cls, value: object) -> str | None:
        """Accept a bare server address and point it at the GraphQL endpoint."""

        if value is None:
            return None
        text = str(value).strip().rstrip("/")
        if not text:
            return None
        if not text.endswith("/graphql"):
            text = f"{text}/graphql"
        return text

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> str:
        text = str(value or "INFO").strip().upper()
        if text not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("LOG_LEVEL must be a standard logging level name")
        return text

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
