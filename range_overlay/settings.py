from __future__ import annotations

from typing import Annotated, Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class RangeSettings(BaseSettings):
    """Configuration for the range-serving overlay."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    upstream_endpoint: str = Field(
        default="http://127.0.0.1:8080",
        validation_alias="RANGE_OVERLAY_UPSTREAM_ENDPOINT",
    )
    passthrough_header: str = Field(
        default="x-range-overlay-passthrough",
        validation_alias="RANGE_OVERLAY_PASSTHROUGH_HEADER",
    )

    store_backend: Literal["s3", "memory"] = Field(
        default="s3",
        validation_alias="RANGE_OVERLAY_STORE_BACKEND",
    )
    store_endpoint: str = Field(
        default="http://127.0.0.1:9000",
        validation_alias="RANGE_OVERLAY_STORE_ENDPOINT",
    )
    store_access_key: str = Field(
        default="minioadmin",
        validation_alias=AliasChoices(
            "RANGE_OVERLAY_STORE_ACCESS_KEY",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    store_secret_key: str = Field(
        default="minioadmin",
        validation_alias=AliasChoices(
            "RANGE_OVERLAY_STORE_SECRET_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    store_session_token: str | None = Field(
        default=None,
        validation_alias="RANGE_OVERLAY_STORE_SESSION_TOKEN",
    )
    store_region: str = Field(
        default="us-east-1",
        validation_alias="RANGE_OVERLAY_STORE_REGION",
    )
    store_bucket: str = Field(
        default="range-overlay",
        validation_alias="RANGE_OVERLAY_STORE_BUCKET",
    )
    store_bucket_location: str = Field(
        default="us-east-1",
        validation_alias="RANGE_OVERLAY_STORE_BUCKET_LOCATION",
    )

    max_cached_ranges: int = Field(
        default=100,
        ge=0,
        validation_alias="RANGE_OVERLAY_MAX_CACHED_RANGES",
    )
    max_cacheable_range_size: int = Field(
        default=10 * 1024 * 1024,
        ge=0,
        validation_alias="RANGE_OVERLAY_MAX_CACHEABLE_RANGE_SIZE",
    )
    max_concurrent_ranges_per_url: int = Field(
        default=4,
        ge=1,
        validation_alias="RANGE_OVERLAY_MAX_CONCURRENT_RANGES_PER_URL",
    )
    prioritize_latest_request: bool = Field(
        default=True,
        validation_alias="RANGE_OVERLAY_PRIORITIZE_LATEST_REQUEST",
    )
    restore_missing_to_store: bool = Field(
        default=True,
        validation_alias="RANGE_OVERLAY_RESTORE_MISSING_TO_STORE",
    )
    assets: Annotated[list[str] | None, NoDecode] = Field(
        default=None,
        validation_alias="RANGE_OVERLAY_ASSETS",
    )
    max_tracked_urls: int = Field(
        default=512,
        ge=0,
        validation_alias="RANGE_OVERLAY_MAX_TRACKED_URLS",
    )
    range_response_cache_control: str | None = Field(
        default=None,
        validation_alias="RANGE_OVERLAY_RANGE_RESPONSE_CACHE_CONTROL",
    )
    include: Annotated[list[str] | None, NoDecode] = Field(
        default=None,
        validation_alias="RANGE_OVERLAY_INCLUDE",
    )
    exclude: Annotated[list[str] | None, NoDecode] = Field(
        default=None,
        validation_alias="RANGE_OVERLAY_EXCLUDE",
    )

    @field_validator("assets", "include", "exclude", mode="before")
    @classmethod
    def _parse_list(cls, value: object) -> list[str] | None:
        if value is None:
            return None
        if isinstance(value, str):
            items = [item.strip() for item in value.split(",")]
            return [item for item in items if item] or None
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()] or None
        msg = "Invalid list format"
        raise ValueError(msg)

    @property
    def upstream_base(self) -> str:
        return self.upstream_endpoint.rstrip("/")


def load_settings_from_env() -> RangeSettings:
    """Load overlay settings from environment variables.

    Returns:
        RangeSettings instance populated from environment variables.
    """
    return RangeSettings()
