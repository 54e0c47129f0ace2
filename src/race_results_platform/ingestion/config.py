"""Timing API and sync configuration models using Pydantic."""

import os
from enum import Enum
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


class BackoffStrategy(str, Enum):
    """Retry backoff strategies."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    CONSTANT = "constant"


class RetryConfig(BaseModel):
    """Retry configuration for transient API failures."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: float = Field(default=1, ge=0)  # seconds
    max_delay: float = Field(default=30, ge=0)  # seconds


class TimingAPIConfig(BaseModel):
    """Connection settings for the upstream timing API."""

    base_url: str = Field(default="https://api.chronotrack.com", description="API root URL")
    client_id: str = ""
    client_secret: str = ""
    username: str = ""
    password: str = ""

    timeout: float = Field(default=30.0, gt=0, le=300, description="Request timeout in seconds")
    token_safety_margin: int = Field(
        default=60, ge=0, description="Seconds subtracted from the provider token TTL"
    )
    default_token_ttl: int = Field(
        default=3600, ge=1, description="TTL used when the provider omits expires_in"
    )

    # Pagination
    results_page_size: int = Field(default=500, ge=1, le=1000)
    bracket_page_size: int = Field(default=1000, ge=1, le=5000)
    results_page_param: Literal["size", "results_per_page"] = "size"
    max_pages: int = Field(
        default=40, ge=1, description="Page limit; a full page at the limit fails the fetch"
    )
    fetch_intervals: bool = Field(
        default=True, description="Request per-interval rows (interval=ALL) for splits"
    )

    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def has_credentials(self) -> bool:
        return all((self.client_id, self.client_secret, self.username, self.password))

    def __repr__(self) -> str:
        """String representation (hides secrets)."""
        return (
            f"TimingAPIConfig(base_url={self.base_url}, client_id={self.client_id}, "
            f"username={self.username}, client_secret=*****, password=*****)"
        )


class SyncConfig(BaseModel):
    """Sync pass and live polling behaviour."""

    bracket_concurrency: int = Field(
        default=5, ge=1, le=10, description="Max bracket-result fetches in flight per pass"
    )
    cache_page_size: int = Field(default=1000, ge=1)
    upsert_batch_size: int = Field(default=500, ge=1)

    active_poll_interval: int = Field(default=30, ge=1, description="Seconds, inside start/end window")
    race_day_poll_interval: int = Field(default=60, ge=1, description="Seconds, race day without end time")

    exclude_non_finishers: bool = Field(
        default=False, description="Drop results whose entry status is not FIN"
    )
    entry_status_concurrency: int = Field(default=5, ge=1, le=50)

    auto_fetch_disabled_events: list[str] = Field(
        default_factory=list, description="Event ids with live polling switched off"
    )

    @field_validator("auto_fetch_disabled_events", mode="before")
    @classmethod
    def coerce_event_ids(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return [str(item) for item in v]

    def auto_fetch_enabled(self, event_id: str) -> bool:
        return str(event_id) not in self.auto_fetch_disabled_events


class PlatformConfig(BaseModel):
    """Complete platform configuration."""

    api: TimingAPIConfig = Field(default_factory=TimingAPIConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)

    @classmethod
    def from_env(cls) -> "PlatformConfig":
        """Create configuration from environment variables.

        Environment variables:
        - TIMING_API_BASE_URL: API root URL
        - TIMING_API_CLIENT_ID / TIMING_API_CLIENT_SECRET: OAuth client
        - TIMING_API_USERNAME / TIMING_API_PASSWORD: password-grant user
        - TIMING_API_RESULTS_PAGE_PARAM: "size" or "results_per_page"
        - SYNC_BRACKET_CONCURRENCY: Max parallel bracket fetches
        - SYNC_EXCLUDE_NON_FINISHERS: Drop DNF/DQ entries (true/false)
        - SYNC_AUTO_FETCH_DISABLED_EVENTS: Comma-separated event ids

        Returns:
            PlatformConfig instance
        """
        api_values = {
            "base_url": os.getenv("TIMING_API_BASE_URL"),
            "client_id": os.getenv("TIMING_API_CLIENT_ID"),
            "client_secret": os.getenv("TIMING_API_CLIENT_SECRET"),
            "username": os.getenv("TIMING_API_USERNAME"),
            "password": os.getenv("TIMING_API_PASSWORD"),
            "results_page_param": os.getenv("TIMING_API_RESULTS_PAGE_PARAM"),
        }
        sync_values = {
            "bracket_concurrency": os.getenv("SYNC_BRACKET_CONCURRENCY"),
            "exclude_non_finishers": os.getenv("SYNC_EXCLUDE_NON_FINISHERS"),
            "auto_fetch_disabled_events": os.getenv("SYNC_AUTO_FETCH_DISABLED_EVENTS"),
        }

        return cls(
            api=TimingAPIConfig(**{k: v for k, v in api_values.items() if v is not None}),
            sync=SyncConfig(**{k: v for k, v in sync_values.items() if v is not None}),
        )


def load_platform_config(path: str | Path | None = None) -> PlatformConfig:
    """Load platform configuration from a YAML file, or the environment.

    Args:
        path: Path to YAML configuration file (None reads environment variables)

    Returns:
        Validated PlatformConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    if path is None:
        return PlatformConfig.from_env()

    config_path = Path(path)

    if not config_path.exists():
        raise FileNotFoundError(f"Platform config not found: {config_path}")

    with open(config_path) as f:
        config_data: Optional[dict] = yaml.safe_load(f)

    return PlatformConfig(**(config_data or {}))
