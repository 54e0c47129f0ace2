"""Ingestion layer for the timing API.

Provides:
- TimingAPIClient: Async client with token caching, pagination and retries
- TokenManager: Single-flight bearer token cache
- PlatformConfig: Configuration models for the API and sync behaviour
"""

from .client import ClientStats, Page, TimingAPIClient
from .config import PlatformConfig, SyncConfig, TimingAPIConfig, load_platform_config
from .token import TokenManager

__all__ = [
    "TimingAPIClient",
    "Page",
    "ClientStats",
    "TokenManager",
    "PlatformConfig",
    "TimingAPIConfig",
    "SyncConfig",
    "load_platform_config",
]
