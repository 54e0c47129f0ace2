"""Database configuration and session management."""

from race_results_platform.database.config import DEFAULT_CONFIG, DatabaseConfig
from race_results_platform.database.session import (
    dispose_engines,
    get_engine,
    get_read_only_session,
    get_session,
)

__all__ = [
    "DatabaseConfig",
    "DEFAULT_CONFIG",
    "get_engine",
    "get_session",
    "get_read_only_session",
    "dispose_engines",
]
