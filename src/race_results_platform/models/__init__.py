"""Domain records and ORM models for race results.

Contains two types of models:
1. Domain dataclasses (domain.py) - Events, brackets and canonical results
2. Cache tables (cache.py) - SQLModel tables for cached results and events
"""

from race_results_platform.models.cache import CachedResult, EventRecord
from race_results_platform.models.domain import (
    Bracket,
    BracketKind,
    CacheRecord,
    CanonicalResult,
    Event,
    ParticipantIdentity,
    Race,
    Split,
)

__all__ = [
    "Event",
    "Race",
    "Bracket",
    "BracketKind",
    "ParticipantIdentity",
    "Split",
    "CanonicalResult",
    "CacheRecord",
    "CachedResult",
    "EventRecord",
]
