"""Domain records for events, brackets and canonical results.

These are plain dataclasses passed between the pipeline stages. The ORM
representation of cached results lives in ``models.cache``.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class BracketKind(str, Enum):
    """Classification of an award bracket."""

    AGE = "AGE"
    GENDER = "GENDER"
    OVERALL = "OVERALL"  # division fallback for runners without an age-group place


@dataclass
class Race:
    """A race within an event (e.g. 5K, Half Marathon)."""

    race_id: str
    name: str
    distance: float | None = None
    distance_unit: str | None = None
    planned_start_time: int | None = None
    actual_start_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Event:
    """A timed event imported from the timing API."""

    event_id: str
    name: str
    start_time: int | None = None  # epoch seconds
    end_time: int | None = None  # epoch seconds, may stay unknown
    races: list[Race] = field(default_factory=list)

    @property
    def has_end_time(self) -> bool:
        return self.end_time is not None


@dataclass
class Bracket:
    """An upstream award bracket definition."""

    bracket_id: str
    name: str
    bracket_type: str | None = None
    tag: str | None = None
    race_id: str | None = None
    wants_leaderboard: bool = False


@dataclass(frozen=True)
class ParticipantIdentity:
    """Stable key for matching one participant across independent API calls.

    ``entry_id`` is preferred. Without it the composite ``(bib, race_id)`` is
    used; that fallback is only collision-safe when ``race_id`` is populated.
    """

    entry_id: str | None = None
    bib: str | None = None
    race_id: str | None = None

    @property
    def is_fallback(self) -> bool:
        return not self.entry_id

    @property
    def is_resolvable(self) -> bool:
        return bool(self.entry_id or self.bib)

    @property
    def is_collision_prone(self) -> bool:
        """Fallback key without a race id: distinct races can share a bib."""
        return self.is_fallback and bool(self.bib) and not self.race_id

    @property
    def fallback_key(self) -> str | None:
        if not self.bib:
            return None
        return f"bib:{self.bib}|race:{self.race_id or ''}"

    @property
    def lookup_keys(self) -> tuple[str, ...]:
        """Every key this identity can be matched under, preferred first."""
        keys = []
        if self.entry_id:
            keys.append(f"entry:{self.entry_id}")
        if self.fallback_key:
            keys.append(self.fallback_key)
        return tuple(keys)

    @property
    def key(self) -> str | None:
        keys = self.lookup_keys
        return keys[0] if keys else None

    @property
    def entry_key(self) -> str | None:
        """Cache key: the bare entry id, else the synthetic bib/race key."""
        return self.entry_id or self.fallback_key

    def __str__(self) -> str:
        return self.key or "<no identity>"


@dataclass
class Split:
    """One split/interval time for a participant."""

    name: str
    time: str | None = None
    pace: str | None = None
    place: int | None = None


@dataclass
class CanonicalResult:
    """Merged, de-duplicated result for one participant.

    This is the unit persisted to the cache and consumed by presentation layers.
    """

    entry_id: str | None
    bib: str | None
    race_id: str | None
    race_name: str | None
    first_name: str
    last_name: str
    gender: str | None = None
    age: int | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    chip_time: str | None = None
    clock_time: str | None = None
    pace: str | None = None
    place: int | None = None
    gender_place: int | None = None
    division_name: str | None = None
    division_place: int | None = None
    splits: list[Split] = field(default_factory=list)

    @property
    def identity(self) -> ParticipantIdentity:
        return ParticipantIdentity(entry_id=self.entry_id, bib=self.bib, race_id=self.race_id)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanonicalResult":
        values = dict(data)
        values["splits"] = [
            s if isinstance(s, Split) else Split(**s) for s in values.get("splits") or []
        ]
        return cls(**values)


@dataclass
class CacheRecord:
    """A canonical result as persisted for one event."""

    event_id: str
    entry_key: str
    result: CanonicalResult
    synced_at: datetime | None = None
