"""ORM models for the results cache.

Two tables:
- race_results: one row per (event_id, entry_key), overwritten by each
  successful sync pass
- events: imported events plus the per-event sync bookkeeping
  (last_synced_at, admin sync_version)

JSON columns use JSONB on PostgreSQL and plain JSON elsewhere (SQLite in tests).
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from race_results_platform.models.domain import (
    CacheRecord,
    CanonicalResult,
    Event,
    Race,
    Split,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")


class CachedResult(SQLModel, table=True):
    """Cached canonical result for one participant of one event.

    Primary key: (event_id, entry_key). ``entry_key`` is the upstream entry id,
    or ``bib:<bib>|race:<race_id>`` when the entry id is missing.
    """

    __tablename__ = "race_results"

    event_id: str = Field(sa_type=String(64), primary_key=True)
    entry_key: str = Field(sa_type=Text, primary_key=True)

    entry_id: Optional[str] = Field(sa_type=Text, default=None)
    bib: Optional[str] = Field(sa_type=Text, default=None)
    race_id: Optional[str] = Field(sa_type=Text, default=None)
    race_name: Optional[str] = Field(sa_type=Text, default=None)

    first_name: str = Field(sa_type=Text, default="")
    last_name: str = Field(sa_type=Text, default="")
    gender: Optional[str] = Field(sa_type=Text, default=None)
    age: Optional[int] = Field(sa_type=Integer, default=None)
    city: Optional[str] = Field(sa_type=Text, default=None)
    state: Optional[str] = Field(sa_type=Text, default=None)
    country: Optional[str] = Field(sa_type=Text, default=None)

    chip_time: Optional[str] = Field(sa_type=Text, default=None)
    clock_time: Optional[str] = Field(sa_type=Text, default=None)
    pace: Optional[str] = Field(sa_type=Text, default=None)
    place: Optional[int] = Field(sa_type=Integer, default=None)
    gender_place: Optional[int] = Field(sa_type=Integer, default=None)
    division_name: Optional[str] = Field(sa_type=Text, default=None)
    division_place: Optional[int] = Field(sa_type=Integer, default=None)

    splits: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSONType, nullable=False)
    )

    synced_at: Optional[datetime] = Field(sa_type=DateTime(timezone=True), default=None)

    @classmethod
    def row_values(
        cls, event_id: str, entry_key: str, result: CanonicalResult, synced_at: datetime
    ) -> dict[str, Any]:
        """Column values for a bulk upsert statement."""
        values = asdict(result)
        values.update(event_id=event_id, entry_key=entry_key, synced_at=synced_at)
        return values

    def to_record(self) -> CacheRecord:
        result = CanonicalResult(
            entry_id=self.entry_id,
            bib=self.bib,
            race_id=self.race_id,
            race_name=self.race_name,
            first_name=self.first_name,
            last_name=self.last_name,
            gender=self.gender,
            age=self.age,
            city=self.city,
            state=self.state,
            country=self.country,
            chip_time=self.chip_time,
            clock_time=self.clock_time,
            pace=self.pace,
            place=self.place,
            gender_place=self.gender_place,
            division_name=self.division_name,
            division_place=self.division_place,
            splits=[Split(**s) for s in self.splits or []],
        )
        return CacheRecord(
            event_id=self.event_id,
            entry_key=self.entry_key,
            result=result,
            synced_at=self.synced_at,
        )


class EventRecord(SQLModel, table=True):
    """Imported event with its races and sync bookkeeping."""

    __tablename__ = "events"

    event_id: str = Field(sa_type=String(64), primary_key=True)
    name: str = Field(sa_type=Text, default="")
    start_time: Optional[int] = Field(sa_type=BigInteger, default=None)  # epoch seconds
    end_time: Optional[int] = Field(sa_type=BigInteger, default=None)
    races: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSONType, nullable=False)
    )

    last_synced_at: Optional[datetime] = Field(sa_type=DateTime(timezone=True), default=None)
    sync_version: int = Field(sa_type=Integer, default=0)
    imported_at: Optional[datetime] = Field(sa_type=DateTime(timezone=True), default=None)

    def to_event(self) -> Event:
        return Event(
            event_id=self.event_id,
            name=self.name,
            start_time=self.start_time,
            end_time=self.end_time,
            races=[Race(**r) for r in self.races or []],
        )

