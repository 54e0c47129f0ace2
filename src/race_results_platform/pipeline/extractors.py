"""Data extractors for timing API responses.

The upstream API has renamed fields across versions (``interval_name`` vs
``split_name``, ``results_sex`` vs ``results_gender``, ...). Every logical field
is declared once per record type as an ordered fallback chain; the first
present, non-empty value wins.

- EventExtractor: Events from the event listing
- RaceExtractor: Races for an event
- BracketExtractor: Award bracket definitions
- ResultExtractor: Identities, splits and interval grouping for result rows
"""

import math
from typing import Any, Iterable, Mapping

from race_results_platform.models.domain import (
    Bracket,
    Event,
    ParticipantIdentity,
    Race,
    Split,
)


class FieldChain:
    """Ordered fallback lookup for the logical fields of one record type."""

    def __init__(self, **fields: tuple[str, ...]):
        self.fields = fields

    def get(self, row: Mapping[str, Any], name: str, default: Any = None) -> Any:
        """Return the first present, non-empty value for a logical field.

        Raises:
            KeyError: If the logical field was never declared
        """
        for key in self.fields[name]:
            value = row.get(key)
            if _is_present(value):
                return value
        return default


EVENT_FIELDS = FieldChain(
    event_id=("event_id", "id"),
    name=("event_name", "name"),
    start_time=("event_start_time", "start_time"),
    end_time=("event_end_time", "end_time"),
)

RACE_FIELDS = FieldChain(
    race_id=("race_id", "id"),
    name=("race_name", "name"),
    distance=("race_course_distance", "race_distance", "distance"),
    distance_unit=("race_pref_distance_unit", "race_distance_unit", "distance_unit"),
    planned_start_time=("race_planned_start_time", "planned_start_time"),
    actual_start_time=("race_actual_start_time", "actual_start_time"),
)

BRACKET_FIELDS = FieldChain(
    bracket_id=("bracket_id", "id"),
    name=("bracket_name", "name"),
    type=("bracket_type", "type"),
    tag=("bracket_tag", "tag"),
    race_id=("race_id", "bracket_race_id"),
    wants_leaderboard=("bracket_wants_leaderboard", "wants_leaderboard"),
)

RESULT_FIELDS = FieldChain(
    entry_id=("results_entry_id", "entry_id"),
    bib=("results_bib", "bib"),
    race_id=("results_race_id", "race_id"),
    race_name=("results_race_name", "race_name"),
    first_name=("results_first_name", "first_name"),
    last_name=("results_last_name", "last_name"),
    gender=("results_sex", "results_gender", "sex", "gender"),
    age=("results_age", "age"),
    city=("results_city", "city"),
    state=("results_state", "results_state_code", "state"),
    country=("results_country", "results_country_code", "country"),
    hometown=("results_hometown", "hometown"),
    chip_time=("results_time", "results_chip_time", "chip_time"),
    clock_time=("results_gun_time", "results_clock_time", "clock_time"),
    pace=("results_pace", "pace"),
    rank=("results_rank", "rank", "place"),
    primary_bracket_name=("results_primary_bracket_name", "primary_bracket_name"),
    interval_full=("results_interval_full", "interval_full"),
    end_chip_time=("results_end_chip_time", "end_chip_time"),
    splits=("results_splits", "splits", "results_intervals", "intervals"),
)

SPLIT_FIELDS = FieldChain(
    name=("results_interval_name", "interval_name", "split_name", "name"),
    time=("results_time", "interval_time", "split_time", "time"),
    pace=("results_pace", "interval_pace", "split_pace", "pace"),
    place=("results_rank", "interval_rank", "split_rank", "rank", "place"),
)


class EventExtractor:
    """Extract events from the event listing response."""

    @staticmethod
    def extract_events(data: dict[str, Any]) -> list[Event]:
        """Extract events from an ``event`` listing.

        Args:
            data: Raw API response (``{"event": [...]}``)

        Returns:
            List of Event objects (rows without an id are skipped)
        """
        events = []

        for row in extract_rows(data, "event"):
            event_id = parse_str(EVENT_FIELDS.get(row, "event_id"))
            if event_id is None:
                continue
            events.append(
                Event(
                    event_id=event_id,
                    name=parse_str(EVENT_FIELDS.get(row, "name")) or f"Event {event_id}",
                    start_time=parse_epoch(EVENT_FIELDS.get(row, "start_time")),
                    end_time=parse_epoch(EVENT_FIELDS.get(row, "end_time")),
                )
            )

        return events


class RaceExtractor:
    """Extract races from the event race listing."""

    @staticmethod
    def extract_races(data: dict[str, Any]) -> list[Race]:
        races = []

        for row in extract_rows(data, "event_race", "race"):
            race_id = parse_str(RACE_FIELDS.get(row, "race_id"))
            if race_id is None:
                continue
            races.append(
                Race(
                    race_id=race_id,
                    name=parse_str(RACE_FIELDS.get(row, "name")) or f"Race {race_id}",
                    distance=parse_float(RACE_FIELDS.get(row, "distance")),
                    distance_unit=parse_str(RACE_FIELDS.get(row, "distance_unit")),
                    planned_start_time=parse_epoch(RACE_FIELDS.get(row, "planned_start_time")),
                    actual_start_time=parse_float(RACE_FIELDS.get(row, "actual_start_time")),
                )
            )

        return races


class BracketExtractor:
    """Extract award bracket definitions."""

    @staticmethod
    def extract_brackets(data: dict[str, Any]) -> list[Bracket]:
        brackets = []

        for row in extract_rows(data, "event_bracket", "bracket"):
            bracket_id = parse_str(BRACKET_FIELDS.get(row, "bracket_id"))
            if bracket_id is None:
                continue
            brackets.append(
                Bracket(
                    bracket_id=bracket_id,
                    name=parse_str(BRACKET_FIELDS.get(row, "name")) or "",
                    bracket_type=parse_str(BRACKET_FIELDS.get(row, "type")),
                    tag=parse_str(BRACKET_FIELDS.get(row, "tag")),
                    race_id=parse_str(BRACKET_FIELDS.get(row, "race_id")),
                    wants_leaderboard=parse_bool(BRACKET_FIELDS.get(row, "wants_leaderboard")),
                )
            )

        return brackets


class ResultExtractor:
    """Identity, split and interval helpers for raw result rows."""

    @staticmethod
    def identity(row: Mapping[str, Any], default_race_id: str | None = None) -> ParticipantIdentity:
        """Compute the participant identity of a result row.

        Args:
            row: Raw result row (overall or bracket results)
            default_race_id: Race id to use when the row carries none
                (bracket rows inherit the bracket's race)
        """
        return ParticipantIdentity(
            entry_id=parse_str(RESULT_FIELDS.get(row, "entry_id")),
            bib=parse_str(RESULT_FIELDS.get(row, "bib")),
            race_id=parse_str(RESULT_FIELDS.get(row, "race_id")) or default_race_id,
        )

    @staticmethod
    def is_full_course(row: Mapping[str, Any]) -> bool:
        """Rows without an interval flag are treated as full-course rows."""
        flag = RESULT_FIELDS.get(row, "interval_full")
        return flag is None or str(flag).strip() == "1"

    @staticmethod
    def extract_splits(row: Mapping[str, Any]) -> list[Split]:
        """Map nested split/interval entries of a result row."""
        entries = RESULT_FIELDS.get(row, "splits")
        if not isinstance(entries, list):
            return []

        splits = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            splits.append(
                Split(
                    name=parse_str(SPLIT_FIELDS.get(entry, "name")) or "Split",
                    time=parse_str(SPLIT_FIELDS.get(entry, "time")),
                    pace=parse_str(SPLIT_FIELDS.get(entry, "pace")),
                    place=parse_int(SPLIT_FIELDS.get(entry, "place")),
                )
            )
        return splits

    @staticmethod
    def group_interval_rows(rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """Fold flat per-interval rows into their participant's full-course row.

        With ``interval=ALL`` the results endpoint returns one row per interval.
        Partial-interval rows become the ``results_splits`` of the full-course row
        with the same identity, ordered by end chip time. Interval rows without a
        full-course row are dropped. Rows carrying no interval flag pass through.

        Args:
            rows: Raw result rows in arrival order

        Returns:
            Full-course rows in arrival order
        """
        full_rows: list[dict[str, Any]] = []
        intervals: dict[str, list[Mapping[str, Any]]] = {}

        for row in rows:
            if ResultExtractor.is_full_course(row):
                full_rows.append(dict(row))
                continue
            key = ResultExtractor.identity(row).key
            if key is not None:
                intervals.setdefault(key, []).append(row)

        if not intervals:
            return full_rows

        grouped = []
        for row in full_rows:
            key = ResultExtractor.identity(row).key
            partials = intervals.get(key) if key is not None else None
            if partials:
                row["results_splits"] = sorted(
                    partials,
                    key=lambda r: parse_float(RESULT_FIELDS.get(r, "end_chip_time")) or 0.0,
                )
            grouped.append(row)
        return grouped


# =========================================================================
# DEFENSIVE PARSERS
# =========================================================================


def parse_str(value: Any) -> str | None:
    """Strip a value to a string; empty or missing becomes None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_float(value: Any) -> float | None:
    """Parse a float; non-numeric or missing becomes None, never raises."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_int(value: Any) -> int | None:
    """Parse an integer; ``"12"``, ``12.0`` and ``"12.0"`` all give 12."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    number = parse_float(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


def parse_epoch(value: Any) -> int | None:
    """Parse epoch seconds, truncating fractional timestamps."""
    number = parse_float(value)
    return int(number) if number is not None else None


def parse_bool(value: Any) -> bool:
    """Upstream flags arrive as ``"1"``, ``1``, ``True`` or ``"true"``."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "y", "t")


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def extract_rows(data: Any, *keys: str) -> list[dict[str, Any]]:
    """Pull the row list out of a response envelope."""
    if isinstance(data, list):
        return [row for row in data if isinstance(row, dict)]
    if not isinstance(data, dict):
        return []
    for key in keys:
        rows = data.get(key)
        if isinstance(rows, list):
            return [row for row in rows if isinstance(row, dict)]
    return []
