"""Normalize raw result rows into de-duplicated canonical results.

Each row is mapped through the result field chains, enriched with gender and
division places from the bracket lookups, and keyed by participant identity.
Later rows replace earlier ones with the same identity. Anything suspicious
(fallback keys without a race, bib collisions, rows with no identity) is
reported as a validation warning rather than fixed silently.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from race_results_platform.models.domain import CanonicalResult, ParticipantIdentity
from race_results_platform.pipeline.brackets import DivisionPlace
from race_results_platform.pipeline.extractors import (
    RESULT_FIELDS,
    ResultExtractor,
    parse_int,
    parse_str,
)

logger = logging.getLogger(__name__)


@dataclass
class NormalizedResults:
    """Canonical results of one pass plus the validation warnings raised."""

    results: list[CanonicalResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def normalize(
    raw_rows: Iterable[Mapping[str, Any]],
    gender_lookup: Mapping[str, int] | None = None,
    division_lookup: Mapping[str, DivisionPlace] | None = None,
) -> list[CanonicalResult]:
    """Normalize raw rows, discarding the validation report.

    Args:
        raw_rows: Raw overall-result rows in arrival order
        gender_lookup: identity key -> gender place
        division_lookup: identity key -> division name and place

    Returns:
        One CanonicalResult per identity, in first-seen order
    """
    return normalize_with_report(raw_rows, gender_lookup, division_lookup).results


def normalize_with_report(
    raw_rows: Iterable[Mapping[str, Any]],
    gender_lookup: Mapping[str, int] | None = None,
    division_lookup: Mapping[str, DivisionPlace] | None = None,
) -> NormalizedResults:
    """Normalize raw rows and collect validation warnings."""
    gender_lookup = gender_lookup or {}
    division_lookup = division_lookup or {}
    report = NormalizedResults()

    by_key: dict[str, CanonicalResult] = {}
    dropped = 0

    for row in ResultExtractor.group_interval_rows(raw_rows):
        identity = ResultExtractor.identity(row)
        key = identity.entry_key

        if key is None:
            dropped += 1
            continue

        if identity.is_collision_prone:
            report.warnings.append(
                f"Bib {identity.bib} has no entry id and no race id; key may collide across races"
            )

        result = map_row(row, identity, gender_lookup, division_lookup)

        if key in by_key:
            if identity.is_fallback:
                report.warnings.append(
                    f"Possible bib collision: {key} replaced an earlier row "
                    f"({by_key[key].full_name!r} -> {result.full_name!r})"
                )
            else:
                logger.debug(f"Duplicate row for {key}, keeping the later one")

        # Dict keeps the first-seen position while the value is replaced
        by_key[key] = result

    if dropped:
        report.warnings.append(f"Dropped {dropped} row(s) with neither entry id nor bib")

    report.results = list(by_key.values())

    for warning in report.warnings:
        logger.warning(warning)
    logger.info(f"Normalized {len(report.results)} results ({len(report.warnings)} warnings)")
    return report


def map_row(
    row: Mapping[str, Any],
    identity: ParticipantIdentity,
    gender_lookup: Mapping[str, int],
    division_lookup: Mapping[str, DivisionPlace],
) -> CanonicalResult:
    """Map one full-course row to a CanonicalResult."""
    city, state, country = parse_location(row)

    division = _first_match(division_lookup, identity.lookup_keys)
    if division is not None:
        division_name, division_place = division.name, division.place
    else:
        division_name = parse_str(RESULT_FIELDS.get(row, "primary_bracket_name"))
        division_place = None

    return CanonicalResult(
        entry_id=identity.entry_id,
        bib=identity.bib,
        race_id=identity.race_id,
        race_name=parse_str(RESULT_FIELDS.get(row, "race_name")),
        first_name=parse_str(RESULT_FIELDS.get(row, "first_name")) or "",
        last_name=parse_str(RESULT_FIELDS.get(row, "last_name")) or "",
        gender=parse_str(RESULT_FIELDS.get(row, "gender")),
        age=parse_int(RESULT_FIELDS.get(row, "age")),
        city=city,
        state=state,
        country=country,
        chip_time=parse_str(RESULT_FIELDS.get(row, "chip_time")),
        clock_time=parse_str(RESULT_FIELDS.get(row, "clock_time")),
        pace=parse_str(RESULT_FIELDS.get(row, "pace")),
        place=parse_int(RESULT_FIELDS.get(row, "rank")),
        gender_place=_first_match(gender_lookup, identity.lookup_keys),
        division_name=division_name,
        division_place=division_place,
        splits=ResultExtractor.extract_splits(row),
    )


def parse_location(row: Mapping[str, Any]) -> tuple[str | None, str | None, str | None]:
    """Resolve city, state and country.

    A ``"city, state, country"`` hometown overrides each separate field it
    provides; missing parts keep the separate value.
    """
    city = parse_str(RESULT_FIELDS.get(row, "city"))
    state = parse_str(RESULT_FIELDS.get(row, "state"))
    country = parse_str(RESULT_FIELDS.get(row, "country"))

    hometown = parse_str(RESULT_FIELDS.get(row, "hometown"))
    if hometown:
        parts = [parse_str(part) for part in hometown.split(",")]
        parts += [None] * (3 - len(parts))
        city = parts[0] or city
        state = parts[1] or state
        country = parts[2] or country

    return city, state, country


def unique_divisions(results: Iterable[CanonicalResult]) -> list[str]:
    """Sorted distinct division names across results."""
    return sorted({r.division_name for r in results if r.division_name})


def _first_match(lookup: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in lookup:
            return lookup[key]
    return None
