"""Award bracket classification and rank lookup resolution.

Builds two lookup tables per event from the brackets' own results endpoints:
- gender: identity key -> gender place (later GENDER brackets win)
- division: identity key -> (bracket name, place), lowest rank across
  overlapping AGE brackets wins; OVERALL brackets fill in "Overall" only
  for identities no AGE bracket placed

Only brackets flagged ``wants_leaderboard`` take part. Brackets the classifier
cannot place are ignored.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from race_results_platform.errors import BracketFetchError, PageFetchError
from race_results_platform.models.domain import Bracket, BracketKind
from race_results_platform.pipeline.extractors import (
    RESULT_FIELDS,
    ResultExtractor,
    parse_int,
)

if TYPE_CHECKING:
    from race_results_platform.ingestion.client import TimingAPIClient

logger = logging.getLogger(__name__)

AGE_TYPE_MARKERS = frozenset({"AGE"})
GENDER_TYPE_MARKERS = frozenset({"SEX", "GENDER"})
DIVISION_TYPE_MARKERS = frozenset({"OTHER"})

OVERALL_DIVISION_NAME = "Overall"

# "30-34", "30 to 34", "40+", "70 & Over", "Under 19", "U19", "19 & Under"
AGE_RANGE_PATTERN = re.compile(
    r"\b\d{1,3}\s*(?:-|–|to)\s*\d{1,3}\b"
    r"|\b\d{1,3}\s*(?:\+|(?:&|and)\s*(?:over|up|older)\b)"
    r"|\b(?:under|u)\s*\d{1,3}\b"
    r"|\b\d{1,3}\s*(?:&|and)\s*under\b",
    re.IGNORECASE,
)

GENDER_PATTERN = re.compile(r"\b(?:male|female)\b", re.IGNORECASE)

OVERALL_PATTERN = re.compile(r"\boverall\b|\ball\s+participants\b", re.IGNORECASE)


def classify_bracket(bracket: Bracket) -> BracketKind | None:
    """Classify a bracket as AGE, GENDER or OVERALL from its type marker, name and tag.

    Checked in order:
    1. An age range in the name or tag is AGE ("Female 30-34" is a division).
    2. "Overall" / "All Participants" without a gender word is OVERALL,
       whatever the type marker says.
    3. An AGE type marker is AGE.
    4. A SEX/GENDER type marker, or Male / Female as a whole word, is GENDER
       ("Female" does not count as "male").
    5. An OTHER type marker is a division bracket (AGE).

    Anything else returns None and is ignored.
    """
    texts = [text for text in (bracket.name, bracket.tag) if text]
    bracket_type = (bracket.bracket_type or "").strip().upper()
    has_gender_word = any(GENDER_PATTERN.search(t) for t in texts)

    if any(AGE_RANGE_PATTERN.search(t) for t in texts):
        return BracketKind.AGE
    if not has_gender_word and any(OVERALL_PATTERN.search(t) for t in texts):
        return BracketKind.OVERALL
    if bracket_type in AGE_TYPE_MARKERS:
        return BracketKind.AGE
    if bracket_type in GENDER_TYPE_MARKERS or has_gender_word:
        return BracketKind.GENDER
    if bracket_type in DIVISION_TYPE_MARKERS:
        return BracketKind.AGE
    return None


@dataclass
class DivisionPlace:
    """Division placement and the bracket it came from."""

    name: str
    place: int


@dataclass
class RankLookups:
    """Per-event rank lookup tables keyed by identity key."""

    gender: dict[str, int] = field(default_factory=dict)
    division: dict[str, DivisionPlace] = field(default_factory=dict)
    errors: list[BracketFetchError] = field(default_factory=list)
    brackets_used: int = 0


class BracketResolver:
    """Resolve gender and division places for an event.

    Usage:
        >>> resolver = BracketResolver(client, concurrency=5)
        >>> lookups = await resolver.resolve_rank_lookups("12345")
        >>> lookups.gender["entry:998877"]
        3
    """

    def __init__(self, client: "TimingAPIClient", concurrency: int = 5):
        """Initialize the resolver.

        Args:
            client: Timing API client
            concurrency: Max bracket-result fetches in flight at once
        """
        self.client = client
        self.concurrency = concurrency

    async def resolve_rank_lookups(self, event_id: str) -> RankLookups:
        """Build the gender and division lookup tables for an event.

        A bracket whose results cannot be fetched is skipped and recorded in
        ``RankLookups.errors``; its members get no placement from it.

        Raises:
            AuthError: Authentication failures are never downgraded
        """
        lookups = RankLookups()

        try:
            brackets = await self.client.list_brackets(event_id)
        except PageFetchError as e:
            error = BracketFetchError(
                f"Could not list brackets: {e.message}", bracket_id="*", event_id=event_id
            )
            logger.warning(f"Event {event_id}: {error}; continuing without placements")
            lookups.errors.append(error)
            return lookups

        qualifying: list[tuple[Bracket, BracketKind]] = []
        for bracket in brackets:
            if not bracket.wants_leaderboard:
                continue
            kind = classify_bracket(bracket)
            if kind is None:
                logger.debug(f"Ignoring unclassified bracket {bracket.bracket_id} ({bracket.name!r})")
                continue
            qualifying.append((bracket, kind))

        logger.info(
            f"Event {event_id}: {len(brackets)} brackets, {len(qualifying)} qualifying "
            f"({sum(1 for _, k in qualifying if k is BracketKind.GENDER)} gender, "
            f"{sum(1 for _, k in qualifying if k is BracketKind.AGE)} age, "
            f"{sum(1 for _, k in qualifying if k is BracketKind.OVERALL)} overall)"
        )

        semaphore = asyncio.Semaphore(self.concurrency)
        fetched = await asyncio.gather(
            *(self._fetch_bracket(bracket, semaphore, event_id, lookups) for bracket, _ in qualifying)
        )

        # Merge in definition order so "last write wins" is deterministic
        overall: list[tuple[Bracket, list[dict[str, Any]]]] = []
        for (bracket, kind), rows in zip(qualifying, fetched):
            if rows is None:
                continue
            lookups.brackets_used += 1
            if kind is BracketKind.GENDER:
                self._apply_gender(lookups, bracket, rows)
            elif kind is BracketKind.OVERALL:
                overall.append((bracket, rows))
            else:
                self._apply_division(lookups, bracket, rows)

        # Overall places only fill gaps left once every AGE bracket is merged
        for bracket, rows in overall:
            self._apply_overall(lookups, bracket, rows)

        logger.info(
            f"Event {event_id}: gender places {len(lookups.gender)}, "
            f"division places {len(lookups.division)}, skipped brackets {len(lookups.errors)}"
        )
        return lookups

    async def _fetch_bracket(
        self,
        bracket: Bracket,
        semaphore: asyncio.Semaphore,
        event_id: str,
        lookups: RankLookups,
    ) -> list[dict[str, Any]] | None:
        async with semaphore:
            try:
                return await self.client.fetch_all_bracket_results(bracket.bracket_id)
            except PageFetchError as e:
                error = BracketFetchError(
                    f"Bracket {bracket.name!r} failed: {e.message}",
                    bracket_id=bracket.bracket_id,
                    event_id=event_id,
                )
                logger.warning(f"Skipping bracket {bracket.bracket_id}: {error}")
                lookups.errors.append(error)
                return None

    @staticmethod
    def _ranked_rows(bracket: Bracket, rows: list[dict[str, Any]]):
        for row in rows:
            if not ResultExtractor.is_full_course(row):
                continue
            rank = parse_int(RESULT_FIELDS.get(row, "rank"))
            if rank is None:
                continue
            identity = ResultExtractor.identity(row, default_race_id=bracket.race_id)
            if identity.lookup_keys:
                yield identity.lookup_keys, rank

    def _apply_gender(self, lookups: RankLookups, bracket: Bracket, rows: list[dict[str, Any]]) -> None:
        for keys, rank in self._ranked_rows(bracket, rows):
            for key in keys:
                lookups.gender[key] = rank

    def _apply_division(self, lookups: RankLookups, bracket: Bracket, rows: list[dict[str, Any]]) -> None:
        for keys, rank in self._ranked_rows(bracket, rows):
            for key in keys:
                current = lookups.division.get(key)
                if current is None or rank < current.place:
                    lookups.division[key] = DivisionPlace(name=bracket.name, place=rank)

    def _apply_overall(self, lookups: RankLookups, bracket: Bracket, rows: list[dict[str, Any]]) -> None:
        for keys, rank in self._ranked_rows(bracket, rows):
            for key in keys:
                lookups.division.setdefault(key, DivisionPlace(name=OVERALL_DIVISION_NAME, place=rank))
