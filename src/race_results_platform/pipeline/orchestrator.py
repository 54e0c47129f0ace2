"""Sync orchestrator for per-event results synchronization.

One pass runs strictly in sequence:
    LOADING_CACHE -> CACHE_HIT | CACHE_MISS -> DECIDING -> SYNCING -> MERGED -> IDLE

Supports:
- Cache-first reads (a cache hit makes no timing API calls)
- Forced refresh, empty cache and admin sync-version bumps as fetch triggers
- One in-flight pass per event; concurrent callers join it
- Event-selection epochs: a pass started before the latest ``select_event``
  discards its output instead of writing it
- Last-known-good results returned with ``source=stale`` on fatal errors
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from race_results_platform.errors import (
    CacheReadError,
    CacheWriteError,
    PageFetchError,
    SyncError,
)
from race_results_platform.ingestion.config import SyncConfig
from race_results_platform.models.domain import CanonicalResult, Event
from race_results_platform.pipeline.brackets import BracketResolver
from race_results_platform.pipeline.normalizer import normalize_with_report
from race_results_platform.pipeline.storage_adapter import CacheStore

if TYPE_CHECKING:
    from race_results_platform.ingestion.client import TimingAPIClient

logger = logging.getLogger(__name__)

FINISHED_STATUS = "FIN"


class SyncState(str, Enum):
    """Per-event sync pass state."""

    IDLE = "idle"
    LOADING_CACHE = "loading_cache"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    DECIDING = "deciding"
    SYNCING = "syncing"
    MERGED = "merged"


class SyncSource(str, Enum):
    """Where the results of a pass came from."""

    CACHE = "cache"
    FRESH = "fresh"
    STALE = "stale"  # last-known-good after a fatal error


@dataclass
class SyncResult:
    """Outcome of one sync pass for an event."""

    event_id: str
    results: list[CanonicalResult] = field(default_factory=list)
    source: Optional[SyncSource] = None
    error: Optional[SyncError] = None
    warnings: list[str] = field(default_factory=list)
    discarded: bool = False  # superseded by a newer event selection

    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.discarded

    @property
    def duration_seconds(self) -> float:
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return (datetime.now() - self.started_at).total_seconds()


class SyncOrchestrator:
    """Decides per event whether to serve cache or fetch fresh, and merges the result.

    Usage:
        >>> orchestrator = SyncOrchestrator(client, store)
        >>> orchestrator.select_event("12345")
        >>> result = await orchestrator.sync_event("12345")
        >>> result.source
        <SyncSource.CACHE: 'cache'>
    """

    def __init__(
        self,
        client: "TimingAPIClient",
        store: CacheStore,
        config: SyncConfig | None = None,
        resolver: BracketResolver | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            client: Timing API client
            store: Results cache
            config: Sync configuration
            resolver: Bracket resolver (built from the client if None)
        """
        self.client = client
        self.store = store
        self.config = config or SyncConfig()
        self.resolver = resolver or BracketResolver(client, self.config.bracket_concurrency)

        self.epoch = 0
        self.selected_event_id: str | None = None

        self._states: dict[str, SyncState] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._last_good: dict[str, list[CanonicalResult]] = {}
        self._observed_versions: dict[str, int] = {}

    # =========================================================================
    # STATE
    # =========================================================================

    def select_event(self, event_id: str) -> int:
        """Make ``event_id`` the selected event, superseding passes already running.

        Returns:
            The new selection epoch
        """
        self.epoch += 1
        self.selected_event_id = event_id
        logger.info(f"Selected event {event_id} (epoch {self.epoch})")
        return self.epoch

    def state(self, event_id: str) -> SyncState:
        return self._states.get(event_id, SyncState.IDLE)

    def current_results(self, event_id: str) -> list[CanonicalResult]:
        """Last-known-good results held in memory for an event."""
        return list(self._last_good.get(event_id, []))

    def is_syncing(self, event_id: str) -> bool:
        task = self._inflight.get(event_id)
        return task is not None and not task.done()

    def _set_state(self, event_id: str, state: SyncState) -> None:
        self._states[event_id] = state
        logger.debug(f"Event {event_id}: {state.value}")

    @staticmethod
    def should_fetch_fresh(
        force: bool, cache_empty: bool, sync_version: int, last_observed_version: int
    ) -> bool:
        """Fresh fetch when forced, when nothing is cached, or after an admin bump."""
        return force or cache_empty or sync_version > last_observed_version

    # =========================================================================
    # SYNC
    # =========================================================================

    async def sync_event(self, event_id: str, force: bool = False) -> SyncResult:
        """Run (or join) a sync pass for an event.

        Never raises ``SyncError``: failures are reported in ``SyncResult.error``
        alongside the last-known-good results.

        Args:
            event_id: Event identifier
            force: Skip the cache decision and fetch fresh

        Returns:
            SyncResult for the pass
        """
        task = self._inflight.get(event_id)
        if task is None or task.done():
            task = asyncio.create_task(self._run_pass(event_id, force, self.epoch))
            self._inflight[event_id] = task
            task.add_done_callback(lambda t, eid=event_id: self._clear_inflight(eid, t))
        else:
            logger.debug(f"Event {event_id}: joining in-flight sync pass")

        return await asyncio.shield(task)

    def _clear_inflight(self, event_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(event_id) is task:
            del self._inflight[event_id]

    def _superseded(self, epoch: int) -> bool:
        return epoch != self.epoch

    def _discard(self, result: SyncResult, stage: str) -> SyncResult:
        logger.info(
            f"Event {result.event_id}: pass superseded by epoch {self.epoch} {stage}, discarding"
        )
        result.discarded = True
        result.results = []
        return result

    async def _run_pass(self, event_id: str, force: bool, epoch: int) -> SyncResult:
        result = SyncResult(event_id=event_id)
        try:
            return await self._sync_stages(result, force, epoch)
        finally:
            self._set_state(event_id, SyncState.IDLE)
            result.finished_at = datetime.now()
            logger.info(
                f"Event {event_id}: pass finished source={result.source and result.source.value} "
                f"results={len(result.results)} error={result.error} "
                f"discarded={result.discarded} in {result.duration_seconds:.2f}s"
            )

    async def _sync_stages(self, result: SyncResult, force: bool, epoch: int) -> SyncResult:
        event_id = result.event_id

        # Load cache
        self._set_state(event_id, SyncState.LOADING_CACHE)
        try:
            cached = [record.result for record in await self.store.load_cached(event_id)]
        except CacheReadError as e:
            logger.warning(f"Event {event_id}: {e}; treating as cache miss")
            result.warnings.append(str(e))
            cached = []

        if self._superseded(epoch):
            return self._discard(result, "after cache read")

        self._set_state(event_id, SyncState.CACHE_HIT if cached else SyncState.CACHE_MISS)
        if cached:
            self._last_good[event_id] = cached

        # Decide
        self._set_state(event_id, SyncState.DECIDING)
        observed = self._observed_versions.get(event_id, 0)
        try:
            version = await self.store.get_sync_version(event_id)
        except CacheReadError as e:
            logger.warning(f"Event {event_id}: {e}; ignoring sync version")
            result.warnings.append(str(e))
            version = observed

        if self._superseded(epoch):
            return self._discard(result, "after sync version read")

        if not self.should_fetch_fresh(force, not cached, version, observed):
            result.results = cached
            result.source = SyncSource.CACHE
            return result

        # Fetch fresh
        self._set_state(event_id, SyncState.SYNCING)
        try:
            fresh = await self._fetch_fresh(event_id, result.warnings)
        except SyncError as e:
            return self._fail(result, e, cached)

        if self._superseded(epoch):
            return self._discard(result, "before upsert")

        # An empty upstream answer never replaces results already held
        previous = self.current_results(event_id) or cached
        if not fresh and previous:
            message = f"Fresh fetch for event {event_id} returned no results; keeping previous results"
            logger.warning(message)
            result.warnings.append(message)
            result.results = previous
            result.source = SyncSource.STALE
            return result

        try:
            await self.store.upsert(event_id, fresh)
        except CacheWriteError as e:
            return self._fail(result, e, cached)

        if self._superseded(epoch):
            return self._discard(result, "after upsert")

        # Merge
        self._set_state(event_id, SyncState.MERGED)
        self._last_good[event_id] = fresh
        self._observed_versions[event_id] = version

        result.results = fresh
        result.source = SyncSource.FRESH
        return result

    def _fail(
        self, result: SyncResult, error: SyncError, cached: list[CanonicalResult]
    ) -> SyncResult:
        logger.error(f"Event {result.event_id}: sync failed: {error}")
        result.error = error
        result.results = self.current_results(result.event_id) or cached
        result.source = SyncSource.STALE
        return result

    async def _fetch_fresh(self, event_id: str, warnings: list[str]) -> list[CanonicalResult]:
        """Fetch, rank and normalize an event's results.

        Raises:
            AuthError: Token failure at any step
            PageFetchError: Overall results could not be fetched
        """
        raw_rows = await self.client.fetch_all_results(event_id)

        try:
            races = await self.client.list_races(event_id)
        except PageFetchError as e:
            logger.warning(f"Event {event_id}: race list unavailable: {e}")
            warnings.append(str(e))
            races = []

        lookups = await self.resolver.resolve_rank_lookups(event_id)
        warnings.extend(str(e) for e in lookups.errors)

        report = normalize_with_report(raw_rows, lookups.gender, lookups.division)
        warnings.extend(report.warnings)
        results = report.results

        race_names = {race.race_id: race.name for race in races}
        for item in results:
            if not item.race_name and item.race_id in race_names:
                item.race_name = race_names[item.race_id]

        if self.config.exclude_non_finishers:
            results = await self._filter_finishers(event_id, results, warnings)

        return results

    async def _filter_finishers(
        self, event_id: str, results: list[CanonicalResult], warnings: list[str]
    ) -> list[CanonicalResult]:
        """Drop results whose official entry status is not FIN.

        Results without an entry id are kept. A status that cannot be fetched
        counts as FIN and is reported as a warning.
        """
        semaphore = asyncio.Semaphore(self.config.entry_status_concurrency)

        async def status_of(entry_id: str) -> str:
            async with semaphore:
                try:
                    return await self.client.get_entry_status(entry_id)
                except PageFetchError as e:
                    warnings.append(f"Entry {entry_id} status unavailable, assuming FIN: {e}")
                    return FINISHED_STATUS

        entry_ids = sorted({r.entry_id for r in results if r.entry_id})
        statuses = dict(zip(entry_ids, await asyncio.gather(*(status_of(e) for e in entry_ids))))

        kept = []
        for item in results:
            status = statuses.get(item.entry_id, FINISHED_STATUS) if item.entry_id else FINISHED_STATUS
            if status == FINISHED_STATUS:
                kept.append(item)
            else:
                logger.info(f"Excluding {item.full_name} (bib {item.bib}): status {status}")

        logger.info(f"Event {event_id}: {len(kept)} official finishers of {len(results)}")
        return kept

    # =========================================================================
    # ADMIN
    # =========================================================================

    async def request_refresh(self, event_id: str) -> int:
        """Bump the persisted sync version so the next pass fetches fresh.

        Raises:
            CacheWriteError: If the version could not be written
        """
        return await self.store.bump_sync_version(event_id)

    async def import_events(self, with_races: bool = True) -> list[Event]:
        """Import events (and optionally their races) from the timing API.

        A race list failure leaves that event without races.

        Raises:
            AuthError: Token failure
            PageFetchError: Event listing failed
            CacheWriteError: Events could not be stored
        """
        events = await self.client.list_events()

        if with_races:
            for event in events:
                try:
                    event.races = await self.client.list_races(event.event_id)
                except PageFetchError as e:
                    logger.warning(f"Event {event.event_id}: race list unavailable: {e}")

        await self.store.upsert_events(events)
        logger.info(f"Imported {len(events)} events")
        return events
