"""Live results polling for the selected event.

An event is live when:
- ACTIVE_WINDOW: start and end are known and now lies between them (poll every 30s)
- RACE_DAY_FALLBACK: the end is unknown and today is the start's calendar day
  (poll every 60s)
- NOT_LIVE: otherwise (no polling)

Each tick forces a fresh sync pass and re-classifies the event, so polling
stops by itself once the event leaves its live window.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from enum import Enum
from typing import Optional

from race_results_platform.ingestion.config import SyncConfig
from race_results_platform.models.domain import Event
from race_results_platform.pipeline.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class LiveState(str, Enum):
    """Live classification of an event."""

    ACTIVE_WINDOW = "active_window"
    RACE_DAY_FALLBACK = "race_day_fallback"
    NOT_LIVE = "not_live"

    @property
    def is_live(self) -> bool:
        return self is not LiveState.NOT_LIVE


def is_live(event: Event, now: Optional[float] = None, tz: Optional[tzinfo] = None) -> LiveState:
    """Classify an event as live or not.

    Args:
        event: Event with epoch-second start and optional end
        now: Current epoch seconds (defaults to time.time())
        tz: Timezone for the race-day comparison (defaults to local time)

    Returns:
        LiveState
    """
    if now is None:
        now = time.time()

    if event.start_time is None:
        return LiveState.NOT_LIVE

    if event.end_time is not None:
        if event.start_time <= now <= event.end_time:
            return LiveState.ACTIVE_WINDOW
        return LiveState.NOT_LIVE

    start_day = datetime.fromtimestamp(event.start_time, tz).date()
    today = datetime.fromtimestamp(now, tz).date()
    if start_day == today:
        return LiveState.RACE_DAY_FALLBACK
    return LiveState.NOT_LIVE


@dataclass
class PollerStats:
    """Counters for one watched event."""

    ticks: int = 0
    errors: int = 0
    started_at: datetime = field(default_factory=datetime.now)


class LivePollingScheduler:
    """Runs a forced sync for the watched event on a live-window timer.

    Usage:
        >>> async with LivePollingScheduler(orchestrator) as scheduler:
        ...     state = await scheduler.watch(event)
        ...     await scheduler.wait()
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        config: SyncConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        tz: Optional[tzinfo] = None,
    ):
        """Initialize the scheduler.

        Args:
            orchestrator: Sync orchestrator driving each tick
            config: Sync configuration (poll intervals, disabled events)
            sleep: Awaitable sleep (tests pass a fast fake)
            clock: Time source in epoch seconds
            tz: Timezone for race-day classification (local if None)
        """
        self.orchestrator = orchestrator
        self.config = config or orchestrator.config
        self._sleep = sleep
        self._clock = clock
        self.tz = tz

        self.event: Event | None = None
        self.stats = PollerStats()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def interval_for(self, state: LiveState) -> float | None:
        """Polling interval in seconds, None when not live."""
        if state is LiveState.ACTIVE_WINDOW:
            return self.config.active_poll_interval
        if state is LiveState.RACE_DAY_FALLBACK:
            return self.config.race_day_poll_interval
        return None

    def classify(self, event: Event) -> LiveState:
        return is_live(event, self._clock(), self.tz)

    async def watch(self, event: Event) -> LiveState:
        """Watch an event, replacing any event watched before.

        Selects the event on the orchestrator and, if it is live and auto-fetch
        is enabled for it, starts the polling timer.

        Returns:
            The event's live state at the time of the call
        """
        await self.stop()

        self.event = event
        self.stats = PollerStats()
        self.orchestrator.select_event(event.event_id)

        state = self.classify(event)
        if not state.is_live:
            logger.info(f"Event {event.event_id} is not live, no polling")
            return state

        if not self.config.auto_fetch_enabled(event.event_id):
            logger.info(f"Auto-fetch disabled for event {event.event_id}, no polling")
            return state

        logger.info(
            f"Polling event {event.event_id} ({state.value}) every {self.interval_for(state)}s"
        )
        self._task = asyncio.create_task(self._poll_loop(event))
        return state

    async def wait(self) -> None:
        """Wait until polling stops on its own."""
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        """Cancel the polling timer. A cancelled timer never fires again."""
        task, self._task = self._task, None
        if task is None or task.done():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("Polling timer cancelled")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def _poll_loop(self, event: Event) -> None:
        while True:
            interval = self.interval_for(self.classify(event))
            if interval is None:
                break

            await self._sleep(interval)

            state = self.classify(event)
            if not state.is_live:
                break

            try:
                result = await self.orchestrator.sync_event(event.event_id, force=True)
            except Exception as e:
                self.stats.ticks += 1
                self.stats.errors += 1
                logger.exception(f"Live sync for event {event.event_id} crashed: {e}")
                continue

            self.stats.ticks += 1
            if result.error is not None:
                self.stats.errors += 1
                logger.warning(f"Live sync for event {event.event_id} failed: {result.error}")

        logger.info(
            f"Event {event.event_id} left its live window after {self.stats.ticks} ticks, "
            f"polling stopped"
        )
