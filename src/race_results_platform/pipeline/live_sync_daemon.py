"""Live Sync Daemon.

Long-running process that keeps one event's cached results fresh while the
event is live. Designed to run as a Kubernetes Deployment on race day.

Architecture:
1. Re-import the event from the timing API every N seconds (start/end may change)
2. Watch it with the live polling scheduler (30s in window, 60s on race day)
3. Each tick forces a sync pass that upserts into the results cache

Usage:
    python -m race_results_platform.pipeline.live_sync_daemon

Environment Variables:
    LIVE_EVENT_ID: Event to watch (required)
    EVENT_CHECK_INTERVAL_SECONDS: How often to re-import the event (default: 300)
    TIMING_API_*: Timing API settings (see PlatformConfig.from_env)
    SYNC_*: Sync settings
    DATABASE_URL or POSTGRES_HOST, POSTGRES_PORT, POSTGRES_DB, POSTGRES_USER, POSTGRES_PASSWORD
"""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime

from race_results_platform.database.config import DatabaseConfig
from race_results_platform.database.session import dispose_engines
from race_results_platform.errors import SyncError
from race_results_platform.ingestion.client import TimingAPIClient
from race_results_platform.ingestion.config import PlatformConfig
from race_results_platform.models.domain import Event
from race_results_platform.pipeline.live_poller import LivePollingScheduler
from race_results_platform.pipeline.orchestrator import SyncOrchestrator
from race_results_platform.pipeline.storage_adapter import CacheStore

logger = logging.getLogger(__name__)


class LiveSyncDaemon:
    """Daemon that keeps one event's results synced while it is live."""

    def __init__(
        self,
        event_id: str,
        platform_config: PlatformConfig | None = None,
        db_config: DatabaseConfig | None = None,
        event_check_interval: int = 300,
    ):
        """Initialize the daemon.

        Args:
            event_id: Event to watch
            platform_config: Timing API and sync settings (environment if None)
            db_config: Cache database settings (environment if None)
            event_check_interval: Seconds between event re-imports (default 300)
        """
        self.event_id = event_id
        self.platform_config = platform_config or PlatformConfig.from_env()
        self.db_config = db_config or DatabaseConfig.from_env()
        self.event_check_interval = event_check_interval

        self.client: TimingAPIClient | None = None
        self.scheduler: LivePollingScheduler | None = None

        # Shutdown flag
        self.running = True

        self.stats = {
            "event_checks": 0,
            "ticks": 0,
            "errors": 0,
            "started_at": datetime.now(),
        }

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown handlers."""
        def shutdown_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            self.running = False

        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)

    async def refresh_event(self, orchestrator: SyncOrchestrator) -> Event | None:
        """Re-import events and return the watched one (None if unknown)."""
        self.stats["event_checks"] += 1
        try:
            events = await orchestrator.import_events(with_races=False)
        except SyncError as e:
            logger.error(f"Event import failed: {e}")
            self.stats["errors"] += 1
            return await orchestrator.store.load_event(self.event_id)

        for event in events:
            if event.event_id == self.event_id:
                return event

        logger.warning(f"Event {self.event_id} not found in the timing API event list")
        return None

    async def run(self) -> None:
        """Main daemon loop."""
        logger.info(f"Starting Live Sync Daemon for event {self.event_id}")
        logger.info(f"  Event check interval: {self.event_check_interval}s")
        logger.info(f"  Database: {self.db_config!r}")

        self._setup_signal_handlers()

        self.client = TimingAPIClient(self.platform_config.api)
        store = CacheStore.from_config(self.db_config, self.platform_config.sync)
        await store.create_tables()

        orchestrator = SyncOrchestrator(self.client, store, self.platform_config.sync)
        self.scheduler = LivePollingScheduler(orchestrator)

        last_event_check = 0.0

        try:
            while self.running:
                now = datetime.now().timestamp()

                if now - last_event_check >= self.event_check_interval:
                    last_event_check = now
                    event = await self.refresh_event(orchestrator)
                    if event is not None and not self.scheduler.running:
                        state = await self.scheduler.watch(event)
                        logger.info(f"Event {self.event_id} live state: {state.value}")

                await asyncio.sleep(1)

        except asyncio.CancelledError:
            logger.info("Daemon cancelled")
        finally:
            await self._shutdown()

    async def _shutdown(self) -> None:
        """Clean shutdown."""
        logger.info("Shutting down Live Sync Daemon")

        if self.scheduler:
            self.stats["ticks"] = self.scheduler.stats.ticks
            self.stats["errors"] += self.scheduler.stats.errors
            await self.scheduler.stop()
        if self.client:
            await self.client.aclose()
        dispose_engines()

        logger.info("Statistics:")
        logger.info(f"  Event checks: {self.stats['event_checks']}")
        logger.info(f"  Sync ticks: {self.stats['ticks']}")
        logger.info(f"  Errors: {self.stats['errors']}")
        logger.info(f"  Uptime: {datetime.now() - self.stats['started_at']}")


def main():
    """Entry point for the daemon."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    event_id = os.environ.get("LIVE_EVENT_ID")
    if not event_id:
        logger.error("LIVE_EVENT_ID is required")
        sys.exit(2)

    daemon = LiveSyncDaemon(
        event_id=event_id,
        event_check_interval=int(os.environ.get("EVENT_CHECK_INTERVAL_SECONDS", "300")),
    )

    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.exception(f"Daemon crashed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
