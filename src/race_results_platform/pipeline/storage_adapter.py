"""Cache store adapter for the sync orchestrator.

Persists canonical results keyed by ``(event_id, entry_key)`` and the per-event
bookkeeping the orchestrator needs (last sync time, admin sync version).

Database work is synchronous SQLModel/SQLAlchemy run in a worker thread, so
every store call is an ``await`` point. Calls are serialized through one lock.

Usage:
    >>> from race_results_platform.database import DatabaseConfig
    >>> from race_results_platform.pipeline.storage_adapter import CacheStore
    >>>
    >>> store = CacheStore.from_config(DatabaseConfig(url="sqlite:///results.db"))
    >>> await store.create_tables()
    >>> await store.upsert("12345", results)
    >>> records = await store.load_cached("12345")
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, TypeVar

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel, select

from race_results_platform.database.config import DatabaseConfig
from race_results_platform.database.session import (
    get_engine,
    get_read_only_session,
    get_session,
)
from race_results_platform.errors import CacheReadError, CacheWriteError
from race_results_platform.ingestion.config import SyncConfig
from race_results_platform.models.cache import CachedResult, EventRecord
from race_results_platform.models.domain import CacheRecord, CanonicalResult, Event

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheStore:
    """Results cache on a relational database.

    Only ``upsert`` (and the explicit ``touch_last_synced``) move an event's
    ``last_synced_at``; a failed upsert rolls back the whole batch.
    """

    def __init__(self, engine, page_size: int = 1000, batch_size: int = 500):
        """Initialize the cache store.

        Args:
            engine: SQLAlchemy engine (PostgreSQL or SQLite)
            page_size: Rows per page when reading an event's cache
            batch_size: Rows per INSERT statement inside one upsert transaction

        Raises:
            ValueError: If the engine's dialect has no ON CONFLICT support here
        """
        dialect = engine.dialect.name
        if dialect not in _INSERT_BY_DIALECT:
            raise ValueError(f"Unsupported cache dialect: {dialect}")

        self.engine = engine
        self.page_size = page_size
        self.batch_size = batch_size
        self._insert = _INSERT_BY_DIALECT[dialect]
        self._lock = asyncio.Lock()

        self.stats = {
            "reads": 0,
            "upserts": 0,
            "rows_written": 0,
            "errors": 0,
        }

    @classmethod
    def from_config(
        cls,
        db_config: Optional[DatabaseConfig] = None,
        sync_config: Optional[SyncConfig] = None,
    ) -> "CacheStore":
        """Build a store on the cached engine for a database configuration."""
        sync_config = sync_config or SyncConfig()
        return cls(
            get_engine(db_config),
            page_size=sync_config.cache_page_size,
            batch_size=sync_config.upsert_batch_size,
        )

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            return await asyncio.to_thread(fn, *args)

    async def create_tables(self) -> None:
        """Create the cache tables if they do not exist."""
        await self._run(self._create_tables_sync)

    def _create_tables_sync(self) -> None:
        SQLModel.metadata.create_all(
            self.engine, tables=[CachedResult.__table__, EventRecord.__table__]
        )
        logger.info("Cache tables ready")

    # =========================================================================
    # RESULTS
    # =========================================================================

    async def load_cached(self, event_id: str) -> list[CacheRecord]:
        """Load every cached result of an event, ascending by entry key.

        Raises:
            CacheReadError: If the query fails
        """
        return await self._run(self._load_cached_sync, event_id)

    def _load_cached_sync(self, event_id: str) -> list[CacheRecord]:
        records: list[CacheRecord] = []
        offset = 0

        try:
            with get_read_only_session(self.engine) as session:
                while True:
                    statement = (
                        select(CachedResult)
                        .where(CachedResult.event_id == event_id)
                        .order_by(CachedResult.entry_key)
                        .offset(offset)
                        .limit(self.page_size)
                    )
                    page = session.exec(statement).all()
                    records.extend(row.to_record() for row in page)

                    if len(page) < self.page_size:
                        break
                    offset += self.page_size
        except SQLAlchemyError as e:
            self.stats["errors"] += 1
            logger.error(f"Cache read failed for event {event_id}: {e}")
            raise CacheReadError(f"Cache read failed: {e}", event_id=event_id) from e

        self.stats["reads"] += 1
        logger.debug(f"Loaded {len(records)} cached results for event {event_id}")
        return records

    async def upsert(
        self,
        event_id: str,
        results: Iterable[CanonicalResult],
        synced_at: Optional[datetime] = None,
    ) -> int:
        """Insert or update results for an event in one transaction.

        Rows are keyed by ``(event_id, entry_key)``; results without an entry
        id are stored under their synthetic bib/race key. On success the
        event's ``last_synced_at`` moves to ``synced_at``.

        Returns:
            Number of rows written

        Raises:
            CacheWriteError: If any batch fails (nothing is written)
        """
        return await self._run(self._upsert_sync, event_id, list(results), synced_at or utcnow())

    def _upsert_sync(
        self, event_id: str, results: list[CanonicalResult], synced_at: datetime
    ) -> int:
        rows = []
        for result in results:
            entry_key = result.identity.entry_key
            if entry_key is None:
                logger.warning(f"Skipping result without identity for event {event_id}")
                continue
            rows.append(CachedResult.row_values(event_id, entry_key, result, synced_at))

        table = CachedResult.__table__
        key_columns = {"event_id", "entry_key"}

        try:
            with get_session(self.engine) as session:
                for start in range(0, len(rows), self.batch_size):
                    batch = rows[start : start + self.batch_size]
                    statement = self._insert(table).values(batch)
                    statement = statement.on_conflict_do_update(
                        index_elements=["event_id", "entry_key"],
                        set_={
                            column.name: statement.excluded[column.name]
                            for column in table.columns
                            if column.name not in key_columns
                        },
                    )
                    session.execute(statement)
                self._touch_last_synced(session, event_id, synced_at)
        except SQLAlchemyError as e:
            self.stats["errors"] += 1
            logger.error(f"Cache upsert failed for event {event_id}, rolled back: {e}")
            raise CacheWriteError(f"Cache upsert failed: {e}", event_id=event_id) from e

        self.stats["upserts"] += 1
        self.stats["rows_written"] += len(rows)
        logger.info(f"Upserted {len(rows)} results for event {event_id}")
        return len(rows)

    # =========================================================================
    # EVENT BOOKKEEPING
    # =========================================================================

    async def touch_last_synced(self, event_id: str, synced_at: Optional[datetime] = None) -> None:
        """Record a successful sync time for an event."""
        await self._run(self._touch_last_synced_sync, event_id, synced_at or utcnow())

    def _touch_last_synced_sync(self, event_id: str, synced_at: datetime) -> None:
        try:
            with get_session(self.engine) as session:
                self._touch_last_synced(session, event_id, synced_at)
        except SQLAlchemyError as e:
            raise CacheWriteError(f"Could not record sync time: {e}", event_id=event_id) from e

    def _touch_last_synced(self, session, event_id: str, synced_at: datetime) -> None:
        statement = self._insert(EventRecord.__table__).values(
            event_id=event_id, name="", races=[], sync_version=0, last_synced_at=synced_at
        )
        statement = statement.on_conflict_do_update(
            index_elements=["event_id"],
            set_={"last_synced_at": statement.excluded.last_synced_at},
        )
        session.execute(statement)

    async def get_last_synced(self, event_id: str) -> Optional[datetime]:
        record = await self._run(self._get_event_record_sync, event_id)
        return record.last_synced_at if record else None

    async def get_sync_version(self, event_id: str) -> int:
        """Current admin sync version of an event (0 when never bumped)."""
        record = await self._run(self._get_event_record_sync, event_id)
        return record.sync_version if record else 0

    async def bump_sync_version(self, event_id: str) -> int:
        """Increment an event's sync version, forcing the next pass to fetch fresh.

        Returns:
            The new sync version
        """
        return await self._run(self._bump_sync_version_sync, event_id)

    def _bump_sync_version_sync(self, event_id: str) -> int:
        try:
            with get_session(self.engine) as session:
                statement = self._insert(EventRecord.__table__).values(
                    event_id=event_id, name="", races=[], sync_version=1
                )
                statement = statement.on_conflict_do_update(
                    index_elements=["event_id"],
                    set_={"sync_version": EventRecord.__table__.c.sync_version + 1},
                )
                session.execute(statement)
                version = session.exec(
                    select(EventRecord.sync_version).where(EventRecord.event_id == event_id)
                ).one()
        except SQLAlchemyError as e:
            raise CacheWriteError(f"Could not bump sync version: {e}", event_id=event_id) from e

        logger.info(f"Event {event_id} sync version -> {version}")
        return version

    def _get_event_record_sync(self, event_id: str) -> Optional[EventRecord]:
        try:
            with get_read_only_session(self.engine) as session:
                record = session.get(EventRecord, event_id)
                if record is not None:
                    session.expunge(record)
                return record
        except SQLAlchemyError as e:
            raise CacheReadError(f"Event lookup failed: {e}", event_id=event_id) from e

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def upsert_events(self, events: Iterable[Event]) -> int:
        """Insert or update imported events, preserving sync bookkeeping."""
        return await self._run(self._upsert_events_sync, list(events))

    def _upsert_events_sync(self, events: list[Event]) -> int:
        if not events:
            return 0

        imported_at = utcnow()
        table = EventRecord.__table__
        rows = [
            {
                "event_id": event.event_id,
                "name": event.name,
                "start_time": event.start_time,
                "end_time": event.end_time,
                "races": [race.to_dict() for race in event.races],
                "sync_version": 0,
                "imported_at": imported_at,
            }
            for event in events
        ]

        try:
            with get_session(self.engine) as session:
                statement = self._insert(table).values(rows)
                statement = statement.on_conflict_do_update(
                    index_elements=["event_id"],
                    set_={
                        name: statement.excluded[name]
                        for name in ("name", "start_time", "end_time", "races", "imported_at")
                    },
                )
                session.execute(statement)
        except SQLAlchemyError as e:
            raise CacheWriteError(f"Event import failed: {e}") from e

        logger.info(f"Stored {len(rows)} events")
        return len(rows)

    async def load_event(self, event_id: str) -> Optional[Event]:
        record = await self._run(self._get_event_record_sync, event_id)
        return record.to_event() if record else None

    async def list_events(self) -> list[Event]:
        """Imported events, most recent start first."""
        return await self._run(self._list_events_sync)

    def _list_events_sync(self) -> list[Event]:
        try:
            with get_read_only_session(self.engine) as session:
                statement = select(EventRecord).order_by(
                    EventRecord.start_time.desc(), EventRecord.event_id
                )
                return [record.to_event() for record in session.exec(statement).all()]
        except SQLAlchemyError as e:
            raise CacheReadError(f"Event listing failed: {e}") from e
