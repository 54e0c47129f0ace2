"""Pytest configuration and fixtures for all tests."""

import asyncio
from typing import Any, Optional

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from race_results_platform.ingestion.client import TimingAPIClient
from race_results_platform.ingestion.config import RetryConfig, SyncConfig, TimingAPIConfig
from race_results_platform.pipeline.orchestrator import SyncOrchestrator
from race_results_platform.pipeline.storage_adapter import CacheStore


# ============================================================================
# Fake Timing API
# ============================================================================


class FakeTimingAPI:
    """In-process stand-in for the timing API, served through httpx.MockTransport.

    Every request is recorded. Result and bracket listings are paginated with
    the ``page`` and ``size``/``results_per_page`` query parameters like the
    real API.
    """

    def __init__(self):
        self.events: list[dict[str, Any]] = []
        self.races: dict[str, list[dict[str, Any]]] = {}
        self.results: dict[str, list[dict[str, Any]]] = {}
        self.brackets: dict[str, list[dict[str, Any]]] = {}
        self.bracket_results: dict[str, list[dict[str, Any]]] = {}
        self.entry_status: dict[str, str] = {}

        self.failures: dict[str, int] = {}  # path -> HTTP status to return
        self.token_status = 200
        self.expires_in: Optional[int] = 3600
        self.gate: Optional[asyncio.Event] = None  # blocks results requests while unset

        self.requests: list[httpx.Request] = []
        self.token_requests = 0
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def data_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path != "/oauth2/token"]

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            # Yield so concurrent callers interleave
            await asyncio.sleep(0)
            return await self._route(request)
        finally:
            self.in_flight -= 1

    async def _route(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        params = request.url.params

        if path == "/oauth2/token":
            self.token_requests += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            body = {"access_token": f"token-{self.token_requests}"}
            if self.expires_in is not None:
                body["expires_in"] = self.expires_in
            return httpx.Response(200, json=body)

        if path in self.failures:
            return httpx.Response(self.failures[path], json={"error": "failure"})

        parts = path.strip("/").split("/")
        page = int(params.get("page", 1))
        size = int(params.get("size") or params.get("results_per_page") or 50)

        if parts == ["api", "event"]:
            return httpx.Response(200, json={"event": self.events})

        if len(parts) == 4 and parts[:2] == ["api", "event"]:
            event_id, resource = parts[2], parts[3]
            if resource == "race":
                return httpx.Response(200, json={"event_race": self.races.get(event_id, [])})
            if resource == "results":
                if self.gate is not None:
                    await self.gate.wait()
                rows = self.results.get(event_id, [])
                return httpx.Response(200, json={"event_results": _page(rows, page, size)})
            if resource == "bracket":
                return httpx.Response(200, json={"event_bracket": self.brackets.get(event_id, [])})

        if len(parts) == 4 and parts[:2] == ["api", "bracket"] and parts[3] == "results":
            rows = self.bracket_results.get(parts[2], [])
            return httpx.Response(200, json={"bracket_results": _page(rows, page, size)})

        if len(parts) == 3 and parts[:2] == ["api", "entry"]:
            status = self.entry_status.get(parts[2])
            if status == "NOT_FOUND":
                return httpx.Response(404, json={"error": "not found"})
            entry = {"entry_id": parts[2]}
            if status:
                entry["entry_status"] = status
            return httpx.Response(200, json={"entry": entry})

        return httpx.Response(404, json={"error": f"no route for {path}"})


def _page(rows: list[dict[str, Any]], page: int, size: int) -> list[dict[str, Any]]:
    return rows[(page - 1) * size : page * size]


def result_row(entry_id: Optional[str], bib: str, race_id: Optional[str] = "R1", **extra) -> dict[str, Any]:
    """Raw overall-results row in the upstream field naming."""
    row = {
        "results_bib": bib,
        "results_first_name": f"First{bib}",
        "results_last_name": f"Last{bib}",
        "results_sex": "F",
        "results_age": "34",
        "results_time": "0:25:10",
        "results_gun_time": "0:25:30",
        "results_pace": "8:06",
        "results_rank": bib,
    }
    if entry_id is not None:
        row["results_entry_id"] = entry_id
    if race_id is not None:
        row["results_race_id"] = race_id
    row.update(extra)
    return row


def bracket_row(bracket_id: str, name: str, bracket_type: str = "", wants_leaderboard: str = "1", **extra):
    """Raw bracket definition row."""
    row = {
        "bracket_id": bracket_id,
        "bracket_name": name,
        "bracket_type": bracket_type,
        "bracket_wants_leaderboard": wants_leaderboard,
    }
    row.update(extra)
    return row


def ranked(entry_id: str, rank: int, bib: Optional[str] = None) -> dict[str, Any]:
    """Raw bracket-results row."""
    row = {"results_entry_id": entry_id, "results_rank": str(rank)}
    if bib is not None:
        row["results_bib"] = bib
    return row


# ============================================================================
# Config Fixtures
# ============================================================================


@pytest.fixture
def api_config() -> TimingAPIConfig:
    """Timing API config with credentials, small pages and no retry delay."""
    return TimingAPIConfig(
        base_url="https://timing.test/",
        client_id="client-123",
        client_secret="secret",
        username="timer",
        password="hunter2",
        results_page_size=50,
        retry=RetryConfig(max_attempts=2, initial_delay=0, max_delay=0),
    )


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig()


# ============================================================================
# Fake API / Client Fixtures
# ============================================================================


@pytest.fixture
def fake_api() -> FakeTimingAPI:
    return FakeTimingAPI()


@pytest.fixture
def client(api_config: TimingAPIConfig, fake_api: FakeTimingAPI) -> TimingAPIClient:
    """Timing API client wired to the fake API."""
    return TimingAPIClient(api_config, transport=fake_api.transport)


# ============================================================================
# Cache Fixtures
# ============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory SQLite engine shared across worker threads."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> CacheStore:
    """Cache store with tables created."""
    cache = CacheStore(engine)
    asyncio.run(cache.create_tables())
    return cache


@pytest.fixture
def orchestrator(client: TimingAPIClient, store: CacheStore, sync_config: SyncConfig) -> SyncOrchestrator:
    return SyncOrchestrator(client, store, sync_config)
