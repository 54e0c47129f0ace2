"""Timing API client with token caching, pagination and retry support."""

import base64
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
    wait_incrementing,
)

from ..errors import AuthError, PageFetchError
from ..models.domain import Bracket, Event, Race
from ..pipeline.extractors import (
    BracketExtractor,
    EventExtractor,
    RaceExtractor,
    extract_rows,
    parse_int,
    parse_str,
)
from .config import BackoffStrategy, TimingAPIConfig
from .token import TokenManager

logger = logging.getLogger(__name__)

# Statuses worth retrying within a single request
RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})

EVENT_LIST_SIZE = 600
BRACKET_LIST_SIZE = 500


class _RetryableStatus(Exception):
    """Raised inside a retry attempt for a throttled or unavailable response."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


@dataclass
class Page:
    """One page of a paginated resource."""

    rows: list[dict[str, Any]]
    page: int
    page_size: int

    @property
    def is_last(self) -> bool:
        """A short (or empty) page terminates pagination."""
        return len(self.rows) < self.page_size


@dataclass
class ClientStats:
    """Request counters, useful for rate-limit accounting."""

    requests: int = 0
    token_requests: int = 0
    by_resource: dict[str, int] = field(default_factory=dict)


class TimingAPIClient:
    """Async client for the ChronoTrack-style timing API.

    Features:
    - Password-grant bearer token, cached and refreshed single-flight
    - One GET per page with typed Page results
    - Page loops that stop on the first short page
    - Retry with configurable backoff for transient failures

    Usage:
        >>> async with TimingAPIClient(config) as client:
        ...     rows = await client.fetch_all_results("12345")
    """

    def __init__(
        self,
        config: TimingAPIConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the timing API client.

        Args:
            config: Timing API configuration
            transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
            clock: Time source used for token expiry
        """
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self.tokens = TokenManager(
            self._request_token,
            safety_margin=config.token_safety_margin,
            default_ttl=config.default_token_ttl,
            clock=clock,
        )
        self.stats = ClientStats()

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.aclose()

    # =========================================================================
    # AUTHENTICATION
    # =========================================================================

    async def get_token(self) -> str:
        """Return a bearer token, refreshing when expired.

        Raises:
            AuthError: If credentials are missing or the token request fails
        """
        return await self.tokens.get_token()

    async def _request_token(self) -> tuple[str, int | None]:
        if not self.config.has_credentials:
            raise AuthError("Missing timing API credentials")

        basic = base64.b64encode(
            f"{self.config.client_id}:{self.config.client_secret}".encode()
        ).decode()

        self.stats.token_requests += 1
        try:
            response = await self._client.get(
                "/oauth2/token",
                headers={"Authorization": f"Basic {basic}"},
                params={
                    "grant_type": "password",
                    "username": self.config.username,
                    "password": self.config.password,
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Token request failed: {e}")
            raise AuthError(f"Token request failed: {e}") from e

        if response.is_error:
            logger.error(f"Token request rejected with HTTP {response.status_code}")
            raise AuthError(f"Token request rejected with HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise AuthError("Token response was not valid JSON") from e

        token = parse_str(data.get("access_token")) if isinstance(data, dict) else None
        if not token:
            raise AuthError("No access token returned")

        return token, parse_int(data.get("expires_in"))

    # =========================================================================
    # RESOURCES
    # =========================================================================

    async def list_events(self) -> list[Event]:
        """List all events visible to the client."""
        data = await self._get("/api/event", {"size": EVENT_LIST_SIZE}, resource="events")
        return EventExtractor.extract_events(data)

    async def list_races(self, event_id: str) -> list[Race]:
        """List the races of an event."""
        data = await self._get(
            f"/api/event/{event_id}/race", resource="races", event_id=event_id
        )
        return RaceExtractor.extract_races(data)

    async def list_results(
        self,
        event_id: str,
        page: int,
        page_size: int,
        modified_after: int | None = None,
    ) -> Page:
        """Fetch one page of overall results for an event.

        Args:
            event_id: Event identifier
            page: 1-based page number
            page_size: Rows requested per page
            modified_after: Only rows modified after this epoch second

        Returns:
            Page of raw result rows
        """
        params: dict[str, Any] = {
            "page": page,
            self.config.results_page_param: page_size,
        }
        if self.config.fetch_intervals:
            params["interval"] = "ALL"
        if modified_after is not None:
            params["modified_after"] = modified_after

        data = await self._get(
            f"/api/event/{event_id}/results",
            params,
            resource="results",
            page=page,
            event_id=event_id,
        )
        return Page(rows=extract_rows(data, "event_results"), page=page, page_size=page_size)

    async def list_brackets(self, event_id: str) -> list[Bracket]:
        """List award bracket definitions for an event."""
        data = await self._get(
            f"/api/event/{event_id}/bracket",
            {"size": BRACKET_LIST_SIZE},
            resource="brackets",
            event_id=event_id,
        )
        return BracketExtractor.extract_brackets(data)

    async def list_bracket_results(self, bracket_id: str, page: int, page_size: int) -> Page:
        """Fetch one page of a bracket's own ranked results."""
        data = await self._get(
            f"/api/bracket/{bracket_id}/results",
            {"page": page, "size": page_size},
            resource=f"bracket {bracket_id} results",
            page=page,
        )
        return Page(rows=extract_rows(data, "bracket_results"), page=page, page_size=page_size)

    async def get_entry_status(self, entry_id: str) -> str:
        """Return the official status of an entry (``FIN``, ``DNF``, ``DQ``, ...).

        A missing entry yields ``NOT_FOUND``; an entry without a status is ``FIN``.
        """
        try:
            data = await self._get(f"/api/entry/{entry_id}", resource="entry")
        except PageFetchError as e:
            if e.status_code == 404:
                return "NOT_FOUND"
            raise

        entry = data.get("entry") if isinstance(data, dict) else None
        if not isinstance(entry, dict):
            return "FIN"
        return (parse_str(entry.get("entry_status")) or "FIN").upper()

    # =========================================================================
    # PAGINATION
    # =========================================================================

    async def fetch_all_results(
        self, event_id: str, modified_after: int | None = None
    ) -> list[dict[str, Any]]:
        """Fetch every overall-results page for an event.

        Raises:
            PageFetchError: If any page fails (no partial page is dropped silently)
        """
        rows = await self.paginate(
            lambda page, size: self.list_results(event_id, page, size, modified_after),
            self.config.results_page_size,
            resource=f"event {event_id} results",
        )
        logger.info(f"Fetched {len(rows)} raw result rows for event {event_id}")
        return rows

    async def fetch_all_bracket_results(self, bracket_id: str) -> list[dict[str, Any]]:
        """Fetch every page of a bracket's results."""
        return await self.paginate(
            lambda page, size: self.list_bracket_results(bracket_id, page, size),
            self.config.bracket_page_size,
            resource=f"bracket {bracket_id} results",
        )

    async def paginate(
        self,
        fetch_page: Callable[[int, int], Awaitable[Page]],
        page_size: int,
        resource: str,
    ) -> list[dict[str, Any]]:
        """Loop pages while each page comes back full.

        Args:
            fetch_page: Coroutine function ``(page, page_size) -> Page``
            page_size: Rows requested per page
            resource: Label for logging

        Returns:
            All rows accumulated in page order

        Raises:
            PageFetchError: If page ``max_pages`` still comes back full
        """
        rows: list[dict[str, Any]] = []
        page = 1

        while True:
            result = await fetch_page(page, page_size)
            rows.extend(result.rows)
            logger.debug(f"{resource}: page {page} -> {len(result.rows)} rows (total {len(rows)})")

            if result.is_last:
                break
            if page >= self.config.max_pages:
                logger.error(
                    f"{resource}: page {page} is full at max_pages ({self.config.max_pages}), "
                    f"refusing a truncated result of {len(rows)} rows"
                )
                raise PageFetchError(
                    f"Pagination for {resource} exceeded max_pages ({self.config.max_pages})",
                    resource=resource,
                    page=page,
                )
            page += 1

        return rows

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def _get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        resource: str,
        page: int | None = None,
        event_id: str | None = None,
    ) -> Any:
        """Perform one authenticated GET and decode the JSON body.

        Raises:
            AuthError: If the token cannot be obtained or is rejected (401)
            PageFetchError: On transport failure, error status or invalid JSON
        """
        token = await self.tokens.get_token()
        query = {"client_id": self.config.client_id, **(params or {})}
        headers = {"Authorization": f"Bearer {token}"}

        self.stats.requests += 1
        self.stats.by_resource[resource] = self.stats.by_resource.get(resource, 0) + 1

        try:
            response = await self._send(path, query, headers)
        except _RetryableStatus as e:
            response = e.response
        except httpx.HTTPError as e:
            logger.error(f"Request for {resource} failed: {e}")
            raise PageFetchError(
                f"Request for {resource} failed: {e}",
                resource=resource,
                page=page,
                event_id=event_id,
            ) from e

        if response.status_code == 401:
            self.tokens.invalidate()
            raise AuthError(f"Timing API rejected the bearer token for {resource}", event_id=event_id)

        if response.is_error:
            raise PageFetchError(
                f"{resource} returned HTTP {response.status_code}",
                resource=resource,
                page=page,
                event_id=event_id,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise PageFetchError(
                f"{resource} returned invalid JSON",
                resource=resource,
                page=page,
                event_id=event_id,
                status_code=response.status_code,
            ) from e

    async def _send(
        self, path: str, params: dict[str, Any], headers: dict[str, str]
    ) -> httpx.Response:
        async for attempt in self._build_retrying():
            with attempt:
                response = await self._client.get(path, params=params, headers=headers)
                if response.status_code in RETRYABLE_STATUS_CODES:
                    raise _RetryableStatus(response)
        return response

    def _build_retrying(self) -> AsyncRetrying:
        """Build the retry controller based on configuration."""
        retry_config = self.config.retry

        if retry_config.backoff == BackoffStrategy.EXPONENTIAL:
            wait_strategy = wait_exponential(
                multiplier=retry_config.initial_delay,
                max=retry_config.max_delay,
            )
        elif retry_config.backoff == BackoffStrategy.LINEAR:
            wait_strategy = wait_incrementing(
                start=retry_config.initial_delay,
                increment=retry_config.initial_delay,
                max=retry_config.max_delay,
            )
        else:  # CONSTANT
            wait_strategy = wait_fixed(retry_config.initial_delay)

        return AsyncRetrying(
            retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
            stop=stop_after_attempt(retry_config.max_attempts),
            wait=wait_strategy,
            reraise=True,
        )
