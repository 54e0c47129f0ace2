"""Bearer token cache for the timing API.

The token is shared by every sync pass for every event. ``TokenManager`` is its
single owner: callers ask for a token, and an expired token is refreshed at most
once concurrently. A caller that finds a refresh already pending awaits that
refresh instead of issuing a second token request.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

TokenFetcher = Callable[[], Awaitable[tuple[str, int | None]]]


class TokenManager:
    """Single-owner cache for the password-grant bearer token.

    Usage:
        >>> manager = TokenManager(client._request_token, safety_margin=60)
        >>> token = await manager.get_token()
    """

    def __init__(
        self,
        fetch_token: TokenFetcher,
        safety_margin: int = 60,
        default_ttl: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the token manager.

        Args:
            fetch_token: Coroutine function returning ``(access_token, expires_in)``
            safety_margin: Seconds subtracted from the provider TTL
            default_ttl: TTL used when the provider omits ``expires_in``
            clock: Time source (epoch seconds)
        """
        self._fetch_token = fetch_token
        self.safety_margin = safety_margin
        self.default_ttl = default_ttl
        self._clock = clock

        self._token: str | None = None
        self._expires_at: float = 0.0
        self._refresh_task: asyncio.Task | None = None
        self.refresh_count = 0

    @property
    def is_valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    @property
    def expires_at(self) -> float:
        return self._expires_at

    async def get_token(self) -> str:
        """Return a valid bearer token, refreshing transparently when expired."""
        if self.is_valid:
            return self._token
        return await self.refresh()

    async def refresh(self) -> str:
        """Fetch a new token, joining a refresh that is already in flight.

        Raises:
            AuthError: If the token request fails
        """
        task = self._refresh_task
        if task is None:
            task = asyncio.create_task(self._do_refresh())
            task.add_done_callback(self._clear_refresh_task)
            self._refresh_task = task

        # Shielded so one cancelled waiter does not cancel the shared refresh
        return await asyncio.shield(task)

    def _clear_refresh_task(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Token refresh failed: {task.exception()}")

    def invalidate(self) -> None:
        """Drop the cached token (e.g. after the API rejected it)."""
        self._token = None
        self._expires_at = 0.0

    async def _do_refresh(self) -> str:
        issued_at = self._clock()
        token, expires_in = await self._fetch_token()

        ttl = expires_in if expires_in and expires_in > 0 else self.default_ttl
        self._token = token
        self._expires_at = issued_at + max(ttl - self.safety_margin, 1)
        self.refresh_count += 1

        logger.info(f"Acquired timing API token (ttl={ttl}s, refresh #{self.refresh_count})")
        return token
