"""Typed errors raised by the results synchronization core.

Fatal errors abort the current sync pass only:
- AuthError: token could not be obtained or was rejected
- PageFetchError: a results/race page failed mid-pagination
- CacheWriteError: the batched upsert failed (previous cache contents untouched)

Non-fatal errors are recorded and skipped:
- BracketFetchError: one bracket's results could not be fetched
- CacheReadError: treated as a cache miss
"""


class SyncError(Exception):
    """Base class for all synchronization errors."""

    fatal: bool = True

    def __init__(self, message: str, *, event_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.event_id = event_id

    def __str__(self) -> str:
        if self.event_id is not None:
            return f"{self.message} (event {self.event_id})"
        return self.message


class AuthError(SyncError):
    """Credential or token failure. Never retried within a pass."""


class PageFetchError(SyncError):
    """A page of a paginated resource could not be fetched."""

    def __init__(
        self,
        message: str,
        *,
        resource: str,
        page: int | None = None,
        event_id: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, event_id=event_id)
        self.resource = resource
        self.page = page
        self.status_code = status_code


class BracketFetchError(SyncError):
    """Results for a single bracket could not be fetched."""

    fatal = False

    def __init__(self, message: str, *, bracket_id: str, event_id: str | None = None):
        super().__init__(message, event_id=event_id)
        self.bracket_id = bracket_id


class CacheReadError(SyncError):
    """Cached results could not be read. Callers fall through to a fresh fetch."""

    fatal = False


class CacheWriteError(SyncError):
    """Batched upsert failed and was rolled back."""
