"""Unit tests for the bearer token cache."""

import asyncio

import pytest

from race_results_platform.errors import AuthError
from race_results_platform.ingestion.token import TokenManager


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingFetcher:
    """Token fetcher that counts calls and yields to the loop before answering."""

    def __init__(self, expires_in=3600, fail=False):
        self.calls = 0
        self.expires_in = expires_in
        self.fail = fail

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.fail:
            raise AuthError("Token request rejected with HTTP 400")
        return f"token-{self.calls}", self.expires_in


class TestTokenManager:
    """Test token caching and refresh."""

    def test_token_is_cached(self):
        """Test a valid token is reused without a new request."""
        fetcher = CountingFetcher()
        manager = TokenManager(fetcher, clock=FakeClock())

        async def run():
            return [await manager.get_token(), await manager.get_token()]

        assert asyncio.run(run()) == ["token-1", "token-1"]
        assert fetcher.calls == 1

    def test_expiry_uses_safety_margin(self):
        """Test expiry is issue time + TTL - safety margin."""
        clock = FakeClock()
        manager = TokenManager(CountingFetcher(expires_in=600), safety_margin=60, clock=clock)

        asyncio.run(manager.get_token())

        assert manager.expires_at == clock.now + 540

    def test_refresh_after_expiry(self):
        """Test an expired token is refreshed transparently."""
        clock = FakeClock()
        fetcher = CountingFetcher(expires_in=600)
        manager = TokenManager(fetcher, safety_margin=60, clock=clock)

        async def run():
            first = await manager.get_token()
            clock.now += 541
            second = await manager.get_token()
            return first, second

        assert asyncio.run(run()) == ("token-1", "token-2")
        assert fetcher.calls == 2

    def test_default_ttl_when_provider_omits_it(self):
        """Test the default TTL applies when expires_in is missing."""
        clock = FakeClock()
        manager = TokenManager(CountingFetcher(expires_in=None), safety_margin=60, default_ttl=3600, clock=clock)

        asyncio.run(manager.get_token())

        assert manager.expires_at == clock.now + 3540

    def test_concurrent_refresh_is_single_flight(self):
        """Test many concurrent callers share one token request."""
        fetcher = CountingFetcher()
        manager = TokenManager(fetcher, clock=FakeClock())

        async def run():
            return await asyncio.gather(*(manager.get_token() for _ in range(10)))

        tokens = asyncio.run(run())

        assert fetcher.calls == 1
        assert set(tokens) == {"token-1"}
        assert manager.refresh_count == 1

    def test_failed_refresh_propagates_to_all_waiters(self):
        """Test every waiter sees the AuthError and the next call retries."""
        fetcher = CountingFetcher(fail=True)
        manager = TokenManager(fetcher, clock=FakeClock())

        async def run():
            return await asyncio.gather(
                manager.get_token(), manager.get_token(), return_exceptions=True
            )

        outcomes = asyncio.run(run())

        assert all(isinstance(o, AuthError) for o in outcomes)
        assert fetcher.calls == 1

        fetcher.fail = False
        assert asyncio.run(manager.get_token()) == "token-2"

    def test_invalidate(self):
        """Test invalidate forces the next call to refresh."""
        fetcher = CountingFetcher()
        manager = TokenManager(fetcher, clock=FakeClock())

        asyncio.run(manager.get_token())
        manager.invalidate()

        assert manager.is_valid is False
        assert asyncio.run(manager.get_token()) == "token-2"

    def test_cancelled_waiter_does_not_cancel_refresh(self):
        """Test cancelling one waiter leaves the shared refresh running."""
        fetcher = CountingFetcher()
        manager = TokenManager(fetcher, clock=FakeClock())

        async def run():
            first = asyncio.create_task(manager.get_token())
            second = asyncio.create_task(manager.get_token())
            await asyncio.sleep(0)
            first.cancel()
            with pytest.raises(asyncio.CancelledError):
                await first
            return await second

        assert asyncio.run(run()) == "token-1"
        assert fetcher.calls == 1

    def test_refresh_completes_after_only_waiter_cancelled(self):
        """Test a refresh whose every waiter was cancelled is not reused after expiry."""
        clock = FakeClock()
        fetcher = CountingFetcher(expires_in=600)
        manager = TokenManager(fetcher, safety_margin=60, clock=clock)

        async def run():
            waiter = asyncio.create_task(manager.get_token())
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            # Let the shielded refresh finish on its own
            for _ in range(5):
                await asyncio.sleep(0)
            assert manager.is_valid
            clock.now += 541
            return await manager.get_token()

        assert asyncio.run(run()) == "token-2"
        assert fetcher.calls == 2
