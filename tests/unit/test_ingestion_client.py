"""Unit tests for TimingAPIClient."""

import asyncio

import httpx
import pytest

from conftest import FakeTimingAPI, bracket_row, result_row
from race_results_platform.errors import AuthError, PageFetchError
from race_results_platform.ingestion.client import Page, TimingAPIClient
from race_results_platform.ingestion.config import BackoffStrategy, RetryConfig, TimingAPIConfig


def rows(count: int) -> list[dict]:
    return [result_row(f"E{i}", str(i)) for i in range(1, count + 1)]


class TestPage:
    """Test Page termination rule."""

    def test_full_page_is_not_last(self):
        assert Page(rows=[{}] * 50, page=1, page_size=50).is_last is False

    def test_short_page_is_last(self):
        assert Page(rows=[{}] * 12, page=4, page_size=50).is_last is True

    def test_empty_page_is_last(self):
        assert Page(rows=[], page=1, page_size=50).is_last is True


class TestAuthentication:
    """Test token acquisition."""

    def test_token_request_uses_password_grant(self, client, fake_api):
        """Test the token request carries basic auth and password grant params."""
        token = asyncio.run(client.get_token())

        assert token == "token-1"
        request = fake_api.requests[0]
        assert request.url.path == "/oauth2/token"
        assert request.url.params["grant_type"] == "password"
        assert request.url.params["username"] == "timer"
        assert request.headers["Authorization"].startswith("Basic ")

    def test_token_rejected_raises_auth_error(self, client, fake_api):
        """Test a rejected token request is fatal."""
        fake_api.token_status = 400

        with pytest.raises(AuthError):
            asyncio.run(client.list_events())

        assert fake_api.data_requests == []

    def test_missing_credentials(self, fake_api):
        """Test a client without credentials never calls the API."""
        client = TimingAPIClient(TimingAPIConfig(base_url="https://timing.test"), transport=fake_api.transport)

        with pytest.raises(AuthError, match="Missing"):
            asyncio.run(client.get_token())

        assert fake_api.requests == []

    def test_concurrent_requests_share_one_token(self, client, fake_api):
        """Test parallel calls with an empty cache issue one token request."""
        fake_api.races = {"1": [], "2": [], "3": []}

        async def run():
            await asyncio.gather(*(client.list_races(e) for e in ("1", "2", "3")))

        asyncio.run(run())

        assert fake_api.token_requests == 1
        assert len(fake_api.data_requests) == 3

    def test_401_invalidates_token(self, client, fake_api):
        """Test a rejected bearer token is dropped and reported as AuthError."""
        fake_api.failures["/api/event"] = 401

        with pytest.raises(AuthError):
            asyncio.run(client.list_events())

        assert client.tokens.is_valid is False

    def test_bearer_and_client_id_sent(self, client, fake_api):
        """Test data requests carry the bearer token and client id."""
        asyncio.run(client.list_events())

        request = fake_api.data_requests[0]
        assert request.headers["Authorization"] == "Bearer token-1"
        assert request.url.params["client_id"] == "client-123"
        assert request.url.params["size"] == "600"


class TestPagination:
    """Test page loops."""

    def test_pages_until_short_page(self, client, fake_api):
        """Test 50, 50, 50, 12 rows yields 162 rows in 4 requests."""
        fake_api.results["E1"] = rows(162)

        result = asyncio.run(client.fetch_all_results("E1"))

        assert len(result) == 162
        assert fake_api.count("/api/event/E1/results") == 4
        pages = [int(r.url.params["page"]) for r in fake_api.data_requests]
        assert pages == [1, 2, 3, 4]

    def test_exact_multiple_needs_trailing_empty_page(self, client, fake_api):
        """Test 100 rows at size 50 stops on the empty third page."""
        fake_api.results["E1"] = rows(100)

        result = asyncio.run(client.fetch_all_results("E1"))

        assert len(result) == 100
        assert fake_api.count("/api/event/E1/results") == 3

    def test_results_request_params(self, client, fake_api):
        """Test size and interval parameters are sent."""
        fake_api.results["E1"] = rows(3)

        asyncio.run(client.fetch_all_results("E1", modified_after=1746860400))

        params = fake_api.data_requests[0].url.params
        assert params["size"] == "50"
        assert params["interval"] == "ALL"
        assert params["modified_after"] == "1746860400"

    def test_results_per_page_param(self, api_config, fake_api):
        """Test the alternate page-size parameter name."""
        config = api_config.model_copy(update={"results_page_param": "results_per_page", "fetch_intervals": False})
        client = TimingAPIClient(config, transport=fake_api.transport)
        fake_api.results["E1"] = rows(3)

        asyncio.run(client.fetch_all_results("E1"))

        params = fake_api.data_requests[0].url.params
        assert params["results_per_page"] == "50"
        assert "size" not in params
        assert "interval" not in params

    def test_full_page_at_max_pages_fails(self, api_config, fake_api):
        """Test a full last allowed page raises instead of returning a truncated list."""
        config = api_config.model_copy(update={"max_pages": 2, "results_page_size": 10})
        client = TimingAPIClient(config, transport=fake_api.transport)
        fake_api.results["E1"] = rows(100)

        with pytest.raises(PageFetchError) as exc_info:
            asyncio.run(client.fetch_all_results("E1"))

        assert exc_info.value.page == 2
        assert "max_pages" in str(exc_info.value)
        assert fake_api.count("/api/event/E1/results") == 2

    def test_short_page_at_max_pages_succeeds(self, api_config, fake_api):
        config = api_config.model_copy(update={"max_pages": 2, "results_page_size": 10})
        client = TimingAPIClient(config, transport=fake_api.transport)
        fake_api.results["E1"] = rows(15)

        assert len(asyncio.run(client.fetch_all_results("E1"))) == 15

    def test_default_config_fetches_large_events(self, fake_api):
        """Test default page settings return every row of a 2,600-row event."""
        client = TimingAPIClient(
            TimingAPIConfig(
                base_url="https://timing.test",
                client_id="c",
                client_secret="s",
                username="u",
                password="p",
            ),
            transport=fake_api.transport,
        )
        fake_api.results["E1"] = rows(2600)

        result = asyncio.run(client.fetch_all_results("E1"))

        assert len(result) == 2600
        assert fake_api.count("/api/event/E1/results") == 6
        assert fake_api.data_requests[0].url.params["size"] == "500"

    def test_bracket_results_page_size(self, client, fake_api):
        """Test bracket results use the bracket page size."""
        fake_api.bracket_results["B1"] = [{"results_entry_id": "E1", "results_rank": "1"}]

        result = asyncio.run(client.fetch_all_bracket_results("B1"))

        assert len(result) == 1
        assert fake_api.data_requests[0].url.params["size"] == "1000"

    def test_page_failure_mid_loop(self, client, fake_api):
        """Test a failing page raises PageFetchError instead of returning partial rows."""
        fake_api.results["E1"] = rows(120)

        async def run():
            original = client.list_results

            async def flaky(event_id, page, page_size, modified_after=None):
                if page == 2:
                    raise PageFetchError("boom", resource="results", page=2, event_id=event_id)
                return await original(event_id, page, page_size, modified_after)

            client.list_results = flaky
            return await client.fetch_all_results("E1")

        with pytest.raises(PageFetchError) as exc_info:
            asyncio.run(run())

        assert exc_info.value.page == 2


class TestRetries:
    """Test transient failure handling."""

    def test_retryable_status_exhausts_to_page_fetch_error(self, client, fake_api):
        """Test 503s are retried then reported."""
        fake_api.failures["/api/event/E1/results"] = 503

        with pytest.raises(PageFetchError) as exc_info:
            asyncio.run(client.fetch_all_results("E1"))

        assert exc_info.value.status_code == 503
        assert fake_api.count("/api/event/E1/results") == 2  # max_attempts

    def test_non_retryable_status_fails_fast(self, client, fake_api):
        """Test a 500 is not retried."""
        fake_api.failures["/api/event/E1/race"] = 500

        with pytest.raises(PageFetchError):
            asyncio.run(client.list_races("E1"))

        assert fake_api.count("/api/event/E1/race") == 1

    def test_transport_error_retried(self, api_config):
        """Test connection errors are retried then wrapped."""
        attempts = {"data": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/oauth2/token":
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            attempts["data"] += 1
            if attempts["data"] == 1:
                raise httpx.ConnectError("connection refused")
            return httpx.Response(200, json={"event": [{"event_id": "1", "event_name": "Recovered"}]})

        client = TimingAPIClient(api_config, transport=httpx.MockTransport(handler))

        events = asyncio.run(client.list_events())

        assert [e.name for e in events] == ["Recovered"]
        assert attempts["data"] == 2

    @pytest.mark.parametrize("backoff", list(BackoffStrategy))
    def test_build_retrying_for_each_strategy(self, api_config, backoff):
        """Test every backoff strategy builds a retry controller."""
        config = api_config.model_copy(update={"retry": RetryConfig(backoff=backoff, max_attempts=4)})
        client = TimingAPIClient(config)

        retrying = client._build_retrying()

        assert retrying.stop.max_attempt_number == 4

    def test_invalid_json(self, api_config):
        """Test a non-JSON body is a PageFetchError."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/oauth2/token":
                return httpx.Response(200, json={"access_token": "t"})
            return httpx.Response(200, content=b"<html>maintenance</html>")

        client = TimingAPIClient(api_config, transport=httpx.MockTransport(handler))

        with pytest.raises(PageFetchError, match="invalid JSON"):
            asyncio.run(client.list_events())


class TestResources:
    """Test typed resource calls."""

    def test_list_brackets(self, client, fake_api):
        fake_api.brackets["E1"] = [bracket_row("B1", "Female"), bracket_row("B2", "F 30-34", "AGE")]

        brackets = asyncio.run(client.list_brackets("E1"))

        assert [b.bracket_id for b in brackets] == ["B1", "B2"]
        assert fake_api.data_requests[0].url.params["size"] == "500"

    def test_get_entry_status(self, client, fake_api):
        """Test entry status mapping for finished, DNF, missing and unset."""
        fake_api.entry_status = {"E1": "fin", "E2": "DNF", "E3": "NOT_FOUND"}

        async def run():
            return [await client.get_entry_status(e) for e in ("E1", "E2", "E3", "E4")]

        assert asyncio.run(run()) == ["FIN", "DNF", "NOT_FOUND", "FIN"]

    def test_stats_counted(self, client, fake_api):
        """Test request counters by resource."""
        fake_api.results["E1"] = rows(3)

        async def run():
            await client.fetch_all_results("E1")
            await client.list_events()

        asyncio.run(run())

        assert client.stats.requests == 2
        assert client.stats.token_requests == 1
        assert client.stats.by_resource == {"results": 1, "events": 1}

    def test_context_manager_closes(self, api_config, fake_api):
        """Test the async context manager closes the HTTP client."""

        async def run():
            async with TimingAPIClient(api_config, transport=fake_api.transport) as client:
                await client.list_events()
            return client

        client = asyncio.run(run())

        assert client._client.is_closed


def test_fake_api_serves_pages():
    """Test the fake API pages like the real one."""
    fake = FakeTimingAPI()
    fake.results["E1"] = rows(3)

    async def run():
        async with httpx.AsyncClient(transport=fake.transport, base_url="https://timing.test") as http:
            response = await http.get("/api/event/E1/results", params={"page": 2, "size": 2})
            return response.json()

    assert len(asyncio.run(run())["event_results"]) == 1
