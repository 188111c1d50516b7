"""
Unit tests for the retrying fetcher.
"""

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from shared.errors import UpstreamError
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, calculate_delay
from shared.test_helpers import UpstreamStub, connect_error
from service_proxy.app.upstream import RetryingFetcher, UpstreamRequest
from service_proxy.app.upstream.fetcher import DEFAULT_RETRY_CONFIG


URL = "https://apis.roproxy.com/users/v1/users/1"


@pytest.fixture
def request_():
    return UpstreamRequest(resolved_url=URL, headers={"x-api-key": "k"})


def make_fetcher(stub: UpstreamStub, **kwargs) -> RetryingFetcher:
    config = RetryConfig(max_attempts=3, base_delay=0.0)
    return RetryingFetcher(stub.client(), config, **kwargs)


class TestRetryingFetcher:
    """Retry, rejection and failure behaviour."""

    @pytest.mark.asyncio
    async def test_eventually_succeeds_after_two_503(self, request_):
        stub = UpstreamStub().add(URL, 503, 503, {"id": 1})

        response = await make_fetcher(stub).fetch(request_, max_attempts=3)

        assert response.status_code == 200
        assert response.json() == {"id": 1}
        assert len(stub.calls) == 3

    @pytest.mark.asyncio
    async def test_three_503_fail_after_exactly_three_attempts(self, request_):
        stub = UpstreamStub().add(URL, 503)

        with pytest.raises(UpstreamError) as exc_info:
            await make_fetcher(stub).fetch(request_, max_attempts=3)

        assert len(stub.calls) == 3
        assert exc_info.value.upstream_status == 503
        assert exc_info.value.attempts == 3
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_client_errors_are_returned_without_retry(self, request_):
        stub = UpstreamStub().add(URL, 404, {"id": 1})

        response = await make_fetcher(stub).fetch(request_)

        assert response.status_code == 404
        assert len(stub.calls) == 1

    @pytest.mark.asyncio
    async def test_network_failures_are_retried(self, request_):
        stub = UpstreamStub().add(URL, connect_error(URL), httpx.ReadTimeout("timed out"), {"ok": True})

        response = await make_fetcher(stub).fetch(request_)

        assert response.json() == {"ok": True}
        assert len(stub.calls) == 3

    @pytest.mark.asyncio
    async def test_persistent_network_failure_carries_cause(self, request_):
        stub = UpstreamStub().add(URL, connect_error(URL))

        with pytest.raises(UpstreamError) as exc_info:
            await make_fetcher(stub).fetch(request_, max_attempts=2)

        assert len(stub.calls) == 2
        assert isinstance(exc_info.value.cause, httpx.ConnectError)
        assert exc_info.value.upstream_status is None
        assert "ConnectError" in exc_info.value.details["cause"]

    @pytest.mark.asyncio
    async def test_headers_are_forwarded(self, request_):
        stub = UpstreamStub().add(URL, {"ok": True})

        await make_fetcher(stub).fetch(request_)

        assert stub.calls[0].headers["x-api-key"] == "k"
        assert stub.calls[0].method == "GET"

    @pytest.mark.asyncio
    async def test_backoff_grows_linearly_between_attempts(self, request_):
        stub = UpstreamStub().add(URL, 500)
        fetcher = RetryingFetcher(stub.client(), DEFAULT_RETRY_CONFIG)

        with patch("shared.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(UpstreamError):
                await fetcher.fetch(request_)

        delays = [call.args[0] for call in mock_sleep.await_args_list]
        assert delays == pytest.approx([0.2, 0.4])

    @pytest.mark.asyncio
    async def test_records_outcome_metrics(self, request_):
        stub = UpstreamStub().add(URL, {"ok": True})
        metrics = MetricsCollector("proxy")

        await make_fetcher(stub, metrics=metrics).fetch(request_)

        value = metrics.registry.get_sample_value(
            "upstream_requests_total",
            {"host_family": "passthrough", "outcome": "success"},
        )
        assert value == 1.0
        timed = metrics.registry.get_sample_value(
            "upstream_request_duration_seconds_count",
            {"host_family": "passthrough"},
        )
        assert timed == 1.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        httpx.TooManyRedirects("Exceeded maximum allowed redirects.", request=httpx.Request("GET", URL)),
        httpx.DecodingError("Malformed gzip body", request=httpx.Request("GET", URL)),
    ])
    async def test_non_transport_errors_become_upstream_error_without_retry(self, request_, error):
        stub = UpstreamStub().add(URL, error)
        metrics = MetricsCollector("proxy")

        with pytest.raises(UpstreamError) as exc_info:
            await make_fetcher(stub, metrics=metrics).fetch(request_)

        assert len(stub.calls) == 1
        assert exc_info.value.cause is error
        assert exc_info.value.status_code == 502
        assert metrics.registry.get_sample_value(
            "upstream_requests_total",
            {"host_family": "passthrough", "outcome": "failure"},
        ) == 1.0


class TestCalculateDelay:
    """Linear backoff."""

    def test_linear(self):
        config = RetryConfig(base_delay=0.2)
        assert [calculate_delay(n, config) for n in (1, 2, 3)] == pytest.approx([0.2, 0.4, 0.6])

    def test_delay_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=1.5)
        assert [calculate_delay(n, config) for n in (1, 2, 3)] == pytest.approx([1.0, 1.5, 1.5])

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)
