"""
Unit tests for paginated collection.
"""

import httpx
import pytest

from shared.errors import UpstreamError, UpstreamRejection
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from shared.test_helpers import UpstreamStub
from service_proxy.app.aggregation import PaginatedCollector, ResourceDescriptor
from service_proxy.app.upstream import RetryingFetcher


URL = "https://games.roblox.com/v2/users/5/games"


def make_collector(stub: UpstreamStub, resolver, **kwargs) -> PaginatedCollector:
    fetcher = RetryingFetcher(stub.client(), RetryConfig(max_attempts=2, base_delay=0.0))
    return PaginatedCollector(fetcher, resolver, **kwargs)


def page(records, cursor=None):
    return {"data": [{"id": record} for record in records], "nextPageCursor": cursor}


@pytest.fixture
def descriptor():
    return ResourceDescriptor(name="games:5", url=URL, params={"limit": "50"})


class TestPaginatedCollector:
    """Page walking, termination and partial results."""

    @pytest.mark.asyncio
    async def test_collects_every_page_in_order(self, resolver, descriptor):
        stub = UpstreamStub().add(URL, page([1, 2], "c1"), page([3], "c2"), page([4, 5]))

        result = await make_collector(stub, resolver).collect_all(descriptor)

        assert [record["id"] for record in result.records] == [1, 2, 3, 4, 5]
        assert result.pages == 3
        assert result.complete
        assert len(stub.calls) == 3

    @pytest.mark.asyncio
    async def test_threads_cursor_into_next_request(self, resolver, descriptor):
        stub = UpstreamStub().add(URL, page([1], "abc"), page([2]))

        await make_collector(stub, resolver).collect_all(descriptor)

        first, second = stub.calls
        assert "cursor" not in first.url.params
        assert first.url.params["limit"] == "50"
        assert second.url.params["cursor"] == "abc"
        assert second.url.params["limit"] == "50"

    @pytest.mark.asyncio
    async def test_custom_cursor_and_record_fields(self, resolver):
        url = "https://apis.roblox.com/cloud/v2/universes/9/game-passes"
        descriptor = ResourceDescriptor(
            name="game_passes:9",
            url=url,
            cursor_param="pageToken",
            record_fields=("gamePasses",),
            cursor_fields=("nextPageToken",),
        )
        stub = UpstreamStub().add(
            url,
            {"gamePasses": [{"id": "1"}], "nextPageToken": "t1"},
            {"gamePasses": [{"id": "2"}], "nextPageToken": ""},
        )

        result = await make_collector(stub, resolver).collect_all(descriptor)

        assert [record["id"] for record in result.records] == ["1", "2"]
        assert stub.calls[1].url.params["pageToken"] == "t1"
        assert result.complete

    @pytest.mark.asyncio
    async def test_failure_keeps_records_already_collected(self, resolver, descriptor):
        stub = UpstreamStub().add(URL, page([1, 2], "c1"), 503)

        result = await make_collector(stub, resolver).collect_all(descriptor)

        assert [record["id"] for record in result.records] == [1, 2]
        assert not result.complete
        assert result.failure.reason == "upstream_error"
        assert result.failure.records_collected == 2
        assert isinstance(result.failure.cause, UpstreamError)

    @pytest.mark.asyncio
    async def test_client_error_ends_walk_as_rejection(self, resolver, descriptor):
        stub = UpstreamStub().add(URL, 403)

        result = await make_collector(stub, resolver).collect_all(descriptor)

        assert result.records == []
        assert result.failure.reason == "upstream_rejection"
        assert isinstance(result.failure.cause, UpstreamRejection)
        assert len(stub.calls) == 1

    @pytest.mark.asyncio
    async def test_non_json_page_is_invalid_payload(self, resolver, descriptor):
        stub = UpstreamStub().add(URL, httpx.Response(200, text="<html>"))

        result = await make_collector(stub, resolver).collect_all(descriptor)

        assert result.failure.reason == "invalid_payload"

    @pytest.mark.asyncio
    async def test_page_limit_stops_walk(self, resolver, descriptor):
        stub = UpstreamStub().add(URL, page([1], "c1"), page([2], "c2"), page([3], "c3"))

        result = await make_collector(stub, resolver, max_pages=2).collect_all(descriptor)

        assert [record["id"] for record in result.records] == [1, 2]
        assert result.failure.reason == "page_limit"
        assert len(stub.calls) == 2

    @pytest.mark.asyncio
    async def test_repeated_cursor_stops_walk(self, resolver, descriptor):
        stub = UpstreamStub().add(URL, page([1], "same"), page([2], "same"))

        result = await make_collector(stub, resolver).collect_all(descriptor)

        assert [record["id"] for record in result.records] == [1, 2]
        assert result.failure.reason == "repeated_cursor"
        assert len(stub.calls) == 2

    @pytest.mark.asyncio
    async def test_walk_is_lazy(self, resolver, descriptor):
        stub = UpstreamStub().add(URL, page([1, 2], "c1"), page([3]))
        walk = make_collector(stub, resolver).walk(descriptor)

        first = await walk.__anext__()

        assert first == {"id": 1}
        assert len(stub.calls) == 1

    @pytest.mark.asyncio
    async def test_reports_partial_metric(self, resolver, descriptor):
        metrics = MetricsCollector("proxy")
        stub = UpstreamStub().add(URL, 503)

        await make_collector(stub, resolver, metrics=metrics).collect_all(descriptor)

        value = metrics.registry.get_sample_value(
            "partial_aggregations_total",
            {"source": "games", "reason": "upstream_error"},
        )
        assert value == 1.0

    def test_max_pages_must_be_positive(self, resolver):
        with pytest.raises(ValueError):
            make_collector(UpstreamStub(), resolver, max_pages=0)
