"""
Paginated collection over one upstream resource.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Mapping, Optional, Set, Tuple, TYPE_CHECKING

from shared.errors import PartialAggregationFailure, UpstreamError, UpstreamRejection
from shared.logging import get_logger

from ..upstream.fetcher import RetryingFetcher
from ..upstream.resolver import RequestResolver

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_MAX_PAGES = 1000


@dataclass(frozen=True)
class ResourceDescriptor:
    """Where a paginated collection lives and how its pages are shaped."""

    name: str
    url: str
    params: Mapping[str, str] = field(default_factory=dict)
    cursor_param: str = "cursor"
    record_fields: Tuple[str, ...] = ("data",)
    cursor_fields: Tuple[str, ...] = ("nextPageCursor",)

    def params_for(self, cursor: Optional[str]) -> Dict[str, str]:
        params = dict(self.params)
        if cursor:
            params[self.cursor_param] = cursor
        return params


@dataclass
class CollectionResult:
    """Records gathered by one page walk."""

    source: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    pages: int = 0
    failure: Optional[PartialAggregationFailure] = None

    @property
    def complete(self) -> bool:
        return self.failure is None


class PageWalk:
    """Lazy, finite, non-restartable iterator over a resource's records.

    One page is fetched whenever the buffered records run out. The walk
    stops when the upstream stops returning a continuation token, when a
    fetch fails, when a token repeats, or when ``max_pages`` pages were read.
    The last three leave a ``PartialAggregationFailure`` in ``failure``.
    """

    def __init__(self, collector: "PaginatedCollector", descriptor: ResourceDescriptor):
        self._collector = collector
        self.descriptor = descriptor
        self.pages = 0
        self.records_seen = 0
        self.failure: Optional[PartialAggregationFailure] = None
        self._cursor: Optional[str] = None
        self._seen_cursors: Set[str] = set()
        self._buffer: Deque[Dict[str, Any]] = deque()
        self._exhausted = False

    def __aiter__(self) -> "PageWalk":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        while not self._buffer:
            if self._exhausted:
                raise StopAsyncIteration
            await self._read_page()
        self.records_seen += 1
        return self._buffer.popleft()

    async def _read_page(self) -> None:
        descriptor = self.descriptor
        if self.pages >= self._collector.max_pages:
            self._halt("page_limit")
            return

        request = self._collector.resolver.build(descriptor.url, descriptor.params_for(self._cursor))
        try:
            response = await self._collector.fetcher.fetch(request)
        except UpstreamError as exc:
            self._halt("upstream_error", exc)
            return

        if response.is_client_error:
            rejection = UpstreamRejection(response.status_code, request.resolved_url)
            self._halt("upstream_rejection", rejection)
            return

        try:
            payload = response.json()
        except ValueError as exc:
            self._halt("invalid_payload", exc)
            return
        if not isinstance(payload, dict):
            self._halt("invalid_payload")
            return

        self.pages += 1
        records = _first_list(payload, descriptor.record_fields)
        self._buffer.extend(record for record in records if isinstance(record, dict))

        next_cursor = _first_token(payload, descriptor.cursor_fields)
        if next_cursor is None:
            self._exhausted = True
        elif next_cursor in self._seen_cursors or next_cursor == self._cursor:
            self._halt("repeated_cursor")
        else:
            self._seen_cursors.add(next_cursor)
            self._cursor = next_cursor

    def _halt(self, reason: str, cause: Optional[BaseException] = None) -> None:
        self._exhausted = True
        self.failure = PartialAggregationFailure(
            self.descriptor.name,
            reason,
            records_collected=self.records_seen + len(self._buffer),
            cause=cause,
        )
        self._collector.report(self.failure, pages=self.pages)


def _first_list(payload: Mapping[str, Any], fields: Tuple[str, ...]) -> List[Any]:
    for name in fields:
        value = payload.get(name)
        if isinstance(value, list):
            return value
    return []


def _first_token(payload: Mapping[str, Any], fields: Tuple[str, ...]) -> Optional[str]:
    for name in fields:
        value = payload.get(name)
        if isinstance(value, str) and value:
            return value
    return None


class PaginatedCollector:
    """Drains paginated upstream collections through the retrying fetcher."""

    def __init__(
        self,
        fetcher: RetryingFetcher,
        resolver: RequestResolver,
        max_pages: int = DEFAULT_MAX_PAGES,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        self.fetcher = fetcher
        self.resolver = resolver
        self.max_pages = max_pages
        self.metrics = metrics
        self.logger = get_logger("proxy.collector")

    def walk(self, descriptor: ResourceDescriptor) -> PageWalk:
        return PageWalk(self, descriptor)

    async def collect_all(self, descriptor: ResourceDescriptor) -> CollectionResult:
        """Drain ``descriptor``; never raises for upstream failure."""
        walk = self.walk(descriptor)
        records = [record async for record in walk]
        return CollectionResult(
            source=descriptor.name,
            records=records,
            pages=walk.pages,
            failure=walk.failure,
        )

    def report(self, failure: PartialAggregationFailure, pages: int = 0) -> None:
        self.logger.warning(
            "Collection ended early",
            source=failure.source,
            reason=failure.reason,
            pages=pages,
            records_collected=failure.records_collected,
            cause=str(failure.cause) if failure.cause else None,
        )
        if self.metrics:
            self.metrics.increment_counter(
                "partial_aggregations_total",
                source=failure.source.split(":", 1)[0],
                reason=failure.reason,
            )
