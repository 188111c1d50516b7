"""
Upstream item proxy service.
"""

import json
from typing import List, Optional

import httpx
from fastapi import Query, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import InvalidRequestError, UpstreamRejection
from shared.logging import set_subject_context
from shared.retry import RetryConfig

from service_proxy.app.aggregation import ItemAggregator, PaginatedCollector
from service_proxy.app.caching import CacheEntry, RequestCoalescer, TTLLRUCache
from service_proxy.app.upstream import (
    PayloadKind,
    RequestResolver,
    RetryingFetcher,
    UpstreamHosts,
    UpstreamRequest,
)


SERVICE_NAME = "proxy"
DEFAULT_PORT = 8000
JSON_CONTENT_TYPE = "application/json; charset=utf-8"
PARTIAL_HEADER = "x-partial-result"


def is_binary_content(content_type: str, expected: PayloadKind) -> bool:
    """Decide how to carry a body; the upstream's Content-Type wins when present."""
    lowered = content_type.lower()
    if not lowered:
        return expected is PayloadKind.BINARY
    if "json" in lowered:
        return False
    return "image" in lowered or "octet-stream" in lowered


class ProxyService(BaseService):
    """Proxy service implementation.

    The cache, coalescer and HTTP client are created once per service
    instance and live as long as the process serving it.
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        cache: Optional[TTLLRUCache] = None,
    ):
        super().__init__(SERVICE_NAME, DEFAULT_PORT, config or get_config(SERVICE_NAME, DEFAULT_PORT))

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=self.config.request_timeout_seconds,
            follow_redirects=True,
        )

        self.hosts = UpstreamHosts.from_config(self.config)
        self.resolver = RequestResolver(self.hosts, api_key=self.config.api_key)
        self.fetcher = RetryingFetcher(
            self.client,
            RetryConfig(
                max_attempts=self.config.retry_max_attempts,
                base_delay=self.config.retry_base_delay_seconds,
                max_delay=self.config.retry_max_delay_seconds,
            ),
            metrics=self.metrics,
        )
        self.cache = cache or TTLLRUCache(
            max_entries=self.config.cache_max_entries,
            default_ttl=self.config.cache_json_ttl_seconds,
            name="proxy",
            metrics=self.metrics,
        )
        self.coalescer = RequestCoalescer()
        self.collector = PaginatedCollector(
            self.fetcher,
            self.resolver,
            max_pages=self.config.max_pages,
            metrics=self.metrics,
        )
        self.aggregator = ItemAggregator(
            self.fetcher,
            self.collector,
            self.resolver,
            self.hosts,
            concurrency=self.config.aggregation_concurrency,
            metrics=self.metrics,
        )

        @self.app.on_event("shutdown")
        async def _shutdown():
            if self._owns_client:
                await self.client.aclose()

        self._setup_proxy_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.proxy_service = self

    def _setup_proxy_routes(self):
        """Set up passthrough, single-resource and aggregate routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": self.service_name,
                "message": "Upstream item proxy",
                "version": "1.0.0",
            }

        @self.app.get("/api/fetch")
        async def fetch_passthrough(
            url: Optional[List[str]] = Query(None),
            mode: Optional[str] = Query(None),
        ):
            """Forward one path to the passthrough (or direct) upstream."""
            raw_url = "".join(url or [])
            if not raw_url:
                raise InvalidRequestError("Missing ?url=")
            request = self.resolver.resolve(raw_url, mode)
            return await self.proxy(request)

        @self.app.get("/api/avatar")
        async def avatar_endpoint(endpoint: Optional[str] = Query(None)):
            """Forward an arbitrary path to the authenticated host."""
            if not endpoint:
                raise InvalidRequestError("Missing endpoint parameter")
            return await self.proxy(self.resolver.resolve(endpoint, "direct"))

        @self.app.get("/api/gamepasses")
        async def creator_game_passes(universe_id: Optional[str] = Query(None, alias="universeId")):
            """Game passes of one universe as listed for its creator."""
            universe_id = _require_numeric(universe_id, "universeId")
            return await self.proxy(self.resolver.build(
                f"{self.hosts.direct}game-passes/v1/universes/{universe_id}/game-passes/creator"
            ))

        @self.app.get("/games/{user_id}")
        async def user_games(user_id: str):
            user_id = _require_numeric(user_id, "userId")
            return await self.proxy(self.resolver.build(
                f"{self.hosts.games}v2/users/{user_id}/games",
                {"accessFilter": "Public", "sortOrder": "Asc", "limit": "50"},
            ))

        @self.app.get("/gamepasses/{universe_id}")
        async def universe_game_passes(universe_id: str):
            universe_id = _require_numeric(universe_id, "universeId")
            return await self.proxy(self.resolver.build(
                f"{self.hosts.direct}cloud/v2/universes/{universe_id}/game-passes",
                {"maxPageSize": "100"},
            ))

        @self.app.get("/avatar/{user_id}")
        async def user_outfits(user_id: str):
            user_id = _require_numeric(user_id, "userId")
            return await self.proxy(self.resolver.build(f"{self.hosts.avatar}v1/users/{user_id}/outfits"))

        @self.app.get("/aggregate/{user_id}")
        async def aggregate_items(user_id: str):
            """All purchasable/worn items of a user, merged by item id."""
            user_id = _require_numeric(user_id, "userId")
            set_subject_context(user_id)
            return await self.aggregate(user_id)

        @self.app.get("/api/v1/cache/stats")
        async def cache_stats():
            return {
                "cache": self.cache.stats(),
                "inflight": self.coalescer.inflight(),
            }

    async def proxy(self, request: UpstreamRequest) -> Response:
        """Cache-aside forward of one upstream request."""
        key = request.cache_key
        cached = self.cache.get(key)
        if cached is not None:
            return self._entry_response(cached, "HIT")

        entry = await self.coalescer.run(key, lambda: self._fetch_entry(request))
        return self._entry_response(entry, "MISS")

    async def _fetch_entry(self, request: UpstreamRequest) -> CacheEntry:
        response = await self.fetcher.fetch(request)
        if response.is_client_error:
            raise UpstreamRejection(response.status_code, request.resolved_url, response.text)

        content_type = response.headers.get("content-type", "")
        binary = is_binary_content(content_type, request.expected_payload_kind)
        ttl = self.config.cache_binary_ttl_seconds if binary else self.config.cache_json_ttl_seconds
        entry = self.cache.make_entry(
            request.cache_key,
            response.content if binary else response.text,
            content_type=content_type or ("application/octet-stream" if binary else JSON_CONTENT_TYPE),
            is_binary=binary,
            ttl=ttl,
            status_code=response.status_code,
        )
        if response.is_success:
            self.cache.set(entry.key, entry)
        return entry

    async def aggregate(self, user_id: str) -> Response:
        """Cache-aside aggregate for one user."""
        key = f"aggregate:{user_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return self._entry_response(cached, "HIT")

        entry = await self.coalescer.run(key, lambda: self._build_aggregate_entry(key, user_id))
        return self._entry_response(entry, "MISS")

    async def _build_aggregate_entry(self, key: str, user_id: str) -> CacheEntry:
        result = await self.aggregator.aggregate(user_id)
        headers = ((PARTIAL_HEADER, "true"),) if result.is_partial else ()
        ttl = (
            self.config.partial_cache_ttl_seconds
            if result.is_partial
            else self.config.aggregate_cache_ttl_seconds
        )
        entry = self.cache.make_entry(
            key,
            json.dumps(result.to_dict()),
            content_type=JSON_CONTENT_TYPE,
            is_binary=False,
            ttl=ttl,
            headers=headers,
        )
        self.cache.set(key, entry)
        return entry

    def _entry_response(self, entry: CacheEntry, cache_state: str) -> Response:
        headers = {
            "Cache-Control": f"public, max-age={int(entry.ttl)}",
            "x-cache": cache_state,
        }
        headers.update(dict(entry.headers))
        return Response(
            content=entry.payload,
            status_code=entry.status_code,
            media_type=entry.content_type,
            headers=headers,
        )

    async def _check_dependencies(self):
        return {"cache": f"{len(self.cache)}/{self.cache.max_entries}"}


def _require_numeric(value: Optional[str], name: str) -> str:
    value = (value or "").strip()
    if not value:
        raise InvalidRequestError(f"Missing {name}")
    if not value.isdigit():
        raise InvalidRequestError(f"{name} must be numeric", details={name: value})
    return value


def create_app(config: Optional[ServiceConfig] = None, client: Optional[httpx.AsyncClient] = None):
    """Create FastAPI application."""
    service = ProxyService(config=config, client=client)
    return service.app


def main():
    ProxyService().run()


if __name__ == "__main__":
    main()
