"""
Retrying upstream fetcher.
"""

from contextlib import nullcontext
from typing import Optional, TYPE_CHECKING

import httpx

from shared.errors import UpstreamError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception

from .resolver import UpstreamRequest

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.2,
    max_delay=2.0,
)


class RetryableStatusError(Exception):
    """Upstream answered with a 5xx status."""

    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"Upstream {response.status_code}")


class RetryingFetcher:
    """Performs one logical GET with bounded retries.

    5xx responses and transport failures (connect, read, timeout, DNS) are
    retried with linear backoff; 4xx responses are returned on the first
    attempt. When every attempt fails an ``UpstreamError`` carrying the last
    cause is raised. Other httpx errors (redirect loops, undecodable
    bodies) are raised as ``UpstreamError`` without retrying.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        retry_config: Optional[RetryConfig] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.client = client
        self.retry_config = retry_config or DEFAULT_RETRY_CONFIG
        self.metrics = metrics
        self.logger = get_logger("proxy.fetcher")

    async def fetch(self, request: UpstreamRequest, max_attempts: Optional[int] = None) -> httpx.Response:
        """Fetch ``request``; returns any response below 500."""
        config = self.retry_config
        if max_attempts is not None and max_attempts != config.max_attempts:
            config = config.with_attempts(max_attempts)

        retrying_send = retry_on_exception(
            (RetryableStatusError, httpx.TransportError),
            config=config,
        )(self._send)

        try:
            with self._timed(request):
                response = await retrying_send(request)
        except RetryError as exc:
            self._count(request, "failure")
            raise self._to_upstream_error(request, exc) from exc
        except httpx.HTTPError as exc:
            # Redirect loops and undecodable bodies are not retried.
            self._count(request, "failure")
            self.logger.warning(
                "Upstream request failed",
                url=request.resolved_url,
                error=f"{type(exc).__name__}: {exc}",
            )
            raise UpstreamError(url=request.resolved_url, cause=exc) from exc

        self._count(request, "rejected" if response.is_client_error else "success")
        if response.is_client_error:
            self.logger.info(
                "Upstream rejected request",
                url=request.resolved_url,
                status_code=response.status_code,
            )
        return response

    async def _send(self, request: UpstreamRequest) -> httpx.Response:
        response = await self.client.request(
            request.method,
            request.resolved_url,
            headers=dict(request.headers),
        )
        if response.status_code >= 500:
            raise RetryableStatusError(response)
        return response

    @staticmethod
    def _to_upstream_error(request: UpstreamRequest, exc: RetryError) -> UpstreamError:
        last = exc.last_exception
        if isinstance(last, RetryableStatusError):
            return UpstreamError(
                url=request.resolved_url,
                upstream_status=last.response.status_code,
                attempts=exc.attempts,
            )
        return UpstreamError(
            url=request.resolved_url,
            cause=last,
            attempts=exc.attempts,
        )

    def _timed(self, request: UpstreamRequest):
        if not self.metrics:
            return nullcontext()
        return self.metrics.time_operation(
            "upstream_request_duration_seconds",
            host_family=request.host_family.value,
        )

    def _count(self, request: UpstreamRequest, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(
                "upstream_requests_total",
                host_family=request.host_family.value,
                outcome=outcome,
            )
