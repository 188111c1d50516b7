"""
Upstream access package.

Resolves caller paths into concrete upstream requests and performs them
with bounded retries. Nothing here touches the cache.
"""

from .resolver import HostFamily, PayloadKind, RequestResolver, UpstreamHosts, UpstreamRequest
from .fetcher import RetryingFetcher

__all__ = [
    "HostFamily",
    "PayloadKind",
    "RequestResolver",
    "RetryingFetcher",
    "UpstreamHosts",
    "UpstreamRequest",
]
