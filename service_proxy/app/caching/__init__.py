"""
Proxy caching package.

Provides the in-memory cache-aside store used by the proxy routes to avoid
repeating identical upstream work, plus optional coalescing of concurrent
identical misses. Prefer short-lived entries; nothing here persists.
"""

from .lru_cache import CacheEntry, TTLLRUCache
from .coalescer import RequestCoalescer

__all__ = ["CacheEntry", "RequestCoalescer", "TTLLRUCache"]
