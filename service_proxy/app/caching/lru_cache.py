"""
Bounded in-memory cache-aside store with per-entry TTL and LRU eviction.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, TYPE_CHECKING, Union

from shared.config import MAX_CACHE_TTL_SECONDS
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_MAX_ENTRIES = 1000
DEFAULT_TTL_SECONDS = 30


@dataclass(frozen=True)
class CacheEntry:
    """Immutable cached payload."""

    key: str
    payload: Union[bytes, str]
    content_type: str
    is_binary: bool
    inserted_at: float
    ttl: float
    status_code: int = 200
    headers: Tuple[Tuple[str, str], ...] = ()

    @property
    def expires_at(self) -> float:
        return self.inserted_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLLRUCache:
    """Key -> ``CacheEntry`` store.

    Entries older than their TTL read as absent (lazy expiry) and the least
    recently used entry is evicted once ``max_entries`` is reached. A lock
    guards the ordered map so concurrent get/set never observe a half-applied
    update; concurrent writers to one key resolve as last-write-wins.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        *,
        name: str = "proxy",
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.default_ttl = min(default_ttl, MAX_CACHE_TTL_SECONDS)
        self.name = name
        self.metrics = metrics
        self.logger = get_logger(f"proxy.cache.{name}")

        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def make_entry(
        self,
        key: str,
        payload: Union[bytes, str],
        *,
        content_type: str,
        is_binary: bool,
        ttl: Optional[float] = None,
        status_code: int = 200,
        headers: Tuple[Tuple[str, str], ...] = (),
    ) -> CacheEntry:
        """Stamp a new entry with this store's clock."""
        effective_ttl = self.default_ttl if ttl is None else ttl
        return CacheEntry(
            key=key,
            payload=payload,
            content_type=content_type,
            is_binary=is_binary,
            inserted_at=self._clock(),
            ttl=min(effective_ttl, MAX_CACHE_TTL_SECONDS),
            status_code=status_code,
            headers=tuple(headers),
        )

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` or ``None``."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                del self._entries[key]
                self._expirations += 1
                entry = None

            if entry is None:
                self._misses += 1
            else:
                self._entries.move_to_end(key)
                self._hits += 1

        self._record("cache_hits_total" if entry is not None else "cache_misses_total")
        return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        """Store ``entry`` under ``key``, evicting the least recently used if full."""
        if entry.key != key:
            raise ValueError(f"entry key {entry.key!r} does not match {key!r}")

        evicted = []
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = entry
            while len(self._entries) > self.max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                evicted.append(evicted_key)
            self._evictions += len(evicted)

        for evicted_key in evicted:
            self._record("cache_evictions_total")
            self.logger.debug("Evicted cache entry", key=evicted_key)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        """Snapshot of size and hit/miss counters."""
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "name": self.name,
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "default_ttl_seconds": self.default_ttl,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "hit_ratio": self._hits / lookups if lookups else 0.0,
            }

    def _record(self, metric_name: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, cache_type=self.name)
