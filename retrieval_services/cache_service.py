"""Query Result Cache implementation.

This service keeps final ranked results for a fixed TTL in front of the whole
query pipeline. Entries are immutable once written and are replaced wholesale,
so concurrent queries can share the cache without per-entry locking. Expired
entries are evicted lazily on lookup and by a periodic sweep. Nothing is
persisted: the cache starts empty on every process start.
"""
import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from retrieval_services.errors import CacheMiss
from retrieval_services.models import Intent, IntentParams
from retrieval_services.service_interfaces import ServiceInterface

# Configure logging
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    expires_at: float


def normalize_query(query: str) -> str:
    return " ".join(query.lower().split())


def make_cache_key(query: str, intent: Intent, params: Optional[Dict[str, Any]] = None) -> str:
    """Hash of normalized query text, intent and normalized parameter set."""
    normalized = {}
    for name, value in (params or {}).items():
        if isinstance(value, IntentParams):
            value = value.model_dump()
        if isinstance(value, float):
            value = round(value, 6)
        normalized[name] = value

    payload = json.dumps(
        {"query": normalize_query(query), "intent": Intent(intent).value, "params": normalized},
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class QueryResultCache(ServiceInterface):
    """In-memory TTL cache of final query results."""

    def __init__(self, ttl: float = 900.0, sweep_interval: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize the cache.

        Args:
            ttl: Time-to-live of an entry in seconds
            sweep_interval: Seconds between periodic sweeps
            clock: Monotonic time source, injectable for tests
        """
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.entries: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.is_running = True
        self._sweep_task: Optional[asyncio.Task] = None

        logger.info(f"Query Result Cache initialized with ttl={ttl}s")

    def lookup(self, key: str) -> Any:
        """Return the cached value for ``key``.

        Raises:
            CacheMiss: if no entry exists or the entry has expired
        """
        entry = self.entries.get(key)
        if entry is not None and entry.expires_at <= self.clock():
            del self.entries[key]
            self.evictions += 1
            entry = None

        if entry is None:
            self.misses += 1
            raise CacheMiss(key)

        self.hits += 1
        return entry.value

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value or None."""
        try:
            return self.lookup(key)
        except CacheMiss:
            return None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self.clock() + (self.ttl if ttl is None else ttl)
        self.entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)

    def delete(self, key: str) -> bool:
        return self.entries.pop(key, None) is not None

    def clear(self) -> int:
        count = len(self.entries)
        self.entries = {}
        if count:
            logger.info(f"Cleared {count} cached query results")
        return count

    def sweep(self) -> int:
        """Remove every expired entry; returns the number removed."""
        now = self.clock()
        expired = [key for key, entry in self.entries.items() if entry.expires_at <= now]
        for key in expired:
            self.entries.pop(key, None)
        self.evictions += len(expired)
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired cache keys")
        return len(expired)

    async def _cleanup_loop(self):
        """Background task to periodically sweep expired keys."""
        while self.is_running:
            self.sweep()
            await asyncio.sleep(self.sweep_interval)

    def start_sweeper(self) -> asyncio.Task:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._cleanup_loop())
        return self._sweep_task

    def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self.entries),
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hits / total if total else 0.0,
            "ttl": self.ttl,
        }

    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        return {"status": "healthy" if self.is_running else "stopped", **self.get_stats()}

    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        logger.info("Shutting down Query Result Cache")
        self.is_running = False
        if self._sweep_task is not None and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None
