"""In-process retrieval cache with expiry, capacity eviction and a periodic sweep."""
import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from docuchat.utils.logger import logger
from docuchat.utils.metrics import CACHE_REQUESTS


CHUNKS_PURPOSE = "chunks"


def cache_key(*parts: Optional[str]) -> str:
    """Join non-empty key parts, e.g. ``cache_key("chunks", collection_id)``."""
    return ":".join(str(part) for part in parts if part)


@dataclass
class CacheEntry:
    value: Any
    expiry: float


class RetrievalCache:
    """
    Key -> (value, expiry) store shared by all chat turns of a process.

    Entries are never served past their expiry. When the cache is full the
    oldest inserted entry is evicted before a new key is added. Concurrent
    fills of the same key are resolved by last write wins, but a fill that
    passes the generation it read before an invalidation is dropped.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        default_ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")

        self.max_entries = max_entries
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        # Bumped on every delete/clear so fills read before an invalidation are refused
        self._invalidations = 0
        self._generations: Dict[str, int] = {}
        self._cleared_at = 0
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def generation(self, key: str) -> int:
        """Current invalidation generation of ``key``; pass it to ``set`` after a slow read."""
        with self._lock:
            return self._generation(key)

    def _generation(self, key: str) -> int:
        return max(self._generations.get(key, 0), self._cleared_at)

    def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        expected_generation: Optional[int] = None,
    ) -> bool:
        """
        Store ``value`` under ``key``.

        Returns:
            False if ``expected_generation`` is given and the key was
            invalidated since it was read, in which case nothing is stored
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        expiry = self._clock() + ttl
        with self._lock:
            if expected_generation is not None and self._generation(key) != expected_generation:
                logger.debug(f"Skipped stale cache fill for {key}")
                return False
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_entries:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
            self._entries[key] = CacheEntry(value=value, expiry=expiry)
        return True

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                CACHE_REQUESTS.labels(result="miss").inc()
                return None
            if self._clock() >= entry.expiry:
                del self._entries[key]
                CACHE_REQUESTS.labels(result="expired").inc()
                return None
        CACHE_REQUESTS.labels(result="hit").inc()
        return entry.value

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._invalidations += 1
            self._generations[key] = self._invalidations

    def invalidate_collection(self, collection_id: str) -> None:
        """Drop the cached chunk set of a collection after its chunks changed."""
        self.delete(cache_key(CHUNKS_PURPOSE, collection_id))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._invalidations += 1
            self._cleared_at = self._invalidations
            self._generations.clear()

    def cleanup(self) -> int:
        """
        Remove every expired entry.

        The entry table is copied under the lock and scanned without it;
        each expired key is then removed only if it still holds the same
        entry, so a concurrent refresh survives.

        Returns:
            Number of entries removed
        """
        with self._lock:
            snapshot = list(self._entries.items())

        now = self._clock()
        removed = 0
        for key, entry in snapshot:
            if now < entry.expiry:
                continue
            with self._lock:
                if self._entries.get(key) is entry:
                    del self._entries[key]
                    removed += 1
        return removed

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.cleanup()
            if removed:
                logger.debug(f"Retrieval cache sweep removed {removed} expired entries")

    def start_sweeper(self, interval_seconds: float = 60.0) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(interval_seconds))
        logger.info(f"Retrieval cache sweeper started (every {interval_seconds}s)")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
