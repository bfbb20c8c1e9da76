"""
Caching layer for URL verdicts.
In-memory, keyed by the literal URL string, with TTL expiry.
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from aegis.config import settings
from aegis.schemas.analysis_schemas import AnalysisResult

logger = logging.getLogger(__name__)


class ResultCache:
    """
    In-memory cache for analysis results.

    Keys are the exact URL (query string and fragment included, no
    normalization). `get` is the authoritative freshness check; the
    periodic sweep only reclaims memory.
    """

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._entries: Dict[str, Tuple[AnalysisResult, float]] = {}
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.cache_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def ttl(self) -> int:
        return self._ttl

    def get(self, url: str) -> Optional[AnalysisResult]:
        """Cached result if younger than the TTL; expired entries are evicted."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                return None
            result, inserted_at = entry
            if now - inserted_at < self._ttl:
                logger.debug(f"Cache hit for {url}")
                return result
            del self._entries[url]
        logger.debug(f"Cache entry expired for {url}")
        return None

    def set(self, url: str, result: AnalysisResult):
        """Store a result. Last write wins."""
        with self._lock:
            self._entries[url] = (result, self._clock())

    def sweep(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [url for url, (_, ts) in self._entries.items() if now - ts >= self._ttl]
            for url in expired:
                del self._entries[url]
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def clear(self):
        """Clear all cached entries."""
        with self._lock:
            self._entries.clear()
        logger.info("Cache cleared")

    @property
    def size(self) -> int:
        """Current number of cached entries."""
        with self._lock:
            return len(self._entries)

    # ============== PERIODIC SWEEP ==============

    def start_sweeper(self, interval: Optional[float] = None):
        """Start the background sweep task on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_forever(interval if interval is not None else self._ttl)
        )

    async def stop_sweeper(self):
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            self.sweep()
