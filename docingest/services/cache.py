"""Bounded in-process cache of extraction results keyed by content fingerprint."""
import hashlib
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional, Tuple

import structlog

from docingest.processing.models import ExtractionResult

logger = structlog.get_logger()


def content_fingerprint(content: bytes) -> str:
    """SHA-256 hex digest of the raw document bytes."""
    return hashlib.sha256(content).hexdigest()


class ExtractionCache:
    """
    LRU cache with a capacity limit and per-entry expiry.

    Only touched from the event loop thread, so it takes no locks.
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl_seconds: float = 30 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, ExtractionResult]]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[ExtractionResult]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        stored_at, result = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            logger.debug("Extraction cache entry expired", key=key[:16])
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        return result

    def put(self, key: str, result: ExtractionResult) -> None:
        if self.max_size <= 0:
            return
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = (self._clock(), result)
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("Extraction cache eviction", key=evicted[:16])

    def purge_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        expired = [key for key, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Extraction cache cleared")

    def stats(self) -> Dict[str, int]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }
