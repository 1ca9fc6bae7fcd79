"""
Query cache for Firestore list queries.

Entries are keyed by a fingerprint of the query shape and expire after a TTL.
Writes through the access layer invalidate every entry of the written
collection and bump its generation, so a result fetched before the write
is never stored after it. All access goes through one lock: request handlers and the
migration verifier read concurrently.
"""

import copy
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("syndatagen.cache")


@dataclass
class CacheEntry:
    fingerprint: str
    collection: str
    payload: Any
    expires_at: float


def fingerprint(collection: str, **shape: Any) -> str:
    """Deterministic hash of collection + query shape (filters, ordering, projection, limit)."""
    raw = json.dumps({"collection": collection, **shape}, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


class QueryCache:
    """In-process TTL cache, last-writer-wins."""

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        max_entries: int = 1000,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.enabled = enabled
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._generations: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Optional[Any]:
        """Return a copy of the cached payload, or None if missing or expired."""
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self._evictions += 1
                self._misses += 1
                return None
            self._hits += 1
            return copy.deepcopy(entry.payload)

    def generation(self, collection: str) -> int:
        """Invalidation counter for `collection`; read it before fetching."""
        with self._lock:
            return self._generations.get(collection, 0)

    def set(
        self,
        key: str,
        collection: str,
        payload: Any,
        ttl_seconds: Optional[float] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """
        Store a payload. When `generation` is given and the collection has been
        invalidated since it was read, the payload is stale and is dropped.

        Returns:
            True if the payload was stored
        """
        if not self.enabled:
            return False
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            if generation is not None and generation != self._generations.get(collection, 0):
                logger.debug(f"Dropped stale query result for {collection}")
                return False
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_one()
            self._entries[key] = CacheEntry(
                fingerprint=key,
                collection=collection,
                payload=copy.deepcopy(payload),
                expires_at=self._clock() + ttl,
            )
        return True

    def invalidate_collection(self, collection: str) -> int:
        """Drop every entry whose query targets `collection`. Returns the number dropped."""
        with self._lock:
            self._generations[collection] = self._generations.get(collection, 0) + 1
            stale = [k for k, e in self._entries.items() if e.collection == collection]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug(f"Invalidated {len(stale)} cached queries for {collection}")
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict_one(self) -> None:
        # Expired entries first, otherwise the one closest to expiry.
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        victims = expired or [min(self._entries, key=lambda k: self._entries[k].expires_at)]
        for key in victims:
            del self._entries[key]
            self._evictions += 1

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_ratio": (self._hits / total) if total else 0.0,
            }
