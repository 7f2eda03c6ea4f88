"""In-process caching for the retrieval pipeline.

CacheStore is the shared key/value store (per-entry TTL, LRU eviction);
ResponseCache layers query-aware keys and complexity-scaled TTLs on top of it
so that whole pipeline responses can be reused.
"""

from __future__ import annotations

import copy
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Union

from .models import ComplexityTier

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    """A single cache entry with metadata."""

    key: str
    payload: Any
    created_at: float
    ttl_seconds: Optional[float]
    last_accessed_at: float
    access_count: int = 0
    complexity_tag: Optional[str] = None
    owner_id: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        if self.ttl_seconds is None:
            return False
        return now - self.created_at > self.ttl_seconds


class CacheStore:
    """Thread-safe LRU store with lazy TTL expiry.

    Payloads are deep-copied on write and on read, so callers never share the
    stored object and a reader never observes a half-written entry.

    Example:
        >>> store = CacheStore(max_size=2)
        >>> store.set("a", {"answer": 1}, ttl_seconds=60)
        >>> store.get("a")
        {'answer': 1}
    """

    def __init__(
        self,
        max_size: int = 500,
        default_ttl_seconds: Optional[float] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        """Initialize the store.

        Args:
            max_size: Entry count above which the least recently accessed entry is evicted
            default_ttl_seconds: TTL used when ``set`` is called without one (None = no expiry)
            clock: Time source in seconds, injectable for tests
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._clock = clock or time.time
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = Lock()

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        """Return a copy of the payload, or None on miss/expiry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            now = self._clock()
            if entry.is_expired(now):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                logger.debug(f"Cache entry expired: {key[:60]}")
                return None

            entry.access_count += 1
            entry.last_accessed_at = now
            self._entries.move_to_end(key)
            self._hits += 1
            return copy.deepcopy(entry.payload)

    def has(self, key: str) -> bool:
        """True when a live entry exists. Does not count as an access."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._expirations += 1
                return False
            return True

    def set(
        self,
        key: str,
        payload: Any,
        ttl_seconds: Optional[float] = None,
        complexity_tag: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> None:
        if payload is None:
            raise ValueError("Cannot cache a None payload")

        stored = copy.deepcopy(payload)
        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=stored,
            created_at=now,
            ttl_seconds=ttl_seconds if ttl_seconds is not None else self._default_ttl,
            last_accessed_at=now,
            complexity_tag=complexity_tag,
            owner_id=owner_id,
        )

        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = entry

            # Front of the OrderedDict is the least recently accessed entry
            while len(self._entries) > self._max_size:
                evicted_key, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"Evicted LRU cache entry: {evicted_key[:60]}")

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_owner(self, owner_id: str) -> int:
        """Drop every entry belonging to one owner. Returns the count removed."""
        with self._lock:
            doomed = [k for k, e in self._entries.items() if e.owner_id == owner_id]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.info(f"Invalidated {len(doomed)} cache entries for owner {owner_id}")
        return len(doomed)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            doomed = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in doomed:
                del self._entries[key]
            self._expirations += len(doomed)
        return len(doomed)

    def entry_info(self, key: str) -> Optional[Dict[str, Any]]:
        """Entry bookkeeping (no payload), for diagnostics and tests."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return {
                "created_at": entry.created_at,
                "ttl_seconds": entry.ttl_seconds,
                "access_count": entry.access_count,
                "last_accessed_at": entry.last_accessed_at,
                "complexity_tag": entry.complexity_tag,
                "owner_id": entry.owner_id,
            }

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_metrics(self) -> Dict[str, Any]:
        """Get cache metrics.

        Returns:
            Dict with hits, misses, hit_rate, evictions, expirations, size
        """
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0.0,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "size": len(self._entries),
                "max_size": self._max_size,
            }


# TTL multipliers per complexity tier
COMPLEXITY_TTL_FACTORS: Dict[ComplexityTier, float] = {
    ComplexityTier.SIMPLE: 0.5,
    ComplexityTier.MODERATE: 1.0,
    ComplexityTier.COMPLEX: 2.0,
    ComplexityTier.VERY_COMPLEX: 3.0,
}

ANALYTICAL_TTL_BONUS = 1.5

_PUNCTUATION_RE = re.compile(r"[^\w\s]")


class ResponseCache:
    """Pipeline-level response cache with intelligent TTL.

    Keys combine the normalized leading tokens of the query, the owner, a
    bucketed conversation length and the complexity tier. Queries that share
    their first ten tokens collide on purpose: recall over precision.

    Example:
        >>> cache = ResponseCache(CacheStore())
        >>> cache.set("How was my week?", "user-1", 3, ComplexityTier.SIMPLE, {"text": "..."})
        >>> cache.get("how was my week", "user-1", 4, ComplexityTier.SIMPLE)
        {'text': '...'}
    """

    def __init__(
        self,
        store: CacheStore,
        base_ttl_seconds: float = 300.0,
        max_ttl_seconds: float = 1800.0,
        key_token_limit: int = 10,
        context_bucket: int = 5,
    ) -> None:
        self._store = store
        self._base_ttl = base_ttl_seconds
        self._max_ttl = max_ttl_seconds
        self._token_limit = key_token_limit
        self._bucket = max(1, context_bucket)

    @property
    def store(self) -> CacheStore:
        return self._store

    def normalize_query(self, query: str) -> str:
        stripped = _PUNCTUATION_RE.sub("", query.lower())
        return " ".join(stripped.split()[: self._token_limit])

    def make_key(
        self,
        query: str,
        owner_id: str,
        context_length: int,
        complexity: Union[ComplexityTier, str],
    ) -> str:
        tier = complexity.value if isinstance(complexity, ComplexityTier) else str(complexity)
        bucket = (max(0, context_length) // self._bucket) * self._bucket
        return "|".join([self.normalize_query(query), owner_id, str(bucket), tier])

    def compute_ttl(self, complexity: Union[ComplexityTier, str], analytical: bool = False) -> float:
        tier = ComplexityTier(complexity)
        ttl = self._base_ttl * COMPLEXITY_TTL_FACTORS[tier]
        if analytical:
            ttl *= ANALYTICAL_TTL_BONUS
        return min(ttl, self._max_ttl)

    def get(
        self,
        query: str,
        owner_id: str,
        context_length: int,
        complexity: Union[ComplexityTier, str],
    ) -> Optional[Any]:
        key = self.make_key(query, owner_id, context_length, complexity)
        payload = self._store.get(key)
        if payload is not None:
            logger.info(f"Response cache hit for owner {owner_id}")
        return payload

    def has(
        self,
        query: str,
        owner_id: str,
        context_length: int,
        complexity: Union[ComplexityTier, str],
    ) -> bool:
        return self._store.has(self.make_key(query, owner_id, context_length, complexity))

    def set(
        self,
        query: str,
        owner_id: str,
        context_length: int,
        complexity: Union[ComplexityTier, str],
        payload: Any,
        analytical: bool = False,
    ) -> float:
        """Store a response. Returns the TTL applied, in seconds."""
        key = self.make_key(query, owner_id, context_length, complexity)
        ttl = self.compute_ttl(complexity, analytical)
        tier = ComplexityTier(complexity).value
        self._store.set(key, payload, ttl_seconds=ttl, complexity_tag=tier, owner_id=owner_id)
        logger.debug(f"Cached response for owner {owner_id} (tier={tier}, ttl={ttl:.0f}s)")
        return ttl

    def invalidate_owner(self, owner_id: str) -> int:
        return self._store.invalidate_owner(owner_id)

    def get_metrics(self) -> Dict[str, Any]:
        return self._store.get_metrics()
