"""
Response caching for model providers.

ResponseCache is TTL-expiring and LRU-bounded: a hit moves the entry to
the most-recent end, overflow evicts from the least-recent end.
"""

from __future__ import annotations
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import threading

from .providers.base import (
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ProviderHealthCheck,
    RateLimits,
    TokenUsage,
)


@dataclass(frozen=True)
class CacheEntry:
    cache_key: str
    response: ModelResponse
    created_at: datetime
    expires_at: datetime
    hit_count: int = 0


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    hit_count: int
    miss_count: int
    eviction_count: int
    hit_rate: float
    tokens_saved: int
    computed_at: datetime

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_entries": self.total_entries,
            "hit_count": self.hit_count,
            "miss_count": self.miss_count,
            "eviction_count": self.eviction_count,
            "hit_rate": self.hit_rate,
            "tokens_saved": self.tokens_saved,
            "computed_at": self.computed_at.isoformat(),
        }


class ResponseCache:
    """Cache of successful model responses keyed by request digest."""

    def __init__(self, max_entries: int = 500, ttl_seconds: int = 3600):
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._tokens_saved = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[ModelResponse]:
        """Get cached response."""
        with self._lock:
            entry = self._cache.get(key)

            if entry is None:
                self._misses += 1
                return None

            if datetime.now(timezone.utc) > entry.expires_at:
                del self._cache[key]
                self._misses += 1
                return None

            self._hits += 1
            self._tokens_saved += entry.response.usage.total_tokens
            self._cache[key] = replace(entry, hit_count=entry.hit_count + 1)
            self._cache.move_to_end(key)
            return entry.response

    def put(self, key: str, response: ModelResponse):
        """Store a successful response. Failures are never cached."""
        if not response.success:
            return
        with self._lock:
            self._cache.pop(key, None)
            while self._cache and len(self._cache) >= self._max_entries:
                self._cache.popitem(last=False)
                self._evictions += 1

            now = datetime.now(timezone.utc)
            self._cache[key] = CacheEntry(
                cache_key=key,
                response=response,
                created_at=now,
                expires_at=now + timedelta(seconds=self._ttl),
            )

    def invalidate(self, key: str):
        with self._lock:
            self._cache.pop(key, None)

    def clear(self):
        with self._lock:
            self._cache.clear()

    def get_stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            return CacheStats(
                total_entries=len(self._cache),
                hit_count=self._hits,
                miss_count=self._misses,
                eviction_count=self._evictions,
                hit_rate=self._hits / total if total > 0 else 0.0,
                tokens_saved=self._tokens_saved,
                computed_at=datetime.now(timezone.utc),
            )


class CachedProvider(ModelProvider):
    """
    Wraps a provider with a ResponseCache.

    Health checks and auth validation always reach the wrapped provider.
    """

    def __init__(self, provider: ModelProvider, cache: Optional[ResponseCache] = None):
        super().__init__()
        self._provider = provider
        self._cache = cache or ResponseCache()

    @property
    def name(self) -> str:
        return self._provider.name

    @property
    def wrapped(self) -> ModelProvider:
        return self._provider

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    def send_request(self, request: ModelRequest) -> ModelResponse:
        key = f"{self._provider.name}:{request.cache_key()}"
        cached = self._cache.get(key)
        if cached is not None:
            return replace(cached, cached=True, latency_ms=0.0)
        response = self._provider.send_request(request)
        self._cache.put(key, response)
        return response

    def health_check(self) -> ProviderHealthCheck:
        return self._provider.health_check()

    def validate_auth(self) -> bool:
        return self._provider.validate_auth()

    def get_available_models(self) -> List[str]:
        return self._provider.get_available_models()

    def estimate_cost(self, usage: TokenUsage, model: str) -> float:
        return self._provider.estimate_cost(usage, model)

    def get_rate_limits(self) -> RateLimits:
        return self._provider.get_rate_limits()

    def map_model_id(self, model: str) -> str:
        return self._provider.map_model_id(model)
