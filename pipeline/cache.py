"""In-memory LRU response cache with optional TTL."""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable

from schemas.generation import GenerationRequest

logger = logging.getLogger(__name__)


def make_cache_key(provider: str, request: GenerationRequest) -> str:
    """Stable key over everything that changes the provider's answer."""
    payload = {
        "provider": provider,
        "kind": request.kind.value,
        "model": request.model,
        "prompt": request.prompt,
        "input_uri": request.input_uri,
        "params": request.params,
    }
    canonical = json.dumps(payload, sort_keys=True, ensure_ascii=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResponseCache:
    """Thread-safe LRU cache.

    ``max_entries <= 0`` disables caching; ``ttl_seconds <= 0`` keeps
    entries until evicted. Values are deep-copied on the way in and out so
    callers can't mutate cached results.
    """

    def __init__(
        self,
        max_entries: int = 256,
        ttl_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = int(max_entries)
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @property
    def enabled(self) -> bool:
        return self.max_entries > 0

    def _is_expired(self, stored_at: float) -> bool:
        return self.ttl_seconds > 0 and (self._clock() - stored_at) >= self.ttl_seconds

    def get(self, key: str) -> Any | None:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                self._misses += 1
                return None
            stored_at, value = item
            if self._is_expired(stored_at):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return copy.deepcopy(value)

    def put(self, key: str, value: Any):
        if not self.enabled:
            return
        stored = copy.deepcopy(value)
        with self._lock:
            self._entries[key] = (self._clock(), stored)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Cache evicted %s", evicted_key[:12])

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        if count:
            logger.info("Response cache cleared (%d entries)", count)
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            item = self._entries.get(key)  # type: ignore[arg-type]
            return item is not None and not self._is_expired(item[0])

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            }
