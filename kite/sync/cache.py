"""
Time-boxed Read Cache

Entries expire after a TTL and are dropped wholesale per table whenever
a change to that table commits. Keys are namespaced "<table>:<kind>:<hash>".
"""

import hashlib
import json
import time
from typing import Any, Awaitable, Callable, Optional

import structlog


logger = structlog.get_logger(__name__)


def make_cache_key(table: str, kind: str, payload: Any) -> str:
    """Stable key from a JSON-serializable payload."""
    digest = hashlib.sha256(
        json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    ).hexdigest()
    return f"{table}:{kind}:{digest}"


def _detached(value: Any) -> Any:
    """Callers get their own list so mutating a result never touches the cache."""
    return list(value) if isinstance(value, list) else value


class QueryCache:
    """TTL cache for query results."""

    def __init__(self, default_ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return _detached(value)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = (self._clock() + (self.default_ttl if ttl is None else ttl), value)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        self.set(key, value, ttl)
        return _detached(value)

    def invalidate(self, table: str) -> int:
        """Drop every entry for a table. Returns how many were dropped."""
        prefix = f"{table}:"
        stale = [key for key in self._entries if key.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("cache_invalidated", table=table, entries=len(stale))
        return len(stale)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
