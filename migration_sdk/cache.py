"""
Migration SDK - Caching and RPC throttling.

Provides:
- TTLCache: in-process key/value store with per-entry expiry
- RequestThrottle: minimum spacing between outbound ledger calls
- memoize_async: shares one in-flight call among identical callers

Expired entries are evicted lazily on access; there is no background
sweep. Nothing here is thread-safe: the SDK runs on one asyncio loop
and only touches these structures between awaits.
"""

import asyncio
import functools
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from solders.pubkey import Pubkey

from migration_sdk.clock import ClockProtocol, get_clock


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheTTL:
    """TTL constants for different data types (seconds)."""
    BALANCES = 30.0
    PROJECT_CONFIG = 3600.0
    ACCOUNT_INFO = 10.0


@dataclass
class CacheEntry:
    """Cached value with its insertion time and lifetime."""
    value: Any
    inserted_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at > self.ttl

    def age_seconds(self, now: float) -> float:
        return now - self.inserted_at


class TTLCache:
    """
    Simple in-memory cache with TTL support.

    Usage:
        cache = TTLCache()
        cache.set("key", value, 30)  # Cache for 30 seconds
        value = cache.get("key")
    """

    def __init__(
        self,
        default_ttl: float = CacheTTL.BALANCES,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl
        self._clock = clock or get_clock()
        self._hits = 0
        self._misses = 0

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock.timestamp()):
            del self._entries[key]
            return None
        return entry

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value; `ttl` defaults to the instance default."""
        self._entries[key] = CacheEntry(
            value=value,
            inserted_at=self._clock.timestamp(),
            ttl=self._default_ttl if ttl is None else ttl,
        )

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or `default` if absent or expired."""
        entry = self._live_entry(key)
        if entry is None:
            self._misses += 1
            return default
        self._hits += 1
        return entry.value

    def has(self, key: str) -> bool:
        """Check if a key exists and is not expired."""
        return self._live_entry(key) is not None

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("SDK cache cleared")

    def size(self) -> int:
        """Number of stored entries, expired ones included until touched."""
        return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        total_requests = self._hits + self._misses
        hit_rate = (self._hits / total_requests * 100) if total_requests > 0 else 0

        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate_percent": round(hit_rate, 2),
        }


class RequestThrottle:
    """
    Enforces a minimum delay between ledger requests.

    Usage:
        throttle = RequestThrottle(0.1)  # 100ms between requests

        await throttle.wait()
        info = await reader.get_account_info(address)
    """

    def __init__(self, min_delay: float = 0.1) -> None:
        self._min_delay = min_delay
        self._last_request = float("-inf")

    @property
    def min_delay(self) -> float:
        return self._min_delay

    async def wait(self) -> None:
        """Suspend until `min_delay` has elapsed since the last wait() returned."""
        while True:
            elapsed = time.monotonic() - self._last_request
            if elapsed >= self._min_delay:
                break
            # another waiter may have claimed the slot while we slept
            await asyncio.sleep(self._min_delay - elapsed)
        self._last_request = time.monotonic()

    def reset(self) -> None:
        """Reset the throttle timer."""
        self._last_request = float("-inf")


def create_cache_key(*parts: Any) -> str:
    """
    Create a cache key from multiple parts.

    Example:
        create_cache_key("balance", project_id, user)
        # => "balance:my-project:7xKX...ABC"
    """
    rendered = []
    for part in parts:
        if isinstance(part, str):
            rendered.append(part)
        elif isinstance(part, (int, float)) and not isinstance(part, bool):
            rendered.append(str(part))
        elif isinstance(part, Pubkey):
            rendered.append(str(part))
        elif hasattr(part, "value") and isinstance(getattr(part, "value"), str):
            rendered.append(part.value)  # enums
        elif part is None:
            rendered.append("default")
        else:
            rendered.append(json.dumps(part, default=str, sort_keys=True))
    return ":".join(rendered)


async def get_cached(
    cache: TTLCache,
    key: str,
    fetcher: Callable[[], Awaitable[T]],
    ttl: Optional[float] = None,
) -> T:
    """Return the cached value for `key`, fetching and caching on a miss."""
    cached = cache.get(key)
    if cached is not None:
        return cached

    data = await fetcher()
    if data is not None:
        cache.set(key, data, ttl)
    return data


def memoize_async(
    ttl: Optional[float] = None,
    cache: Optional[TTLCache] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Memoize an async function by its arguments.

    Identical calls that arrive while one is still running share its
    result instead of issuing their own request. Failures are not cached.

    Example:
        @memoize_async(ttl=CacheTTL.PROJECT_CONFIG)
        async def fetch_project(project_id):
            ...
    """
    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        store = cache
        if store is None:
            store = TTLCache(default_ttl=ttl if ttl is not None else CacheTTL.BALANCES)
        pending: dict[str, asyncio.Future] = {}

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            key = create_cache_key(fn.__qualname__, *args, *sorted(kwargs.items()))

            cached = store.get(key)
            if cached is not None:
                return cached

            in_flight = pending.get(key)
            if in_flight is not None:
                return await asyncio.shield(in_flight)

            task = asyncio.ensure_future(fn(*args, **kwargs))
            pending[key] = task
            try:
                result = await asyncio.shield(task)
            finally:
                pending.pop(key, None)

            store.set(key, result, ttl)
            return result

        wrapper.cache = store  # type: ignore[attr-defined]
        return wrapper

    return decorator
