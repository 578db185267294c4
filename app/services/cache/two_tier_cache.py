"""
Two-tier cache: Redis shared across processes, in-process dict as fallback.

Every value must be reconstructible from PostgreSQL. A cache failure costs
a database round trip, never correctness, so no method here raises because
of the cache itself. Errors raised by a get_or_compute() producer are not
cache errors and propagate to the caller.
"""

import asyncio
import fnmatch
import json
import re
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.cache.local_cache import LocalTTLCache

logger = get_logger(__name__)


class SharedTier(Protocol):
    """Subset of FastRedisClient the cache relies on."""

    async def get(self, key: str) -> str | None: ...

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def delete_many(self, keys: list[str]) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def incr_with_ttl(self, key: str, amount: int = 1, ttl_s: int | None = None) -> int | None: ...

    async def scan_keys(self, match: str, count: int = 500) -> list[str] | None: ...


class TwoTierCache:
    """Key/value cache with a network tier and a process-local tier."""

    def __init__(
        self,
        shared: SharedTier | None,
        *,
        prefix: str | None = None,
        default_ttl: int | None = None,
        sweep_interval: float | None = None,
        local: LocalTTLCache | None = None,
    ):
        self.shared = shared
        self.prefix = prefix if prefix is not None else settings.CACHE_KEY_PREFIX
        self.default_ttl = default_ttl or settings.CACHE_DEFAULT_TTL
        self.sweep_interval = sweep_interval or settings.CACHE_SWEEP_INTERVAL_SECONDS
        self.local = local if local is not None else LocalTTLCache(self.default_ttl)
        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="cache-sweeper")

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            dropped = self.local.sweep()
            if dropped:
                logger.debug("Local cache sweep", dropped=dropped, remaining=len(self.local))

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def format_key(self, key: str, namespace: str | None = None) -> str:
        return f"{self.prefix}{namespace + ':' if namespace else ''}{key}"

    async def get(self, key: str, *, namespace: str | None = None) -> Any | None:
        cache_key = self.format_key(key, namespace)

        if self.shared is not None:
            raw = await self.shared.get(cache_key)
            if raw is not None:
                try:
                    return json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("Discarding undecodable cache entry", key=cache_key)

        return self.local.get(cache_key)

    async def set(
        self, key: str, value: Any, ttl: int | None = None, *, namespace: str | None = None
    ) -> bool:
        """Store a JSON-serialisable value; the local write always happens."""
        cache_key = self.format_key(key, namespace)
        ttl = ttl or self.default_ttl

        self.local.set(cache_key, value, ttl)

        if self.shared is not None:
            try:
                encoded = json.dumps(value, default=str)
            except (TypeError, ValueError) as e:
                logger.warning("Value not JSON serialisable, cached locally only", key=cache_key, error=str(e))
                return True
            await self.shared.set_with_ttl(cache_key, encoded, ttl)

        return True

    async def delete(self, key: str, *, namespace: str | None = None) -> bool:
        cache_key = self.format_key(key, namespace)
        removed = self.local.delete(cache_key)
        if self.shared is not None:
            removed = await self.shared.delete(cache_key) or removed
        return removed

    async def exists(self, key: str, *, namespace: str | None = None) -> bool:
        cache_key = self.format_key(key, namespace)
        if self.shared is not None and await self.shared.exists(cache_key):
            return True
        return self.local.exists(cache_key)

    async def increment(
        self, key: str, amount: int = 1, ttl: int | None = None, *, namespace: str | None = None
    ) -> int:
        cache_key = self.format_key(key, namespace)
        ttl = ttl or self.default_ttl

        if self.shared is not None:
            value = await self.shared.incr_with_ttl(cache_key, amount, ttl)
            if value is not None:
                self.local.set(cache_key, value, ttl)
                return value

        return self.local.increment(cache_key, amount, ttl)

    async def invalidate_pattern(self, pattern: str, *, namespace: str | None = None) -> int:
        """
        Remove every key matching a glob (``*`` and ``?``) from both tiers.

        Returns the larger of the two tiers' removal counts, since the same
        key usually lives in both.
        """
        glob = self.format_key(pattern, namespace)
        local_removed = self.local.delete_matching(re.compile(fnmatch.translate(glob)))

        shared_removed = 0
        if self.shared is not None:
            keys = await self.shared.scan_keys(glob)
            if keys:
                shared_removed = await self.shared.delete_many(keys)

        removed = max(local_removed, shared_removed)
        logger.debug("Cache pattern invalidated", pattern=glob, removed=removed)
        return removed

    async def clear(self) -> int:
        """Drop every key under this cache's prefix."""
        self.local.clear()
        return await self.invalidate_pattern("*")

    async def get_or_compute(
        self,
        key: str,
        ttl: int | None,
        fn: Callable[[], Awaitable[Any]],
        *,
        namespace: str | None = None,
    ) -> Any:
        """Return the cached value or compute, store and return it. None is never cached."""
        cached = await self.get(key, namespace=namespace)
        if cached is not None:
            return cached

        value = await fn()
        if value is not None:
            await self.set(key, value, ttl, namespace=namespace)
        return value
