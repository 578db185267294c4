"""In-process TTL store used as the fallback tier of TwoTierCache."""

import re
import time
from collections.abc import Callable
from typing import Any


class LocalTTLCache:
    """
    Dict-backed key/value store with per-entry expiry.

    Expired entries are dropped lazily on read and in bulk by sweep().
    Values are stored by reference, not copied.
    """

    def __init__(self, default_ttl: int, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, expires_at: float) -> bool:
        return expires_at <= self._clock()

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl = ttl if ttl is not None else self.default_ttl
        self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def increment(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        current = self.get(key)
        new_value = int(current or 0) + amount
        self.set(key, new_value, ttl)
        return new_value

    def keys(self) -> list[str]:
        return list(self._entries)

    def delete_matching(self, pattern: re.Pattern) -> int:
        matched = [key for key in self._entries if pattern.fullmatch(key)]
        for key in matched:
            del self._entries[key]
        return len(matched)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Remove every expired entry and return how many were dropped."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)
