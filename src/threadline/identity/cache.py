"""Lookup cache for identifier → user id resolution.

The resolver receives its cache as a constructor argument, so tests and
multi-process deployments can swap the in-process TTL cache for another
backend. Entries are keyed by ``(organization_id, identifier)``; negative
results (``None``) are cached like positive ones.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0

CacheKey = tuple[str, str]


@dataclass(frozen=True)
class CacheEntry:
    """A cached resolution. ``user_id`` is None for a cached miss."""

    user_id: str | None
    expires_at: float


class IdentityCache(Protocol):
    """Capability the IdentityResolver depends on."""

    def get(self, key: CacheKey) -> CacheEntry | None:
        """Return the live entry for *key*, or None when absent or expired."""
        ...

    def set(self, key: CacheKey, user_id: str | None, ttl_seconds: float | None = None) -> None:
        ...

    def invalidate_prefix(self, organization_id: str) -> int:
        """Drop every entry of *organization_id*. Returns the count removed."""
        ...


class TTLIdentityCache:
    """Process-local cache with per-entry expiry.

    Parameters
    ----------
    ttl_seconds:
        Lifetime applied when ``set`` is called without an explicit TTL.
    clock:
        Monotonic seconds source. Tests inject a fake to control expiry.
    max_entries:
        When exceeded, expired entries are purged first, then the oldest
        insertions are evicted.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[CacheKey, CacheEntry] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: CacheKey) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def set(self, key: CacheKey, user_id: str | None, ttl_seconds: float | None = None) -> None:
        ttl = self._ttl_seconds if ttl_seconds is None else ttl_seconds
        # Re-insert so dict order tracks insertion age for eviction
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(user_id=user_id, expires_at=self._clock() + ttl)
        if len(self._entries) > self._max_entries:
            self._evict()

    def invalidate_prefix(self, organization_id: str) -> int:
        stale = [key for key in self._entries if key[0] == organization_id]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(
                "Invalidated %d identity cache entries for organization %s",
                len(stale),
                organization_id,
            )
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def _evict(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[key]
        overflow = len(self._entries) - self._max_entries
        for key in list(self._entries)[: max(overflow, 0)]:
            del self._entries[key]


__all__ = [
    "DEFAULT_TTL_SECONDS",
    "CacheEntry",
    "CacheKey",
    "IdentityCache",
    "TTLIdentityCache",
]
