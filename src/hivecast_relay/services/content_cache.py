"""Time- and size-bounded cache of post snippets fetched from Hive."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from cachetools import TTLCache

from hivecast_relay.core.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Cached content for one post. ``content`` is None for failed lookups."""

    content: str | None
    timestamp: float


class ContentCache:
    """Maps ``author/permlink`` to the content fetched for it.

    Entries expire ``ttl`` seconds after they were stored. ``prune()`` is the
    maintenance pass: it purges expired entries, then drops the oldest ones
    until no more than ``max_entries`` remain. A clock can be injected so
    expiry is testable without sleeping.
    """

    def __init__(
        self,
        ttl: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = settings.cache_ttl_seconds if ttl is None else ttl
        self.max_entries = settings.cache_max_entries if max_entries is None else max_entries
        self._clock = clock
        # cachetools evicts on insert once maxsize is reached; the hard cap is
        # applied by prune(), so the backing store is left unbounded here.
        self._entries: TTLCache[str, CacheEntry] = TTLCache(
            maxsize=float("inf"),
            ttl=self.ttl,
            timer=clock,
        )
        self._lock = threading.Lock()

    @staticmethod
    def make_key(author: str, permlink: str) -> str:
        return f"{author}/{permlink}"

    def get(self, author: str, permlink: str) -> CacheEntry | None:
        """Return the live entry for a post, or None when absent or expired."""
        with self._lock:
            return self._entries.get(self.make_key(author, permlink))

    def set(self, author: str, permlink: str, content: str | None) -> None:
        with self._lock:
            self._entries[self.make_key(author, permlink)] = CacheEntry(
                content=content,
                timestamp=self._clock(),
            )

    def prune(self) -> int:
        """Run the two-phase eviction and return how many entries were removed."""
        with self._lock:
            # len() on a TTLCache already drops expired items, so count them from expire().
            removed = len(self._entries.expire())
            overflow = len(self._entries) - self.max_entries
            if overflow > 0:
                oldest = sorted(self._entries.items(), key=lambda item: item[1].timestamp)
                for key, _ in oldest[:overflow]:
                    del self._entries[key]
                removed += overflow

        if removed:
            logger.debug("Pruned %d content cache entries", removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
