# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Per-page classification cache with TTL expiry and a periodic sweep.

Pure Python module, no browser dependencies.

Keys are page identities (origin + path; query and fragment stripped), so
``/search?q=a`` and ``/search?q=b`` share one entry.  Only fully merged
results are stored; the pipeline never writes a partial first chunk.

The cache is shared by every page context of a process.  Lookup-then-write
for one key is serialized through :meth:`ResponseCache.lock_for` so two
concurrent runs for the same page cannot both miss and double-write.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from urllib.parse import urlsplit

from . import ClassifiedItem

logger = logging.getLogger("cogniclear.cache")

DEFAULT_TTL = 1800.0  # 30 minutes


# ---------------------------------------------------------------------------
# URL normalization
# ---------------------------------------------------------------------------


def normalize_page_key(url: str) -> str:
    """Normalize URL to ``{origin}{path}``: lowercase scheme/host, no query/fragment.

    Falls back to the raw string when the URL has no scheme or host.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path or '/'}"


# ---------------------------------------------------------------------------
# Cache entry
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Merged classification result of one page."""

    key: str
    data: tuple[ClassifiedItem, ...]
    timestamp: float  # cache clock (monotonic by default)


# ---------------------------------------------------------------------------
# Cache stats (observability)
# ---------------------------------------------------------------------------


@dataclass
class CacheStats:
    """Counters for cache behaviour, used for logging and GET_CACHE_SIZE."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    ttl_expirations: int = 0
    sweeps: int = 0
    swept_entries: int = 0
    clears: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


# ---------------------------------------------------------------------------
# ResponseCache
# ---------------------------------------------------------------------------


class ResponseCache:
    """Page-key → CacheEntry map with TTL.

    Entries are frozen and hold tuples, so callers receive read-only data.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError(f"ttl must be > 0, got {ttl}")
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._stats = CacheStats()
        self._sweeper_task: asyncio.Task | None = None

    @property
    def ttl(self) -> float:
        return self._ttl

    # -- Validity --

    def is_valid(self, entry: CacheEntry | None) -> bool:
        """True when *entry* exists and is younger than the TTL."""
        if entry is None:
            return False
        return (self._clock() - entry.timestamp) < self._ttl

    # -- Lookup / store --

    def get(self, page_url: str) -> CacheEntry | None:
        """Return the valid entry for *page_url*, purging it if stale."""
        key = normalize_page_key(page_url)
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None
        if not self.is_valid(entry):
            self._entries.pop(key, None)
            self._stats.ttl_expirations += 1
            self._stats.misses += 1
            logger.debug("Cache TTL expired: %s", key)
            return None
        self._stats.hits += 1
        return entry

    def put(self, page_url: str, items: Iterable[ClassifiedItem]) -> CacheEntry:
        """Store *items* for *page_url*; last write wins."""
        key = normalize_page_key(page_url)
        entry = CacheEntry(key=key, data=tuple(items), timestamp=self._clock())
        self._entries[key] = entry
        self._stats.writes += 1
        logger.debug("Cache store: key=%s items=%d size=%d", key, len(entry.data), len(self._entries))
        return entry

    def lock_for(self, page_url: str) -> asyncio.Lock:
        """Per-key lock guarding a lookup-then-write sequence."""
        key = normalize_page_key(page_url)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # -- Invalidation --

    def clear(self) -> None:
        """Remove every entry."""
        count = len(self._entries)
        self._entries.clear()
        self._prune_locks()
        self._stats.clears += 1
        logger.info("Cache cleared (%d entries)", count)

    def sweep(self) -> int:
        """Remove stale entries. Returns how many were removed."""
        stale = [key for key, entry in self._entries.items() if not self.is_valid(entry)]
        for key in stale:
            del self._entries[key]
        self._prune_locks()
        self._stats.sweeps += 1
        self._stats.swept_entries += len(stale)
        if stale:
            logger.info("Cleared %d expired cache entries", len(stale))
        return len(stale)

    def _prune_locks(self) -> None:
        """Drop locks nobody holds; held locks survive until released."""
        idle = [key for key, lock in self._locks.items() if not lock.locked()]
        for key in idle:
            del self._locks[key]

    # -- Periodic sweep --

    def start_sweeper(self) -> None:
        """Launch (or re-launch) the sweep loop on the running event loop."""
        if self._sweeper_task is not None and not self._sweeper_task.done():
            return
        self._sweeper_task = asyncio.get_running_loop().create_task(self._sweep_loop())
        self._sweeper_task.add_done_callback(self._sweeper_done)

    def _sweeper_done(self, task: asyncio.Task) -> None:
        """Restart the sweeper if it crashed (not cancelled)."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Cache sweeper crashed, restarting: %s", exc)
            with contextlib.suppress(RuntimeError):
                self.start_sweeper()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._ttl)
            self.sweep()

    async def shutdown(self) -> None:
        """Cancel the sweeper."""
        if self._sweeper_task is not None and not self._sweeper_task.done():
            self._sweeper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper_task
        self._sweeper_task = None

    # -- Introspection --

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def __contains__(self, page_url: object) -> bool:
        return isinstance(page_url, str) and normalize_page_key(page_url) in self._entries
