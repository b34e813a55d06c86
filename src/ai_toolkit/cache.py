"""Content-addressed response cache with TTL, LRU eviction and single-flight.

Keys come from :meth:`GenerationRequest.cache_key`. Entries are immutable and
replaced whole, so a reader observes either the old or the new value.

Expiry is evaluated at lookup time: an entry stored with TTL ``T`` at time
``t0`` is served while ``clock() < t0 + T`` and is treated as absent (and
purged) afterwards. A stale value is never served, not even to callers that
arrive while its replacement is being computed; those callers join the
in-flight computation instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .errors import CacheCorruption
from .llm_client import GenerationResult

logger = logging.getLogger(__name__)

DEFAULT_TTL = 3600.0
DEFAULT_MAX_ENTRIES = 1000
DEFAULT_MAX_BYTES = 50 * 1024 * 1024
ENTRY_OVERHEAD = 64

_ABANDONED = object()


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: GenerationResult
    created_at: float
    ttl: float
    size: int

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    stores: int = 0
    evictions: int = 0
    expirations: int = 0
    coalesced: int = 0
    entries: int = 0
    bytes: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class Flight:
    """Result of :meth:`ResponseCache.claim`.

    Exactly one of three shapes: a hit (``entry`` set), the leader that must
    compute and then complete, fail or abandon the key, or a follower that
    waits for the leader.
    """

    def __init__(
        self,
        key: str,
        *,
        entry: Optional[CacheEntry] = None,
        future: Optional[asyncio.Future] = None,
        leader: bool = False,
    ) -> None:
        self.key = key
        self.entry = entry
        self.leader = leader
        self._future = future

    @property
    def hit(self) -> bool:
        return self.entry is not None

    async def wait(self) -> Optional[GenerationResult]:
        """Wait for the leader. ``None`` means it gave up and the key is free.

        Cancelling the waiter does not affect the leader or other waiters.
        Leader errors are re-raised here.
        """
        if self._future is None:
            raise RuntimeError("Only followers can wait on a flight")
        value = await asyncio.shield(self._future)
        if value is _ABANDONED:
            return None
        return value


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class ResponseCache:
    """In-memory response cache shared by concurrent tasks."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_bytes: int = DEFAULT_MAX_BYTES,
        default_ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries <= 0 or max_bytes <= 0 or default_ttl <= 0:
            raise ValueError("max_entries, max_bytes and default_ttl must be positive")
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._bytes = 0
        self._stats = CacheStats()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and entry.is_fresh(self._clock())

    @property
    def size_bytes(self) -> int:
        return self._bytes

    def stats(self) -> CacheStats:
        return CacheStats(
            **{**self._stats.to_dict(), "entries": len(self._entries), "bytes": self._bytes}
        )

    # The helpers below never await, so each one runs atomically with
    # respect to other tasks on the loop.

    def _remove(self, key: str) -> CacheEntry:
        entry = self._entries.pop(key)
        self._bytes -= entry.size
        if self._bytes < 0:
            raise CacheCorruption(f"Byte accounting went negative after removing {key[:12]}")
        return entry

    def _get_fresh(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.key != key:
            raise CacheCorruption(f"Entry stored under {key[:12]} belongs to {entry.key[:12]}")
        if not entry.is_fresh(self._clock()):
            self._remove(key)
            self._stats.expirations += 1
            logger.debug("Cache entry %s expired", key[:12])
            return None
        self._entries.move_to_end(key)
        return entry

    def _store(self, key: str, value: GenerationResult, ttl: Optional[float]) -> bool:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return False
        size = len(key) + value.size_bytes() + ENTRY_OVERHEAD
        if size > self.max_bytes:
            logger.debug("Not caching %s: %d bytes exceeds the %d byte budget", key[:12], size, self.max_bytes)
            return False
        if key in self._entries:
            self._remove(key)
        self._entries[key] = CacheEntry(key=key, value=value, created_at=self._clock(), ttl=ttl, size=size)
        self._bytes += size
        self._stats.stores += 1
        while len(self._entries) > self.max_entries or self._bytes > self.max_bytes:
            evicted_key, evicted = self._entries.popitem(last=False)
            self._bytes -= evicted.size
            self._stats.evictions += 1
            logger.debug("Evicted cache entry %s", evicted_key[:12])
        if self._bytes < 0 or len(self._entries) > self.max_entries:
            raise CacheCorruption("Cache bookkeeping is inconsistent after eviction")
        return True

    async def lookup(self, key: str) -> Optional[GenerationResult]:
        async with self._lock:
            entry = self._get_fresh(key)
            if entry is None:
                self._stats.misses += 1
                return None
            self._stats.hits += 1
            return entry.value

    async def store(self, key: str, value: GenerationResult, ttl: Optional[float] = None) -> bool:
        """Insert or replace an entry. Returns False if it was not cached."""
        async with self._lock:
            return self._store(key, value, ttl)

    async def invalidate(self, key: str) -> bool:
        async with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._bytes = 0
            return count

    async def purge_expired(self) -> int:
        """Drop every expired entry now instead of waiting for lookups."""
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
            for key in expired:
                self._remove(key)
            self._stats.expirations += len(expired)
            return len(expired)

    # Single-flight

    async def claim(self, key: str) -> Flight:
        async with self._lock:
            entry = self._get_fresh(key)
            if entry is not None:
                self._stats.hits += 1
                return Flight(key, entry=entry)
            self._stats.misses += 1
            future = self._inflight.get(key)
            if future is not None:
                self._stats.coalesced += 1
                return Flight(key, future=future)
            future = asyncio.get_running_loop().create_future()
            future.add_done_callback(_consume_exception)
            self._inflight[key] = future
            return Flight(key, future=future, leader=True)

    def _take_flight(self, key: str) -> asyncio.Future:
        future = self._inflight.pop(key, None)
        if future is None or future.done():
            raise CacheCorruption(f"No open flight for {key[:12]}")
        return future

    def complete(self, key: str, value: GenerationResult, ttl: Optional[float] = None) -> None:
        """Leader finished: store the value and hand it to every follower."""
        future = self._take_flight(key)
        try:
            self._store(key, value, ttl)
        except Exception as exc:
            future.set_exception(exc)
            raise
        future.set_result(value)

    def fail(self, key: str, exc: BaseException) -> None:
        """Leader failed: followers receive the same error. Nothing is cached."""
        self._take_flight(key).set_exception(exc)

    def abandon(self, key: str) -> None:
        """Leader gave up without an outcome: followers retry the claim."""
        self._take_flight(key).set_result(_ABANDONED)

    async def get_or_compute(
        self,
        key: str,
        factory: Callable[[], Awaitable[GenerationResult]],
        ttl: Optional[float] = None,
    ) -> Tuple[GenerationResult, str]:
        """Return the cached value or compute it exactly once.

        Returns:
            ``(value, source)`` where source is ``"hit"``, ``"shared"`` (another
            caller's in-flight computation) or ``"miss"`` (computed here).
        """
        while True:
            flight = await self.claim(key)
            if flight.entry is not None:
                return flight.entry.value, "hit"
            if not flight.leader:
                value = await flight.wait()
                if value is None:
                    continue
                return value, "shared"
            try:
                value = await factory()
            except Exception as exc:
                self.fail(key, exc)
                raise
            except BaseException:
                self.abandon(key)
                raise
            self.complete(key, value, ttl)
            return value, "miss"


@lru_cache(maxsize=1)
def get_default_cache() -> ResponseCache:
    """Process-wide cache, built on first use."""
    return ResponseCache()
