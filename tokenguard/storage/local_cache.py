"""Process-local cache tiers.

``LocalCache`` mirrors the shared cache interface (async ``get``/``set``/``incr``)
for deployments without Redis. ``ExpiringSet`` is the in-memory fast set of
revoked credentials: membership with a per-entry expiry, indexed by a min-heap
so the sweeper evicts by expiry instead of by insertion order.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from tokenguard.logging import get_logger
from tokenguard.storage.common import utcnow

logger = get_logger(__name__)

DEFAULT_MAX_ENTRIES = 50_000


class LocalCache:
    """Bounded TTL + LRU key/value cache guarded by a lock.

    All methods are non-blocking; the async variants exist so services can
    await this and ``RedisCache`` interchangeably.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._clock = clock or time.monotonic
        self._entries: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _get_locked(self, key: str, now: float) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def _make_room_locked(self, now: float) -> None:
        if len(self._entries) < self.max_entries:
            return
        self._purge_expired_locked(now)
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)

    def _purge_expired_locked(self, now: float) -> int:
        stale = [key for key, (_, exp) in self._entries.items() if exp <= now]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def get_now(self, key: str) -> Optional[str]:
        with self._lock:
            return self._get_locked(key, self._clock())

    def set_now(self, key: str, value: str, ttl_ms: int) -> None:
        if ttl_ms <= 0:
            self.delete_now(key)
            return
        with self._lock:
            now = self._clock()
            if key not in self._entries:
                self._make_room_locked(now)
            self._entries[key] = (str(value), now + ttl_ms / 1000.0)
            self._entries.move_to_end(key)

    def delete_now(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def incr_now(self, key: str, ttl_ms: int) -> int:
        with self._lock:
            now = self._clock()
            current = self._get_locked(key, now)
            if current is None:
                self._make_room_locked(now)
                self._entries[key] = ("1", now + ttl_ms / 1000.0)
                return 1
            _, expires_at = self._entries[key]
            count = int(current) + 1
            # Window stays anchored at the first increment
            self._entries[key] = (str(count), expires_at)
            return count

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_expired_locked(self._clock())

    async def get(self, key: str) -> Optional[str]:
        return self.get_now(key)

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        self.set_now(key, value, ttl_ms)

    async def delete(self, *keys: str) -> int:
        return self.delete_now(*keys)

    async def incr(self, key: str, ttl_ms: int) -> int:
        return self.incr_now(key, ttl_ms)

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    async def close(self) -> None:
        await self.clear()


class ExpiringSet:
    """Thread-safe set whose members carry an absolute expiry."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or utcnow
        self._members: Dict[str, datetime] = {}
        self._heap: List[Tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._members)

    def __contains__(self, member: object) -> bool:
        return isinstance(member, str) and self.contains(member)

    def add(self, member: str, expires_at: datetime) -> None:
        with self._lock:
            current = self._members.get(member)
            if current is not None and current == expires_at:
                return
            self._members[member] = expires_at
            heapq.heappush(self._heap, (expires_at, next(self._seq), member))

    def contains(self, member: str) -> bool:
        return self.expiry(member) is not None

    def expiry(self, member: str) -> Optional[datetime]:
        """Expiry of a live member, or None if absent or expired."""
        with self._lock:
            expires_at = self._members.get(member)
            if expires_at is None:
                return None
            if expires_at <= self._clock():
                del self._members[member]
                return None
            return expires_at

    def discard(self, member: str) -> bool:
        with self._lock:
            return self._members.pop(member, None) is not None

    def _pop_head_locked(self) -> Optional[str]:
        """Pop the soonest-expiring live member, skipping superseded heap entries."""
        while self._heap:
            expires_at, _, member = heapq.heappop(self._heap)
            if self._members.get(member) == expires_at:
                del self._members[member]
                return member
        return None

    def _compact_heap_locked(self) -> None:
        if len(self._heap) > 2 * len(self._members) + 64:
            self._heap = [
                entry for entry in self._heap if self._members.get(entry[2]) == entry[0]
            ]
            heapq.heapify(self._heap)

    def purge_expired(self) -> int:
        removed = 0
        with self._lock:
            now = self._clock()
            while self._heap and self._heap[0][0] <= now:
                expires_at, _, member = heapq.heappop(self._heap)
                if self._members.get(member) == expires_at:
                    del self._members[member]
                    removed += 1
            self._compact_heap_locked()
        return removed

    def shrink_to(self, target: int) -> int:
        """Drop expired members, then the soonest-to-expire, until ``target`` remain."""
        if target < 0:
            raise ValueError("target must be non-negative")
        self.purge_expired()
        evicted = 0
        with self._lock:
            while len(self._members) > target:
                if self._pop_head_locked() is None:
                    break
                evicted += 1
            self._compact_heap_locked()
        if evicted:
            logger.info("expiring_set_shrunk", evicted=evicted, target=target)
        return evicted

    def clear(self) -> None:
        with self._lock:
            self._members.clear()
            self._heap.clear()
