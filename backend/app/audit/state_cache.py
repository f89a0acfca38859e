from __future__ import annotations
"""Read-once store of entity snapshots captured at load time.

An entry is written when an audited entity is loaded and consumed the first
time that entity is updated. Entities that are loaded but never written
(plain reads) would otherwise pile up, so entries expire after ``ttl_seconds``
and the oldest are dropped once ``max_entries`` is reached. Expired entries
are swept lazily from ``put``; there is no background thread.
"""
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 900
DEFAULT_MAX_ENTRIES = 10000
DEFAULT_SWEEP_INTERVAL = 60


def cache_key(entity) -> Tuple[str, Any]:
    return (entity.audit_entity_name, entity.id)


class OriginalStateCache:
    def __init__(
        self,
        ttl_seconds: Optional[float] = DEFAULT_TTL_SECONDS,
        max_entries: Optional[int] = DEFAULT_MAX_ENTRIES,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (stored_at, snapshot); insertion order doubles as age order
        self._entries: 'OrderedDict[Hashable, Tuple[float, Dict[str, Any]]]' = OrderedDict()
        self._last_sweep = clock()

    def put(self, key: Hashable, snapshot: Dict[str, Any]) -> None:
        now = self._clock()
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (now, snapshot)
            if self.ttl_seconds is not None and now - self._last_sweep >= self.sweep_interval:
                self._sweep_locked(now)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    dropped, _ = self._entries.popitem(last=False)
                    logger.debug('Original-state cache full, dropped %s', dropped)

    def take_if_present(self, key: Hashable) -> Optional[Dict[str, Any]]:
        """Atomically remove and return the snapshot for key, or None."""
        with self._lock:
            item = self._entries.pop(key, None)
        if item is None:
            return None
        stored_at, snapshot = item
        if self._expired(stored_at, self._clock()):
            logger.debug('Original-state entry for %s expired', key)
            return None
        return snapshot

    def discard(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            item = self._entries.get(key)
        return item is not None and not self._expired(item[0], self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expired(self, stored_at: float, now: float) -> bool:
        return self.ttl_seconds is not None and now - stored_at > self.ttl_seconds

    def _sweep_locked(self, now: float) -> int:
        self._last_sweep = now
        removed = 0
        # oldest first; stop at the first live entry
        while self._entries:
            key, (stored_at, _) = next(iter(self._entries.items()))
            if not self._expired(stored_at, now):
                break
            del self._entries[key]
            removed += 1
        if removed:
            logger.debug('Original-state cache swept %d expired entries', removed)
        return removed


__all__ = ['OriginalStateCache', 'cache_key', 'DEFAULT_TTL_SECONDS', 'DEFAULT_MAX_ENTRIES']
