"""
Permission Decision Cache

In-process, mutex-guarded TTL cache of permission decisions. Entries are
namespaced per user so that a role mutation can drop every decision for that
user in one step. Expiry is lazy: an entry older than the TTL is discarded
when it is next read. Two requests computing the same key concurrently
simply overwrite each other with the same value.

Every invalidation bumps a per-user generation (and `clear` bumps a global
epoch). A decision is written only if the generation observed before its
role assignments were loaded is still current, so a decision computed from
assignments that were mutated and invalidated mid-lookup is never cached.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from utils.monitoring import record_cache_event

CacheKey = Tuple[str, str]  # (permission name, context fingerprint)
Generation = Tuple[int, int]  # (clear epoch, per-user invalidation count)


@dataclass
class CacheEntry:
    granted: bool
    expires_at_monotonic: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    invalidations: int = 0
    entries: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'hits': self.hits,
            'misses': self.misses,
            'invalidations': self.invalidations,
            'entries': self.entries,
        }


class PermissionCache:
    """
    Per-user TTL cache of boolean decisions.

    Args:
        ttl_seconds: Lifetime of an entry measured from write time; 0 disables reuse
        enabled: When False every operation is a no-op and every read misses
        clock: Monotonic clock in seconds; injectable for tests
    """

    def __init__(self, ttl_seconds: float = 300.0, enabled: bool = True,
                 clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds < 0:
            raise ValueError("Cache TTL must not be negative")
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self._clock = clock
        self._entries: Dict[str, Dict[CacheKey, CacheEntry]] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()
        self._stats = CacheStats()

    def get(self, user_id: str, key: CacheKey) -> Optional[bool]:
        """Return the cached decision, or None on a miss or expired entry."""
        if not self.enabled:
            return None

        with self._lock:
            user_entries = self._entries.get(user_id)
            entry = user_entries.get(key) if user_entries else None
            if entry is not None and entry.expires_at_monotonic > self._clock():
                self._stats.hits += 1
                hit = True
            else:
                if entry is not None:
                    del user_entries[key]
                    if not user_entries:
                        del self._entries[user_id]
                self._stats.misses += 1
                hit = False

        record_cache_event('hit' if hit else 'miss')
        return entry.granted if hit else None

    def generation(self, user_id: str) -> Generation:
        """Current invalidation generation for ``user_id``; ordered and monotonic."""
        with self._lock:
            return self._epoch, self._generations.get(user_id, 0)

    def set(self, user_id: str, key: CacheKey, granted: bool,
            generation: Optional[Generation] = None) -> bool:
        """
        Store a decision.

        Args:
            user_id: User the decision belongs to
            key: Permission name and context fingerprint
            granted: The decision
            generation: Generation read before the decision's inputs were
                loaded; the write is skipped if the user was invalidated since

        Returns:
            bool: True if the entry was written
        """
        if not self.enabled:
            return False
        entry = CacheEntry(granted=granted, expires_at_monotonic=self._clock() + self.ttl_seconds)
        with self._lock:
            current = (self._epoch, self._generations.get(user_id, 0))
            stale = generation is not None and generation != current
            if not stale:
                self._entries.setdefault(user_id, {})[key] = entry

        if stale:
            record_cache_event('stale_write_skipped')
        return not stale

    def invalidate_user(self, user_id: str) -> int:
        """
        Drop every entry namespaced to ``user_id``.

        Returns:
            int: Number of entries removed
        """
        with self._lock:
            removed = len(self._entries.pop(user_id, {}))
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            self._stats.invalidations += 1
        record_cache_event('invalidation')
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generations.clear()
            self._epoch += 1
            self._stats.invalidations += 1
        record_cache_event('clear')

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                invalidations=self._stats.invalidations,
                entries=sum(len(entries) for entries in self._entries.values()),
            )

    def __len__(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._entries.values())
