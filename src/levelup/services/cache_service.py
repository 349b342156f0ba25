"""In-memory cache with TTL expiry, LRU eviction and dependency-tag invalidation."""
import asyncio
import json
import logging
import re
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, Optional, Pattern, Set, Union

from levelup import monitoring
from levelup.config import CacheSettings
from levelup.models.storage_models import CacheEntry, CacheStats

logger = logging.getLogger(__name__)

FALLBACK_ENTRY_SIZE = 1024


def estimate_size(value: Any) -> int:
    """Estimate the in-memory size of a value from its serialized length."""
    try:
        return len(json.dumps(value, default=str)) * 2
    except (TypeError, ValueError):
        return FALLBACK_ENTRY_SIZE


class CacheService:
    """Key/value cache shared by the storage facade and derived data.

    Entries are kept in least-recently-accessed order, so eviction always
    removes the entry that was touched longest ago. Each entry may declare
    dependency tags; invalidating a tag drops every entry that declared it.
    """

    def __init__(
        self,
        cache_settings: Optional[CacheSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the cache with its limits and a clock."""
        self.settings = cache_settings or CacheSettings()
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._dependencies: Dict[str, Set[str]] = {}
        self._size = 0
        self._hits = 0
        self._misses = 0
        self._cleanup_task: Optional[asyncio.Task] = None
        self.running = False

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value, recording a hit or a miss."""
        entry = self._entries.get(key)
        if entry is None:
            self._record_miss(key)
            return default

        now = self.clock()
        if entry.is_expired(now):
            self._remove(key, reason="expired")
            self._record_miss(key)
            return default

        entry.access_count += 1
        entry.last_access = now
        self._entries.move_to_end(key)
        self._hits += 1
        monitoring.cache_hits.inc()
        return entry.value

    def has(self, key: str) -> bool:
        """Check whether a live entry exists without touching statistics."""
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self.clock())

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        dependencies: Optional[Iterable[str]] = None,
    ) -> bool:
        """Store a value, evicting least recently accessed entries when full."""
        if key in self._entries:
            self._remove(key, reason="replaced")

        size = estimate_size(value)
        if size > self.settings.max_size:
            logger.warning(
                "Value for %s is %d bytes, larger than the cache budget; not cached",
                key,
                size,
            )
            return False

        self._ensure_capacity(size)

        now = self.clock()
        entry = CacheEntry(
            value=value,
            timestamp=now,
            ttl=self.settings.default_ttl if ttl is None else ttl,
            size=size,
            dependencies=frozenset(dependencies or ()),
            last_access=now,
        )
        self._entries[key] = entry
        self._size += size
        for tag in entry.dependencies:
            self._dependencies.setdefault(tag, set()).add(key)

        monitoring.cache_size_bytes.set(self._size)
        return True

    def invalidate(self, key: str) -> bool:
        """Remove a single entry."""
        if key not in self._entries:
            return False
        self._remove(key, reason="invalidated")
        return True

    def invalidate_by_dependency(self, tag: str) -> int:
        """Remove every entry that declared the dependency tag."""
        keys = self._dependencies.pop(tag, set())
        removed = 0
        for key in list(keys):
            if key in self._entries:
                self._remove(key, reason="dependency")
                removed += 1
        if removed:
            logger.debug("Invalidated %d cache entries depending on %s", removed, tag)
        return removed

    def invalidate_by_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        """Remove every entry whose key matches the regular expression."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        keys = [key for key in self._entries if regex.search(key)]
        for key in keys:
            self._remove(key, reason="pattern")
        return len(keys)

    def clear(self) -> None:
        """Remove all entries and reset statistics."""
        self._entries.clear()
        self._dependencies.clear()
        self._size = 0
        self._hits = 0
        self._misses = 0
        monitoring.cache_size_bytes.set(0)

    def cleanup_expired(self) -> int:
        """Remove all expired entries regardless of access."""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key, reason="expired")
        if expired:
            logger.debug("Cache cleanup removed %d expired entries", len(expired))
        return len(expired)

    def keys(self) -> list[str]:
        """Get the keys currently held, including not yet purged expired ones."""
        return list(self._entries)

    def get_stats(self) -> CacheStats:
        """Get a snapshot of cache statistics."""
        timestamps = [entry.timestamp for entry in self._entries.values()]
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            size=self._size,
            entries=len(self._entries),
            memory_usage=self._size / self.settings.max_size,
            oldest_entry=min(timestamps) if timestamps else None,
            newest_entry=max(timestamps) if timestamps else None,
        )

    async def start(self) -> None:
        """Start the periodic cleanup task."""
        if self.running:
            return
        self.running = True
        self._cleanup_task = asyncio.create_task(self._run_cleanup())

    async def stop(self) -> None:
        """Stop the periodic cleanup task."""
        if not self.running:
            return
        self.running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None

    async def _run_cleanup(self) -> None:
        """Run the periodic expiry sweep."""
        while self.running:
            try:
                await asyncio.sleep(self.settings.cleanup_interval)
                self.cleanup_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in cache cleanup task: %s", str(e))

    def _ensure_capacity(self, incoming: int) -> None:
        while self._entries and (
            len(self._entries) >= self.settings.max_entries
            or self._size + incoming > self.settings.max_size
        ):
            oldest_key = next(iter(self._entries))
            self._remove(oldest_key, reason="evicted")
            logger.debug("Evicted least recently used cache entry %s", oldest_key)

    def _remove(self, key: str, reason: str) -> None:
        entry = self._entries.pop(key)
        self._size -= entry.size
        for tag in entry.dependencies:
            keys = self._dependencies.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._dependencies[tag]
        monitoring.cache_evictions.labels(reason=reason).inc()
        monitoring.cache_size_bytes.set(self._size)

    def _record_miss(self, key: str) -> None:
        self._misses += 1
        monitoring.cache_misses.inc()
        logger.debug("Cache miss for %s", key)
