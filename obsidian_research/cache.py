"""
In-memory result cache module for Obsidian Research MCP Server.

Contains the CacheStore class: TTL expiry, dependency-tag invalidation
and LRU eviction under item-count and memory ceilings.
"""

import copy
import re
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Hashable, Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from .utils import estimate_size

logger = structlog.get_logger(__name__)

# Returns the current version token of a dependency tag
VersionOracle = Callable[[str], Hashable | None]

# Returns (value, dependencies) for a warm-up key, or None to skip it
WarmupLoader = Callable[[str], Awaitable[tuple[Any, list[str]] | None]]


@dataclass
class CacheEntry:
    """A cached value with its expiry, dependency and LRU bookkeeping."""

    key: str
    data: Any
    created_at: float
    ttl: float
    dependencies: frozenset[str]
    size: int
    last_accessed: float
    access_count: int = 0
    versions: dict[str, Hashable | None] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


@dataclass
class CacheOptions:
    """Cache configuration. Durations in seconds; None disables a ceiling."""

    enabled: bool = True
    default_ttl: float = 300.0
    max_size: int | None = 500
    max_memory_mb: float | None = 25.0
    warmup_keys: list[str] = field(default_factory=list)
    copy_values: bool = True


@dataclass(frozen=True)
class EvictionPolicy:
    """Item-count and memory ceilings enforced after every set."""

    max_size: int | None = None
    max_memory_mb: float | None = None

    @property
    def max_memory_bytes(self) -> int | None:
        if self.max_memory_mb is None:
            return None
        return int(self.max_memory_mb * 1024 * 1024)

    @property
    def enabled(self) -> bool:
        return self.max_size is not None or self.max_memory_mb is not None

    def is_exceeded(self, size: int, memory_bytes: int) -> bool:
        if self.max_size is not None and size > self.max_size:
            return True
        max_bytes = self.max_memory_bytes
        return max_bytes is not None and memory_bytes > max_bytes


class DependencyIndex:
    """Reverse map from a dependency tag to the cache keys registered under it."""

    def __init__(self) -> None:
        self._keys_by_tag: dict[str, set[str]] = {}
        self._tags_by_key: dict[str, set[str]] = {}

    def register(self, tag: str, key: str) -> None:
        self._keys_by_tag.setdefault(tag, set()).add(key)
        self._tags_by_key.setdefault(key, set()).add(tag)

    def unregister_all(self, key: str) -> None:
        """Remove key from every tag set it appears in, pruning empty sets."""
        for tag in self._tags_by_key.pop(key, ()):
            keys = self._keys_by_tag.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._keys_by_tag[tag]

    def keys_for(self, tag: str) -> set[str]:
        return set(self._keys_by_tag.get(tag, ()))

    def clear(self) -> None:
        self._keys_by_tag.clear()
        self._tags_by_key.clear()

    def __len__(self) -> int:
        return len(self._keys_by_tag)

    def __contains__(self, tag: object) -> bool:
        return tag in self._keys_by_tag


class CacheStore:
    """Key/value result cache with TTL, dependency tags and LRU eviction.

    All methods except warm_up are synchronous, so on a single asyncio
    loop every call is atomic. A set racing an invalidate on the same key
    resolves to whichever runs last.

    Staleness beyond TTL is only detected when a version oracle is given:
    set() snapshots version_of(tag) for each dependency and get() drops the
    entry when any current version differs from the snapshot.
    """

    def __init__(
        self,
        options: CacheOptions | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        version_of: VersionOracle | None = None,
    ):
        self.options = options or CacheOptions()
        self.eviction = EvictionPolicy(self.options.max_size, self.options.max_memory_mb)
        self._clock = clock
        self._version_of = version_of
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._index = DependencyIndex()
        self._memory_usage = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def memory_usage(self) -> int:
        return self._memory_usage

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> Any | None:
        """Return a copy of the cached value, or None on miss, expiry or staleness."""
        if not self.options.enabled:
            return None

        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            logger.debug("cache_miss", key=key)
            return None

        now = self._clock()
        if entry.is_expired(now):
            self._remove(key)
            self._misses += 1
            logger.debug("cache_expired", key=key, age=round(now - entry.created_at, 3))
            return None

        changed = self._changed_dependency(entry)
        if changed is not None:
            self._remove(key)
            self._misses += 1
            logger.debug("cache_stale", key=key, dependency=changed)
            return None

        entry.last_accessed = now
        entry.access_count += 1
        self._entries.move_to_end(key)
        self._hits += 1
        logger.debug("cache_hit", key=key)
        return self._copy(entry.data)

    def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        dependencies: Iterable[str] = (),
    ) -> None:
        """Store value under key, replacing any previous entry and its registrations."""
        if not self.options.enabled:
            return

        if ttl is None:
            ttl = self.options.default_ttl

        self._remove(key)

        now = self._clock()
        deps = frozenset(dependencies)
        data = self._copy(value)
        entry = CacheEntry(
            key=key,
            data=data,
            created_at=now,
            ttl=ttl,
            dependencies=deps,
            size=estimate_size(key) + estimate_size(data),
            last_accessed=now,
            versions={tag: self._version_of(tag) for tag in deps} if self._version_of else {},
        )

        self._entries[key] = entry
        self._memory_usage += entry.size
        for tag in deps:
            self._index.register(tag, key)

        logger.debug("cache_set", key=key, ttl=ttl, dependencies=sorted(deps), size=entry.size)

        if self.eviction.enabled:
            self._enforce_limits()

    def invalidate(self, key: str) -> bool:
        """Remove one entry. Returns False when the key was absent."""
        if self._remove(key) is None:
            return False
        logger.debug("cache_invalidated", key=key)
        return True

    def invalidate_by_dependency(self, tag: str) -> int:
        """Remove every entry registered under tag and return how many were removed."""
        keys = self._index.keys_for(tag)
        count = sum(1 for key in keys if self._remove(key) is not None)
        if count:
            logger.debug("cache_dependency_invalidated", dependency=tag, invalidated=count)
        return count

    def invalidate_pattern(self, pattern: str | re.Pattern[str]) -> int:
        """Remove every entry whose key matches the regular expression."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        keys = [key for key in self._entries if regex.search(key)]
        for key in keys:
            self._remove(key)
        if keys:
            logger.debug("cache_pattern_invalidated", pattern=regex.pattern, invalidated=len(keys))
        return len(keys)

    def clear(self) -> None:
        """Drop all entries, the dependency index and the hit/miss counters."""
        count = len(self._entries)
        self._entries.clear()
        self._index.clear()
        self._memory_usage = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        logger.info("cache_cleared", entries=count)

    def keys(self) -> list[str]:
        return list(self._entries)

    def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self.eviction.max_size,
            "dependency_count": len(self._index),
            "memory_usage_bytes": self._memory_usage,
            "max_memory_bytes": self.eviction.max_memory_bytes,
            "hit_count": self._hits,
            "miss_count": self._misses,
            "eviction_count": self._evictions,
            "hit_rate": self._hits / total if total else 0.0,
            "entries": [
                {
                    "key": entry.key,
                    "age": now - entry.created_at,
                    "ttl": entry.ttl,
                    "expired": entry.is_expired(now),
                    "dependencies": sorted(entry.dependencies),
                    "size": entry.size,
                }
                for entry in self._entries.values()
            ],
        }

    async def warm_up(self, loader: WarmupLoader) -> int:
        """Populate the configured warmup keys using loader. Returns keys stored."""
        if not self.options.warmup_keys:
            return 0

        logger.info("cache_warmup_started", keys=self.options.warmup_keys)
        stored = 0
        for key in self.options.warmup_keys:
            try:
                loaded = await loader(key)
            except Exception as e:
                logger.warning("cache_warmup_failed", key=key, error=str(e))
                continue
            if loaded is None:
                logger.debug("cache_warmup_skipped", key=key)
                continue
            value, dependencies = loaded
            self.set(key, value, dependencies=dependencies)
            stored += 1

        logger.info("cache_warmup_completed", stored=stored)
        return stored

    def _remove(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        self._memory_usage -= entry.size
        self._index.unregister_all(key)
        return entry

    def _changed_dependency(self, entry: CacheEntry) -> str | None:
        if self._version_of is None:
            return None
        for tag, version in entry.versions.items():
            if self._version_of(tag) != version:
                return tag
        return None

    def _enforce_limits(self) -> None:
        if not self.eviction.is_exceeded(len(self._entries), self._memory_usage):
            return

        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key)

        while self._entries and self.eviction.is_exceeded(len(self._entries), self._memory_usage):
            key = next(iter(self._entries))
            entry = self._remove(key)
            self._evictions += 1
            logger.debug(
                "cache_evicted",
                key=key,
                size=entry.size,
                memory_usage=self._memory_usage,
                entries=len(self._entries),
            )

    def _copy(self, value: Any) -> Any:
        if not self.options.copy_values:
            return value
        return copy.deepcopy(value)
