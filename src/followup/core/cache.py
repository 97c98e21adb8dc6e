"""In-process TTL cache with policy-driven eviction and integrity checks.

Used to memoize expensive resolution steps (conversation threads, advisor
sentiment). Entries expire after their TTL, are evicted by policy when the
entry count or estimated memory exceeds the configured caps, and are checked
against a SHA-256 hash of their serialized value on every read so that a
caller mutating a cached object graph gets a miss instead of stale data.

Usage:
    from followup.core.cache import CacheEngine

    cache = CacheEngine(config.cache)
    async with cache:  # runs the background sweep
        cache.set("thread:abc", thread, ttl=1200)
        thread = cache.get("thread:abc")
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields, is_dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Literal

import regex

from followup.config_schema import CacheConfig
from followup.core.errors import CacheIntegrityError
from followup.core.logging import get_logger

logger = get_logger(__name__)

# Size charged for values whose size cannot be estimated
FALLBACK_SIZE_BYTES = 100

# Memory pressure eviction stops once usage is at or below this share of the cap
MEMORY_TARGET_RATIO = 0.8

EvictionReason = Literal["ttl", "memory_pressure", "max_entries"]


@dataclass(slots=True)
class CacheEntry:
    """A cached value plus bookkeeping.

    Timestamps are values of the cache's clock (monotonic seconds by default).
    """

    data: Any
    created_at: float
    ttl: float
    last_accessed_at: float
    size_estimate: int
    integrity_hash: str = ""
    access_count: int = 0

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Snapshot of cache counters.

    Attributes:
        total_entries: Entries currently stored
        memory_usage_bytes: Sum of entry size estimates
        hit_rate: Hits as a percentage of all lookups (0-100)
        hits: Successful lookups
        misses: Lookups that found nothing usable
        evictions: Entries removed by expiry, policy or clear()
        oldest_entry_age: Seconds since the oldest entry was stored, if any
        newest_entry_age: Seconds since the newest entry was stored, if any
        average_access_count: Mean reads per stored entry
    """

    total_entries: int
    memory_usage_bytes: int
    hit_rate: float
    hits: int
    misses: int
    evictions: int
    oldest_entry_age: float | None
    newest_entry_age: float | None
    average_access_count: float


@dataclass(frozen=True, slots=True)
class EvictionResult:
    """Outcome of one eviction pass."""

    evicted_count: int
    freed_bytes: int
    reason: EvictionReason


# ---------------------------------------------------------------------------
# Size estimation and hashing
# ---------------------------------------------------------------------------


def estimate_size(value: Any) -> int:
    """Estimate the in-memory size of a value in bytes.

    Traverses containers, dataclasses and plain objects recursively. Objects
    already visited count zero, so self-referential structures terminate.

    Args:
        value: Any Python value

    Returns:
        Estimated size, or FALLBACK_SIZE_BYTES if estimation fails
    """
    try:
        return _estimate(value, set())
    except (RecursionError, TypeError, ValueError):
        return FALLBACK_SIZE_BYTES


def _estimate(value: Any, visited: set[int]) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return 4
    if isinstance(value, int | float):
        return 8
    if isinstance(value, str):
        return 2 * len(value)
    if isinstance(value, bytes | bytearray):
        return len(value)
    if isinstance(value, datetime | date | timedelta | Enum):
        return 8

    marker = id(value)
    if marker in visited:
        return 0
    visited.add(marker)

    if isinstance(value, Mapping):
        return sum(_estimate(k, visited) + _estimate(v, visited) for k, v in value.items())
    if isinstance(value, list | tuple | set | frozenset):
        return sum(_estimate(item, visited) for item in value)
    if is_dataclass(value) and not isinstance(value, type):
        return sum(_estimate(getattr(value, f.name), visited) for f in fields(value))
    if hasattr(value, "__dict__"):
        return _estimate(vars(value), visited)
    return FALLBACK_SIZE_BYTES


def _json_default(value: Any) -> Any:
    """Convert values json cannot serialize natively."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: getattr(value, f.name) for f in fields(value)}
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, set | frozenset):
        return sorted(value, key=repr)
    if isinstance(value, bytes):
        return value.hex()
    if hasattr(value, "__dict__"):
        return vars(value)
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def content_hash(value: Any) -> str:
    """Compute a deterministic SHA-256 hash over a value's serialized form.

    Args:
        value: Value to hash

    Returns:
        Hex digest, or "" if the value cannot be serialized (no integrity check)
    """
    try:
        serialized = json.dumps(
            value,
            sort_keys=True,
            default=_json_default,
            separators=(",", ":"),
            ensure_ascii=False,
        )
    except (TypeError, ValueError):
        return ""
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Eviction order
# ---------------------------------------------------------------------------

_POLICY_SORT_KEYS: dict[str, Callable[[CacheEntry], float]] = {
    "lru": lambda entry: entry.last_accessed_at,
    "lfu": lambda entry: entry.access_count,
    "fifo": lambda entry: entry.created_at,
    "ttl": lambda entry: entry.expires_at,
}


def _compile_pattern(pattern: str | regex.Pattern) -> regex.Pattern:
    if isinstance(pattern, str):
        return regex.compile(pattern)
    return pattern


class CacheEngine:
    """Key-value cache with TTL expiry, capacity eviction and integrity hashing.

    All operations are synchronous; no await happens inside a mutation, so the
    store is safe to share between coroutines on one event loop. The optional
    background sweep runs as an asyncio task (start()/stop() or `async with`).
    """

    def __init__(
        self,
        options: CacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the cache.

        Args:
            options: Cache configuration (defaults if not provided)
            clock: Monotonic clock returning seconds; injectable for tests
        """
        self._options = options or CacheConfig()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._memory_usage = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._sweep_task: asyncio.Task[None] | None = None

    @property
    def options(self) -> CacheConfig:
        return self._options

    def __len__(self) -> int:
        return len(self._entries)

    # -----------------------------------------------------------------
    # Core operations
    # -----------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None on a miss.

        A miss is counted when the key is absent, the entry has expired, or
        (with content hashing) the value no longer matches its stored hash.
        """
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        now = self._clock()
        if entry.is_expired(now):
            self._remove(key)
            self._misses += 1
            self._evictions += 1
            return None

        try:
            self._verify_integrity(key, entry)
        except CacheIntegrityError as e:
            logger.warning("cache_integrity_failed", key=key, error=str(e))
            self._remove(key)
            self._misses += 1
            return None

        entry.access_count += 1
        entry.last_accessed_at = now
        self._hits += 1
        return entry.data

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a value, evicting other entries first if capacity requires it.

        Args:
            key: Cache key
            value: Value to store (stored by reference)
            ttl: Lifetime in seconds; defaults to options.default_ttl_seconds

        Raises:
            ValueError: If ttl is not positive
        """
        ttl = self._options.default_ttl_seconds if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl}")

        size = estimate_size(value)
        integrity_hash = content_hash(value) if self._options.enable_content_hashing else ""

        if key in self._entries:
            self._remove(key)

        self._ensure_capacity(size)

        now = self._clock()
        self._entries[key] = CacheEntry(
            data=value,
            created_at=now,
            ttl=ttl,
            last_accessed_at=now,
            size_estimate=size,
            integrity_hash=integrity_hash,
        )
        self._memory_usage += size

    def has(self, key: str) -> bool:
        """Check for a live entry without touching hit/miss counters."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            self._remove(key)
            self._evictions += 1
            return False
        return True

    def invalidate(self, key: str) -> bool:
        """Remove one entry. Returns True if it existed."""
        if key not in self._entries:
            return False
        self._remove(key)
        return True

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        count = len(self._entries)
        self._entries.clear()
        self._memory_usage = 0
        self._evictions += count
        if count:
            logger.debug("cache_cleared", entries=count)
        return count

    def bulk_invalidate(self, pattern: str | regex.Pattern) -> int:
        """Remove every entry whose key matches a regular expression.

        Args:
            pattern: Regex string or compiled pattern, matched with search()

        Returns:
            Number of entries removed
        """
        compiled = _compile_pattern(pattern)
        matching = [key for key in self._entries if compiled.search(key)]
        for key in matching:
            self._remove(key)
        if matching:
            logger.debug("cache_bulk_invalidated", pattern=compiled.pattern, entries=len(matching))
        return len(matching)

    def cleanup(self) -> EvictionResult:
        """Remove all expired entries."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        freed = sum(self._remove(key) for key in expired)
        self._evictions += len(expired)
        if expired:
            logger.debug("cache_expired_swept", entries=len(expired), freed_bytes=freed)
        return EvictionResult(evicted_count=len(expired), freed_bytes=freed, reason="ttl")

    # -----------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------

    def get_stats(self) -> CacheStats:
        """Return a snapshot of the cache counters."""
        lookups = self._hits + self._misses
        entries = list(self._entries.values())
        now = self._clock()

        oldest_age: float | None = None
        newest_age: float | None = None
        average_access = 0.0
        if entries:
            created = [entry.created_at for entry in entries]
            oldest_age = now - min(created)
            newest_age = now - max(created)
            average_access = sum(entry.access_count for entry in entries) / len(entries)

        return CacheStats(
            total_entries=len(entries),
            memory_usage_bytes=self._memory_usage,
            hit_rate=(self._hits / lookups * 100) if lookups else 0.0,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            oldest_entry_age=oldest_age,
            newest_entry_age=newest_age,
            average_access_count=average_access,
        )

    def memory_pressure(self) -> float:
        """Estimated memory usage as a percentage of the configured cap."""
        return self._memory_usage / self._options.max_memory_bytes * 100

    def keys(self, pattern: str | regex.Pattern | None = None) -> list[str]:
        """List keys, optionally filtered by a regular expression."""
        if pattern is None:
            return list(self._entries)
        compiled = _compile_pattern(pattern)
        return [key for key in self._entries if compiled.search(key)]

    def update_options(self, **changes: Any) -> CacheConfig:
        """Change configuration at runtime.

        Capacity is re-enforced immediately when the caps shrink, and a
        running sweep is restarted when its interval changes.

        Args:
            **changes: CacheConfig fields to replace

        Returns:
            The new, validated options

        Raises:
            pydantic.ValidationError: If the resulting options are invalid
        """
        previous = self._options
        self._options = CacheConfig(**{**previous.model_dump(), **changes})

        self._ensure_capacity(0, adding=False)

        if (
            self._sweep_task is not None
            and self._options.cleanup_interval_seconds != previous.cleanup_interval_seconds
        ):
            self._sweep_task.cancel()
            self._sweep_task = asyncio.create_task(self._sweep_loop())

        logger.info("cache_options_updated", changed=sorted(changes))
        return self._options

    # -----------------------------------------------------------------
    # Background sweep
    # -----------------------------------------------------------------

    def start(self) -> None:
        """Start the background sweep. Must be called from a running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the background sweep and wait for it to finish."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def __aenter__(self) -> CacheEngine:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._options.cleanup_interval_seconds)
            self.cleanup()

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _verify_integrity(self, key: str, entry: CacheEntry) -> None:
        if not self._options.enable_content_hashing or not entry.integrity_hash:
            return
        if content_hash(entry.data) != entry.integrity_hash:
            raise CacheIntegrityError(key)

    def _remove(self, key: str) -> int:
        entry = self._entries.pop(key)
        self._memory_usage -= entry.size_estimate
        return entry.size_estimate

    def _eviction_order(self) -> list[str]:
        sort_key = _POLICY_SORT_KEYS[self._options.eviction_policy]
        # sorted() is stable, so ties fall back to insertion order
        return [key for key, _ in sorted(self._entries.items(), key=lambda kv: sort_key(kv[1]))]

    def _ensure_capacity(self, incoming_size: int, adding: bool = True) -> None:
        """Make room for one more entry of the given size.

        Pass one enforces max_entries; pass two enforces the memory cap,
        evicting down to MEMORY_TARGET_RATIO of the cap.
        """
        overflow = len(self._entries) + (1 if adding else 0) - self._options.max_entries
        if overflow > 0:
            self._evict(self._eviction_order()[:overflow], "max_entries")

        cap = self._options.max_memory_bytes
        if self._memory_usage + incoming_size > cap:
            target = cap * MEMORY_TARGET_RATIO
            victims: list[str] = []
            projected = self._memory_usage + incoming_size
            for key in self._eviction_order():
                if projected <= target:
                    break
                victims.append(key)
                projected -= self._entries[key].size_estimate
            self._evict(victims, "memory_pressure")

    def _evict(self, keys: list[str], reason: EvictionReason) -> EvictionResult:
        freed = sum(self._remove(key) for key in keys)
        self._evictions += len(keys)
        if keys:
            logger.debug(
                "cache_evicted",
                reason=reason,
                policy=self._options.eviction_policy,
                entries=len(keys),
                freed_bytes=freed,
            )
        return EvictionResult(evicted_count=len(keys), freed_bytes=freed, reason=reason)
