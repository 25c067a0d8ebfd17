"""Generic keyed cache used for raw LLM completions and derived analyses.

A `CacheStore[T]` hashes the structured inputs that produced a value into a
key, stores the value with an expiry, and refuses to serve anything past
that expiry: expired entries are deleted on read and reported as a miss.
Storage is pluggable: the database backend persists to the `cache_entries`
table, the memory backend keeps a bounded LRU in process.
"""
import abc
import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, Optional, TypeVar

from cachetools import LRUCache
from pydantic import TypeAdapter, ValidationError

from ..api.exceptions import CacheError, DatastoreError
from ..models.cache import CacheEntry, CacheStats
from ..persistence.repository import MatchRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def structural_key(namespace: str, parts: Any) -> str:
    """Stable hash of `parts`: dict key order and whitespace don't change the key."""
    canonical = json.dumps(parts, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{namespace}:{digest}"


class CacheBackend(abc.ABC):
    """Storage for serialized cache entries."""

    evictions: int = 0

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry[Any]]:
        pass

    @abc.abstractmethod
    async def put(self, entry: CacheEntry[Any]) -> None:
        pass

    @abc.abstractmethod
    async def touch(self, key: str) -> None:
        """Records one more use of the entry."""
        pass

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abc.abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        pass

    @abc.abstractmethod
    async def size(self) -> int:
        pass


class DatabaseCacheBackend(CacheBackend):
    """Persists entries in the `cache_entries` table through the repository."""

    def __init__(self, repository: MatchRepository):
        self.repository = repository
        self.evictions = 0

    async def get(self, key: str) -> Optional[CacheEntry[Any]]:
        try:
            return await self.repository.get_cache_entry(key)
        except DatastoreError as e:
            raise CacheError(f"Failed to read cache entry {key}: {e}", code="RETRIEVAL_ERROR") from e

    async def put(self, entry: CacheEntry[Any]) -> None:
        try:
            await self.repository.put_cache_entry(entry)
        except DatastoreError as e:
            raise CacheError(f"Failed to store cache entry {entry.key}: {e}", code="STORAGE_ERROR") from e

    async def touch(self, key: str) -> None:
        try:
            await self.repository.increment_cache_usage(key)
        except DatastoreError as e:
            raise CacheError(f"Failed to update usage for {key}: {e}", code="STORAGE_ERROR") from e

    async def delete(self, key: str) -> bool:
        try:
            return await self.repository.delete_cache_entry(key)
        except DatastoreError as e:
            raise CacheError(f"Failed to invalidate {key}: {e}", code="INVALIDATION_ERROR") from e

    async def delete_expired(self, now: datetime) -> int:
        try:
            return await self.repository.delete_expired_cache_entries(now)
        except DatastoreError as e:
            raise CacheError(f"Failed to purge expired entries: {e}", code="INVALIDATION_ERROR") from e

    async def size(self) -> int:
        try:
            return await self.repository.count_cache_entries()
        except DatastoreError as e:
            raise CacheError(f"Failed to count cache entries: {e}", code="RETRIEVAL_ERROR") from e


class _CountingLRUCache(LRUCache):
    def __init__(self, maxsize: int):
        super().__init__(maxsize=maxsize)
        self.evictions = 0

    def popitem(self):
        key, value = super().popitem()
        self.evictions += 1
        return key, value


class MemoryCacheBackend(CacheBackend):
    """Bounded in-process backend; least recently used entries are dropped at capacity."""

    def __init__(self, maxsize: int = 1000):
        self._entries = _CountingLRUCache(maxsize=maxsize)

    @property
    def evictions(self) -> int:  # type: ignore[override]
        return self._entries.evictions

    async def get(self, key: str) -> Optional[CacheEntry[Any]]:
        return self._entries.get(key)

    async def put(self, entry: CacheEntry[Any]) -> None:
        self._entries[entry.key] = entry

    async def touch(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            self._entries[key] = entry.model_copy(update={"usage_count": entry.usage_count + 1})

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def delete_expired(self, now: datetime) -> int:
        expired = [key for key, entry in list(self._entries.items()) if entry.is_expired(now)]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    async def size(self) -> int:
        return len(self._entries)


class CacheStore(Generic[T]):
    """Typed view over a backend: `get/set/invalidate` keyed by the structure of the inputs."""

    def __init__(
        self,
        backend: CacheBackend,
        value_type: Any,
        namespace: str,
        default_ttl: timedelta,
        clock: Optional[Clock] = None,
    ):
        self.backend = backend
        self.namespace = namespace
        self.default_ttl = default_ttl
        self._adapter = TypeAdapter(value_type)
        self._clock = clock or utcnow
        self._hits = 0
        self._misses = 0
        self._expired = 0

    def key_for(self, key_parts: Any) -> str:
        return structural_key(self.namespace, key_parts)

    async def get(self, key_parts: Any) -> Optional[T]:
        key = self.key_for(key_parts)
        entry = await self.backend.get(key)
        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired(self._clock()):
            logger.debug(f"Cache entry {key} expired at {entry.expires_at}; deleting.")
            await self.backend.delete(key)
            self._expired += 1
            self._misses += 1
            return None

        try:
            value = self._adapter.validate_python(entry.value)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            await self.backend.delete(key)
            self._misses += 1
            return None

        try:
            await self.backend.touch(key)
        except CacheError as e:
            logger.warning(f"Could not record usage of cache entry {key}: {e}")
        self._hits += 1
        return value

    async def set(self, key_parts: Any, value: T, ttl: Optional[timedelta] = None) -> CacheEntry[Any]:
        now = self._clock()
        entry = CacheEntry[Any](
            key=self.key_for(key_parts),
            value=self._adapter.dump_python(value, mode="json"),
            timestamp=now,
            expires_at=now + (ttl or self.default_ttl),
            usage_count=0,
        )
        await self.backend.put(entry)
        return entry

    async def invalidate(self, key_parts: Any) -> bool:
        return await self.backend.delete(self.key_for(key_parts))

    async def purge_expired(self) -> int:
        """Deletes every expired entry in the backend, returning how many were removed."""
        removed = await self.backend.delete_expired(self._clock())
        self._expired += removed
        if removed:
            logger.info(f"Purged {removed} expired cache entries.")
        return removed

    async def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            evictions=self._expired + self.backend.evictions,
            size=await self.backend.size(),
        )
