"""
Entry Store: logical cache keys mapped onto namespaced backend keys.
"""

import fnmatch
import time
from typing import Callable, Iterable, List, Optional, Tuple

from ..backend.base import CacheBackend
from ..shared.logging import get_logger
from .models import CacheEntry, INDEX_PREFIX, NAMESPACE_PREFIX, decode_value, validate_key

GLOB_CHARS = set("*?[]")


class EntryStore:
    """Owns every cache entry of one namespace on a shared backend.

    Entries live under ``ns:<namespace>:<key>``. When entries are written
    with tags, the store maintains one backend set per tag under
    ``idx:<namespace>:tag:<tag>`` so a group can be evicted without key
    enumeration. Backends that cannot scan additionally get an all-keys set
    so pattern removal and namespace clears still work.

    Index sets live at least as long as the longest-lived entry added to
    them, so they disappear once all their entries have expired. Members of
    entries that expired while the set lives on are dropped by
    ``prune_indexes`` or by the next removal that reads the set.
    """

    def __init__(
        self,
        backend: CacheBackend,
        namespace: str = "default",
        *,
        clock: Callable[[], float] = time.time,
        index_all_keys: Optional[bool] = None,
    ):
        if not namespace or GLOB_CHARS.intersection(namespace) or ":" in namespace:
            raise ValueError(f"Invalid namespace {namespace!r}")
        self.backend = backend
        self.namespace = namespace
        self.logger = get_logger("cache_engine.store")
        self._clock = clock
        self._prefix = f"{NAMESPACE_PREFIX}{namespace}:"
        self._index_prefix = f"{INDEX_PREFIX}{namespace}:"
        self.index_all_keys = (not backend.supports_scan) if index_all_keys is None else index_all_keys

    # Key mapping

    def physical_key(self, key: str) -> str:
        return self._prefix + validate_key(key)

    def logical_key(self, physical_key: str) -> str:
        return physical_key[len(self._prefix):]

    def tag_index_key(self, tag: str) -> str:
        if not tag:
            raise ValueError("Tag must be non-empty")
        return f"{self._index_prefix}tag:{tag}"

    @property
    def all_keys_index(self) -> str:
        return f"{self._index_prefix}all"

    @property
    def tag_registry_key(self) -> str:
        return f"{self._index_prefix}tags"

    # Operations

    async def read(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` with its expiry, or None."""
        physical = self.physical_key(key)
        payload = await self.backend.get(physical)
        if payload is None:
            return None

        remaining = await self.backend.ttl(physical)
        if remaining is None:
            # Persistent, or expired between the two round-trips
            payload = await self.backend.get(physical)
            if payload is None:
                return None
        expires_at = self._clock() + remaining if remaining is not None else None
        try:
            return CacheEntry.decode(key, payload, expires_at)
        except ValueError as e:
            self.logger.warning("Discarding malformed cache entry", cache_key=key, error=str(e))
            return None

    async def read_value(self, key: str) -> Optional[bytes]:
        """Single round-trip read of just the value bytes."""
        payload = await self.backend.get(self.physical_key(key))
        if payload is None:
            return None
        try:
            return decode_value(key, payload)
        except ValueError as e:
            self.logger.warning("Discarding malformed cache entry", cache_key=key, error=str(e))
            return None

    async def write(
        self,
        key: str,
        value: bytes,
        ttl: Optional[float],
        tags: Iterable[str] = (),
    ) -> CacheEntry:
        """Store ``value`` under ``key``; ttl None keeps it until removed."""
        physical = self.physical_key(key)
        tags = tuple(dict.fromkeys(tags))
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=bytes(value),
            created_at=now,
            expires_at=now + ttl if ttl is not None else None,
            tags=tags,
        )

        await self.backend.set(physical, entry.encode(), ttl)
        await self._index(key, tags, ttl)

        self.logger.debug("Stored cache entry", cache_key=key, ttl=ttl, tags=list(tags))
        return entry

    async def _index(self, key: str, tags: Tuple[str, ...], ttl: Optional[float]):
        if tags:
            await self.backend.add_to_index(self.tag_registry_key, *tags, ttl=ttl)
            for tag in tags:
                await self.backend.add_to_index(self.tag_index_key(tag), key, ttl=ttl)
        if self.index_all_keys:
            await self.backend.add_to_index(self.all_keys_index, key, ttl=ttl)

    async def refresh(self, key: str, ttl: float) -> bool:
        """Extend an entry's lifetime without touching its value."""
        entry = await self.read(key)
        if entry is None:
            return False
        refreshed = await self.backend.expire(self.physical_key(key), ttl)
        if refreshed:
            await self._index(key, entry.tags, ttl)
            self.logger.debug("Refreshed cache entry", cache_key=key, ttl=ttl)
        return refreshed

    async def remove(self, key: str) -> bool:
        removed = await self.backend.delete(self.physical_key(key))
        if self.index_all_keys:
            await self.backend.remove_from_set(self.all_keys_index, key)
        return removed

    async def remove_many(self, keys: Iterable[str]) -> int:
        keys = [validate_key(k) for k in keys]
        if not keys:
            return 0
        removed = await self.backend.delete_many(self._prefix + k for k in keys)
        if self.index_all_keys:
            await self.backend.remove_from_set(self.all_keys_index, *keys)
        return removed

    async def remove_tagged(self, tag: str) -> int:
        """Remove every entry written with ``tag`` before this call.

        Only the members read here leave the index, so a key tagged by a
        concurrent write stays reachable for the next group eviction.
        """
        index_key = self.tag_index_key(tag)
        keys = await self.backend.set_members(index_key)
        removed = await self.remove_many(keys)
        if keys:
            await self.backend.remove_from_set(index_key, *keys)
        await self._forget_tag_if_empty(tag)
        return removed

    async def _forget_tag_if_empty(self, tag: str):
        if not await self.backend.set_members(self.tag_index_key(tag)):
            await self.backend.remove_from_set(self.tag_registry_key, tag)

    async def matching_keys(self, pattern: str) -> List[str]:
        """Logical keys matching a glob ``pattern``."""
        if not pattern:
            raise ValueError("Pattern must be non-empty")
        if self.backend.supports_scan and not self.index_all_keys:
            return [self.logical_key(k) async for k in self.backend.scan(self._prefix + pattern)]

        members = await self.backend.set_members(self.all_keys_index)
        return [k for k in members if fnmatch.fnmatchcase(k, pattern)]

    async def remove_matching(self, pattern: str) -> int:
        """Remove entries whose logical key matches a glob ``pattern``."""
        keys = await self.matching_keys(pattern)
        return await self.remove_many(keys)

    async def clear(self) -> int:
        """Remove every entry of the namespace. O(number of keys)."""
        removed = 0
        for tag in await self.backend.set_members(self.tag_registry_key):
            removed += await self.remove_tagged(tag)
        removed += await self.remove_matching("*")

        self.logger.info("Cleared namespace", namespace=self.namespace, removed=removed)
        return removed

    async def prune_indexes(self) -> int:
        """Drop index members whose entries have expired. Returns the count."""
        pruned = 0
        for tag in await self.backend.set_members(self.tag_registry_key):
            pruned += await self._prune(self.tag_index_key(tag))
            await self._forget_tag_if_empty(tag)
        if self.index_all_keys:
            pruned += await self._prune(self.all_keys_index)

        self.logger.info("Pruned cache indexes", namespace=self.namespace, pruned=pruned)
        return pruned

    async def _prune(self, index_key: str) -> int:
        dead = []
        for key in await self.backend.set_members(index_key):
            if await self.backend.get(self._prefix + key) is None:
                dead.append(key)
        if not dead:
            return 0
        pruned = await self.backend.remove_from_set(index_key, *dead)
        # A write may have revived a key between the check and the removal
        for key in dead:
            physical = self._prefix + key
            if await self.backend.get(physical) is not None:
                await self.backend.add_to_index(index_key, key, ttl=await self.backend.ttl(physical))
                pruned -= 1
        return pruned
