"""Search result cache keyed by a deterministic search identifier."""

import asyncio
import hashlib
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis

from evernote_mcp.core.config import Settings
from evernote_mcp.core.errors import ConfigurationError
from evernote_mcp.models.schemas import SearchArguments, SearchEntry

logger = logging.getLogger(__name__)

DEFAULT_TTL = 60 * 60
DEFAULT_SWEEP_INTERVAL = 30 * 60
DEFAULT_RETRY_INTERVAL = 30


def search_identifier(filters: SearchArguments) -> str:
    """Hash the normalized filter set into a stable search id.

    Tags are sorted first so the same tag set in a different order maps to
    the same entry. Paging fields are included: a different page is a
    different request.
    """
    normalized = {
        "query": filters.query or "",
        "notebookName": filters.notebook_name or "",
        "notebookGuid": filters.notebook_guid or "",
        "tags": sorted(filters.tags or []),
        "createdAfter": filters.created_after or "",
        "updatedAfter": filters.updated_after or "",
        "maxResults": filters.max_results,
        "offset": filters.offset,
    }
    canonical = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
    return "search_" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:24]


class MemorySearchCache:
    """In-process cache with lazy expiry on read and an explicit sweep."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.entries: Dict[str, SearchEntry] = {}
        self.clock = clock
        self._lock = asyncio.Lock()

    async def get(self, search_id: str) -> Optional[SearchEntry]:
        async with self._lock:
            entry = self.entries.get(search_id)
            if entry is None:
                return None

            if entry.is_expired(self.clock()):
                del self.entries[search_id]
                return None

            return entry

    async def put(self, entry: SearchEntry):
        async with self._lock:
            self.entries[entry.search_id] = entry

    async def delete(self, search_id: str):
        async with self._lock:
            self.entries.pop(search_id, None)

    async def clear(self):
        async with self._lock:
            self.entries.clear()

    async def sweep(self) -> int:
        """Drop expired entries, taking the lock once per removal."""
        now = self.clock()
        async with self._lock:
            expired = [
                search_id
                for search_id, entry in self.entries.items()
                if entry.is_expired(now)
            ]

        removed = 0
        for search_id in expired:
            async with self._lock:
                entry = self.entries.get(search_id)
                # May have been replaced by a fresh put since the snapshot
                if entry is not None and entry.is_expired(now):
                    del self.entries[search_id]
                    removed += 1
        return removed

    def get_stats(self) -> Dict[str, Any]:
        now = self.clock()
        expired_count = sum(1 for entry in self.entries.values() if entry.is_expired(now))
        return {
            "backend": "memory",
            "total_entries": len(self.entries),
            "expired_entries": expired_count,
            "active_entries": len(self.entries) - expired_count,
        }


class RedisSearchCache:
    """Redis-backed cache; Redis expires keys on its own.

    A failed ping turns the cache off until ``retry_interval`` seconds have
    passed, then the next operation pings again.
    """

    prefix = "evernote_mcp:search:"

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        client: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ):
        self.redis = client or redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        self.clock = clock
        self.retry_interval = retry_interval
        self._connected = None
        self._checked_at = 0.0

    async def _ensure_connected(self) -> bool:
        if self._connected:
            return True
        if (
            self._connected is False
            and self.clock() - self._checked_at < self.retry_interval
        ):
            return False

        self._checked_at = self.clock()
        try:
            await self.redis.ping()
        except (redis.RedisError, OSError) as e:
            if self._connected is None:
                logger.warning(f"Redis unavailable, search cache disabled: {e}")
            else:
                logger.debug(f"Redis still unavailable: {e}")
            self._connected = False
            return False

        if self._connected is False:
            logger.info("Redis reachable again, search cache enabled")
        self._connected = True
        return True

    async def get(self, search_id: str) -> Optional[SearchEntry]:
        if not await self._ensure_connected():
            return None

        raw = await self.redis.get(self.prefix + search_id)
        if not raw:
            return None

        entry = SearchEntry.model_validate_json(raw)
        if entry.is_expired(self.clock()):
            await self.redis.delete(self.prefix + search_id)
            return None
        return entry

    async def put(self, entry: SearchEntry):
        if not await self._ensure_connected():
            return

        ttl = max(1, int(entry.expires_at - self.clock()))
        await self.redis.setex(self.prefix + entry.search_id, ttl, entry.model_dump_json())

    async def delete(self, search_id: str):
        if not await self._ensure_connected():
            return
        await self.redis.delete(self.prefix + search_id)

    async def clear(self):
        if not await self._ensure_connected():
            return
        keys = [key async for key in self.redis.scan_iter(match=self.prefix + "*")]
        if keys:
            await self.redis.delete(*keys)

    async def sweep(self) -> int:
        return 0

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": "redis", "connected": bool(self._connected)}


class SearchCache:
    """Front for the configured backend. Backend failures degrade to misses."""

    def __init__(
        self,
        backend=None,
        ttl: int = DEFAULT_TTL,
        sweep_interval: int = DEFAULT_SWEEP_INTERVAL,
    ):
        self.backend = backend or MemorySearchCache()
        self.ttl = ttl
        self.sweep_interval = sweep_interval

    @classmethod
    def from_settings(cls, settings: Settings) -> "SearchCache":
        if settings.cache_backend == "memory":
            backend = MemorySearchCache()
        elif settings.cache_backend == "redis":
            backend = RedisSearchCache(settings.redis_url)
        else:
            raise ConfigurationError(
                f"Unknown EVERNOTE_CACHE_BACKEND {settings.cache_backend!r} "
                "(expected 'memory' or 'redis')"
            )
        return cls(backend, ttl=settings.cache_ttl, sweep_interval=settings.sweep_interval)

    @staticmethod
    def identifier_for(filters: SearchArguments) -> str:
        return search_identifier(filters)

    async def get(self, search_id: str) -> Optional[SearchEntry]:
        try:
            return await self.backend.get(search_id)
        except Exception as e:
            logger.warning(f"Cache get error for {search_id}: {e}")
            return None

    async def put(
        self,
        search_id: str,
        query: str,
        data: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> SearchEntry:
        now = self.backend.clock()
        entry = SearchEntry(
            search_id=search_id,
            query=query,
            data=data,
            created_at=now,
            expires_at=now + (ttl if ttl is not None else self.ttl),
        )
        try:
            await self.backend.put(entry)
        except Exception as e:
            logger.warning(f"Cache set error for {search_id}: {e}")
        return entry

    async def delete(self, search_id: str):
        try:
            await self.backend.delete(search_id)
        except Exception as e:
            logger.warning(f"Cache delete error for {search_id}: {e}")

    async def clear(self):
        await self.backend.clear()

    async def sweep(self) -> int:
        removed = await self.backend.sweep()
        if removed:
            logger.debug(f"Swept {removed} expired search entries")
        return removed

    async def run_sweeper(self):
        """Sweep forever on a fixed interval. Cancel the task to stop it."""
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.warning(f"Cache sweep failed: {e}")

    def get_stats(self) -> Dict[str, Any]:
        stats = self.backend.get_stats()
        stats.update({"ttl": self.ttl, "sweep_interval": self.sweep_interval})
        return stats
