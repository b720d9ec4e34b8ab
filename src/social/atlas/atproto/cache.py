"""TTL cache shared by the identity resolver and the content loader.

Values are stored as JSON-compatible copies, never as live references, so a
caller mutating a returned object cannot corrupt the cache. Reads and writes
for a key are best-effort de-duplication, not a correctness mechanism.

Two backends are provided:
- MemoryTTLCache: process-wide dictionary, the default
- RedisTTLCache: shared between workers through Redis ``SET ... EX``
"""

from abc import ABC, abstractmethod
import copy
import json
import logging
import re
from time import monotonic
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel
import redis.asyncio as redis

logger = logging.getLogger(__name__)

DEFAULT_TTL = 30


def cache_key(*parts: Optional[str]) -> str:
    """Join non-empty parts with ``:``."""
    return ":".join(part for part in parts if part)


def matches_segments(key: str, pattern: str) -> bool:
    """True when ``pattern`` appears in ``key`` as whole ``:``-separated segments."""
    if len(pattern) == 0:
        return False
    return f":{pattern}:" in f":{key}:"


def _glob_escape(pattern: str) -> str:
    return re.sub(r"([*?\[\]\\])", r"\\\1", pattern)


def _require_ttl(ttl: Any) -> float:
    if ttl is None or isinstance(ttl, bool) or not isinstance(ttl, (int, float)):
        raise ValueError(f"cache ttl must be a positive number, got {ttl!r}")
    if ttl <= 0:
        raise ValueError(f"cache ttl must be a positive number, got {ttl!r}")
    return ttl


class CacheEntry(BaseModel):
    key: str
    value: Any
    inserted_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl


class TTLCache(ABC):
    """Async key/value cache where every entry carries a positive TTL."""

    def __init__(self, default_ttl: float = DEFAULT_TTL) -> None:
        self.default_ttl = _require_ttl(default_ttl)

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        pass

    @abstractmethod
    async def invalidate_pattern(self, pattern: str) -> int:
        """Evict every key holding ``pattern`` as whole segments; returns the count.

        ``did:plc:abc`` matches ``record:did:plc:abc:coll:1`` but not
        ``record:did:plc:abcdef:coll:1``.
        """
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass


class MemoryTTLCache(TTLCache):
    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        super().__init__(default_ttl)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            self._entries.pop(key, None)
            return None
        logger.debug("Cache hit: %s", key)
        return copy.deepcopy(entry.value)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = _require_ttl(self.default_ttl if ttl is None else ttl)
        self._entries[key] = CacheEntry(
            key=key, value=copy.deepcopy(value), inserted_at=self._clock(), ttl=ttl
        )
        logger.debug("Cache set: %s", key)

    async def invalidate_pattern(self, pattern: str) -> int:
        keys = [key for key in self._entries if matches_segments(key, pattern)]
        for key in keys:
            del self._entries[key]
        logger.debug("Cache invalidated: %s (%d items)", pattern, len(keys))
        return len(keys)

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisTTLCache(TTLCache):
    def __init__(
        self,
        redis_client: redis.Redis,
        default_ttl: float = DEFAULT_TTL,
        prefix: str = "atlas:cache:",
    ) -> None:
        super().__init__(default_ttl)
        self.redis_client = redis_client
        self.prefix = prefix

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis_client.get(f"{self.prefix}{key}")
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = _require_ttl(self.default_ttl if ttl is None else ttl)
        # Redis expiries are whole seconds or milliseconds; keep sub-second TTLs.
        await self.redis_client.set(
            f"{self.prefix}{key}", json.dumps(value), px=max(1, int(ttl * 1000))
        )

    async def invalidate_pattern(self, pattern: str) -> int:
        keys = []
        async for key in self.redis_client.scan_iter(
            match=f"{self.prefix}*{_glob_escape(pattern)}*"
        ):
            name = key.decode() if isinstance(key, bytes) else key
            if matches_segments(name[len(self.prefix) :], pattern):
                keys.append(key)
        if len(keys) == 0:
            return 0
        return await self.redis_client.delete(*keys)

    async def clear(self) -> None:
        keys = [
            key async for key in self.redis_client.scan_iter(match=f"{self.prefix}*")
        ]
        if len(keys) > 0:
            await self.redis_client.delete(*keys)
