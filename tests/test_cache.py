"""
Unit tests for social.atlas.atproto.cache

Tests cover TTL enforcement, expiry with a controllable clock, copy isolation
and pattern invalidation for the memory backend, and the Redis backend against
fakeredis.
"""

import pytest

from social.atlas.atproto.cache import (
    CacheEntry,
    MemoryTTLCache,
    RedisTTLCache,
    cache_key,
    matches_segments,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestCacheKey:
    """Test suite for cache_key."""

    def test_joins_parts(self):
        """Test parts are joined with colons."""
        assert cache_key("record", "did:plc:x", "app.bsky.feed.post", "3k") == (
            "record:did:plc:x:app.bsky.feed.post:3k"
        )

    def test_skips_empty_parts(self):
        """Test missing parts are left out."""
        assert cache_key("list", "did:plc:x", None, "") == "list:did:plc:x"


class TestMatchesSegments:
    """Test suite for matches_segments."""

    @pytest.mark.parametrize(
        "key,pattern,expected",
        [
            ("record:did:plc:abc:coll:1", "did:plc:abc", True),
            ("describe:did:plc:abc", "did:plc:abc", True),
            ("did:plc:abc", "did:plc:abc", True),
            ("record:did:plc:abcdef:coll:1", "did:plc:abc", False),
            ("record:did:plc:xabc:coll:1", "did:plc:abc", False),
            ("record:did:plc:abc:coll.extra:1", "did:plc:abc:coll", False),
            ("record:did:plc:abc", "", False),
        ],
    )
    def test_matches(self, key, pattern, expected):
        """Test matching only happens on whole colon-separated segments."""
        assert matches_segments(key, pattern) is expected


class TestCacheEntry:
    """Test suite for CacheEntry expiry."""

    def test_expired(self):
        """Test an entry expires once its TTL has elapsed."""
        entry = CacheEntry(key="k", value=1, inserted_at=10.0, ttl=5.0)
        assert entry.expired(14.9) is False
        assert entry.expired(15.0) is True


class TestMemoryTTLCache:
    """Test suite for the in-memory backend."""

    @pytest.mark.asyncio
    async def test_set_and_get(self):
        """Test a stored value is returned before it expires."""
        cache = MemoryTTLCache(default_ttl=30)
        await cache.set("k", {"a": 1})
        assert await cache.get("k") == {"a": 1}
        assert await cache.get("missing") is None

    @pytest.mark.asyncio
    async def test_expiry(self):
        """Test values disappear after their TTL."""
        clock = FakeClock()
        cache = MemoryTTLCache(default_ttl=30, clock=clock)
        await cache.set("short", "v", ttl=1)
        await cache.set("long", "v")

        clock.now += 2
        assert await cache.get("short") is None
        assert await cache.get("long") == "v"

        clock.now += 30
        assert await cache.get("long") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -5, "30", True])
    async def test_invalid_ttl_rejected(self, ttl):
        """Test entries without a positive TTL are never stored."""
        cache = MemoryTTLCache(default_ttl=30)
        with pytest.raises(ValueError):
            await cache.set("k", "v", ttl=ttl)
        assert len(cache) == 0

    def test_invalid_default_ttl_rejected(self):
        """Test a cache cannot be built with a non-positive default TTL."""
        with pytest.raises(ValueError):
            MemoryTTLCache(default_ttl=0)

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        """Test callers cannot mutate cached values."""
        cache = MemoryTTLCache(default_ttl=30)
        value = {"records": [1]}
        await cache.set("k", value)
        value["records"].append(2)

        cached = await cache.get("k")
        cached["records"].append(3)
        assert await cache.get("k") == {"records": [1]}

    @pytest.mark.asyncio
    async def test_invalidate_pattern(self):
        """Test every key containing the pattern is evicted."""
        cache = MemoryTTLCache(default_ttl=30)
        await cache.set("record:did:plc:a:coll:1", 1)
        await cache.set("list:did:plc:a:coll:50", 2)
        await cache.set("record:did:plc:b:coll:1", 3)

        assert await cache.invalidate_pattern("did:plc:a:coll") == 2
        assert await cache.get("record:did:plc:b:coll:1") == 3
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_invalidate_whole_segments(self):
        """Test a DID does not evict keys of a longer DID sharing its prefix."""
        cache = MemoryTTLCache(default_ttl=30)
        await cache.set("record:did:plc:abc:coll:1", 1)
        await cache.set("record:did:plc:abcdef:coll:1", 2)
        await cache.set("describe:did:plc:abc", 3)

        assert await cache.invalidate_pattern("did:plc:abc") == 2
        assert await cache.get("record:did:plc:abcdef:coll:1") == 2
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_clear(self):
        """Test clear empties the cache."""
        cache = MemoryTTLCache(default_ttl=30)
        await cache.set("a", 1)
        await cache.clear()
        assert len(cache) == 0


class TestRedisTTLCache:
    """Test suite for the Redis backend."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, fake_redis_client):
        """Test JSON values round through Redis under the prefix."""
        cache = RedisTTLCache(fake_redis_client, default_ttl=30)
        await cache.set("k", {"uri": "at://x", "value": {"a": [1, 2]}})

        assert await cache.get("k") == {"uri": "at://x", "value": {"a": [1, 2]}}
        assert await fake_redis_client.exists("atlas:cache:k") == 1
        assert await cache.get("missing") is None

    @pytest.mark.asyncio
    async def test_ttl_applied(self, fake_redis_client):
        """Test keys are written with an expiry."""
        cache = RedisTTLCache(fake_redis_client, default_ttl=30)
        await cache.set("k", 1, ttl=2.5)
        pttl = await fake_redis_client.pttl("atlas:cache:k")
        assert 0 < pttl <= 2500

    @pytest.mark.asyncio
    async def test_invalid_ttl_rejected(self, fake_redis_client):
        """Test entries without a positive TTL are never stored."""
        cache = RedisTTLCache(fake_redis_client, default_ttl=30)
        with pytest.raises(ValueError):
            await cache.set("k", 1, ttl=0)
        assert await fake_redis_client.exists("atlas:cache:k") == 0

    @pytest.mark.asyncio
    async def test_invalidate_pattern_and_clear(self, fake_redis_client):
        """Test pattern eviction and clearing only touch prefixed keys."""
        cache = RedisTTLCache(fake_redis_client, default_ttl=30)
        await cache.set("record:did:plc:a:coll:1", 1)
        await cache.set("record:did:plc:b:coll:1", 2)
        await fake_redis_client.set("unrelated", "x")

        assert await cache.invalidate_pattern("did:plc:a") == 1
        assert await cache.get("record:did:plc:b:coll:1") == 2

        await cache.clear()
        assert await cache.get("record:did:plc:b:coll:1") is None
        assert await fake_redis_client.get("unrelated") == b"x"

    @pytest.mark.asyncio
    async def test_invalidate_whole_segments(self, fake_redis_client):
        """Test Redis eviction respects segment boundaries too."""
        cache = RedisTTLCache(fake_redis_client, default_ttl=30)
        await cache.set("record:did:plc:abc:coll:1", 1)
        await cache.set("record:did:plc:abcdef:coll:1", 2)
        await cache.set("list:did:plc:xabc:coll:50", 3)

        assert await cache.invalidate_pattern("did:plc:abc") == 1
        assert await cache.get("record:did:plc:abcdef:coll:1") == 2
        assert await cache.get("list:did:plc:xabc:coll:50") == 3
