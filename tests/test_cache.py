"""TTL cache expiry and eviction."""

from app.core.cache import TTLCache, make_cache_key


def test_entries_expire_after_ttl():
    c = TTLCache()
    c.set("fresh", {"v": 1}, ttl_seconds=60)
    c.set("stale", {"v": 2}, ttl_seconds=0)
    assert c.get("fresh") == {"v": 1}
    assert c.get("stale") is None
    assert len(c) == 1


def test_full_cache_evicts_entries_closest_to_expiry():
    c = TTLCache(max_entries=TTLCache.EVICT_BATCH + 1)
    for i in range(TTLCache.EVICT_BATCH + 1):
        c.set(f"k{i}", i, ttl_seconds=100 + i)
    c.set("new", "x", ttl_seconds=10)
    assert len(c) == 2
    assert c.get("k0") is None
    assert c.get(f"k{TTLCache.EVICT_BATCH}") == TTLCache.EVICT_BATCH
    assert c.get("new") == "x"


def test_cache_key_ignores_kwarg_order():
    assert make_cache_key("a", x=1, y=2) == make_cache_key("a", y=2, x=1)
    assert make_cache_key("a", x=1) != make_cache_key("b", x=1)
