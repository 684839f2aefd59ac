from otc_desk.core.cache import TTLCache


class Tick:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    tick = Tick()
    cache = TTLCache(max_items=4, ttl_seconds=10, clock=tick)
    cache.set("g1", [1])
    tick.now = 10
    assert cache.get("g1") == [1]
    tick.now = 10.5
    assert cache.get("g1") is None
    assert cache.stats()["expired"] == 1


def test_least_recently_used_is_evicted():
    cache = TTLCache(max_items=2, ttl_seconds=60, clock=Tick())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)
    assert "b" not in cache
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert cache.stats()["evictions"] == 1


def test_invalidate_and_purge():
    tick = Tick()
    cache = TTLCache(max_items=8, ttl_seconds=5, clock=tick)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.invalidate("a")
    assert not cache.invalidate("a")
    tick.now = 6
    cache.set("c", 3)
    assert cache.purge_expired() == 1
    assert len(cache) == 1
