import pytest

from app.services.cache import LocalTTLCache, TwoTierCache


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _cache(shared, clock=None):
    local = LocalTTLCache(60, clock=clock) if clock else None
    return TwoTierCache(shared, prefix="test:", default_ttl=60, sweep_interval=30, local=local)


def test_local_cache_entries_expire():
    clock = ManualClock()
    cache = LocalTTLCache(10, clock=clock)

    cache.set("a", {"x": 1}, ttl=5)
    assert cache.get("a") == {"x": 1}

    clock.now += 5
    assert cache.get("a") is None
    assert len(cache) == 0


def test_local_cache_sweep_drops_only_expired():
    clock = ManualClock()
    cache = LocalTTLCache(10, clock=clock)
    cache.set("short", 1, ttl=1)
    cache.set("long", 2, ttl=100)

    clock.now += 2
    assert cache.sweep() == 1
    assert cache.keys() == ["long"]


def test_local_cache_increment_starts_at_zero():
    cache = LocalTTLCache(10)
    assert cache.increment("n") == 1
    assert cache.increment("n", 4) == 5


@pytest.mark.asyncio
async def test_get_returns_value_written_with_set(fake_redis):
    cache = _cache(fake_redis)

    await cache.set("k", {"name": "maria"}, namespace="contact")

    assert await cache.get("k", namespace="contact") == {"name": "maria"}
    assert "test:contact:k" in fake_redis.store


@pytest.mark.asyncio
async def test_falls_back_to_local_tier_when_redis_is_down(fake_redis):
    cache = _cache(fake_redis)
    fake_redis.fail = True

    assert await cache.set("k", [1, 2, 3]) is True
    assert await cache.get("k") == [1, 2, 3]
    assert await cache.exists("k") is True


@pytest.mark.asyncio
async def test_local_only_cache_without_shared_tier():
    cache = _cache(None)

    await cache.set("k", "v")
    assert await cache.get("k") == "v"
    assert await cache.delete("k") is True
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_local_entry_expires_after_ttl():
    clock = ManualClock()
    cache = _cache(None, clock=clock)

    await cache.set("k", "v", ttl=10)
    clock.now += 11

    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_delete_removes_both_tiers(fake_redis):
    cache = _cache(fake_redis)
    await cache.set("k", "v")

    await cache.delete("k")

    assert await cache.get("k") is None
    assert fake_redis.store == {}


@pytest.mark.asyncio
async def test_invalidate_pattern_removes_matching_keys_only(fake_redis):
    cache = _cache(fake_redis)
    await cache.set("1", "a", namespace="enrollment-fields")
    await cache.set("2", "b", namespace="enrollment-fields")
    await cache.set("1", "c", namespace="contact")

    removed = await cache.invalidate_pattern("*", namespace="enrollment-fields")

    assert removed == 2
    assert await cache.get("1", namespace="enrollment-fields") is None
    assert await cache.get("1", namespace="contact") == "c"


@pytest.mark.asyncio
async def test_increment_uses_redis_and_mirrors_locally(fake_redis):
    cache = _cache(fake_redis)

    assert await cache.increment("hits") == 1
    assert await cache.increment("hits", 2) == 3

    fake_redis.fail = True
    assert await cache.increment("hits") == 4


@pytest.mark.asyncio
async def test_get_or_compute_calls_function_once(fake_redis):
    cache = _cache(fake_redis)
    calls = {"n": 0}

    async def compute():
        calls["n"] += 1
        return {"id": 7}

    assert await cache.get_or_compute("x", 60, compute) == {"id": 7}
    assert await cache.get_or_compute("x", 60, compute) == {"id": 7}
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_get_or_compute_does_not_cache_none(fake_redis):
    cache = _cache(fake_redis)
    calls = {"n": 0}

    async def compute():
        calls["n"] += 1
        return None

    await cache.get_or_compute("missing", 60, compute)
    await cache.get_or_compute("missing", 60, compute)

    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_get_or_compute_propagates_errors(fake_redis):
    cache = _cache(fake_redis)

    async def compute():
        raise RuntimeError("db down")

    with pytest.raises(RuntimeError):
        await cache.get_or_compute("x", 60, compute)


@pytest.mark.asyncio
async def test_clear_drops_everything_under_prefix(fake_redis):
    cache = _cache(fake_redis)
    fake_redis.store["other:key"] = "keep"
    await cache.set("a", 1)
    await cache.set("b", 2, namespace="ns")

    await cache.clear()

    assert fake_redis.store == {"other:key": "keep"}
    assert len(cache.local) == 0
