from __future__ import annotations

from dynamic_oidc.api.services.cache import MemoryBackend, TTLCache, create_cache


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_entry_expires_after_default_ttl():
    clock = FakeClock()
    cache = create_cache(60, clock=clock)
    cache.set("k", "v")

    clock.advance(59)
    assert cache.get("k") == "v"

    clock.advance(1)
    assert cache.get("k") is None


def test_per_entry_ttl_overrides_default():
    clock = FakeClock()
    cache = create_cache(300, clock=clock)
    cache.set("short", 1, ttl_seconds=30)
    cache.set("long", 2)

    clock.advance(31)
    assert cache.get("short") is None
    assert cache.get("long") == 2


def test_set_is_last_writer_wins():
    cache = create_cache(60)
    cache.set("k", "first")
    cache.set("k", "second")
    assert cache.get("k") == "second"


def test_delete_and_clear():
    cache = create_cache(60)
    cache.set("a", 1)
    cache.set("b", 2)

    cache.delete("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2

    cache.clear()
    assert cache.get("b") is None


def test_max_entries_evicts_expired_first_then_soonest_expiry():
    clock = FakeClock()
    backend = MemoryBackend(max_entries=2, clock=clock)
    cache = TTLCache(ttl_seconds=100, backend=backend)

    cache.set("expiring", 1, ttl_seconds=5)
    cache.set("keep", 2, ttl_seconds=100)
    clock.advance(10)
    cache.set("new", 3)

    assert len(backend) == 2
    assert cache.get("keep") == 2
    assert cache.get("new") == 3

    cache.set("newest", 4)
    assert len(backend) == 2
    assert cache.get("keep") is None
    assert cache.get("newest") == 4


def test_empty_injected_backend_is_used():
    clock = FakeClock()
    backend = MemoryBackend(max_entries=1, clock=clock)
    cache = TTLCache(ttl_seconds=60, backend=backend)

    cache.set("first", 1)
    cache.set("second", 2)

    assert len(backend) == 1
    assert cache.get("first") is None
    clock.advance(60)
    assert cache.get("second") is None
