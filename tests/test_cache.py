from cache import TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(60, clock=clock)
    cache.set((1, "summary"), {"rta": 10})

    clock.now = 59.9
    assert cache.get((1, "summary")) == {"rta": 10}
    clock.now = 60
    assert cache.get((1, "summary")) is None
    assert len(cache) == 0


def test_get_or_load_only_loads_on_miss():
    clock = FakeClock()
    cache = TTLCache(60, clock=clock)
    calls = []

    def loader():
        calls.append(1)
        return len(calls)

    assert cache.get_or_load((1, "a"), loader) == 1
    assert cache.get_or_load((1, "a"), loader) == 1
    clock.now = 120
    assert cache.get_or_load((1, "a"), loader) == 2


def test_invalidate_user_drops_only_that_user():
    cache = TTLCache(60, clock=FakeClock())
    cache.set((1, "summary"), "a")
    cache.set((1, "dashboard"), "b")
    cache.set((2, "summary"), "c")

    cache.invalidate_user(1)

    assert cache.get((1, "summary")) is None
    assert cache.get((1, "dashboard")) is None
    assert cache.get((2, "summary")) == "c"

    cache.invalidate((2, "summary"))
    assert len(cache) == 0


def test_load_overtaken_by_invalidation_is_not_stored():
    cache = TTLCache(60, clock=FakeClock())

    def loader():
        # a write for the same user lands while this read is in flight
        cache.invalidate_user(1)
        return "stale"

    assert cache.get_or_load((1, "summary"), loader) == "stale"
    assert cache.get((1, "summary")) is None

    assert cache.get_or_load((1, "summary"), lambda: "fresh") == "fresh"
    assert cache.get((1, "summary")) == "fresh"


def test_invalidation_of_other_users_does_not_block_storing():
    cache = TTLCache(60, clock=FakeClock())

    def loader():
        cache.invalidate_user(2)
        return "a"

    cache.get_or_load((1, "summary"), loader)
    assert cache.get((1, "summary")) == "a"
