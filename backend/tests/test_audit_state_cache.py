import threading

from app.audit.state_cache import OriginalStateCache, cache_key


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_take_is_read_once():
    cache = OriginalStateCache()
    for key, value in [(('Customer', 1), {'phone': '1'}), (('Product', 2), {}), (('User', None), {'x': None})]:
        cache.put(key, value)
        assert cache.take_if_present(key) == value
        assert cache.take_if_present(key) is None
    assert len(cache) == 0


def test_put_overwrites_single_entry():
    cache = OriginalStateCache()
    cache.put(('Customer', 1), {'v': 1})
    cache.put(('Customer', 1), {'v': 2})
    assert len(cache) == 1
    assert cache.take_if_present(('Customer', 1)) == {'v': 2}


def test_discard_and_contains():
    cache = OriginalStateCache()
    cache.put(('Role', 3), {'name': 'x'})
    assert ('Role', 3) in cache
    cache.discard(('Role', 3))
    cache.discard(('Role', 3))
    assert ('Role', 3) not in cache


def test_expired_entry_is_treated_as_absent():
    clock = FakeClock()
    cache = OriginalStateCache(ttl_seconds=10, clock=clock)
    cache.put(('Customer', 1), {'phone': '1'})
    clock.now += 11
    assert ('Customer', 1) not in cache
    assert cache.take_if_present(('Customer', 1)) is None
    assert len(cache) == 0


def test_put_sweeps_expired_entries():
    clock = FakeClock()
    cache = OriginalStateCache(ttl_seconds=10, sweep_interval=5, clock=clock)
    cache.put(('Customer', 1), {})
    cache.put(('Customer', 2), {})
    clock.now += 20
    cache.put(('Customer', 3), {})
    assert len(cache) == 1
    assert ('Customer', 3) in cache


def test_explicit_sweep_keeps_live_entries():
    clock = FakeClock()
    cache = OriginalStateCache(ttl_seconds=10, clock=clock)
    cache.put(('A', 1), {})
    clock.now += 6
    cache.put(('A', 2), {})
    clock.now += 6
    assert cache.sweep() == 1
    assert ('A', 2) in cache


def test_max_entries_drops_oldest():
    cache = OriginalStateCache(max_entries=2)
    cache.put(('A', 1), {})
    cache.put(('A', 2), {})
    cache.put(('A', 3), {})
    assert len(cache) == 2
    assert ('A', 1) not in cache


def test_concurrent_take_hands_entry_to_exactly_one_thread():
    cache = OriginalStateCache()
    cache.put(('Customer', 9), {'phone': '1'})
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        got = cache.take_if_present(('Customer', 9))
        with lock:
            results.append(got)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sum(1 for r in results if r is not None) == 1


def test_cache_key_uses_entity_name_and_id():
    class E:
        audit_entity_name = 'Customer'
        id = 4
    assert cache_key(E()) == ('Customer', 4)
