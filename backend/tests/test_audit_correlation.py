import threading
import uuid

from app.audit.correlation import CorrelationContext


def test_active_only_between_start_and_clear():
    ctx = CorrelationContext('test_cid_a')
    assert not ctx.is_active()
    cid = ctx.start()
    assert isinstance(cid, uuid.UUID)
    assert ctx.is_active() and ctx.get() == cid
    ctx.clear()
    assert not ctx.is_active()
    assert ctx.get() is None


def test_clear_without_start_is_noop():
    ctx = CorrelationContext('test_cid_b')
    ctx.clear()
    ctx.clear()
    assert not ctx.is_active()


def test_start_twice_replaces_id():
    ctx = CorrelationContext('test_cid_c')
    first = ctx.start()
    second = ctx.start()
    assert first != second
    assert ctx.get() == second
    ctx.clear()


def test_scope_clears_on_exception():
    ctx = CorrelationContext('test_cid_d')
    try:
        with ctx.scope() as cid:
            assert ctx.get() == cid
            raise RuntimeError('boom')
    except RuntimeError:
        pass
    assert not ctx.is_active()


def test_ids_do_not_leak_across_threads():
    ctx = CorrelationContext('test_cid_e')
    mine = ctx.start()
    seen = {}

    def worker():
        seen['before'] = ctx.get()
        seen['own'] = ctx.start()
        ctx.clear()

    t = threading.Thread(target=worker)
    t.start(); t.join()
    assert seen['before'] is None
    assert seen['own'] != mine
    assert ctx.get() == mine
    ctx.clear()
