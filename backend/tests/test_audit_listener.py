"""Listener reactions exercised with plain objects and a recording writer (no database)."""
import logging
import threading

import pytest

from app.audit.contract import Auditable
from app.audit.correlation import CorrelationContext
from app.audit.listener import AuditEntityListener
from app.audit.masking import MASK
from app.audit.state_cache import OriginalStateCache


class RecordingWriter:
    independent = True

    def __init__(self, fail: bool = False):
        self.records = []
        self.fail = fail
        self._lock = threading.Lock()

    def record(self, entity_type, entity_id, action, old, new, **meta):
        if self.fail:
            raise RuntimeError('database unavailable')
        with self._lock:
            self.records.append(dict(entity_type=entity_type, entity_id=entity_id, action=action, old=old, new=new, **meta))
            return len(self.records)


class FixedResolver:
    def current_user_id(self):
        return 42

    def client_ip(self):
        return '10.0.0.5'

    def user_agent(self):
        return 'pytest-agent'


class Customer(Auditable):
    """Stand-in with the same audit surface as the mapped model."""
    __audit_sensitive__ = frozenset({'pin_hash'})

    def __init__(self, id=None, full_name='Ali', phone='9001', pin_hash='hash-1'):
        self.id = id
        self.full_name = full_name
        self.phone = phone
        self.pin_hash = pin_hash

    def to_snapshot_map(self):
        return {'id': self.id, 'full_name': self.full_name, 'phone': self.phone, 'pin_hash': self.pin_hash}


class Broken(Auditable):
    id = 5

    def to_snapshot_map(self):
        raise RuntimeError('cannot snapshot')


class NotAudited:
    id = 1


@pytest.fixture()
def ctx():
    c = CorrelationContext('listener_test_cid')
    yield c
    c.clear()


@pytest.fixture()
def writer():
    return RecordingWriter()


@pytest.fixture()
def listener(writer, ctx):
    return AuditEntityListener(writer, FixedResolver(), OriginalStateCache(), ctx)


def test_update_records_old_and_new_with_sensitive_fields_masked(listener, writer):
    c = Customer(id=1)
    listener.on_load(c)
    c.phone = '9002'
    c.pin_hash = 'hash-2'
    listener.on_update(c)
    assert len(writer.records) == 1
    rec = writer.records[0]
    assert rec['action'] == 'UPDATE'
    assert rec['entity_type'] == 'Customer' and rec['entity_id'] == 1
    assert rec['old'] == {'id': 1, 'full_name': 'Ali', 'phone': '9001', 'pin_hash': MASK}
    assert rec['new'] == {'id': 1, 'full_name': 'Ali', 'phone': '9002', 'pin_hash': MASK}
    assert rec['actor_user_id'] == 42
    assert rec['ip'] == '10.0.0.5'
    assert rec['user_agent'] == 'pytest-agent'
    assert ('Customer', 1) not in listener.cache


def test_create_has_no_old_value_and_masks_new(listener, writer):
    listener.on_create(Customer(id=2))
    rec = writer.records[0]
    assert rec['action'] == 'CREATE'
    assert rec['old'] is None
    assert rec['new']['pin_hash'] == MASK
    assert rec['new']['phone'] == '9001'


def test_delete_has_no_new_value_and_discards_cached_state(listener, writer):
    c = Customer(id=3)
    listener.on_load(c)
    listener.on_delete(c)
    rec = writer.records[0]
    assert rec['action'] == 'DELETE'
    assert rec['new'] is None
    assert rec['old']['pin_hash'] == MASK
    assert ('Customer', 3) not in listener.cache


def test_update_without_cached_state_is_skipped_with_warning(listener, writer, caplog):
    c = Customer(id=4)
    with caplog.at_level(logging.WARNING, logger='app.audit.listener'):
        listener.on_update(c)
    assert writer.records == []
    assert 'No cached original state for Customer#4' in caplog.text


def test_cached_state_is_consumed_by_first_update(listener, writer):
    c = Customer(id=5)
    listener.on_load(c)
    c.phone = '1'
    listener.on_update(c)
    c.phone = '2'
    listener.on_update(c)
    assert len(writer.records) == 1


def test_load_without_id_is_not_cached(listener):
    listener.on_load(Customer(id=None))
    assert len(listener.cache) == 0


def test_non_audited_objects_are_ignored(listener, writer):
    obj = NotAudited()
    listener.on_load(obj)
    listener.on_create(obj)
    listener.on_update(obj)
    listener.on_delete(obj)
    assert writer.records == []
    assert len(listener.cache) == 0


def test_correlation_id_is_attached_while_active(listener, writer, ctx):
    with ctx.scope() as cid:
        listener.on_create(Customer(id=6))
        listener.on_create(Customer(id=7))
    listener.on_create(Customer(id=8))
    ids = [r['correlation_id'] for r in writer.records]
    assert ids == [cid, cid, None]


def test_writer_failure_is_logged_and_swallowed(ctx, caplog):
    failing = RecordingWriter(fail=True)
    lst = AuditEntityListener(failing, FixedResolver(), OriginalStateCache(), ctx)
    with caplog.at_level(logging.ERROR, logger='app.audit.listener'):
        lst.on_create(Customer(id=9))
    assert 'Failed to write CREATE audit record for Customer#9' in caplog.text


def test_snapshot_failure_never_propagates(listener, writer):
    b = Broken()
    listener.on_load(b)
    listener.on_create(b)
    listener.on_update(b)
    listener.on_delete(b)
    assert writer.records == []


def test_concurrent_updates_of_same_entity_write_one_record(listener, writer):
    # both workers read the entity before either writes
    listener.on_load(Customer(id=10))
    listener.on_load(Customer(id=10))
    workers = 8
    barrier = threading.Barrier(workers)

    def update(n):
        c = Customer(id=10, phone=f'55{n}')
        barrier.wait()
        listener.on_update(c)

    threads = [threading.Thread(target=update, args=(n,)) for n in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(writer.records) == 1
    assert writer.records[0]['old']['phone'] == '9001'
