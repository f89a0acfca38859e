"""Listener wired to a real sessionmaker against its own SQLite database."""
import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.audit.correlation import CorrelationContext
from app.audit.listener import AuditEntityListener
from app.audit.masking import MASK
from app.audit.state_cache import OriginalStateCache
from app.audit.writer import AuditLogWriter
from app.models.audit import AuditLog
from app.models.authz import Base, Role, User, UserRole
from app.models.customer import Customer
import app.models.product  # noqa: F401
import app.models.order  # noqa: F401


@pytest.fixture()
def engine():
    eng = create_engine('sqlite+pysqlite:///:memory:', connect_args={'check_same_thread': False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@pytest.fixture()
def listener(engine, factory):
    lst = AuditEntityListener(
        AuditLogWriter(sessionmaker(bind=engine), independent=False),
        cache=OriginalStateCache(),
        correlation=CorrelationContext('orm_test_cid'),
    )
    lst.attach(factory)
    yield lst
    lst.detach(factory)


def _logs(factory, **filters):
    with factory() as s:
        stmt = select(AuditLog).order_by(AuditLog.id)
        for k, v in filters.items():
            stmt = stmt.where(getattr(AuditLog, k) == v)
        return s.execute(stmt).scalars().all()


def _new_customer(factory, **kw):
    with factory() as s:
        c = Customer(full_name=kw.pop('full_name', 'Mona'), phone=kw.pop('phone', '9001'), **kw)
        c.set_pin('1234')
        s.add(c)
        s.commit()
        return c.id


def test_insert_writes_create_record_with_id_and_masked_pin(factory, listener):
    cid = _new_customer(factory)
    logs = _logs(factory, entity_type='Customer', entity_id=cid)
    assert [l.action for l in logs] == ['CREATE']
    assert logs[0].old_value is None
    assert logs[0].new_value['id'] == cid
    assert logs[0].new_value['pin_hash'] == MASK
    assert 'updated_at' not in logs[0].new_value


def test_load_then_update_writes_update_record(factory, listener):
    cid = _new_customer(factory, phone='1111')
    with factory() as s:
        c = s.get(Customer, cid)
        assert ('Customer', cid) in listener.cache
        c.phone = '2222'
        s.commit()
    logs = _logs(factory, entity_type='Customer', entity_id=cid, action='UPDATE')
    assert len(logs) == 1
    assert logs[0].old_value['phone'] == '1111'
    assert logs[0].new_value['phone'] == '2222'
    assert logs[0].old_value['pin_hash'] == MASK


def test_pin_change_is_recorded_but_masked(factory, listener):
    cid = _new_customer(factory)
    with factory() as s:
        c = s.get(Customer, cid)
        c.set_pin('9876')
        s.commit()
    log = _logs(factory, entity_type='Customer', entity_id=cid, action='UPDATE')[0]
    assert log.old_value['pin_hash'] == MASK and log.new_value['pin_hash'] == MASK
    assert log.old_value['pin_set_at'] != log.new_value['pin_set_at']


def test_unmodified_entity_writes_nothing(factory, listener):
    cid = _new_customer(factory)
    with factory() as s:
        c = s.get(Customer, cid)
        c.phone = c.phone
        s.commit()
    assert _logs(factory, entity_type='Customer', entity_id=cid, action='UPDATE') == []


def test_update_of_entity_never_loaded_is_skipped(factory, listener):
    cid = _new_customer(factory)
    with factory() as s:
        c = s.get(Customer, cid)
    listener.cache.clear()
    with factory() as s:
        s.add(c)
        c.phone = '3333'
        s.commit()
    assert _logs(factory, entity_type='Customer', entity_id=cid, action='UPDATE') == []


def test_delete_writes_delete_record_with_old_state(factory, listener):
    cid = _new_customer(factory, full_name='Gone')
    with factory() as s:
        s.delete(s.get(Customer, cid))
        s.commit()
    logs = _logs(factory, entity_type='Customer', entity_id=cid, action='DELETE')
    assert len(logs) == 1
    assert logs[0].new_value is None
    assert logs[0].old_value['full_name'] == 'Gone'
    assert ('Customer', cid) not in listener.cache


def test_rollback_discards_shared_mode_records(factory, listener):
    with factory() as s:
        s.add(Customer(full_name='Never'))
        s.flush()
        s.rollback()
    with factory() as s:
        assert s.execute(select(AuditLog).where(AuditLog.entity_type == 'Customer')).scalars().all() == []


def test_user_snapshot_carries_role_ids(factory, listener):
    with factory() as s:
        r1, r2 = Role(name='Clerk'), Role(name='Viewer')
        s.add_all([r1, r2])
        s.flush()
        u = User(name='u', email='u@example.com', password_hash='x')
        u.user_roles = [UserRole(role_id=r1.id)]
        s.add(u)
        s.commit()
        uid, r2_id, r1_id = u.id, r2.id, r1.id
    with factory() as s:
        u = s.get(User, uid)
        u.user_roles.append(UserRole(role_id=r2_id))
        u.name = 'renamed'
        s.commit()
    create = _logs(factory, entity_type='User', entity_id=uid, action='CREATE')[0]
    update = _logs(factory, entity_type='User', entity_id=uid, action='UPDATE')[0]
    assert create.new_value['role_ids'] == [r1_id]
    assert create.new_value['password_hash'] == MASK
    assert update.old_value['role_ids'] == [r1_id]
    assert update.new_value['role_ids'] == sorted([r1_id, r2_id])


def test_snapshots_do_not_trigger_lazy_loads(engine, factory, listener):
    cid = _new_customer(factory)
    statements = []

    def count(conn, cursor, statement, *args):
        if statement.lstrip().upper().startswith('SELECT'):
            statements.append(statement)

    with factory() as s:
        c = s.get(Customer, cid)
        event.listen(engine, 'before_cursor_execute', count)
        try:
            c.notes = 'vip'
            s.commit()
        finally:
            event.remove(engine, 'before_cursor_execute', count)
    assert statements == []
    assert len(_logs(factory, entity_type='Customer', entity_id=cid, action='UPDATE')) == 1


def test_detach_stops_capturing(factory, listener):
    listener.detach(factory)
    try:
        _new_customer(factory, full_name='Quiet')
        assert _logs(factory, entity_type='Customer') == []
    finally:
        listener.attach(factory)


def test_failed_shared_insert_keeps_business_change(engine, factory, listener):
    AuditLog.__table__.drop(engine)
    cid = _new_customer(factory, full_name='Kept')
    with factory() as s:
        assert s.get(Customer, cid).full_name == 'Kept'


@pytest.fixture()
def file_engine(tmp_path):
    eng = create_engine(f"sqlite+pysqlite:///{tmp_path / 'orm_audit.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


def test_independent_mode_writes_through_its_own_session(file_engine):
    factory = sessionmaker(bind=file_engine, expire_on_commit=False, autoflush=False)
    cid = _new_customer(factory, phone='1111')
    lst = AuditEntityListener(
        AuditLogWriter(sessionmaker(bind=file_engine), independent=True),
        cache=OriginalStateCache(),
        correlation=CorrelationContext('orm_independent_cid'),
    )
    lst.attach(factory)
    try:
        with factory() as s:
            c = s.get(Customer, cid)
            c.phone = '2222'
            s.flush()
            s.rollback()
        with factory() as s:
            c = s.get(Customer, cid)
            assert c.phone == '1111'
            s.delete(c)
            s.commit()
    finally:
        lst.detach(factory)
    update = _logs(factory, entity_type='Customer', entity_id=cid, action='UPDATE')
    delete = _logs(factory, entity_type='Customer', entity_id=cid, action='DELETE')
    assert len(update) == 1
    assert update[0].old_value['phone'] == '1111'
    assert update[0].new_value['phone'] == '2222'
    assert len(delete) == 1
    assert delete[0].old_value['phone'] == '1111'
    with factory() as s:
        assert s.get(Customer, cid) is None
