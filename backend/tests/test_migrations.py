import os

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from app.models.authz import Base

MIGRATIONS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'migrations'))


def _config():
    cfg = Config()
    cfg.set_main_option('script_location', MIGRATIONS_DIR)
    return cfg


def test_upgrade_creates_every_mapped_table_and_downgrade_removes_them(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv('DATABASE_URL', url)
    cfg = _config()

    command.upgrade(cfg, 'head')
    engine = create_engine(url)
    try:
        insp = inspect(engine)
        tables = set(insp.get_table_names())
        assert set(Base.metadata.tables) <= tables
        audit_cols = {c['name'] for c in insp.get_columns('audit_logs')}
        assert audit_cols == {c.name for c in Base.metadata.tables['audit_logs'].columns}
        audit_indexes = {i['name'] for i in insp.get_indexes('audit_logs')}
        assert {'ix_audit_logs_entity', 'ix_audit_logs_correlation_id', 'ix_audit_logs_created_at'} <= audit_indexes
        customer_cols = {c['name'] for c in insp.get_columns('customers')}
        assert {'pin_hash', 'pin_set_at', 'balance_cents'} <= customer_cols

        command.downgrade(cfg, 'base')
        remaining = set(inspect(engine).get_table_names()) - {'alembic_version'}
        assert remaining == set()
    finally:
        engine.dispose()
