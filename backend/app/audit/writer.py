from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError

from app.models.audit import AuditLog
from app.audit.errors import AuditWriteError

logger = logging.getLogger(__name__)

USER_AGENT_MAX = 512


class AuditLogWriter:
    """Persists AuditLog rows.

    independent=True writes each record through a fresh session from
    ``session_factory`` and commits it at once, so the record survives a
    rollback of the business transaction. With independent=False the row is
    inserted on the caller's connection and shares its fate; file-backed
    SQLite needs this since a second connection would wait on the writer lock.
    """

    def __init__(self, session_factory=None, independent: bool = True):
        self.session_factory = session_factory
        self.independent = independent

    def record(
        self,
        entity_type: str,
        entity_id: Optional[int],
        action: str,
        old: Optional[Dict[str, Any]],
        new: Optional[Dict[str, Any]],
        actor_user_id: Optional[int] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        correlation_id: Any = None,
        connection=None,
    ) -> int:
        if action not in AuditLog.ALL_ACTIONS:
            raise ValueError(f'Unknown audit action {action!r}')
        values = {
            'entity_type': entity_type,
            'entity_id': entity_id,
            'action': action,
            'old_value': old,
            'new_value': new,
            'actor_user_id': actor_user_id,
            'actor_ip': ip,
            'actor_user_agent': user_agent[:USER_AGENT_MAX] if user_agent else None,
            'correlation_id': str(correlation_id) if correlation_id is not None else None,
            'created_at': datetime.now(timezone.utc),
        }
        try:
            if connection is not None and not self.independent:
                log_id = self._write_shared(connection, values)
            else:
                log_id = self._write_independent(values)
        except SQLAlchemyError as exc:
            raise AuditWriteError(entity_type, entity_id, action, exc) from exc
        logger.debug('Audit %s %s#%s written as record %s', action, entity_type, entity_id, log_id)
        return log_id

    def _write_shared(self, connection, values: Dict[str, Any]) -> int:
        stmt = insert(AuditLog.__table__).values(**values)
        if connection.dialect.name == 'sqlite':
            # pysqlite starts no transaction for SAVEPOINT, so RELEASE would commit the row early.
            # A failed statement leaves a SQLite transaction usable.
            return connection.execute(stmt).inserted_primary_key[0]
        # a failed insert rolls back to the savepoint and the business transaction carries on
        with connection.begin_nested():
            return connection.execute(stmt).inserted_primary_key[0]

    def _write_independent(self, values: Dict[str, Any]) -> int:
        if self.session_factory is None:
            raise AuditWriteError(values['entity_type'], values['entity_id'], values['action'], 'no session factory configured')
        with self.session_factory() as session:
            log = AuditLog(**values)
            session.add(log)
            session.flush()
            log_id = log.id
            session.commit()
        return log_id


__all__ = ['AuditLogWriter']
