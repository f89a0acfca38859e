from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, JSON, DateTime, Index, event

from .authz import Base  # reuse same metadata
from app.audit.errors import ImmutableAuditRecordError


def _utcnow():
    return datetime.now(timezone.utc)


class AuditLog(Base):
    """Append-only record of one entity mutation."""
    __tablename__ = 'audit_logs'
    ACTION_CREATE = 'CREATE'
    ACTION_UPDATE = 'UPDATE'
    ACTION_DELETE = 'DELETE'
    ALL_ACTIONS = (ACTION_CREATE, ACTION_UPDATE, ACTION_DELETE)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    old_value: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    actor_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    actor_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    actor_user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    __table_args__ = (Index('ix_audit_logs_entity', 'entity_type', 'entity_id'),)


@event.listens_for(AuditLog, 'before_update')
def _reject_update(mapper, connection, target):
    raise ImmutableAuditRecordError(f'Audit record {target.id} cannot be modified')


@event.listens_for(AuditLog, 'before_delete')
def _reject_delete(mapper, connection, target):
    raise ImmutableAuditRecordError(f'Audit record {target.id} cannot be deleted')
