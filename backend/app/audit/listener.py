from __future__ import annotations
"""Change capture: turns ORM lifecycle events into audit records.

Every reaction is best-effort. Whatever goes wrong in here is logged and
swallowed so the flush that triggered it carries on untouched.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy import event

from app.audit.contract import Auditable
from app.audit.correlation import CorrelationContext, correlation as default_correlation
from app.audit.masking import mask
from app.audit.metadata import RequestMetadataResolver
from app.audit.state_cache import OriginalStateCache, cache_key
from app.audit.writer import AuditLogWriter
from app.models.audit import AuditLog

logger = logging.getLogger(__name__)


class AuditEntityListener:
    def __init__(
        self,
        writer: AuditLogWriter,
        resolver: Optional[RequestMetadataResolver] = None,
        cache: Optional[OriginalStateCache] = None,
        correlation: Optional[CorrelationContext] = None,
    ):
        self.writer = writer
        self.resolver = resolver or RequestMetadataResolver()
        self.cache = cache if cache is not None else OriginalStateCache()
        self.correlation = correlation or default_correlation

    # ---------------- Reactions ---------------- #
    def on_load(self, entity) -> None:
        if not isinstance(entity, Auditable):
            return
        try:
            if entity.id is None:
                return
            # deliberate: collections the entity asked to have in its snapshot
            entity.load_audit_collections()
            key = cache_key(entity)
            self.cache.put(key, entity.to_snapshot_map())
            logger.debug('Cached original state for %s', key)
        except Exception as exc:
            logger.warning('Could not cache original state for %s: %s', type(entity).__name__, exc)

    def on_create(self, entity, session=None) -> None:
        if not isinstance(entity, Auditable):
            return
        try:
            new_state = mask(entity.to_snapshot_map(), entity.sensitive_field_names())
        except Exception as exc:
            logger.warning('Skipping CREATE audit for %s: snapshot failed: %s', type(entity).__name__, exc)
            return
        self._write(entity, AuditLog.ACTION_CREATE, None, new_state, session)

    def on_update(self, entity, session=None) -> None:
        if not isinstance(entity, Auditable):
            return
        try:
            key = cache_key(entity)
            original = self.cache.take_if_present(key)
            if original is None:
                logger.warning(
                    'No cached original state for %s#%s. Skipping audit log.',
                    entity.audit_entity_name, entity.id,
                )
                return
            sensitive = entity.sensitive_field_names()
            old_state = mask(original, sensitive)
            new_state = mask(entity.to_snapshot_map(), sensitive)
        except Exception as exc:
            logger.warning('Skipping UPDATE audit for %s: snapshot failed: %s', type(entity).__name__, exc)
            return
        self._write(entity, AuditLog.ACTION_UPDATE, old_state, new_state, session)

    def on_delete(self, entity, session=None) -> None:
        if not isinstance(entity, Auditable):
            return
        try:
            self.cache.discard(cache_key(entity))
            old_state = mask(entity.to_snapshot_map(), entity.sensitive_field_names())
        except Exception as exc:
            logger.warning('Skipping DELETE audit for %s: snapshot failed: %s', type(entity).__name__, exc)
            return
        self._write(entity, AuditLog.ACTION_DELETE, old_state, None, session)

    def _write(self, entity, action: str, old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]], session) -> None:
        entity_type = getattr(entity, 'audit_entity_name', type(entity).__name__)
        entity_id = getattr(entity, 'id', None)
        try:
            connection = session.connection() if session is not None and not self.writer.independent else None
            self.writer.record(
                entity_type,
                entity_id,
                action,
                old,
                new,
                actor_user_id=self.resolver.current_user_id(),
                ip=self.resolver.client_ip(),
                user_agent=self.resolver.user_agent(),
                correlation_id=self.correlation.get(),
                connection=connection,
            )
        except Exception:
            logger.error('Failed to write %s audit record for %s#%s', action, entity_type, entity_id, exc_info=True)

    # ---------------- SQLAlchemy wiring ---------------- #
    def attach(self, session_factory) -> None:
        """Register the reactions as session events on a sessionmaker (or Session)."""
        event.listen(session_factory, 'loaded_as_persistent', self._handle_loaded)
        event.listen(session_factory, 'before_flush', self._handle_before_flush)
        event.listen(session_factory, 'after_flush', self._handle_after_flush)

    def detach(self, session_factory) -> None:
        event.remove(session_factory, 'loaded_as_persistent', self._handle_loaded)
        event.remove(session_factory, 'before_flush', self._handle_before_flush)
        event.remove(session_factory, 'after_flush', self._handle_after_flush)

    def _handle_loaded(self, session, instance):
        self.on_load(instance)

    def _handle_before_flush(self, session, flush_context, instances):
        for obj in list(session.dirty):
            if isinstance(obj, Auditable) and session.is_modified(obj):
                self.on_update(obj, session)
        for obj in list(session.deleted):
            if isinstance(obj, Auditable):
                self.on_delete(obj, session)

    def _handle_after_flush(self, session, flush_context):
        for obj in list(session.new):
            if isinstance(obj, Auditable):
                self.on_create(obj, session)


__all__ = ['AuditEntityListener']
