from __future__ import annotations
"""Correlation id bound to the current unit of work.

Backed by a ContextVar so each request thread (or task) sees only its own id.
The HTTP interceptor brackets mutating requests with start()/clear(); scripts
and jobs can use ``correlation.scope()`` instead.
"""
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class CorrelationContext:
    def __init__(self, name: str = 'audit_correlation_id'):
        self._var: ContextVar[Optional[uuid.UUID]] = ContextVar(name, default=None)

    def start(self) -> uuid.UUID:
        """Bind a fresh id, silently replacing any id already bound."""
        cid = uuid.uuid4()
        self._var.set(cid)
        logger.debug('Correlation started: %s', cid)
        return cid

    def get(self) -> Optional[uuid.UUID]:
        return self._var.get()

    def clear(self) -> None:
        cid = self._var.get()
        if cid is None:
            return
        self._var.set(None)
        logger.debug('Correlation cleared: %s', cid)

    def is_active(self) -> bool:
        return self._var.get() is not None

    @contextmanager
    def scope(self) -> Iterator[uuid.UUID]:
        cid = self.start()
        try:
            yield cid
        finally:
            self.clear()


correlation = CorrelationContext()

__all__ = ['CorrelationContext', 'correlation']
