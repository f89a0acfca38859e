from __future__ import annotations
import logging
from typing import Iterable

from flask import Flask, request

from app.audit.correlation import CorrelationContext

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({'POST', 'PUT', 'PATCH', 'DELETE'})
CORRELATION_HEADER = 'X-Correlation-ID'


def init_correlation(app: Flask, correlation: CorrelationContext, exclude_prefixes: Iterable[str] = ()):
    """Bracket every mutating request with a correlation id.

    The id is cleared in teardown_request, which Flask runs on every exit
    path including unhandled exceptions.
    """
    excluded = tuple(exclude_prefixes or ())

    @app.before_request
    def _start_correlation():
        if request.method not in MUTATING_METHODS:
            return None
        if excluded and request.path.startswith(excluded):
            return None
        cid = correlation.start()
        logger.debug('%s %s correlated as %s', request.method, request.path, cid)
        return None

    @app.after_request
    def _expose_correlation(response):
        cid = correlation.get()
        if cid is not None:
            response.headers[CORRELATION_HEADER] = str(cid)
        return response

    @app.teardown_request
    def _clear_correlation(exc):
        correlation.clear()


__all__ = ['init_correlation', 'MUTATING_METHODS', 'CORRELATION_HEADER']
