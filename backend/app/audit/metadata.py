from __future__ import annotations
"""Who and where: actor id, client IP and user agent for the current request."""
import logging
from typing import Optional

from flask import has_request_context, request
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

logger = logging.getLogger(__name__)


class RequestMetadataResolver:
    """Reads ambient Flask request state; every method returns None rather than raising."""

    def current_user_id(self) -> Optional[int]:
        if not has_request_context():
            return None
        try:
            verify_jwt_in_request(optional=True)
            identity = get_jwt_identity()
            return int(identity) if identity is not None else None
        except Exception as exc:
            logger.debug('Could not resolve current user id: %s', exc)
            return None

    def client_ip(self) -> Optional[str]:
        if not has_request_context():
            return None
        try:
            forwarded = request.headers.get('X-Forwarded-For')
            if forwarded:
                first_hop = forwarded.split(',')[0].strip()
                if first_hop:
                    return first_hop
            return request.remote_addr
        except Exception as exc:
            logger.debug('Could not resolve client ip: %s', exc)
            return None

    def user_agent(self) -> Optional[str]:
        if not has_request_context():
            return None
        try:
            return request.headers.get('User-Agent')
        except Exception as exc:
            logger.debug('Could not resolve user agent: %s', exc)
            return None


__all__ = ['RequestMetadataResolver']
