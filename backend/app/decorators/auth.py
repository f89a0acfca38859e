import logging
from functools import wraps

from flask import abort, request
from flask_jwt_extended import get_jwt, verify_jwt_in_request

logger = logging.getLogger(__name__)


def require_permissions(*codes: str):
    """Reject the request with 401 without a valid token, 403 unless every code is granted."""
    required = frozenset(codes)

    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            claims = get_jwt()
            missing = required - set(claims.get('perms', []))
            if missing:
                logger.info('User %s denied %s %s: missing %s', claims.get('sub'), request.method, request.path, sorted(missing))
                abort(403, description='Missing permission')
            return fn(*args, **kwargs)
        return wrapper
    return outer
