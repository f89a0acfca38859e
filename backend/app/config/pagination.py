DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def normalize_pagination(limit_raw, offset_raw, default_limit: int = DEFAULT_LIMIT, max_limit: int = MAX_LIMIT):
    """Parse limit/offset query values; limit is clamped to 1..max_limit, offset to >= 0."""
    try:
        limit = int(limit_raw) if limit_raw not in (None, '') else default_limit
        offset = int(offset_raw) if offset_raw not in (None, '') else 0
    except (TypeError, ValueError):
        raise ValueError('limit/offset must be int')
    return max(1, min(limit, max_limit)), max(0, offset)
