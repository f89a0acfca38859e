from __future__ import annotations
from flask import abort


def apply_multi_sort(query, sort_expr: str | None, allowed: dict, tie_breaker):
    """Order by a comma-separated list of fields, '-' prefix for descending.

    ``allowed`` maps field names to columns; tie_breaker is appended so pages stay stable.
    """
    clauses = []
    for token in (t.strip() for t in (sort_expr or '').split(',')):
        if not token:
            continue
        key = token.lstrip('-')
        col = allowed.get(key)
        if col is None:
            abort(400, description=f'Invalid sort field {key}')
        clauses.append(col.desc() if token.startswith('-') else col.asc())
    clauses.append(tie_breaker.asc())
    return query.order_by(*clauses)
