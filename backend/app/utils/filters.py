from __future__ import annotations
from typing import Any, Dict, Mapping
from flask import abort


def apply_filters(query, specs: Dict[str, Dict[str, Any]], params: Mapping[str, Any]):
    """Apply optional query-string filters.

    specs maps a parameter name to {'op': fn(query, value), 'coerce': fn, 'validate': fn};
    absent or empty parameters are skipped, bad values abort with 400.
    """
    for name, meta in specs.items():
        val = params.get(name)
        if val is None or val == '':
            continue
        if 'coerce' in meta:
            try:
                val = meta['coerce'](val)
            except (TypeError, ValueError):
                abort(400, description=f'{name} invalid')
        if 'validate' in meta and not meta['validate'](val):
            abort(400, description=f'{name} invalid')
        query = meta['op'](query, val)
    return query
