from __future__ import annotations
"""Redaction of sensitive snapshot fields before they reach the audit store."""
from typing import Any, Dict, Iterable, Optional

MASK = '***MASKED***'


def mask(snapshot: Optional[Dict[str, Any]], sensitive_fields: Iterable[str]) -> Optional[Dict[str, Any]]:
    """Return a copy of snapshot with every sensitive field replaced by MASK.

    The input mapping is never mutated. A None snapshot stays None and an empty
    field set hands the snapshot back as-is.
    """
    if snapshot is None:
        return None
    fields = set(sensitive_fields or ())
    if not fields:
        return snapshot
    masked = dict(snapshot)
    for key in masked:
        if key in fields:
            masked[key] = MASK
    return masked


def is_sensitive(field: str, sensitive_fields: Iterable[str]) -> bool:
    return field in set(sensitive_fields or ())


def is_masked(value: Any) -> bool:
    return value == MASK


__all__ = ['MASK', 'mask', 'is_sensitive', 'is_masked']
