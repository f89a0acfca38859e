from __future__ import annotations
"""Audited-entity contract shared by models and the change-capture listener."""
import datetime as _dt
import decimal
import enum
import uuid
from typing import Any, Dict, FrozenSet, Tuple

from sqlalchemy import inspect


def snapshot_value(value: Any) -> Any:
    """Coerce a column value into something the JSON audit columns accept."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time)):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, enum.Enum):
        return snapshot_value(value.value)
    if isinstance(value, dict):
        return {str(k): snapshot_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [snapshot_value(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return f'<{len(value)} bytes>'
    return str(value)


def column_snapshot(obj, exclude: Tuple[str, ...] = ()) -> Dict[str, Any]:
    """Ordered map of the loaded column attributes of a mapped instance.

    Expired or deferred columns are left out rather than loaded, and
    relationships are never followed, so building a snapshot issues no SQL.
    """
    state = inspect(obj)
    unloaded = state.unloaded
    snap: Dict[str, Any] = {}
    for attr in state.mapper.column_attrs:
        key = attr.key
        if key in exclude or key in unloaded:
            continue
        snap[key] = snapshot_value(state.dict.get(key))
    return snap


def collection_loaded(obj, name: str) -> bool:
    return name not in inspect(obj).unloaded


class Auditable:
    """Mixin marking a mapped class as audited.

    ``__audit_sensitive__`` lists fields masked before persistence,
    ``__audit_exclude__`` lists columns never captured and ``__audit_eager__``
    names collections the listener loads on purpose when the entity is read.
    """
    __audit_sensitive__: FrozenSet[str] = frozenset()
    __audit_exclude__: Tuple[str, ...] = ('updated_at',)
    __audit_eager__: Tuple[str, ...] = ()

    @property
    def audit_entity_name(self) -> str:
        return type(self).__name__

    def to_snapshot_map(self) -> Dict[str, Any]:
        return column_snapshot(self, self.__audit_exclude__)

    def sensitive_field_names(self) -> FrozenSet[str]:
        return frozenset(self.__audit_sensitive__)

    def load_audit_collections(self) -> None:
        for name in self.__audit_eager__:
            list(getattr(self, name))


__all__ = ['Auditable', 'column_snapshot', 'collection_loaded', 'snapshot_value']
