from __future__ import annotations
"""Read side of the audit trail: search, history, grouping, detail and export rows."""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.orm import Session

from app.audit.masking import is_masked
from app.models.audit import AuditLog

DEFAULT_GROUP_WINDOW_SECONDS = 3
DEFAULT_EXPORT_MAX_RECORDS = 10000
# upper bound on rows scanned when building grouped views
GROUP_SCAN_LIMIT = 5000

CHANGE_ADDED = 'ADDED'
CHANGE_REMOVED = 'REMOVED'
CHANGE_MODIFIED = 'MODIFIED'

_ACTION_VERBS = {
    AuditLog.ACTION_CREATE: 'created',
    AuditLog.ACTION_UPDATE: 'updated',
    AuditLog.ACTION_DELETE: 'deleted',
}


@dataclass
class AuditQueryFilters:
    entity_type: Optional[str] = None
    entity_id: Optional[int] = None
    action: Optional[str] = None
    actor_user_id: Optional[int] = None
    correlation_id: Optional[str] = None
    search: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


def record_json(r: AuditLog) -> Dict[str, Any]:
    return {
        'id': r.id,
        'entity_type': r.entity_type,
        'entity_id': r.entity_id,
        'action': r.action,
        'old_value': r.old_value,
        'new_value': r.new_value,
        'actor_user_id': r.actor_user_id,
        'actor_ip': r.actor_ip,
        'actor_user_agent': r.actor_user_agent,
        'correlation_id': r.correlation_id,
        'created_at': r.created_at.isoformat() if r.created_at else None,
    }


def field_changes(old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Per-field diff of two snapshots; unchanged fields are left out."""
    old = old or {}
    new = new or {}
    changes = []
    keys = list(old.keys()) + [k for k in new.keys() if k not in old]
    for key in keys:
        in_old = key in old
        in_new = key in new
        before = old.get(key)
        after = new.get(key)
        if in_old and in_new:
            if before == after:
                continue
            kind = CHANGE_MODIFIED
        elif in_new:
            kind = CHANGE_ADDED
        else:
            kind = CHANGE_REMOVED
        changes.append({
            'field': key,
            'change_type': kind,
            'old_value': before,
            'new_value': after,
            'sensitive': is_masked(before) or is_masked(after),
        })
    return changes


def describe_user_agent(user_agent: Optional[str]) -> Dict[str, Optional[str]]:
    if not user_agent:
        return {'device_type': None, 'browser': None}
    ua = user_agent.lower()
    if 'ipad' in ua or 'tablet' in ua:
        device = 'Tablet'
    elif 'mobile' in ua or 'android' in ua or 'iphone' in ua:
        device = 'Mobile'
    else:
        device = 'Desktop'
    # order matters: Edge and Opera also advertise Chrome, Chrome advertises Safari
    if 'edg/' in ua or 'edge' in ua:
        browser = 'Edge'
    elif 'opr/' in ua or 'opera' in ua:
        browser = 'Opera'
    elif 'chrome' in ua:
        browser = 'Chrome'
    elif 'firefox' in ua:
        browser = 'Firefox'
    elif 'safari' in ua:
        browser = 'Safari'
    else:
        browser = 'Other'
    return {'device_type': device, 'browser': browser}


def _split_camel(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', ' ', name)


def summarize(records: List[AuditLog]) -> Tuple[str, str]:
    """Return (primary_action, summary) for a group of records."""
    if not records:
        return '', ''
    first = records[0]
    creates = [r for r in records if r.action == AuditLog.ACTION_CREATE]
    primary = creates[0] if creates else first
    primary_action = f"{_split_camel(primary.entity_type)} {_ACTION_VERBS.get(primary.action, primary.action.lower())}"
    if len(records) == 1:
        return primary_action, primary_action
    others = len(records) - 1
    return primary_action, f"{primary_action} (+{others} related change{'s' if others != 1 else ''})"


class AuditQueryService:
    def __init__(self, session: Session):
        self.session = session

    def _apply(self, stmt, f: AuditQueryFilters):
        if f.entity_type:
            stmt = stmt.where(AuditLog.entity_type == f.entity_type)
        if f.entity_id is not None:
            stmt = stmt.where(AuditLog.entity_id == f.entity_id)
        if f.action:
            stmt = stmt.where(AuditLog.action == f.action)
        if f.actor_user_id is not None:
            stmt = stmt.where(AuditLog.actor_user_id == f.actor_user_id)
        if f.correlation_id:
            stmt = stmt.where(AuditLog.correlation_id == str(f.correlation_id))
        if f.start is not None:
            stmt = stmt.where(AuditLog.created_at >= f.start)
        if f.end is not None:
            stmt = stmt.where(AuditLog.created_at <= f.end)
        if f.search:
            # % and _ in the search text match literally
            stmt = stmt.where(or_(
                AuditLog.entity_type.icontains(f.search, autoescape=True),
                AuditLog.action.icontains(f.search, autoescape=True),
                AuditLog.actor_ip.icontains(f.search, autoescape=True),
                cast(AuditLog.old_value, String).icontains(f.search, autoescape=True),
                cast(AuditLog.new_value, String).icontains(f.search, autoescape=True),
            ))
        return stmt

    def _page(self, f: AuditQueryFilters, limit: Optional[int], offset: int, newest_first: bool = True):
        base = self._apply(select(AuditLog), f)
        total = self.session.execute(select(func.count()).select_from(base.subquery())).scalar_one()
        order = (AuditLog.created_at.desc(), AuditLog.id.desc()) if newest_first else (AuditLog.created_at.asc(), AuditLog.id.asc())
        stmt = base.order_by(*order).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.execute(stmt).scalars().all(), total

    def search(self, filters: Optional[AuditQueryFilters] = None, limit: Optional[int] = 50, offset: int = 0):
        return self._page(filters or AuditQueryFilters(), limit, offset)

    def get(self, log_id: int) -> Optional[AuditLog]:
        return self.session.get(AuditLog, log_id)

    def entity_history(self, entity_type: str, entity_id: int) -> List[AuditLog]:
        rows, _ = self._page(AuditQueryFilters(entity_type=entity_type, entity_id=entity_id), None, 0)
        return rows

    def by_correlation(self, correlation_id) -> List[AuditLog]:
        rows, _ = self._page(AuditQueryFilters(correlation_id=str(correlation_id)), None, 0, newest_first=False)
        return rows

    def user_activity(self, user_id: int, entity_type: Optional[str] = None, action: Optional[str] = None,
                      start: Optional[datetime] = None, end: Optional[datetime] = None,
                      limit: Optional[int] = 50, offset: int = 0):
        f = AuditQueryFilters(actor_user_id=user_id, entity_type=entity_type, action=action, start=start, end=end)
        return self._page(f, limit, offset)

    def date_range(self, start: datetime, end: datetime, limit: Optional[int] = 50, offset: int = 0):
        if start > end:
            raise ValueError('start must not be after end')
        return self._page(AuditQueryFilters(start=start, end=end), limit, offset)

    def entity_types(self) -> List[str]:
        return list(self.session.execute(select(AuditLog.entity_type).distinct().order_by(AuditLog.entity_type)).scalars())

    def actions(self) -> List[str]:
        return list(self.session.execute(select(AuditLog.action).distinct().order_by(AuditLog.action)).scalars())

    def grouped(self, filters: Optional[AuditQueryFilters] = None, limit: int = 50, offset: int = 0,
                window_seconds: float = DEFAULT_GROUP_WINDOW_SECONDS):
        """Group records into logical operations.

        Records sharing a correlation id form one group. Uncorrelated records
        written by the same actor within ``window_seconds`` of the group's
        first record are folded together. Groups are returned newest first.
        """
        rows, _ = self._page(filters or AuditQueryFilters(), GROUP_SCAN_LIMIT, 0, newest_first=False)
        window = timedelta(seconds=window_seconds)
        groups: List[List[AuditLog]] = []
        by_correlation: Dict[str, List[AuditLog]] = {}
        open_window: Dict[Optional[int], List[AuditLog]] = {}
        for r in rows:
            if r.correlation_id:
                bucket = by_correlation.get(r.correlation_id)
                if bucket is None:
                    bucket = by_correlation[r.correlation_id] = []
                    groups.append(bucket)
                bucket.append(r)
                continue
            bucket = open_window.get(r.actor_user_id)
            if bucket is not None and r.created_at - bucket[0].created_at <= window:
                bucket.append(r)
                continue
            bucket = open_window[r.actor_user_id] = [r]
            groups.append(bucket)
        groups.reverse()
        total = len(groups)
        return [self._group_json(g) for g in groups[offset:offset + limit]], total

    def _group_json(self, records: List[AuditLog]) -> Dict[str, Any]:
        first = records[0]
        primary_action, summary = summarize(records)
        entity_types = []
        for r in records:
            if r.entity_type not in entity_types:
                entity_types.append(r.entity_type)
        return {
            'group_key': first.correlation_id or f'window-{first.id}',
            'correlation_id': first.correlation_id,
            'timestamp': first.created_at.isoformat() if first.created_at else None,
            'actor_user_id': first.actor_user_id,
            'primary_action': primary_action,
            'summary': summary,
            'entity_types': entity_types,
            'log_count': len(records),
            'logs': [record_json(r) for r in records],
        }

    def detail(self, log_id: int) -> Optional[Dict[str, Any]]:
        r = self.get(log_id)
        if r is None:
            return None
        out = record_json(r)
        out['field_changes'] = field_changes(r.old_value, r.new_value)
        out['client'] = describe_user_agent(r.actor_user_agent)
        return out

    def export_rows(self, filters: Optional[AuditQueryFilters] = None,
                    max_records: int = DEFAULT_EXPORT_MAX_RECORDS) -> List[Dict[str, Any]]:
        """Flatten matching records into rows for a spreadsheet/PDF exporter."""
        rows, _ = self._page(filters or AuditQueryFilters(), max_records, 0)
        out = []
        for r in rows:
            changes = field_changes(r.old_value, r.new_value)
            out.append({
                'id': r.id,
                'created_at': r.created_at.isoformat() if r.created_at else '',
                'entity_type': r.entity_type,
                'entity_id': r.entity_id,
                'action': r.action,
                'actor_user_id': r.actor_user_id,
                'actor_ip': r.actor_ip or '',
                'correlation_id': r.correlation_id or '',
                'changed_fields': ', '.join(c['field'] for c in changes),
            })
        return out


__all__ = [
    'AuditQueryFilters', 'AuditQueryService', 'record_json', 'field_changes', 'describe_user_agent', 'summarize',
    'CHANGE_ADDED', 'CHANGE_REMOVED', 'CHANGE_MODIFIED',
]
