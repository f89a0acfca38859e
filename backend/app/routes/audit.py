from __future__ import annotations
import uuid
from datetime import datetime, timedelta, timezone
from flask import Blueprint, request, abort, current_app
from app import get_db
from app.audit.query import AuditQueryFilters, AuditQueryService, record_json
from app.config.pagination import normalize_pagination
from app.decorators.auth import require_permissions
from app.models.audit import AuditLog
from app.utils.listing import handle_conditional, make_cached_list_response, build_list_payload

audit_bp = Blueprint('audit', __name__)


def _parse_date(value: str, end_of_day: bool = False):
    """Parse a query-string date; naive values are taken as UTC."""
    if not value:
        return None
    for fmt in ('%Y-%m-%d', '%Y-%m-%dT%H:%M:%S', '%Y-%m-%dT%H:%M:%S%z'):
        try:
            dt = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if fmt == '%Y-%m-%d' and end_of_day:
            dt = dt + timedelta(days=1) - timedelta(microseconds=1)
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    abort(400, description=f'invalid date {value!r}')


def _int_arg(name: str):
    raw = request.args.get(name)
    if raw is None or raw == '':
        return None
    try:
        return int(raw)
    except ValueError:
        abort(400, description=f'{name} must be int')


def _filters_from_args() -> AuditQueryFilters:
    action = request.args.get('action')
    if action and action not in AuditLog.ALL_ACTIONS:
        abort(400, description='action invalid')
    return AuditQueryFilters(
        entity_type=request.args.get('entity_type') or None,
        entity_id=_int_arg('entity_id'),
        action=action or None,
        actor_user_id=_int_arg('actor_user_id'),
        correlation_id=request.args.get('correlation_id') or None,
        search=request.args.get('search') or None,
        start=_parse_date(request.args.get('start_date')),
        end=_parse_date(request.args.get('end_date'), end_of_day=True),
    )


def _pagination():
    try:
        return normalize_pagination(request.args.get('limit'), request.args.get('offset'))
    except ValueError as e:
        abort(400, description=str(e))


def _cached_page(rows, total, limit, offset, head: bool = False):
    # newest record drives Last-Modified so new entries invalidate client caches
    latest_ts = max((r.created_at for r in rows if r.created_at), default=None)
    resp, etag = make_cached_list_response([record_json(r) for r in rows], total, limit, offset, latest_ts)
    cond = handle_conditional(etag, latest_ts)
    if cond:
        if head:
            cond.set_data(b'')
        return cond
    if head:
        resp.set_data(b'')
    return resp


@audit_bp.route('/logs', methods=['GET', 'HEAD'])
@require_permissions('AUDIT.READ')
def list_logs():
    limit, offset = _pagination()
    rows, total = AuditQueryService(get_db()).search(_filters_from_args(), limit, offset)
    return _cached_page(rows, total, limit, offset, head=request.method == 'HEAD')


@audit_bp.get('/logs/grouped')
@require_permissions('AUDIT.READ')
def list_grouped():
    limit, offset = _pagination()
    window = current_app.config.get('AUDIT_GROUP_WINDOW_SECONDS', 3)
    groups, total = AuditQueryService(get_db()).grouped(_filters_from_args(), limit, offset, window_seconds=window)
    return build_list_payload(groups, total, limit, offset)


@audit_bp.get('/logs/date-range')
@require_permissions('AUDIT.READ')
def list_date_range():
    start = _parse_date(request.args.get('start_date'))
    end = _parse_date(request.args.get('end_date'), end_of_day=True)
    if start is None or end is None:
        abort(400, description='start_date and end_date required')
    limit, offset = _pagination()
    try:
        rows, total = AuditQueryService(get_db()).date_range(start, end, limit, offset)
    except ValueError as e:
        abort(400, description=str(e))
    return _cached_page(rows, total, limit, offset)


@audit_bp.get('/logs/export')
@require_permissions('AUDIT.EXPORT')
def export_logs():
    cap = current_app.config.get('AUDIT_EXPORT_MAX_RECORDS', 10000)
    requested = _int_arg('max_records')
    max_records = min(requested, cap) if requested and requested > 0 else cap
    rows = AuditQueryService(get_db()).export_rows(_filters_from_args(), max_records)
    return {'data': rows, 'returned': len(rows), 'max_records': max_records}


@audit_bp.get('/logs/<int:log_id>')
@require_permissions('AUDIT.READ')
def get_log(log_id: int):
    r = AuditQueryService(get_db()).get(log_id)
    if not r:
        abort(404)
    return record_json(r)


@audit_bp.get('/logs/<int:log_id>/detail')
@require_permissions('AUDIT.READ')
def get_log_detail(log_id: int):
    detail = AuditQueryService(get_db()).detail(log_id)
    if detail is None:
        abort(404)
    return detail


@audit_bp.get('/entities/<entity_type>/<int:entity_id>')
@require_permissions('AUDIT.READ')
def entity_history(entity_type: str, entity_id: int):
    rows = AuditQueryService(get_db()).entity_history(entity_type, entity_id)
    return {'data': [record_json(r) for r in rows]}


@audit_bp.get('/correlations/<correlation_id>')
@require_permissions('AUDIT.READ')
def correlation_records(correlation_id: str):
    try:
        cid = uuid.UUID(correlation_id)
    except ValueError:
        abort(400, description='correlation id must be a UUID')
    rows = AuditQueryService(get_db()).by_correlation(cid)
    return {'correlation_id': str(cid), 'data': [record_json(r) for r in rows]}


@audit_bp.get('/users/<int:user_id>/activity')
@require_permissions('AUDIT.READ')
def user_activity(user_id: int):
    limit, offset = _pagination()
    action = request.args.get('action')
    if action and action not in AuditLog.ALL_ACTIONS:
        abort(400, description='action invalid')
    rows, total = AuditQueryService(get_db()).user_activity(
        user_id,
        entity_type=request.args.get('entity_type') or None,
        action=action or None,
        start=_parse_date(request.args.get('start_date')),
        end=_parse_date(request.args.get('end_date'), end_of_day=True),
        limit=limit,
        offset=offset,
    )
    return _cached_page(rows, total, limit, offset)


@audit_bp.get('/entity-types')
@require_permissions('AUDIT.READ')
def entity_types():
    return {'data': AuditQueryService(get_db()).entity_types()}


@audit_bp.get('/actions')
@require_permissions('AUDIT.READ')
def actions():
    return {'data': AuditQueryService(get_db()).actions()}
