from __future__ import annotations
"""Paginated list responses with ETag / Last-Modified validators.

The ETag seed is the page's id sequence plus pagination numbers and the
newest timestamp on the page, so any insert, delete or edit that changes the
page also changes the tag.
"""
from typing import Iterable, Optional, Tuple
from flask import request, abort, make_response
from sqlalchemy.orm import Query
from app.config.pagination import normalize_pagination
import hashlib
from datetime import datetime, timezone, timedelta
from email.utils import parsedate_to_datetime, format_datetime

# HTTP dates carry whole seconds only
TIMESTAMP_TOLERANCE = timedelta(seconds=1)


def canonicalize_timestamp(dt: datetime) -> datetime:
    """UTC tz-aware, truncated to whole seconds. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0)


def _iso(dt: datetime) -> str:
    return canonicalize_timestamp(dt).isoformat().replace('+00:00', 'Z')


def apply_pagination(q: Query) -> Tuple[Query, int, int, int]:
    try:
        limit, offset = normalize_pagination(request.args.get('limit'), request.args.get('offset'))
    except ValueError as e:
        abort(400, description=str(e))
    total = q.count()
    return q.offset(offset).limit(limit), total, limit, offset


def compute_etag(ids: Iterable[int], total: int, limit: int, offset: int, latest_iso: Optional[str] = '') -> str:
    seed = f"{list(ids)}|{total}|{limit}|{offset}|{latest_iso or ''}"
    return hashlib.sha256(seed.encode()).hexdigest()[:32]


def build_list_payload(rows: list, total: int, limit: int, offset: int):
    return {
        'data': rows,
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'returned': len(rows)
        }
    }


def _set_validators(resp, etag: str, latest_ts: Optional[datetime]):
    resp.headers['ETag'] = etag
    if isinstance(latest_ts, datetime):
        resp.headers['Last-Modified'] = format_datetime(canonicalize_timestamp(latest_ts), usegmt=True)
        resp.headers['X-Last-Modified-ISO'] = _iso(latest_ts)
    return resp


def make_cached_list_response(rows: list, total: int, limit: int, offset: int, latest_ts: Optional[datetime] = None):
    latest_iso = _iso(latest_ts) if isinstance(latest_ts, datetime) else ''
    etag = compute_etag([r.get('id') for r in rows], total, limit, offset, latest_iso)
    resp = make_response(build_list_payload(rows, total, limit, offset))
    return _set_validators(resp, etag, latest_ts), etag


def _parse_if_modified_since(header_val: str) -> Optional[datetime]:
    """Accept ISO 8601 (what X-Last-Modified-ISO hands out) or an RFC 1123 HTTP-date."""
    try:
        dt = datetime.fromisoformat(header_val.replace('Z', '+00:00'))
    except ValueError:
        try:
            dt = parsedate_to_datetime(header_val)
        except (TypeError, ValueError):
            return None
    if dt is not None and dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def handle_conditional(etag_value: str, latest_ts: Optional[datetime]):
    """Return a 304 response when the client's validators still match, else None.

    If-None-Match wins over If-Modified-Since (RFC 9110).
    """
    inm = request.headers.get('If-None-Match')
    if inm:
        if inm.strip('"') == etag_value:
            return _set_validators(make_response('', 304), etag_value, latest_ts)
        return None
    ims_raw = request.headers.get('If-Modified-Since')
    if ims_raw and isinstance(latest_ts, datetime):
        ims_dt = _parse_if_modified_since(ims_raw)
        if ims_dt and canonicalize_timestamp(latest_ts) <= canonicalize_timestamp(ims_dt) + TIMESTAMP_TOLERANCE:
            return _set_validators(make_response('', 304), etag_value, latest_ts)
    return None
