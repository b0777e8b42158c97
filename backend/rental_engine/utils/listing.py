from __future__ import annotations
"""Pagination and conditional-GET helpers for transaction reads.

List and detail responses carry an ``ETag`` derived from the returned ids and
the newest ``updated_at``; ``If-None-Match`` (preferred) or
``If-Modified-Since`` short-circuit to 304.
"""
from typing import Any, Dict, Iterable, Optional, Tuple
from flask import request, make_response, jsonify
from sqlalchemy.orm import Query
from rental_engine.errors import ValidationError
import hashlib
from datetime import datetime, timezone, timedelta
from email.utils import parsedate_to_datetime, format_datetime

TIMESTAMP_TOLERANCE = timedelta(seconds=1)
DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def canonicalize_timestamp(dt: datetime) -> datetime:
    """Return UTC tz-aware timestamp truncated to whole seconds."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.replace(microsecond=0)


def _iso(dt: Optional[datetime]) -> str:
    return canonicalize_timestamp(dt).isoformat().replace('+00:00', 'Z') if dt else ''


def normalize_pagination(limit_raw, offset_raw) -> Tuple[int, int]:
    try:
        limit = int(limit_raw) if limit_raw is not None else DEFAULT_LIMIT
        offset = int(offset_raw) if offset_raw is not None else 0
    except (TypeError, ValueError):
        raise ValidationError('limit and offset must be integers')
    return max(1, min(limit, MAX_LIMIT)), max(0, offset)


def apply_pagination(q: Query) -> Tuple[Query, int, int, int]:
    limit, offset = normalize_pagination(request.args.get('limit'), request.args.get('offset'))
    total = q.count()
    return q.offset(offset).limit(limit), total, limit, offset


def compute_etag(ids: Iterable[Any], total: int, limit: int, offset: int, latest_ts: Optional[datetime] = None) -> str:
    seed = f"{[str(i) for i in ids]}|{total}|{limit}|{offset}|{_iso(latest_ts)}"
    return hashlib.sha256(seed.encode()).hexdigest()[:32]


def build_list_payload(rows: list, total: int, limit: int, offset: int) -> Dict[str, Any]:
    return {
        'data': rows,
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'returned': len(rows)
        }
    }


def _set_cache_headers(resp, etag: str, latest_ts: Optional[datetime]):
    resp.headers['ETag'] = etag
    if latest_ts:
        resp.headers['Last-Modified'] = format_datetime(canonicalize_timestamp(latest_ts), usegmt=True)
        resp.headers['X-Last-Modified-ISO'] = _iso(latest_ts)
    return resp


def _not_modified(etag: str, latest_ts: Optional[datetime]):
    inm = request.headers.get('If-None-Match')
    if inm:
        return inm.strip('"') == etag
    ims_raw = request.headers.get('If-Modified-Since')
    if ims_raw and latest_ts:
        ims = _parse_if_modified_since(ims_raw)
        if ims:
            return canonicalize_timestamp(latest_ts) <= canonicalize_timestamp(ims) + TIMESTAMP_TOLERANCE
    return False


def _parse_if_modified_since(header_val: str) -> Optional[datetime]:
    try:
        dt = datetime.fromisoformat(header_val.replace('Z', '+00:00'))
    except ValueError:
        try:
            dt = parsedate_to_datetime(header_val)
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def cached_response(body: Dict[str, Any], etag: str, latest_ts: Optional[datetime]):
    """JSON response with cache validators, or an empty 304 when the client is current."""
    if _not_modified(etag, latest_ts):
        return _set_cache_headers(make_response('', 304), etag, latest_ts)
    return _set_cache_headers(make_response(jsonify(body)), etag, latest_ts)


def make_cached_list_response(rows: list, total: int, limit: int, offset: int, latest_ts: Optional[datetime] = None):
    etag = compute_etag([(r.get('id'), r.get('updated_at')) for r in rows], total, limit, offset, latest_ts)
    return cached_response(build_list_payload(rows, total, limit, offset), etag, latest_ts)


def make_cached_item_response(body: Dict[str, Any], latest_ts: Optional[datetime]):
    etag = compute_etag([(body.get('id'), body.get('updated_at'))], 1, 1, 0, latest_ts)
    return cached_response(body, etag, latest_ts)


__all__ = [
    'canonicalize_timestamp', 'normalize_pagination', 'apply_pagination', 'compute_etag', 'build_list_payload',
    'cached_response', 'make_cached_list_response', 'make_cached_item_response',
]
