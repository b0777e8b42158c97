from __future__ import annotations
"""Audit logging decorator for transaction action views.

Usage:

@audit_log('TXN.APPROVE', entity='BorrowTransaction', entity_id_arg='txn_id',
           diff_keys=['status', 'payment_status'], pre_fetch=snapshot)
def approve(txn_id): ...

Parameters:
  action: required audit action code (e.g. TXN.APPROVE)
  entity: optional entity label
  entity_id_key: key in the returned JSON object whose value becomes entity_id.
  entity_id_arg: name of the path parameter to use for entity_id (fallback if entity_id_key absent).
  meta_keys: keys projected from the returned JSON into meta.
  diff_keys / pre_fetch: pre_fetch(args, kwargs) returns a before-snapshot;
    keys in diff_keys whose values changed are recorded as meta['changes'].

Views return dict, (dict, status) or (dict, status, headers); the first
element is inspected. Only successful views are audited: an exception raised
by the view propagates before any audit row is written.
"""
import logging
from functools import wraps
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from rental_engine.services.audit import add_audit
from rental_engine import get_db

logger = logging.getLogger(__name__)


def _extract_payload(rv: Any):
    if isinstance(rv, tuple) and rv:
        return rv[0]
    return rv


def _diff(before: Optional[Dict[str, Any]], after: Dict[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    changes = {}
    if not before:
        return changes
    for k in keys:
        if k in before and k in after and before.get(k) != after.get(k):
            changes[k] = {'before': before.get(k), 'after': after.get(k)}
    return changes


def audit_log(
    action: str,
    *,
    entity: Optional[str] = None,
    entity_id_key: Optional[str] = None,
    entity_id_arg: Optional[str] = None,
    meta_keys: Optional[Iterable[str]] = None,
    diff_keys: Optional[Iterable[str]] = None,
    pre_fetch: Optional[Callable[[tuple, dict], Optional[Dict[str, Any]]]] = None,
):
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            before = pre_fetch(args, kwargs) if (diff_keys and pre_fetch) else None
            rv = fn(*args, **kwargs)
            data = _extract_payload(rv)
            if not isinstance(data, dict):
                data = {}
            entity_id = None
            if entity_id_key and entity_id_key in data:
                entity_id = data.get(entity_id_key)
            elif entity_id_arg and entity_id_arg in kwargs:
                entity_id = kwargs.get(entity_id_arg)
            meta = {k: data.get(k) for k in (meta_keys or ()) if k in data}
            changes = _diff(before, data, diff_keys or ())
            if changes:
                meta['changes'] = changes
            session = get_db()
            try:
                add_audit(action, entity, entity_id, meta)
                session.commit()
            except SQLAlchemyError:
                # the action is already committed at this point
                session.rollback()
                logger.warning('audit write failed', exc_info=True, extra={'audit_action': action, 'entity_id': entity_id})
            return rv
        return wrapper
    return outer
