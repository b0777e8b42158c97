from __future__ import annotations
"""Best-effort notification dispatch for lifecycle events.

A notification is persisted as a ``Notification`` row and, when configured,
handed to ``NOTIFICATION_SINK`` (push delivery lives outside this service).
Dispatch never raises: a failed notification is logged and the transition
that triggered it stands.
"""
import logging
from typing import Any, Callable, Dict, Optional

from rental_engine.models.notification import Notification
from rental_engine.services.pricing import format_cents

logger = logging.getLogger(__name__)

BORROW_REQUEST = 'borrow_request'
REQUEST_APPROVED = 'request_approved'
REQUEST_DECLINED = 'request_declined'
REQUEST_CANCELLED = 'request_cancelled'
PICKUP_CONFIRMED = 'pickup_confirmed'
RETURN_CONFIRMED = 'return_confirmed'
DAMAGE_CLAIM_FILED = 'damage_claim_filed'
LATE_FEE_CHARGED = 'late_fee_charged'
RATING_RECEIVED = 'rating_received'


def _item(data, fallback='your item'):
    return data.get('item_title') or fallback


TEMPLATES: Dict[str, Dict[str, Any]] = {
    BORROW_REQUEST: {
        'title': 'New Borrow Request',
        'body': lambda d: f"{d['borrower_name']} wants to borrow {_item(d)}" if d.get('borrower_name') else f'Someone wants to borrow {_item(d)}',
    },
    REQUEST_APPROVED: {
        'title': 'Request Approved',
        'body': lambda d: f"Your request to borrow {_item(d, 'the item')} has been approved!",
    },
    REQUEST_DECLINED: {
        'title': 'Request Declined',
        'body': lambda d: f"Your request to borrow {_item(d, 'the item')} was declined",
    },
    REQUEST_CANCELLED: {
        'title': 'Request Cancelled',
        'body': lambda d: f"The borrower cancelled their request for {_item(d)}",
    },
    PICKUP_CONFIRMED: {
        'title': 'Item Picked Up',
        'body': lambda d: f"{_item(d, 'The item')} has been picked up",
    },
    RETURN_CONFIRMED: {
        'title': 'Item Returned',
        'body': lambda d: f"Return confirmed. Your deposit of ${format_cents(d.get('deposit_refunded_cents', 0))} is being refunded",
    },
    DAMAGE_CLAIM_FILED: {
        'title': 'Damage Claim Filed',
        'body': lambda d: f"Damage claim filed: ${format_cents(d.get('claim_cents', 0))} deducted from deposit",
    },
    LATE_FEE_CHARGED: {
        'title': 'Late Fee Charged',
        'body': lambda d: f"Your rental is {d.get('days_overdue', 0)} day(s) overdue. A late fee of ${format_cents(d.get('late_fee_cents', 0))} has been charged",
    },
    RATING_RECEIVED: {
        'title': 'New Rating',
        'body': lambda d: f"You received a {d.get('rating', 5)}-star rating",
    },
}


def render(event_type: str, payload: Dict[str, Any]):
    template = TEMPLATES[event_type]
    return template['title'], template['body'](payload)


def notify(session, user_id: int, event_type: str, payload: Optional[Dict[str, Any]] = None, sink: Optional[Callable[..., Any]] = None) -> Optional[Notification]:
    """Persist and forward a notification; returns None when dispatch failed."""
    payload = dict(payload or {})
    if event_type not in TEMPLATES:
        logger.warning('unknown notification type', extra={'event_type': event_type, 'user_id': user_id})
        return None
    try:
        title, body = render(event_type, payload)
        row = Notification(
            user_id=user_id,
            event_type=event_type,
            title=title,
            body=body,
            payload=payload,
            transaction_id=payload.get('transaction_id'),
        )
        session.add(row)
        session.commit()
        if sink is not None:
            sink(user_id, event_type, {'title': title, 'body': body, **payload})
        return row
    except Exception:
        session.rollback()
        logger.warning(
            'notification dispatch failed',
            exc_info=True,
            extra={'event_type': event_type, 'user_id': user_id, 'transaction_id': payload.get('transaction_id')},
        )
        return None


__all__ = [
    'notify', 'render', 'TEMPLATES', 'BORROW_REQUEST', 'REQUEST_APPROVED', 'REQUEST_DECLINED',
    'REQUEST_CANCELLED', 'PICKUP_CONFIRMED', 'RETURN_CONFIRMED', 'DAMAGE_CLAIM_FILED',
    'LATE_FEE_CHARGED', 'RATING_RECEIVED',
]
