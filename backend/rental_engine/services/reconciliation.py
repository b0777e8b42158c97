from __future__ import annotations
"""Reconciliation: heal local payment status from processor state.

A crash between a processor call and the local write it precedes leaves the
stored ``payment_status`` behind the processor. Two paths repair it: the
sweep re-reads each open hold, and the webhook applies the processor's own
event for a hold. Transaction ``status`` is never changed here; healing is
gated on both the observed status and the observed payment status, so a
concurrent lifecycle action always wins.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from rental_engine.errors import NotFoundOrWrongState, PaymentOrchestrationError
from rental_engine.models.transaction import BorrowTransaction
from rental_engine.services import store
from rental_engine.services.audit import add_audit
from rental_engine.services.payments import INTENT_CANCELED, INTENT_REQUIRES_CAPTURE, INTENT_SUCCEEDED

logger = logging.getLogger(__name__)

T = BorrowTransaction

# (transaction status, live intent status) -> healed payment status
HEALING_RULES: Dict[tuple, str] = {
    (T.STATUS_REQUESTED, INTENT_REQUIRES_CAPTURE): T.PAYMENT_AUTHORIZED,
    (T.STATUS_REQUESTED, INTENT_CANCELED): T.PAYMENT_FAILED,
    (T.STATUS_APPROVED_PAID, INTENT_SUCCEEDED): T.PAYMENT_CAPTURED,
}

# (processor event type, transaction status) -> healed payment status
EVENT_RULES: Dict[tuple, str] = {
    ('payment_intent.amount_capturable_updated', T.STATUS_REQUESTED): T.PAYMENT_AUTHORIZED,
    ('payment_intent.payment_failed', T.STATUS_REQUESTED): T.PAYMENT_FAILED,
    ('payment_intent.canceled', T.STATUS_REQUESTED): T.PAYMENT_CANCELLED,
    ('payment_intent.succeeded', T.STATUS_APPROVED_PAID): T.PAYMENT_CAPTURED,
    ('charge.refunded', T.STATUS_APPROVED_PAID): T.PAYMENT_REFUNDED,
    ('charge.refunded', T.STATUS_CANCELLED): T.PAYMENT_REFUNDED,
}

# payment statuses a rule may overwrite
HEALABLE_FROM = {
    T.PAYMENT_AUTHORIZED: (T.PAYMENT_NONE,),
    T.PAYMENT_FAILED: (T.PAYMENT_NONE, T.PAYMENT_AUTHORIZED),
    T.PAYMENT_CANCELLED: (T.PAYMENT_NONE, T.PAYMENT_AUTHORIZED),
    T.PAYMENT_CAPTURED: (T.PAYMENT_NONE, T.PAYMENT_AUTHORIZED),
    T.PAYMENT_REFUNDED: (T.PAYMENT_CAPTURED,),
}

SWEPT_STATUSES = (T.STATUS_REQUESTED, T.STATUS_APPROVED_PAID)
HANDLED_EVENTS = frozenset(event for event, _ in EVENT_RULES)


@dataclass
class ReconciliationReport:
    checked: int = 0
    healed: int = 0
    lookup_failures: int = 0
    changes: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self):
        return {
            'checked': self.checked,
            'healed': self.healed,
            'lookup_failures': self.lookup_failures,
            'changes': list(self.changes),
        }


def _allowed(txn: BorrowTransaction, target: Optional[str]) -> Optional[str]:
    if target is None or target == txn.payment_status:
        return None
    if txn.payment_status not in HEALABLE_FROM[target]:
        return None
    return target


def healed_payment_status(txn: BorrowTransaction, intent_status: str) -> Optional[str]:
    return _allowed(txn, HEALING_RULES.get((txn.status, intent_status)))


def _heal(session, txn: BorrowTransaction, target: str, change: Dict[str, Any], action: str) -> bool:
    try:
        store.conditional_update(
            session,
            txn.id,
            (txn.status,),
            {'payment_status': target},
            T.payment_status == txn.payment_status,
        )
    except NotFoundOrWrongState:
        logger.info('transaction moved during reconciliation; skipped', extra={'transaction_id': txn.id})
        return False
    add_audit(action, 'BorrowTransaction', txn.id, change, actor_user_id=0)
    session.commit()
    logger.warning('payment status healed from processor state', extra=change)
    return True


def reconcile(session, payments, limit: Optional[int] = None, dry_run: bool = False) -> ReconciliationReport:
    report = ReconciliationReport()
    for txn in store.open_with_holds(session, SWEPT_STATUSES, limit=limit):
        report.checked += 1
        try:
            live = payments.retrieve_hold(txn.hold_ref)
        except PaymentOrchestrationError:
            report.lookup_failures += 1
            continue  # already logged by the orchestrator; retried on the next sweep
        target = healed_payment_status(txn, live.status)
        if target is None:
            continue
        change = {
            'transaction_id': txn.id,
            'status': txn.status,
            'intent_status': live.status,
            'before': txn.payment_status,
            'after': target,
        }
        if dry_run:
            report.changes.append(change)
            continue
        if _heal(session, txn, target, change, 'TXN.PAYMENT.RECONCILE'):
            report.healed += 1
            report.changes.append(change)
    logger.info('reconciliation sweep finished', extra=report.as_dict())
    return report


def _event_hold_ref(event_type: str, obj: Mapping[str, Any]) -> Optional[str]:
    if event_type == 'charge.refunded':
        # partial refunds (deposit settlement) leave the payment captured
        if not obj.get('refunded'):
            return None
        return obj.get('payment_intent')
    return obj.get('id')


def apply_processor_event(session, event_type: str, obj: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Heal one transaction from a verified processor event; returns the change applied, if any."""
    if event_type not in HANDLED_EVENTS:
        return None
    hold_ref = _event_hold_ref(event_type, obj)
    txn = store.get_by_hold_ref(session, hold_ref) if hold_ref else None
    if txn is None:
        logger.info('processor event does not match a hold', extra={'event_type': event_type, 'hold_ref': hold_ref})
        return None
    target = _allowed(txn, EVENT_RULES.get((event_type, txn.status)))
    if target is None:
        return None
    change = {
        'transaction_id': txn.id,
        'status': txn.status,
        'event_type': event_type,
        'before': txn.payment_status,
        'after': target,
    }
    if not _heal(session, txn, target, change, 'TXN.PAYMENT.WEBHOOK'):
        return None
    return change


__all__ = [
    'reconcile', 'healed_payment_status', 'apply_processor_event', 'ReconciliationReport',
    'HEALING_RULES', 'EVENT_RULES', 'HANDLED_EVENTS', 'SWEPT_STATUSES',
]
