from __future__ import annotations
"""Transition controller for borrow transactions.

Every action follows the same sequence:

1. validate input (no side effects),
2. load the transaction and resolve (status, action, role) against
   ``TRANSITIONS``,
3. issue the processor calls the row names,
4. persist with a write gated on the status observed in step 2,
5. dispatch a best-effort notification.

Processor calls always precede the local write, so a failure in step 3 leaves
the transaction in its prior status; retries reuse the same idempotency keys.
Settlement stores each refund and transfer ref with its amount as soon as the
processor returns it, without changing status. A retry reuses a stored step
and is refused when its amount no longer matches. A late-fee charge whose
write was lost is recorded from its partial-settlement entry on the next
attempt.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app

from rental_engine import get_db
from rental_engine.errors import (
    AmountTooSmall,
    AuthorizationError,
    NotFoundOrWrongState,
    PaymentOrchestrationError,
    ValidationError,
)
from rental_engine.models.listing import Listing
from rental_engine.models.transaction import BorrowTransaction, new_transaction_id
from rental_engine.models.rating import Rating
from rental_engine.services import condition as conditions
from rental_engine.services import notifications
from rental_engine.services import pricing
from rental_engine.services import store
from rental_engine.services.audit import add_audit, entries_for
from rental_engine.services.payments import (
    INTENT_CANCELED,
    INTENT_REQUIRES_CAPTURE,
    INTENT_REQUIRES_CONFIRMATION,
    INTENT_REQUIRES_PAYMENT_METHOD,
    INTENT_SUCCEEDED,
)
from rental_engine.utils import clock
from rental_engine.utils.fsm import Transition, TransitionTable
from rental_engine.utils.validation import (
    optional_text,
    parse_datetime,
    require_int,
    required_text,
    string_list,
)

logger = logging.getLogger(__name__)

BORROWER = 'borrower'
LENDER = 'lender'

REQUEST = 'request'
CONFIRM_PAYMENT = 'confirm-payment'
APPROVE = 'approve'
DECLINE = 'decline'
CANCEL = 'cancel'
PICKUP = 'pickup'
RETURN = 'return'
DAMAGE_CLAIM = 'damage-claim'
LATE_FEE = 'late-fee'
RATE = 'rate'

MESSAGE_MAX_LENGTH = 500
CLAIM_NOTES_MIN_LENGTH = 10
CLAIM_NOTES_MAX_LENGTH = 1000

T = BorrowTransaction

SETTLED_STATUSES = (T.STATUS_RETURNED, T.STATUS_COMPLETED)

# one refund and one payout per rental, whichever path settles it
DEPOSIT_REFUND = 'deposit'
RENTAL_PAYOUT = 'rental_payout'

TRANSITIONS = TransitionTable([
    Transition(REQUEST, None, {T.STATUS_REQUESTED}, {BORROWER}, ('ensure_customer', 'create_hold')),
    Transition(CONFIRM_PAYMENT, T.STATUS_REQUESTED, {T.STATUS_REQUESTED}, {BORROWER}, ('retrieve_hold',)),
    Transition(APPROVE, T.STATUS_REQUESTED, {T.STATUS_APPROVED_PAID}, {LENDER}, ('capture_hold',)),
    Transition(DECLINE, T.STATUS_REQUESTED, {T.STATUS_CANCELLED}, {LENDER}, ('cancel_hold',)),
    Transition(CANCEL, T.STATUS_REQUESTED, {T.STATUS_CANCELLED}, {BORROWER}, ('cancel_hold',)),
    Transition(CANCEL, T.STATUS_APPROVED_PAID, {T.STATUS_CANCELLED}, {BORROWER}, ('refund',)),
    Transition(PICKUP, T.STATUS_APPROVED_PAID, {T.STATUS_PICKED_UP}, {LENDER}),
    Transition(RETURN, T.STATUS_PICKED_UP, {T.STATUS_RETURN_PENDING, T.STATUS_RETURNED}, {LENDER}, ('transfer', 'refund')),
    Transition(RETURN, T.STATUS_RETURN_PENDING, {T.STATUS_RETURN_PENDING, T.STATUS_RETURNED}, {LENDER}, ('transfer', 'refund')),
    Transition(DAMAGE_CLAIM, T.STATUS_PICKED_UP, {T.STATUS_RETURNED}, {LENDER}, ('refund', 'transfer')),
    Transition(DAMAGE_CLAIM, T.STATUS_RETURN_PENDING, {T.STATUS_RETURNED}, {LENDER}, ('refund', 'transfer')),
    Transition(LATE_FEE, T.STATUS_PICKED_UP, {T.STATUS_PICKED_UP}, {LENDER}, ('charge_independent',)),
    Transition(RATE, T.STATUS_RETURNED, {T.STATUS_RETURNED, T.STATUS_COMPLETED}, {BORROWER, LENDER}),
    Transition(RATE, T.STATUS_COMPLETED, {T.STATUS_COMPLETED}, {BORROWER, LENDER}),
])


@dataclass
class ActionResult:
    transaction: BorrowTransaction
    details: Dict[str, Any] = field(default_factory=dict)
    condition_degraded = False


@dataclass
class ConditionDegradedSignal(ActionResult):
    """Return outcome when the item came back worse than it left.

    Not an error: no funds moved, the transaction waits in ``return_pending``
    for a damage claim or a re-inspected clean return.
    """
    condition_degraded = True


class TransitionController:
    def __init__(
        self,
        session,
        payments,
        platform_fee_percent: float = pricing.DEFAULT_PLATFORM_FEE_PERCENT,
        min_charge_cents: int = pricing.DEFAULT_MIN_CHARGE_CENTS,
        notification_sink=None,
    ):
        self.session = session
        self.payments = payments
        self.platform_fee_percent = platform_fee_percent
        self.min_charge_cents = min_charge_cents
        self.notification_sink = notification_sink

    @classmethod
    def from_app(cls) -> 'TransitionController':
        cfg = current_app.config
        return cls(
            get_db(),
            current_app.extensions['payments'],
            platform_fee_percent=cfg['PLATFORM_FEE_PERCENT'],
            min_charge_cents=cfg['MIN_CHARGE_CENTS'],
            notification_sink=cfg.get('NOTIFICATION_SINK'),
        )

    # ---------- helpers ---------- #

    def _load(self, txn_id: str, actor_id: int, action: str) -> Tuple[BorrowTransaction, Transition]:
        txn, role = store.get_for_participant(self.session, txn_id, actor_id)
        row = TRANSITIONS.resolve(txn.status, action, role)
        return txn, row

    def _notify(self, user_id: int, event_type: str, txn: BorrowTransaction, **payload):
        listing = store.get_listing(self.session, txn.listing_id)
        payload.setdefault('transaction_id', txn.id)
        payload.setdefault('listing_id', txn.listing_id)
        if listing is not None:
            payload.setdefault('item_title', listing.title)
        notifications.notify(self.session, user_id, event_type, payload, sink=self.notification_sink)

    def _release_hold(self, txn: BorrowTransaction):
        """Cancel the hold; an already-cancelled hold counts as released."""
        try:
            self.payments.cancel_hold(txn.id, txn.hold_ref)
        except PaymentOrchestrationError:
            live = self.payments.retrieve_hold(txn.hold_ref)
            if live.status != INTENT_CANCELED:
                raise
            logger.info('hold already released on processor', extra={'transaction_id': txn.id, 'hold_ref': txn.hold_ref})

    def _release_orphan_hold(self, txn_id: str, hold_ref: str):
        try:
            self.payments.cancel_hold(txn_id, hold_ref)
        except PaymentOrchestrationError:
            logger.error('orphaned authorization hold needs manual release', extra={'transaction_id': txn_id, 'hold_ref': hold_ref})

    def _record_partial(self, txn_id: str, action: str, completed: List[Dict[str, Any]], failed: str, **extra):
        meta = {'action': action, 'completed_calls': completed, 'failed_call': failed, **extra}
        logger.error('partial settlement: processor and local state diverge', extra={'transaction_id': txn_id, **meta})
        try:
            add_audit('TXN.SETTLEMENT.PARTIAL', 'BorrowTransaction', txn_id, meta)
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception('could not persist partial settlement record', extra={'transaction_id': txn_id})

    def _recorded_elsewhere(self, txn_id: str, completed: List[Dict[str, Any]], statuses: Optional[Tuple[str, ...]] = None) -> bool:
        """True when a concurrent action already stored every completed processor effect."""
        self.session.rollback()
        try:
            current = store.get_transaction(self.session, txn_id)
        except Exception:
            logger.exception('could not re-read transaction after a failed write', extra={'transaction_id': txn_id})
            return False
        if statuses is not None and current.status not in statuses:
            return False
        refs = {current.transfer_ref, current.deposit_refund_ref, *(current.late_fee_charge_refs or [])}
        return all(step['ref'] in refs for step in completed)

    def _fail_after(self, txn_id: str, action: str, completed: List[Dict[str, Any]], failed: str, statuses: Optional[Tuple[str, ...]] = None, **extra):
        if completed and not self._recorded_elsewhere(txn_id, completed, statuses):
            self._record_partial(txn_id, action, completed, failed, **extra)

    def _checkpoint(self, txn_id: str, row: Transition, action: str, completed: List[Dict[str, Any]], values: Dict[str, Any]) -> BorrowTransaction:
        """Store a settlement step's processor ref as soon as it exists; status is unchanged."""
        try:
            return store.conditional_update(self.session, txn_id, (row.source,), values)
        except Exception:
            self._fail_after(txn_id, action, completed, 'record', SETTLED_STATUSES)
            raise

    @staticmethod
    def _prior_step(ref: Optional[str], done_cents: int, wanted_cents: int, what: str) -> Optional[str]:
        """Ref of a step an interrupted attempt already completed, provided the terms still match."""
        if not ref:
            return None
        if done_cents != wanted_cents:
            raise ValidationError(
                f'A {what} of ${pricing.format_cents(done_cents)} was already issued for this rental; '
                'retry with the original terms'
            )
        return ref

    def _hold_payment_method(self, txn: BorrowTransaction) -> Optional[str]:
        if not txn.hold_ref:
            return None
        try:
            return self.payments.retrieve_hold(txn.hold_ref).payment_method_ref
        except PaymentOrchestrationError:
            logger.warning('hold lookup failed; late fee needs borrower confirmation', extra={'transaction_id': txn.id})
            return None

    # ---------- actions ---------- #

    def request(self, borrower_id: int, listing_id: int, start_date, end_date, message: Optional[str] = None) -> ActionResult:
        message = optional_text(message, 'message', MESSAGE_MAX_LENGTH)
        start = parse_datetime(start_date, 'start_date')
        end = parse_datetime(end_date, 'end_date')
        if end <= start:
            raise ValidationError('end_date must be after start_date')

        listing = store.get_listing(self.session, listing_id)
        if listing is None or listing.status != Listing.STATUS_ACTIVE:
            raise NotFoundOrWrongState('Listing not found')
        TRANSITIONS.resolve(None, REQUEST, BORROWER)
        if listing.owner_id == borrower_id:
            raise ValidationError('Cannot borrow your own item')
        if not listing.is_available:
            raise ValidationError('Item not available')
        borrower = store.get_user(self.session, borrower_id)
        if borrower is None:
            raise AuthorizationError('Unknown borrower')

        days = pricing.check_duration(pricing.rental_days(start, end), listing.min_duration_days, listing.max_duration_days)
        quote = pricing.price(
            listing.daily_rate_cents,
            days,
            listing.deposit_cents,
            platform_fee_percent=self.platform_fee_percent,
            minimum_cents=self.min_charge_cents,
        )

        txn_id = new_transaction_id()
        hold = None
        payment_status = T.PAYMENT_NONE
        if quote.total_cents > 0:
            customer_ref = self.payments.ensure_customer(borrower)
            if customer_ref != borrower.processor_customer_ref:
                store.set_customer_ref(self.session, borrower.id, customer_ref)
            hold = self.payments.create_hold(
                txn_id,
                quote.total_cents,
                customer_ref,
                metadata={'listing_id': str(listing.id), 'borrower_id': str(borrower_id)},
            )
            if hold.status == INTENT_REQUIRES_CAPTURE:
                payment_status = T.PAYMENT_AUTHORIZED

        txn = BorrowTransaction(
            id=txn_id,
            listing_id=listing.id,
            borrower_id=borrower_id,
            lender_id=listing.owner_id,
            requested_start_date=start,
            requested_end_date=end,
            rental_days=quote.rental_days,
            daily_rate_cents=quote.daily_rate_cents,
            rental_fee_cents=quote.rental_fee_cents,
            deposit_cents=quote.deposit_cents,
            platform_fee_cents=quote.platform_fee_cents,
            lender_payout_cents=quote.lender_payout_cents,
            late_fee_per_day_cents=listing.late_fee_per_day_cents,
            borrower_message=message,
            status=T.STATUS_REQUESTED,
            payment_status=payment_status,
            hold_ref=hold.ref if hold else None,
            damage_evidence_urls=[],
            late_fee_charge_refs=[],
        )
        try:
            txn = store.insert_transaction(self.session, txn)
        except Exception:
            self.session.rollback()
            if hold is not None:
                self._release_orphan_hold(txn_id, hold.ref)
            raise
        logger.info('borrow request created', extra={'transaction_id': txn.id, 'listing_id': listing.id, 'total_cents': quote.total_cents})

        self._notify(listing.owner_id, notifications.BORROW_REQUEST, txn, borrower_name=borrower.name, from_user_id=borrower_id)
        return ActionResult(txn, {
            'quote': quote.as_dict(),
            'client_secret': hold.client_secret if hold else None,
            'requires_payment': hold is not None and payment_status != T.PAYMENT_AUTHORIZED,
        })

    def confirm_payment(self, txn_id: str, actor_id: int) -> ActionResult:
        txn, row = self._load(txn_id, actor_id, CONFIRM_PAYMENT)
        if not txn.hold_ref:
            return ActionResult(txn, {'free_rental': True})
        live = self.payments.retrieve_hold(txn.hold_ref)
        if live.status in (INTENT_REQUIRES_PAYMENT_METHOD, INTENT_REQUIRES_CONFIRMATION, 'requires_action'):
            borrower = store.get_user(self.session, txn.borrower_id)
            return ActionResult(txn, {
                'requires_payment': True,
                'client_secret': live.client_secret,
                'customer_ref': borrower.processor_customer_ref if borrower else None,
                'intent_status': live.status,
            })
        if live.status == INTENT_REQUIRES_CAPTURE:
            new_status = T.PAYMENT_AUTHORIZED
        elif live.status == INTENT_CANCELED:
            new_status = T.PAYMENT_FAILED
        else:
            new_status = txn.payment_status
        if new_status != txn.payment_status:
            txn = store.conditional_update(self.session, txn.id, (row.source,), {'payment_status': new_status})
        return ActionResult(txn, {'intent_status': live.status})

    def approve(self, txn_id: str, actor_id: int, response: Optional[str] = None) -> ActionResult:
        response = optional_text(response, 'response', MESSAGE_MAX_LENGTH)
        txn, row = self._load(txn_id, actor_id, APPROVE)
        if store.listing_occupied(self.session, txn.listing_id, exclude_txn_id=txn.id):
            raise ValidationError('Item not available')
        if txn.hold_ref:
            self.payments.capture_hold(txn.id, txn.hold_ref)
            payment_status = T.PAYMENT_CAPTURED
        else:
            payment_status = T.PAYMENT_NONE
        txn = store.transition_and_sync(
            self.session,
            txn.id,
            (row.source,),
            {'status': T.STATUS_APPROVED_PAID, 'payment_status': payment_status, 'lender_response': response},
            txn.listing_id,
        )
        logger.info('borrow request approved', extra={'transaction_id': txn.id})
        self._notify(txn.borrower_id, notifications.REQUEST_APPROVED, txn)
        return ActionResult(txn, {'free_rental': txn.hold_ref is None})

    def decline(self, txn_id: str, actor_id: int, reason: Optional[str] = None) -> ActionResult:
        reason = optional_text(reason, 'reason', MESSAGE_MAX_LENGTH)
        txn, row = self._load(txn_id, actor_id, DECLINE)
        payment_status = txn.payment_status
        if txn.hold_ref:
            self._release_hold(txn)
            payment_status = T.PAYMENT_CANCELLED
        txn = store.conditional_update(
            self.session,
            txn.id,
            (row.source,),
            {'status': T.STATUS_CANCELLED, 'payment_status': payment_status, 'lender_response': reason},
        )
        logger.info('borrow request declined', extra={'transaction_id': txn.id})
        self._notify(txn.borrower_id, notifications.REQUEST_DECLINED, txn)
        return ActionResult(txn)

    def cancel(self, txn_id: str, actor_id: int) -> ActionResult:
        txn, row = self._load(txn_id, actor_id, CANCEL)
        values: Dict[str, Any] = {'status': T.STATUS_CANCELLED}
        if txn.hold_ref and txn.payment_status == T.PAYMENT_CAPTURED:
            values['deposit_refund_ref'] = self.payments.refund(txn.id, txn.hold_ref, purpose='cancel')
            values['payment_status'] = T.PAYMENT_REFUNDED
        elif txn.hold_ref:
            self._release_hold(txn)
            values['payment_status'] = T.PAYMENT_CANCELLED
        txn = store.transition_and_sync(self.session, txn.id, (row.source,), values, txn.listing_id)
        logger.info('borrow request cancelled by borrower', extra={'transaction_id': txn.id, 'payment_status': txn.payment_status})
        self._notify(txn.lender_id, notifications.REQUEST_CANCELLED, txn)
        return ActionResult(txn)

    def pickup(self, txn_id: str, actor_id: int, condition: Optional[str] = None) -> ActionResult:
        condition = conditions.validate_condition(condition or conditions.DEFAULT_CONDITION)
        txn, row = self._load(txn_id, actor_id, PICKUP)
        txn = store.conditional_update(
            self.session,
            txn.id,
            (row.source,),
            {'status': T.STATUS_PICKED_UP, 'actual_pickup_at': clock.utcnow(), 'condition_at_pickup': condition},
        )
        self._notify(txn.borrower_id, notifications.PICKUP_CONFIRMED, txn)
        return ActionResult(txn)

    def confirm_return(self, txn_id: str, actor_id: int, condition: Optional[str], notes: Optional[str] = None) -> ActionResult:
        condition = conditions.validate_condition(condition)
        notes = optional_text(notes, 'notes', MESSAGE_MAX_LENGTH)
        txn, row = self._load(txn_id, actor_id, RETURN)

        if conditions.degraded(txn.condition_at_pickup, condition):
            txn = store.conditional_update(
                self.session,
                txn.id,
                (row.source,),
                {'status': T.STATUS_RETURN_PENDING, 'condition_at_return': condition, 'condition_notes': notes},
            )
            logger.info('return flagged as degraded', extra={'transaction_id': txn.id, 'condition_at_pickup': txn.condition_at_pickup, 'condition_at_return': condition})
            return ConditionDegradedSignal(txn, {'message': 'Condition degraded. You can file a damage claim.'})

        payout_cents = txn.lender_payout_cents
        deposit_cents = txn.deposit_cents
        transfer_ref = self._prior_step(txn.transfer_ref, txn.payout_transferred_cents, payout_cents, 'payout')
        refund_ref = self._prior_step(txn.deposit_refund_ref, txn.deposit_refunded_cents, deposit_cents, 'deposit refund')

        lender = store.get_user(self.session, txn.lender_id)
        completed: List[Dict[str, Any]] = []
        if transfer_ref is None:
            transfer_ref = self.payments.transfer(
                txn_id,
                payout_cents,
                lender.payout_account_ref if lender else None,
                metadata={'listing_id': str(txn.listing_id)},
                purpose=RENTAL_PAYOUT,
            )
            if transfer_ref:
                completed.append({'call': 'transfer', 'ref': transfer_ref, 'amount_cents': payout_cents})
                txn = self._checkpoint(txn_id, row, RETURN, completed, {'transfer_ref': transfer_ref, 'payout_transferred_cents': payout_cents})
        if refund_ref is None and deposit_cents > 0 and txn.hold_ref:
            try:
                refund_ref = self.payments.refund(txn_id, txn.hold_ref, deposit_cents, purpose=DEPOSIT_REFUND)
            except PaymentOrchestrationError:
                self._fail_after(txn_id, RETURN, completed, 'refund', SETTLED_STATUSES)
                raise
            completed.append({'call': 'refund', 'ref': refund_ref, 'amount_cents': deposit_cents})
            txn = self._checkpoint(txn_id, row, RETURN, completed, {'deposit_refund_ref': refund_ref, 'deposit_refunded_cents': deposit_cents})

        try:
            txn = store.settle(
                self.session,
                txn_id,
                (row.source,),
                {
                    'status': T.STATUS_RETURNED,
                    'condition_at_return': condition,
                    'condition_notes': notes,
                    'actual_return_at': clock.utcnow(),
                },
                txn.listing_id,
                payout_cents,
            )
        except Exception:
            self._fail_after(txn_id, RETURN, completed, 'settle', SETTLED_STATUSES)
            raise
        logger.info('clean return settled', extra={'transaction_id': txn.id, 'transfer_ref': transfer_ref, 'refund_ref': refund_ref})
        self._notify(txn.borrower_id, notifications.RETURN_CONFIRMED, txn, deposit_refunded_cents=txn.deposit_cents if refund_ref else 0)
        return ActionResult(txn, {
            'payout_deferred': transfer_ref is None and txn.lender_payout_cents > 0,
            'deposit_refunded_cents': txn.deposit_cents if refund_ref else 0,
        })

    def damage_claim(self, txn_id: str, actor_id: int, amount_cents, notes, evidence_urls=None) -> ActionResult:
        requested = require_int(amount_cents, 'amount_cents', minimum=1)
        notes = required_text(notes, 'notes', CLAIM_NOTES_MIN_LENGTH, CLAIM_NOTES_MAX_LENGTH)
        evidence = string_list(evidence_urls, 'evidence_urls')
        txn, row = self._load(txn_id, actor_id, DAMAGE_CLAIM)

        claim_cents = min(requested, txn.deposit_cents)
        if claim_cents <= 0:
            raise ValidationError('No deposit to claim against')
        refund_cents = txn.deposit_cents - claim_cents
        payout_cents = txn.lender_payout_cents + claim_cents

        refund_ref = self._prior_step(txn.deposit_refund_ref, txn.deposit_refunded_cents, refund_cents, 'deposit refund')
        transfer_ref = self._prior_step(txn.transfer_ref, txn.payout_transferred_cents, payout_cents, 'payout')

        completed: List[Dict[str, Any]] = []
        if refund_ref is None and refund_cents > 0 and txn.hold_ref:
            refund_ref = self.payments.refund(txn_id, txn.hold_ref, refund_cents, purpose=DEPOSIT_REFUND)
            completed.append({'call': 'refund', 'ref': refund_ref, 'amount_cents': refund_cents})
            txn = self._checkpoint(txn_id, row, DAMAGE_CLAIM, completed, {'deposit_refund_ref': refund_ref, 'deposit_refunded_cents': refund_cents})
        if transfer_ref is None:
            lender = store.get_user(self.session, txn.lender_id)
            try:
                transfer_ref = self.payments.transfer(
                    txn_id,
                    payout_cents,
                    lender.payout_account_ref if lender else None,
                    metadata={'damage_claim_cents': str(claim_cents)},
                    purpose=RENTAL_PAYOUT,
                )
            except PaymentOrchestrationError:
                self._fail_after(txn_id, DAMAGE_CLAIM, completed, 'transfer', SETTLED_STATUSES)
                raise
            if transfer_ref:
                completed.append({'call': 'transfer', 'ref': transfer_ref, 'amount_cents': payout_cents})
                txn = self._checkpoint(txn_id, row, DAMAGE_CLAIM, completed, {'transfer_ref': transfer_ref, 'payout_transferred_cents': payout_cents})

        try:
            txn = store.settle(
                self.session,
                txn_id,
                (row.source,),
                {
                    'status': T.STATUS_RETURNED,
                    'payment_status': T.PAYMENT_DAMAGE_CLAIMED,
                    'actual_return_at': clock.utcnow(),
                    'damage_claim_amount_cents': claim_cents,
                    'damage_claim_notes': notes,
                    'damage_evidence_urls': evidence,
                },
                txn.listing_id,
                txn.lender_payout_cents,
            )
        except Exception:
            self._fail_after(txn_id, DAMAGE_CLAIM, completed, 'settle', SETTLED_STATUSES)
            raise
        logger.info('damage claim settled', extra={'transaction_id': txn.id, 'claim_cents': claim_cents, 'refund_cents': refund_cents})
        self._notify(txn.borrower_id, notifications.DAMAGE_CLAIM_FILED, txn, claim_cents=claim_cents, refund_cents=refund_cents)
        return ActionResult(txn, {
            'claim_amount_cents': claim_cents,
            'deposit_refunded_cents': refund_cents,
            'payout_cents': payout_cents,
            'payout_deferred': transfer_ref is None,
        })

    def _record_late_fee(self, txn: BorrowTransaction, row: Transition, charge_ref: str, fee_cents: int, days_to: int) -> BorrowTransaction:
        return store.conditional_update(
            self.session,
            txn.id,
            (row.source,),
            {
                'late_fee_amount_cents': T.late_fee_amount_cents + fee_cents,
                'late_fee_days_charged': days_to,
                'late_fee_charge_refs': list(txn.late_fee_charge_refs or []) + [charge_ref],
            },
            T.late_fee_days_charged == txn.late_fee_days_charged,
        )

    def _adopt_unrecorded_late_fee(self, txn: BorrowTransaction, row: Transition) -> Tuple[BorrowTransaction, Optional[Dict[str, Any]]]:
        """Record a late-fee charge the processor took while its local write was lost."""
        for entry in entries_for('BorrowTransaction', txn.id, 'TXN.SETTLEMENT.PARTIAL'):
            meta = entry.meta or {}
            if meta.get('action') != LATE_FEE or meta.get('days_from') != txn.late_fee_days_charged:
                continue
            step = meta['completed_calls'][0]
            if step['ref'] in (txn.late_fee_charge_refs or []):
                continue
            txn = self._record_late_fee(txn, row, step['ref'], step['amount_cents'], meta['days_to'])
            logger.warning('recorded late fee from an interrupted attempt', extra={'transaction_id': txn.id, 'charge_ref': step['ref']})
            return txn, step
        return txn, None

    def charge_late_fee(self, txn_id: str, actor_id: int, now: Optional[datetime] = None) -> ActionResult:
        now = now or clock.utcnow()
        txn, row = self._load(txn_id, actor_id, LATE_FEE)
        days_overdue = pricing.days_overdue(txn.requested_end_date, now)
        if days_overdue <= 0:
            raise ValidationError('Rental is not overdue yet')
        if txn.late_fee_per_day_cents <= 0:
            raise ValidationError('No late fee configured for this listing')
        txn, recovered = self._adopt_unrecorded_late_fee(txn, row)
        new_days = days_overdue - txn.late_fee_days_charged
        if new_days <= 0:
            if recovered is not None:
                return ActionResult(txn, {
                    'days_overdue': days_overdue,
                    'days_charged': 0,
                    'late_fee_cents': 0,
                    'recovered_charge_ref': recovered['ref'],
                    'recovered_cents': recovered['amount_cents'],
                })
            raise ValidationError('Late fee already charged for all overdue days')
        fee_cents = pricing.late_fee(txn.late_fee_per_day_cents, new_days)
        if fee_cents < self.min_charge_cents:
            raise AmountTooSmall('Late fee too small for payment processing')
        borrower = store.get_user(self.session, txn.borrower_id)
        if borrower is None or not borrower.processor_customer_ref:
            raise ValidationError('Borrower has no payment method on file')

        days_from = txn.late_fee_days_charged
        charge = self.payments.charge_independent(
            txn_id,
            fee_cents,
            borrower.processor_customer_ref,
            nonce=f'late-from-{days_from}',
            metadata={'type': 'late_fee', 'days_overdue': str(days_overdue)},
            payment_method_ref=self._hold_payment_method(txn),
        )
        try:
            txn = self._record_late_fee(txn, row, charge.ref, fee_cents, days_overdue)
        except Exception:
            completed = [{'call': 'charge_independent', 'ref': charge.ref, 'amount_cents': fee_cents}]
            self._fail_after(txn_id, LATE_FEE, completed, 'record', days_from=days_from, days_to=days_overdue)
            raise
        logger.info('late fee charged', extra={'transaction_id': txn.id, 'days_overdue': days_overdue, 'late_fee_cents': fee_cents})
        self._notify(txn.borrower_id, notifications.LATE_FEE_CHARGED, txn, days_overdue=days_overdue, late_fee_cents=fee_cents)
        details: Dict[str, Any] = {
            'days_overdue': days_overdue,
            'days_charged': new_days,
            'late_fee_cents': fee_cents,
            'charge_ref': charge.ref,
            'client_secret': charge.client_secret,
            'requires_payment': charge.status != INTENT_SUCCEEDED,
        }
        if recovered is not None:
            details.update(recovered_charge_ref=recovered['ref'], recovered_cents=recovered['amount_cents'])
        return ActionResult(txn, details)

    def rate(self, txn_id: str, actor_id: int, rating, comment: Optional[str] = None) -> ActionResult:
        rating = require_int(rating, 'rating', minimum=Rating.MIN_RATING, maximum=Rating.MAX_RATING)
        comment = optional_text(comment, 'comment', MESSAGE_MAX_LENGTH)
        txn, row = self._load(txn_id, actor_id, RATE)
        ratee_id = txn.lender_id if actor_id == txn.borrower_id else txn.borrower_id
        saved = store.upsert_rating(self.session, txn, actor_id, ratee_id, rating, comment)

        if txn.status == T.STATUS_RETURNED and {txn.borrower_id, txn.lender_id} <= store.rater_ids(self.session, txn.id):
            try:
                txn = store.conditional_update(self.session, txn.id, (T.STATUS_RETURNED,), {'status': T.STATUS_COMPLETED})
            except NotFoundOrWrongState:
                # the other party's rating completed it first
                txn = store.get_transaction(self.session, txn.id)
                self.session.refresh(txn)
        self._notify(ratee_id, notifications.RATING_RECEIVED, txn, rating=rating)
        return ActionResult(txn, {'rating_id': saved.id, 'rating': saved.rating, 'completed': txn.status == T.STATUS_COMPLETED})

    def payment_status(self, txn_id: str, actor_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Read-only payment summary, enriched with the live hold when reachable."""
        now = now or clock.utcnow()
        txn, role = store.get_for_participant(self.session, txn_id, actor_id)
        days_overdue = pricing.days_overdue(txn.requested_end_date, now) if txn.status == T.STATUS_PICKED_UP else 0
        out: Dict[str, Any] = {
            'transaction_id': txn.id,
            'status': txn.status,
            'payment_status': txn.payment_status,
            'rental_fee_cents': txn.rental_fee_cents,
            'deposit_cents': txn.deposit_cents,
            'platform_fee_cents': txn.platform_fee_cents,
            'lender_payout_cents': txn.lender_payout_cents,
            'late_fee_per_day_cents': txn.late_fee_per_day_cents,
            'late_fee_charged_cents': txn.late_fee_amount_cents,
            'damage_claim_amount_cents': txn.damage_claim_amount_cents,
            'damage_claim_notes': txn.damage_claim_notes,
            'damage_evidence_urls': list(txn.damage_evidence_urls or []),
            'is_overdue': days_overdue > 0,
            'days_overdue': days_overdue,
            'is_borrower': role == BORROWER,
            'is_lender': role == LENDER,
        }
        if txn.hold_ref:
            try:
                live = self.payments.retrieve_hold(txn.hold_ref)
            except PaymentOrchestrationError:
                logger.warning('could not fetch live hold status', extra={'transaction_id': txn.id})
            else:
                out['processor_status'] = live.status
                out['amount_authorized_cents'] = live.amount_cents
                out['amount_captured_cents'] = live.amount_received_cents
        return out


__all__ = [
    'TRANSITIONS', 'TransitionController', 'ActionResult', 'ConditionDegradedSignal',
    'BORROWER', 'LENDER', 'REQUEST', 'CONFIRM_PAYMENT', 'APPROVE', 'DECLINE', 'CANCEL',
    'PICKUP', 'RETURN', 'DAMAGE_CLAIM', 'LATE_FEE', 'RATE',
]
