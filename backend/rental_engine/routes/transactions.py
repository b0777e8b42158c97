from __future__ import annotations
from flask import Blueprint, request, g
from rental_engine.decorators.auth import require_user
from rental_engine.decorators.audit import audit_log
from rental_engine.utils.listing import make_cached_list_response, make_cached_item_response, apply_pagination
from rental_engine.utils.clock import isoformat_z
from rental_engine.utils.validation import validate_status, require_int
from rental_engine.services import store
from rental_engine.services.lifecycle import TransitionController, ActionResult
from rental_engine.models.transaction import BorrowTransaction
from rental_engine.errors import ValidationError
from rental_engine import get_db

txn_bp = Blueprint('transactions', __name__)

ENTITY = 'BorrowTransaction'
DIFF_KEYS = ['status', 'payment_status']


def _body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('JSON object body required')
    return data


def _prefetch_txn(args, kwargs):
    txn = get_db().get(BorrowTransaction, kwargs.get('txn_id'), populate_existing=True)
    if not txn:
        return None
    return {'status': txn.status, 'payment_status': txn.payment_status}


def _audited(action: str, meta_keys=None):
    return audit_log(
        action,
        entity=ENTITY,
        entity_id_key='id',
        entity_id_arg='txn_id',
        meta_keys=meta_keys or DIFF_KEYS,
        diff_keys=DIFF_KEYS,
        pre_fetch=_prefetch_txn,
    )


def _txn_json(t: BorrowTransaction):
    return {
        'id': t.id,
        'listing_id': t.listing_id,
        'borrower_id': t.borrower_id,
        'lender_id': t.lender_id,
        'status': t.status,
        'payment_status': t.payment_status,
        'requested_start_date': isoformat_z(t.requested_start_date),
        'requested_end_date': isoformat_z(t.requested_end_date),
        'rental_days': t.rental_days,
        'daily_rate_cents': t.daily_rate_cents,
        'rental_fee_cents': t.rental_fee_cents,
        'deposit_cents': t.deposit_cents,
        'platform_fee_cents': t.platform_fee_cents,
        'lender_payout_cents': t.lender_payout_cents,
        'total_cents': t.total_cents,
        'late_fee_per_day_cents': t.late_fee_per_day_cents,
        'late_fee_amount_cents': t.late_fee_amount_cents,
        'damage_claim_amount_cents': t.damage_claim_amount_cents,
        'borrower_message': t.borrower_message,
        'lender_response': t.lender_response,
        'condition_at_pickup': t.condition_at_pickup,
        'condition_at_return': t.condition_at_return,
        'condition_notes': t.condition_notes,
        'actual_pickup_at': isoformat_z(t.actual_pickup_at),
        'actual_return_at': isoformat_z(t.actual_return_at),
        'created_at': isoformat_z(t.created_at),
        'updated_at': isoformat_z(t.updated_at),
    }


def _action_json(result: ActionResult):
    body = _txn_json(result.transaction)
    body.update(result.details)
    return body


@txn_bp.get('')
@require_user
def list_transactions():
    session = get_db()
    role = request.args.get('role')
    if role is not None:
        validate_status(role, ('borrower', 'lender'), field_name='role')
    status = request.args.get('status')
    if status is not None:
        validate_status(status, BorrowTransaction.ALL_STATUSES)
    q = store.query_for_user(session, g.user_id, role=role, status=status)
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    latest_ts = max((t.updated_at for t in rows), default=None)
    return make_cached_list_response([_txn_json(t) for t in rows], total, limit, offset, latest_ts)


@txn_bp.post('')
@require_user
@audit_log('TXN.REQUEST', entity=ENTITY, entity_id_key='id', meta_keys=['listing_id', 'status', 'payment_status', 'total_cents'])
def request_transaction():
    data = _body()
    if data.get('listing_id') is None:
        raise ValidationError('listing_id required')
    result = TransitionController.from_app().request(
        g.user_id,
        require_int(data.get('listing_id'), 'listing_id', minimum=1),
        data.get('start_date'),
        data.get('end_date'),
        message=data.get('message'),
    )
    return _action_json(result), 201


@txn_bp.get('/<txn_id>')
@require_user
def get_transaction(txn_id: str):
    txn, _ = store.get_for_participant(get_db(), txn_id, g.user_id)
    body = _txn_json(txn)
    body['damage_claim_notes'] = txn.damage_claim_notes
    body['damage_evidence_urls'] = list(txn.damage_evidence_urls or [])
    body['late_fee_charge_refs'] = list(txn.late_fee_charge_refs or [])
    return make_cached_item_response(body, txn.updated_at)


@txn_bp.get('/<txn_id>/payment-status')
@require_user
def payment_status(txn_id: str):
    return TransitionController.from_app().payment_status(txn_id, g.user_id)


@txn_bp.post('/<txn_id>/confirm-payment')
@require_user
@_audited('TXN.PAYMENT.CONFIRM')
def confirm_payment(txn_id: str):
    return _action_json(TransitionController.from_app().confirm_payment(txn_id, g.user_id))


@txn_bp.post('/<txn_id>/approve')
@require_user
@_audited('TXN.APPROVE')
def approve(txn_id: str):
    data = _body()
    return _action_json(TransitionController.from_app().approve(txn_id, g.user_id, response=data.get('response')))


@txn_bp.post('/<txn_id>/decline')
@require_user
@_audited('TXN.DECLINE')
def decline(txn_id: str):
    data = _body()
    return _action_json(TransitionController.from_app().decline(txn_id, g.user_id, reason=data.get('reason')))


@txn_bp.post('/<txn_id>/cancel')
@require_user
@_audited('TXN.CANCEL')
def cancel(txn_id: str):
    return _action_json(TransitionController.from_app().cancel(txn_id, g.user_id))


@txn_bp.post('/<txn_id>/pickup')
@require_user
@_audited('TXN.PICKUP', meta_keys=['status', 'condition_at_pickup'])
def pickup(txn_id: str):
    data = _body()
    return _action_json(TransitionController.from_app().pickup(txn_id, g.user_id, condition=data.get('condition')))


@txn_bp.post('/<txn_id>/return')
@require_user
@_audited('TXN.RETURN', meta_keys=['status', 'payment_status', 'condition_at_return', 'condition_degraded'])
def confirm_return(txn_id: str):
    data = _body()
    result = TransitionController.from_app().confirm_return(txn_id, g.user_id, data.get('condition'), notes=data.get('notes'))
    body = _action_json(result)
    body['condition_degraded'] = result.condition_degraded
    return body


@txn_bp.post('/<txn_id>/damage-claim')
@require_user
@_audited('TXN.DAMAGE_CLAIM', meta_keys=['status', 'payment_status', 'claim_amount_cents', 'deposit_refunded_cents'])
def damage_claim(txn_id: str):
    data = _body()
    result = TransitionController.from_app().damage_claim(
        txn_id,
        g.user_id,
        data.get('amount_cents'),
        data.get('notes'),
        evidence_urls=data.get('evidence_urls'),
    )
    return _action_json(result)


@txn_bp.post('/<txn_id>/late-fee')
@require_user
@_audited('TXN.LATE_FEE', meta_keys=['late_fee_cents', 'days_overdue', 'charge_ref'])
def late_fee(txn_id: str):
    return _action_json(TransitionController.from_app().charge_late_fee(txn_id, g.user_id))


@txn_bp.post('/<txn_id>/rate')
@require_user
@_audited('TXN.RATE', meta_keys=['status', 'rating', 'completed'])
def rate(txn_id: str):
    data = _body()
    return _action_json(TransitionController.from_app().rate(txn_id, g.user_id, data.get('rating'), comment=data.get('comment')))
