import stripe
from rental_engine import get_db
from rental_engine.errors import NotFoundOrWrongState
from rental_engine.models.audit import AuditLog
from rental_engine.services import store
from tests.test_utils_seed import seed_parties, create_listing
from tests.test_lifecycle_helpers import jwt_headers, assert_transition, picked_up_rental


def _setup(client, lender_payout='acct_lender_test', **listing_kwargs):
    lender, borrower = seed_parties(lender_payout=lender_payout)
    listing = create_listing(lender, **listing_kwargs)
    txn_id = picked_up_rental(client, jwt_headers(lender.id), jwt_headers(borrower.id), listing.id)
    return lender, borrower, listing, txn_id


def test_degraded_return_moves_no_funds(client, stripe_fake):
    lender, borrower, listing, txn_id = _setup(client)
    resp = assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 200, payload={'condition': 'fair', 'notes': 'Scuffed casing'}, expected_body_value='return_pending')
    body = resp.get_json()
    assert body['condition_degraded'] is True
    assert body['condition_at_pickup'] == 'good'
    assert body['condition_at_return'] == 'fair'
    assert body['payment_status'] == 'captured'
    assert stripe_fake.calls_of('transfer.create') == []
    assert stripe_fake.calls_of('refund.create') == []
    assert store.get_listing(get_db(), listing.id).is_available is False


def test_clean_return_settles_payout_and_deposit(client, stripe_fake, sent_notifications):
    lender, borrower, listing, txn_id = _setup(client)
    resp = assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 200, payload={'condition': 'good'}, expected_body_value='returned')
    body = resp.get_json()
    assert body['condition_degraded'] is False
    assert body['payment_status'] == 'captured'
    assert body['payout_deferred'] is False
    assert body['deposit_refunded_cents'] == 2000
    assert body['actual_return_at']
    transfer = stripe_fake.calls_of('transfer.create')[0]
    assert transfer['amount'] == 2940
    assert transfer['destination'] == 'acct_lender_test'
    refund = stripe_fake.calls_of('refund.create')[0]
    assert refund['amount'] == 2000
    assert refund['metadata']['purpose'] == 'deposit'
    refreshed = store.get_listing(get_db(), listing.id)
    assert refreshed.is_available is True
    assert refreshed.times_borrowed == 1
    assert refreshed.total_earnings_cents == 2940
    txn = store.get_transaction(get_db(), txn_id)
    assert txn.transfer_ref.startswith('tr_')
    assert txn.deposit_refund_ref.startswith('re_')
    assert sent_notifications[-1]['event_type'] == 'return_confirmed'
    assert '$20.00' in sent_notifications[-1]['body']


def test_reinspected_return_from_pending_settles(client, stripe_fake):
    lender, borrower, listing, txn_id = _setup(client)
    assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 200, payload={'condition': 'worn'}, expected_body_value='return_pending')
    assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 200, payload={'condition': 'good'}, expected_body_value='returned')
    assert len(stripe_fake.calls_of('transfer.create')) == 1


def test_payout_deferred_without_payout_account(client, stripe_fake):
    lender, borrower, listing, txn_id = _setup(client, lender_payout=None)
    resp = assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 200, payload={'condition': 'like_new'}, expected_body_value='returned')
    assert resp.get_json()['payout_deferred'] is True
    assert stripe_fake.calls_of('transfer.create') == []
    assert len(stripe_fake.calls_of('refund.create')) == 1
    assert store.get_transaction(get_db(), txn_id).transfer_ref is None


def test_zero_deposit_return_skips_refund(client, stripe_fake):
    lender, borrower, listing, txn_id = _setup(client, deposit_cents=0)
    resp = assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 200, payload={'condition': 'good'}, expected_body_value='returned')
    assert resp.get_json()['deposit_refunded_cents'] == 0
    assert stripe_fake.calls_of('refund.create') == []


def test_refund_failure_after_transfer_is_recorded_and_retryable(client, stripe_fake):
    lender, borrower, listing, txn_id = _setup(client)
    stripe_fake.fail('refund.create', stripe.APIError('processor unavailable'))
    resp = assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 502, payload={'condition': 'good'})
    assert resp.get_json()['error']['code'] == 'refund_failed'
    txn = store.get_transaction(get_db(), txn_id)
    assert txn.status == 'picked_up'
    assert txn.transfer_ref.startswith('tr_')
    assert txn.payout_transferred_cents == 2940
    partial = get_db().query(AuditLog).filter_by(action='TXN.SETTLEMENT.PARTIAL', entity_id=txn_id).one()
    assert partial.meta['failed_call'] == 'refund'
    assert partial.meta['completed_calls'][0]['call'] == 'transfer'

    assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 200, payload={'condition': 'good'}, expected_body_value='returned')
    # the stored payout is reused rather than sent again
    assert len(stripe_fake.calls_of('transfer.create')) == 1
    assert len(stripe_fake.calls_of('refund.create')) == 2
    assert store.get_listing(get_db(), listing.id).times_borrowed == 1


def test_settlement_lost_to_concurrent_return_is_not_flagged_partial(client, stripe_fake, monkeypatch):
    lender, borrower, listing, txn_id = _setup(client)
    settle = store.settle

    def settled_by_other_request(session, *args):
        settle(session, *args)
        raise NotFoundOrWrongState('Transaction not found')

    monkeypatch.setattr(store, 'settle', settled_by_other_request)
    assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 404, payload={'condition': 'good'})
    txn = store.get_transaction(get_db(), txn_id)
    assert txn.status == 'returned'
    assert txn.transfer_ref and txn.deposit_refund_ref
    assert get_db().query(AuditLog).filter_by(action='TXN.SETTLEMENT.PARTIAL', entity_id=txn_id).count() == 0


def test_failed_settle_write_after_funds_moved_is_flagged_partial(client, stripe_fake, monkeypatch):
    lender, borrower, listing, txn_id = _setup(client)

    def unavailable(*args):
        raise RuntimeError('database unavailable')

    monkeypatch.setattr(store, 'settle', unavailable)
    assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 500, payload={'condition': 'good'})
    partial = get_db().query(AuditLog).filter_by(action='TXN.SETTLEMENT.PARTIAL', entity_id=txn_id).one()
    assert partial.meta['failed_call'] == 'settle'
    assert [c['call'] for c in partial.meta['completed_calls']] == ['transfer', 'refund']


def test_return_requires_valid_condition_and_lender(client):
    lender, borrower, listing, txn_id = _setup(client)
    assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 400, payload={})
    assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(lender.id), 400, payload={'condition': 'destroyed'})
    assert_transition(client, f'/transactions/{txn_id}/return', jwt_headers(borrower.id), 403, payload={'condition': 'good'})
