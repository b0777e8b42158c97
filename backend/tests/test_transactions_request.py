import stripe
from rental_engine import get_db
from rental_engine.models.audit import AuditLog
from rental_engine.models.transaction import BorrowTransaction
from rental_engine.services import store
from tests.test_utils_seed import seed_parties, create_listing
from tests.test_lifecycle_helpers import jwt_headers, request_rental, rental_window


def test_request_places_hold_for_rental_fee_plus_deposit(client, stripe_fake, sent_notifications):
    lender, borrower = seed_parties()
    listing = create_listing(lender, daily_rate_cents=1000, deposit_cents=2000)
    body = request_rental(client, jwt_headers(borrower.id), listing.id, days=3, message='Weekend project')
    assert body['status'] == 'requested'
    assert body['payment_status'] == 'authorized'
    assert body['rental_days'] == 3
    assert body['rental_fee_cents'] == 3000
    assert body['platform_fee_cents'] == 60
    assert body['lender_payout_cents'] == 2940
    assert body['total_cents'] == 5000
    assert body['quote']['total_cents'] == 5000
    assert body['borrower_message'] == 'Weekend project'
    assert body['requires_payment'] is False
    assert body['client_secret']
    hold = stripe_fake.calls_of('intent.create')[0]
    assert hold['amount'] == 5000
    assert hold['capture_method'] == 'manual'
    assert hold['customer'] == 'cus_borrower_test'
    assert hold['idempotency_key'] == f"{body['id']}-hold-5000"
    assert stripe_fake.calls_of('customer.create') == []
    assert sent_notifications[0]['user_id'] == lender.id
    assert sent_notifications[0]['event_type'] == 'borrow_request'
    assert sent_notifications[0]['body'] == 'Borrower wants to borrow Cordless Drill'
    assert get_db().query(AuditLog).filter_by(action='TXN.REQUEST', entity_id=body['id']).count() == 1


def test_request_creates_processor_customer_when_missing(client, stripe_fake):
    lender, borrower = seed_parties(borrower_customer=None)
    listing = create_listing(lender)
    request_rental(client, jwt_headers(borrower.id), listing.id)
    created = stripe_fake.calls_of('customer.create')
    assert len(created) == 1
    assert store.get_user(get_db(), borrower.id).processor_customer_ref.startswith('cus_test_')


def test_request_validation_errors(client):
    lender, borrower = seed_parties()
    listing = create_listing(lender)
    headers = jwt_headers(borrower.id)

    resp = client.post('/transactions', json={'listing_id': listing.id, 'start_date': 'tomorrow', 'end_date': 'later'}, headers=headers)
    assert resp.status_code == 400

    start, end = rental_window(3)
    resp = client.post('/transactions', json={'listing_id': listing.id, 'start_date': end, 'end_date': start}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()['error']['detail'] == 'end_date must be after start_date'

    resp = client.post('/transactions', json={'start_date': start, 'end_date': end}, headers=headers)
    assert resp.status_code == 400

    body = request_rental(client, headers, listing.id, days=15, expected_status=400)
    assert body['error']['detail'] == 'Duration must be between 1 and 14 days'

    body = request_rental(client, headers, listing.id, expected_status=400, message='x' * 501)
    assert 'message' in body['error']['detail']


def test_cannot_borrow_own_item(client):
    lender, _ = seed_parties()
    listing = create_listing(lender)
    body = request_rental(client, jwt_headers(lender.id), listing.id, expected_status=400)
    assert body['error']['detail'] == 'Cannot borrow your own item'


def test_unavailable_or_inactive_listing(client):
    lender, borrower = seed_parties()
    headers = jwt_headers(borrower.id)
    busy = create_listing(lender)
    busy.is_available = False
    get_db().commit()
    body = request_rental(client, headers, busy.id, expected_status=400)
    assert body['error']['detail'] == 'Item not available'

    inactive = create_listing(lender, status='inactive')
    request_rental(client, headers, inactive.id, expected_status=404)
    request_rental(client, headers, 999999, expected_status=404)


def test_free_rental_skips_payment(client, stripe_fake):
    lender, borrower = seed_parties()
    listing = create_listing(lender, daily_rate_cents=0, deposit_cents=0)
    body = request_rental(client, jwt_headers(borrower.id), listing.id)
    assert body['payment_status'] == 'none'
    assert body['total_cents'] == 0
    assert body['requires_payment'] is False
    assert body['client_secret'] is None
    assert stripe_fake.calls == []


def test_total_below_minimum_charge_rejected(client, stripe_fake):
    lender, borrower = seed_parties()
    listing = create_listing(lender, daily_rate_cents=10, deposit_cents=0)
    body = request_rental(client, jwt_headers(borrower.id), listing.id, days=1, expected_status=400)
    assert body['error']['detail'] == 'Amount too small for payment processing'
    assert stripe_fake.calls == []


def test_hold_failure_persists_nothing(client, stripe_fake):
    lender, borrower = seed_parties()
    listing = create_listing(lender)
    stripe_fake.fail('intent.create', stripe.CardError('Your card was declined.', None, 'card_declined'))
    body = request_rental(client, jwt_headers(borrower.id), listing.id, expected_status=502)
    assert body['error']['code'] == 'hold_failed'
    assert body['error']['detail'] == 'Payment processing failed'
    assert 'declined' not in body['error']['detail']
    assert get_db().query(BorrowTransaction).filter_by(borrower_id=borrower.id).count() == 0


def test_orphan_hold_released_when_insert_fails(client, stripe_fake, monkeypatch):
    lender, borrower = seed_parties()
    listing = create_listing(lender)

    def failing_insert(session, txn):
        raise RuntimeError('database unavailable')

    monkeypatch.setattr(store, 'insert_transaction', failing_insert)
    request_rental(client, jwt_headers(borrower.id), listing.id, expected_status=500)
    hold_ref = next(iter(stripe_fake.intents))
    assert stripe_fake.calls_of('intent.cancel')[0]['id'] == hold_ref
    assert stripe_fake.intents[hold_ref].status == 'canceled'


def test_confirm_payment_after_client_side_confirmation(client, stripe_fake):
    lender, borrower = seed_parties()
    listing = create_listing(lender)
    headers = jwt_headers(borrower.id)
    stripe_fake.hold_status = 'requires_payment_method'
    body = request_rental(client, headers, listing.id)
    assert body['payment_status'] == 'none'
    assert body['requires_payment'] is True

    resp = client.post(f"/transactions/{body['id']}/confirm-payment", headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()['requires_payment'] is True
    assert resp.get_json()['client_secret']

    hold_ref = store.get_transaction(get_db(), body['id']).hold_ref
    stripe_fake.intents[hold_ref].status = 'requires_capture'
    resp = client.post(f"/transactions/{body['id']}/confirm-payment", headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()['payment_status'] == 'authorized'
    assert resp.get_json()['intent_status'] == 'requires_capture'

    resp = client.post(f"/transactions/{body['id']}/confirm-payment", headers=jwt_headers(lender.id))
    assert resp.status_code == 403
