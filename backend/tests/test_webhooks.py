import hashlib
import hmac
import json
import time
import pytest
from rental_engine import get_db
from rental_engine.models.audit import AuditLog
from rental_engine.models.transaction import BorrowTransaction as T
from rental_engine.services import store
from tests.test_utils_seed import seed_parties, create_listing, insert_transaction

SECRET = 'whsec_rental_engine_test'
URL = '/webhooks/stripe'


@pytest.fixture()
def webhook_secret(app_context, monkeypatch):
    monkeypatch.setitem(app_context.config, 'STRIPE_WEBHOOK_SECRET', SECRET)
    return SECRET


def _signed(event: dict, secret: str = SECRET):
    payload = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f'{timestamp}.{payload}'.encode(), hashlib.sha256).hexdigest()
    return payload, {'Stripe-Signature': f't={timestamp},v1={signature}', 'Content-Type': 'application/json'}


def _event(event_type: str, obj: dict):
    return {'id': f'evt_{int(time.time() * 1000)}', 'object': 'event', 'type': event_type, 'data': {'object': obj}}


def _held_txn(stripe_fake, status=T.STATUS_REQUESTED, payment_status=T.PAYMENT_NONE):
    lender, borrower = seed_parties()
    intent = stripe_fake.add_intent(5000)
    return insert_transaction(create_listing(lender), borrower, status=status, payment_status=payment_status, hold_ref=intent.id)


def _post(client, event, secret=SECRET):
    payload, headers = _signed(event, secret)
    return client.post(URL, data=payload, headers=headers)


@pytest.mark.parametrize('event_type,expected', [
    ('payment_intent.amount_capturable_updated', T.PAYMENT_AUTHORIZED),
    ('payment_intent.payment_failed', T.PAYMENT_FAILED),
    ('payment_intent.canceled', T.PAYMENT_CANCELLED),
])
def test_hold_events_heal_pending_request(client, stripe_fake, webhook_secret, event_type, expected):
    txn = _held_txn(stripe_fake)
    resp = _post(client, _event(event_type, {'id': txn.hold_ref, 'object': 'payment_intent'}))
    assert resp.status_code == 200, resp.get_json()
    assert resp.get_json()['healed'] is True
    healed = store.get_transaction(get_db(), txn.id)
    assert healed.payment_status == expected
    assert healed.status == T.STATUS_REQUESTED
    log = get_db().query(AuditLog).filter_by(action='TXN.PAYMENT.WEBHOOK', entity_id=txn.id).one()
    assert log.actor_user_id == 0
    assert log.meta['event_type'] == event_type


def test_full_refund_heals_captured_payment(client, stripe_fake, webhook_secret):
    txn = _held_txn(stripe_fake, status=T.STATUS_APPROVED_PAID, payment_status=T.PAYMENT_CAPTURED)
    charge = {'id': 'ch_test_1', 'object': 'charge', 'payment_intent': txn.hold_ref, 'refunded': True}
    assert _post(client, _event('charge.refunded', charge)).get_json()['healed'] is True
    assert store.get_transaction(get_db(), txn.id).payment_status == T.PAYMENT_REFUNDED


def test_partial_refund_and_unrelated_events_are_acknowledged_only(client, stripe_fake, webhook_secret):
    txn = _held_txn(stripe_fake, status=T.STATUS_RETURNED, payment_status=T.PAYMENT_CAPTURED)
    partial = {'id': 'ch_test_2', 'object': 'charge', 'payment_intent': txn.hold_ref, 'refunded': False}
    assert _post(client, _event('charge.refunded', partial)).get_json()['healed'] is False
    assert _post(client, _event('customer.created', {'id': 'cus_x', 'object': 'customer'})).get_json()['healed'] is False
    unknown = _event('payment_intent.canceled', {'id': 'pi_unknown', 'object': 'payment_intent'})
    assert _post(client, unknown).get_json()['healed'] is False
    assert store.get_transaction(get_db(), txn.id).payment_status == T.PAYMENT_CAPTURED


def test_event_never_overrides_a_later_lifecycle_state(client, stripe_fake, webhook_secret):
    txn = _held_txn(stripe_fake, status=T.STATUS_APPROVED_PAID, payment_status=T.PAYMENT_CAPTURED)
    event = _event('payment_intent.payment_failed', {'id': txn.hold_ref, 'object': 'payment_intent'})
    assert _post(client, event).get_json()['healed'] is False
    assert store.get_transaction(get_db(), txn.id).payment_status == T.PAYMENT_CAPTURED


def test_bad_signature_rejected(client, stripe_fake, webhook_secret):
    txn = _held_txn(stripe_fake)
    resp = _post(client, _event('payment_intent.payment_failed', {'id': txn.hold_ref}), secret='whsec_other')
    assert resp.status_code == 400
    assert resp.get_json()['error']['detail'] == 'Invalid signature'
    assert store.get_transaction(get_db(), txn.id).payment_status == T.PAYMENT_NONE


def test_webhook_unavailable_without_secret(client, monkeypatch):
    monkeypatch.setitem(client.application.config, 'STRIPE_WEBHOOK_SECRET', '')
    payload, headers = _signed(_event('payment_intent.canceled', {'id': 'pi_x'}))
    assert client.post(URL, data=payload, headers=headers).status_code == 503
