import stripe
from rental_engine import get_db
from rental_engine.models.audit import AuditLog
from rental_engine.models.transaction import BorrowTransaction as T
from rental_engine.services import store
from rental_engine.services.payments import PaymentOrchestrator
from rental_engine.services.reconciliation import reconcile, healed_payment_status
from tests.test_utils_seed import seed_parties, create_listing, insert_transaction


def _payments(fake):
    return PaymentOrchestrator(client=fake, retry_attempts=1, retry_wait=0)


def _held_txn(stripe_fake, status=T.STATUS_REQUESTED, intent_status='requires_capture', payment_status=T.PAYMENT_NONE):
    lender, borrower = seed_parties()
    intent = stripe_fake.add_intent(5000, status=intent_status)
    return insert_transaction(create_listing(lender), borrower, status=status, payment_status=payment_status, hold_ref=intent.id)


def test_healing_rules():
    txn = T(status=T.STATUS_REQUESTED, payment_status=T.PAYMENT_NONE)
    assert healed_payment_status(txn, 'requires_capture') == T.PAYMENT_AUTHORIZED
    assert healed_payment_status(txn, 'canceled') == T.PAYMENT_FAILED
    assert healed_payment_status(txn, 'succeeded') is None
    captured = T(status=T.STATUS_APPROVED_PAID, payment_status=T.PAYMENT_CAPTURED)
    assert healed_payment_status(captured, 'succeeded') is None


def test_sweep_heals_lagging_payment_status(app_context, stripe_fake):
    session = get_db()
    pending = _held_txn(stripe_fake)
    approved = _held_txn(stripe_fake, status=T.STATUS_APPROVED_PAID, intent_status='succeeded', payment_status=T.PAYMENT_AUTHORIZED)
    report = reconcile(session, _payments(stripe_fake))
    changed = {c['transaction_id']: c['after'] for c in report.changes}
    assert changed[pending.id] == T.PAYMENT_AUTHORIZED
    assert changed[approved.id] == T.PAYMENT_CAPTURED
    assert store.get_transaction(session, pending.id).payment_status == T.PAYMENT_AUTHORIZED
    assert store.get_transaction(session, approved.id).status == T.STATUS_APPROVED_PAID
    assert session.query(AuditLog).filter_by(action='TXN.PAYMENT.RECONCILE', entity_id=pending.id).count() == 1


def test_dry_run_writes_nothing(app_context, stripe_fake):
    session = get_db()
    txn = _held_txn(stripe_fake, intent_status='canceled')
    report = reconcile(session, _payments(stripe_fake), dry_run=True)
    assert any(c['transaction_id'] == txn.id and c['after'] == T.PAYMENT_FAILED for c in report.changes)
    assert store.get_transaction(session, txn.id).payment_status == T.PAYMENT_NONE


def test_lookup_failures_are_counted_and_skipped(app_context, stripe_fake):
    session = get_db()
    txn = _held_txn(stripe_fake)
    stripe_fake.fail('intent.retrieve', stripe.APIConnectionError('timeout'), times=1000)
    report = reconcile(session, _payments(stripe_fake))
    assert report.lookup_failures >= 1
    assert report.healed == 0
    assert store.get_transaction(session, txn.id).payment_status == T.PAYMENT_NONE
