from rental_engine import get_db
from rental_engine.models.notification import Notification
from rental_engine.services import notifications
from tests.test_utils_seed import new_user


def test_templates_cover_every_event():
    for event_type in notifications.TEMPLATES:
        title, body = notifications.render(event_type, {})
        assert title and body


def test_rendered_bodies_use_payload():
    _, body = notifications.render(notifications.LATE_FEE_CHARGED, {'days_overdue': 3, 'late_fee_cents': 1500})
    assert body == 'Your rental is 3 day(s) overdue. A late fee of $15.00 has been charged'
    _, body = notifications.render(notifications.BORROW_REQUEST, {'borrower_name': 'Sam', 'item_title': 'Tent'})
    assert body == 'Sam wants to borrow Tent'
    _, body = notifications.render(notifications.DAMAGE_CLAIM_FILED, {'claim_cents': 1500})
    assert '$15.00' in body


def test_notify_persists_and_forwards(app_context):
    user = new_user('notified')
    delivered = []
    row = notifications.notify(get_db(), user.id, notifications.REQUEST_APPROVED, {'transaction_id': 'txn-n1', 'item_title': 'Kayak'}, sink=lambda *a: delivered.append(a))
    assert row is not None
    stored = get_db().get(Notification, row.id)
    assert stored.transaction_id == 'txn-n1'
    assert stored.title == 'Request Approved'
    assert delivered[0][0] == user.id
    assert delivered[0][2]['body'] == 'Your request to borrow Kayak has been approved!'


def test_unknown_event_type_is_ignored(app_context):
    user = new_user('notified')
    assert notifications.notify(get_db(), user.id, 'no_such_event') is None
    assert get_db().query(Notification).filter_by(user_id=user.id).count() == 0


def test_sink_failure_never_raises(app_context):
    user = new_user('notified')

    def broken_sink(*args):
        raise ConnectionError('push gateway down')

    assert notifications.notify(get_db(), user.id, notifications.RATING_RECEIVED, {'rating': 4}, sink=broken_sink) is None
