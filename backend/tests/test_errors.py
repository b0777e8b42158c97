import pytest
from rental_engine.errors import (
    PaymentOrchestrationError, PAYMENT_ERROR_KINDS, ValidationError, DurationOutOfRange,
    AmountTooSmall, AuthorizationError, NotFoundOrWrongState,
)
from tests.test_lifecycle_helpers import jwt_headers
from tests.test_utils_seed import new_user


def test_error_status_codes():
    assert ValidationError().code == 400
    assert DurationOutOfRange().code == 400
    assert isinstance(AmountTooSmall(), ValidationError)
    assert AuthorizationError().code == 403
    assert NotFoundOrWrongState().code == 404
    assert NotFoundOrWrongState('Transaction not found').description == 'Transaction not found'


def test_payment_error_kinds_are_closed():
    for kind in PAYMENT_ERROR_KINDS:
        assert PaymentOrchestrationError(kind).kind == kind
    with pytest.raises(ValueError):
        PaymentOrchestrationError('mystery_failure')


def test_payment_error_hides_processor_detail():
    err = PaymentOrchestrationError('charge_failed', 'card_declined: do_not_honor')
    assert err.code == 502
    assert err.description == 'Payment processing failed'
    assert err.internal_message == 'card_declined: do_not_honor'


def test_non_object_body_rejected(client):
    resp = client.post('/transactions', json=[1, 2], headers=jwt_headers(new_user('caller').id))
    assert resp.status_code == 400
    assert resp.get_json()['error']['detail'] == 'JSON object body required'
