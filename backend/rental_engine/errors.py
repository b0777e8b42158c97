from __future__ import annotations
"""Domain error taxonomy for the rental lifecycle.

Every error is a werkzeug ``HTTPException`` so it can be raised from any layer
(service, store, view) and still be rendered by the application's unified
JSON error handler. Descriptions are safe to show to clients; processor
diagnostics are kept on the exception object and only ever logged.
"""
from typing import Optional
from werkzeug.exceptions import HTTPException


class RentalError(HTTPException):
    code = 400
    default_detail = 'Request could not be processed'

    def __init__(self, description: Optional[str] = None):
        super().__init__(description=description or self.default_detail)


class ValidationError(RentalError):
    code = 400
    default_detail = 'Invalid request'


class DurationOutOfRange(ValidationError):
    default_detail = 'Rental duration is outside the allowed range'


class AmountTooSmall(ValidationError):
    default_detail = 'Amount too small for payment processing'


class AuthorizationError(RentalError):
    code = 403
    default_detail = 'Not authorized for this transaction'


class NotFoundOrWrongState(RentalError):
    code = 404
    default_detail = 'Transaction not found or not in a valid state for this action'


# PaymentOrchestrationError kinds
HOLD_FAILED = 'hold_failed'
CAPTURE_FAILED = 'capture_failed'
CANCEL_FAILED = 'cancel_failed'
TRANSFER_FAILED = 'transfer_failed'
REFUND_FAILED = 'refund_failed'
CHARGE_FAILED = 'charge_failed'
LOOKUP_FAILED = 'lookup_failed'
CUSTOMER_FAILED = 'customer_failed'

PAYMENT_ERROR_KINDS = (
    HOLD_FAILED,
    CAPTURE_FAILED,
    CANCEL_FAILED,
    TRANSFER_FAILED,
    REFUND_FAILED,
    CHARGE_FAILED,
    LOOKUP_FAILED,
    CUSTOMER_FAILED,
)


class PaymentOrchestrationError(RentalError):
    code = 502
    default_detail = 'Payment processing failed'

    def __init__(self, kind: str, internal_message: Optional[str] = None, original_error: Optional[Exception] = None):
        if kind not in PAYMENT_ERROR_KINDS:
            raise ValueError(f'unknown payment error kind {kind!r}')
        super().__init__()
        self.kind = kind
        self.internal_message = internal_message
        self.original_error = original_error


__all__ = [
    'RentalError', 'ValidationError', 'DurationOutOfRange', 'AmountTooSmall',
    'AuthorizationError', 'NotFoundOrWrongState', 'PaymentOrchestrationError',
    'PAYMENT_ERROR_KINDS', 'HOLD_FAILED', 'CAPTURE_FAILED', 'CANCEL_FAILED',
    'TRANSFER_FAILED', 'REFUND_FAILED', 'CHARGE_FAILED', 'LOOKUP_FAILED', 'CUSTOMER_FAILED',
]
