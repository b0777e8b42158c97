"""Payment orchestrator over the Stripe API.

Implements:
- Manual-capture authorization holds (create / capture / cancel / retrieve)
- Full and partial refunds against a captured hold
- Transfers to a lender's connected payout account (deferred when none exists)
- Independent auto-capture charges for late fees
- Retry with exponential backoff for transient processor errors

Every mutating call carries an idempotency key of the form
``{transaction_id}-{operation}-{nonce}``. Refund, transfer and late-fee
nonces name the settlement step (purpose, late-fee days already billed)
rather than the amount, so a retry reproduces the same key: the processor
replays the original result for identical terms and rejects the request when
the terms changed.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import stripe
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from rental_engine.errors import (
    PaymentOrchestrationError,
    HOLD_FAILED,
    CAPTURE_FAILED,
    CANCEL_FAILED,
    TRANSFER_FAILED,
    REFUND_FAILED,
    CHARGE_FAILED,
    LOOKUP_FAILED,
    CUSTOMER_FAILED,
)

logger = logging.getLogger(__name__)

# Errors worth retrying: the request may not have reached the processor or the
# processor asked us to slow down. Card and request errors are permanent.
TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

# PaymentIntent statuses reported by the processor
INTENT_REQUIRES_CAPTURE = 'requires_capture'
INTENT_SUCCEEDED = 'succeeded'
INTENT_CANCELED = 'canceled'
INTENT_REQUIRES_PAYMENT_METHOD = 'requires_payment_method'
INTENT_REQUIRES_CONFIRMATION = 'requires_confirmation'


def idempotency_key(transaction_id: str, operation: str, nonce: Any) -> str:
    return f'{transaction_id}-{operation}-{nonce}'


@dataclass(frozen=True)
class IntentResult:
    ref: str
    status: str
    client_secret: Optional[str] = None
    amount_cents: int = 0
    amount_received_cents: int = 0
    payment_method_ref: Optional[str] = None


def _intent_result(intent: Any) -> IntentResult:
    return IntentResult(
        ref=intent.id,
        status=intent.status,
        client_secret=getattr(intent, 'client_secret', None),
        amount_cents=getattr(intent, 'amount', 0) or 0,
        amount_received_cents=getattr(intent, 'amount_received', 0) or 0,
        payment_method_ref=getattr(intent, 'payment_method', None),
    )


class PaymentOrchestrator:
    """Wrapper for the processor client with uniform error handling.

    ``client`` is the ``stripe`` module in production; tests pass a fake
    exposing the same ``PaymentIntent`` / ``Refund`` / ``Transfer`` /
    ``Customer`` class-method surface.
    """

    def __init__(self, client: Any = None, currency: str = 'usd', retry_attempts: int = 3, retry_wait: float = 1.0):
        self.client = client or stripe
        self.currency = currency.lower()
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_wait = retry_wait

    @classmethod
    def from_config(cls, config) -> 'PaymentOrchestrator':
        client = config.get('PAYMENT_CLIENT')
        if client is None:
            client = stripe
            if config.get('STRIPE_SECRET_KEY'):
                stripe.api_key = config['STRIPE_SECRET_KEY']
            if config.get('STRIPE_API_VERSION'):
                stripe.api_version = config['STRIPE_API_VERSION']
        return cls(
            client=client,
            currency=config.get('PAYMENT_CURRENCY', 'usd'),
            retry_attempts=config.get('PAYMENT_RETRY_ATTEMPTS', 3),
            retry_wait=config.get('PAYMENT_RETRY_WAIT', 1.0),
        )

    def _call(self, kind: str, fn: Callable[[], Any], **context: Any) -> Any:
        retrying = Retrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, min=0, max=16),
            reraise=True,
        )
        try:
            return retrying(fn)
        except stripe.StripeError as e:
            logger.error(
                'payment processor call failed',
                extra={
                    'payment_error_kind': kind,
                    'processor_error_code': getattr(e, 'code', None),
                    'processor_message': str(e),
                    **context,
                },
            )
            raise PaymentOrchestrationError(kind, str(e), e) from e

    # ---------- Customers ---------- #

    def ensure_customer(self, user) -> str:
        """Return the user's processor customer ref, creating one if missing."""
        if user.processor_customer_ref:
            return user.processor_customer_ref
        customer = self._call(
            CUSTOMER_FAILED,
            lambda: self.client.Customer.create(
                email=user.email,
                name=user.name,
                metadata={'user_id': str(user.id)},
                idempotency_key=f'user{user.id}-customer-create',
            ),
            user_id=user.id,
        )
        logger.info('processor customer created', extra={'user_id': user.id, 'customer_ref': customer.id})
        return customer.id

    # ---------- Authorization holds ---------- #

    def create_hold(self, transaction_id: str, amount_cents: int, payer_ref: str, metadata: Optional[Dict[str, Any]] = None) -> IntentResult:
        """Reserve ``amount_cents`` on the payer's instrument without moving funds."""
        key = idempotency_key(transaction_id, 'hold', amount_cents)
        intent = self._call(
            HOLD_FAILED,
            lambda: self.client.PaymentIntent.create(
                amount=amount_cents,
                currency=self.currency,
                customer=payer_ref,
                capture_method='manual',
                automatic_payment_methods={'enabled': True},
                metadata={'transaction_id': transaction_id, **(metadata or {})},
                idempotency_key=key,
            ),
            transaction_id=transaction_id,
            amount_cents=amount_cents,
        )
        logger.info('authorization hold created', extra={'transaction_id': transaction_id, 'hold_ref': intent.id, 'intent_status': intent.status})
        return _intent_result(intent)

    def retrieve_hold(self, hold_ref: str) -> IntentResult:
        intent = self._call(LOOKUP_FAILED, lambda: self.client.PaymentIntent.retrieve(hold_ref), hold_ref=hold_ref)
        return _intent_result(intent)

    def capture_hold(self, transaction_id: str, hold_ref: str, amount_cents: Optional[int] = None) -> IntentResult:
        params: Dict[str, Any] = {}
        if amount_cents is not None:
            params['amount_to_capture'] = amount_cents
        key = idempotency_key(transaction_id, 'capture', amount_cents if amount_cents is not None else 'full')
        intent = self._call(
            CAPTURE_FAILED,
            lambda: self.client.PaymentIntent.capture(hold_ref, idempotency_key=key, **params),
            transaction_id=transaction_id,
            hold_ref=hold_ref,
        )
        logger.info('authorization hold captured', extra={'transaction_id': transaction_id, 'hold_ref': hold_ref})
        return _intent_result(intent)

    def cancel_hold(self, transaction_id: str, hold_ref: str) -> IntentResult:
        key = idempotency_key(transaction_id, 'cancel', 'release')
        intent = self._call(
            CANCEL_FAILED,
            lambda: self.client.PaymentIntent.cancel(hold_ref, idempotency_key=key),
            transaction_id=transaction_id,
            hold_ref=hold_ref,
        )
        logger.info('authorization hold released', extra={'transaction_id': transaction_id, 'hold_ref': hold_ref})
        return _intent_result(intent)

    # ---------- Money movement ---------- #

    def refund(self, transaction_id: str, hold_ref: str, amount_cents: Optional[int] = None, purpose: str = 'full') -> str:
        """Refund all (``amount_cents=None``) or part of a captured hold."""
        params: Dict[str, Any] = {'payment_intent': hold_ref}
        if amount_cents is not None:
            params['amount'] = amount_cents
        key = idempotency_key(transaction_id, 'refund', purpose)
        refund = self._call(
            REFUND_FAILED,
            lambda: self.client.Refund.create(
                metadata={'transaction_id': transaction_id, 'purpose': purpose},
                idempotency_key=key,
                **params,
            ),
            transaction_id=transaction_id,
            hold_ref=hold_ref,
            amount_cents=amount_cents,
        )
        logger.info('refund created', extra={'transaction_id': transaction_id, 'refund_ref': refund.id, 'purpose': purpose})
        return refund.id

    def transfer(
        self,
        transaction_id: str,
        amount_cents: int,
        payout_account_ref: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        purpose: str = 'rental_payout',
    ) -> Optional[str]:
        """Move settled funds to the lender; returns None when the payout is deferred."""
        if not payout_account_ref:
            logger.info('payout deferred: lender has no payout account', extra={'transaction_id': transaction_id, 'amount_cents': amount_cents})
            return None
        if amount_cents <= 0:
            return None
        key = idempotency_key(transaction_id, 'transfer', purpose)
        transfer = self._call(
            TRANSFER_FAILED,
            lambda: self.client.Transfer.create(
                amount=amount_cents,
                currency=self.currency,
                destination=payout_account_ref,
                transfer_group=transaction_id,
                metadata={'transaction_id': transaction_id, 'type': purpose, **(metadata or {})},
                idempotency_key=key,
            ),
            transaction_id=transaction_id,
            amount_cents=amount_cents,
        )
        logger.info('transfer created', extra={'transaction_id': transaction_id, 'transfer_ref': transfer.id, 'purpose': purpose})
        return transfer.id

    def charge_independent(
        self,
        transaction_id: str,
        amount_cents: int,
        payer_ref: str,
        nonce: Any,
        metadata: Optional[Dict[str, Any]] = None,
        payment_method_ref: Optional[str] = None,
    ) -> IntentResult:
        """Immediate auto-capture charge, separate from the (already consumed) hold.

        When the payment method that funded the hold is known the charge is
        confirmed off-session; otherwise the client secret is returned so the
        borrower can complete it.
        """
        params: Dict[str, Any] = {}
        if payment_method_ref:
            params.update(payment_method=payment_method_ref, confirm=True, off_session=True)
        else:
            params['automatic_payment_methods'] = {'enabled': True}
        key = idempotency_key(transaction_id, 'charge', nonce)
        intent = self._call(
            CHARGE_FAILED,
            lambda: self.client.PaymentIntent.create(
                amount=amount_cents,
                currency=self.currency,
                customer=payer_ref,
                capture_method='automatic',
                metadata={'transaction_id': transaction_id, **(metadata or {})},
                idempotency_key=key,
                **params,
            ),
            transaction_id=transaction_id,
            amount_cents=amount_cents,
        )
        logger.info('independent charge created', extra={'transaction_id': transaction_id, 'charge_ref': intent.id, 'intent_status': intent.status})
        return _intent_result(intent)


__all__ = [
    'PaymentOrchestrator', 'IntentResult', 'idempotency_key', 'TRANSIENT_ERRORS',
    'INTENT_REQUIRES_CAPTURE', 'INTENT_SUCCEEDED', 'INTENT_CANCELED',
    'INTENT_REQUIRES_PAYMENT_METHOD', 'INTENT_REQUIRES_CONFIRMATION',
]
