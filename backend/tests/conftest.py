import os, sys, pytest
# Ensure backend directory is on path so 'rental_engine' and 'tests' can be imported
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
import itertools
from types import SimpleNamespace
import stripe
from rental_engine import create_app, get_db
from rental_engine.models.base import Base
# Import all model modules to ensure tables are registered before create_all
import rental_engine.models.user  # noqa: F401
import rental_engine.models.listing  # noqa: F401
import rental_engine.models.transaction  # noqa: F401
import rental_engine.models.rating  # noqa: F401
import rental_engine.models.notification  # noqa: F401
import rental_engine.models.audit  # noqa: F401


class _Api:
    def __init__(self, fake: 'FakeStripe', prefix: str):
        self._fake = fake
        self._prefix = prefix


class _PaymentIntentApi(_Api):
    def create(self, **kwargs):
        def build():
            manual = kwargs.get('capture_method') == 'manual'
            if manual:
                status = self._fake.hold_status
            elif kwargs.get('confirm'):
                status = 'succeeded'
            else:
                status = 'requires_payment_method'
            return self._fake.add_intent(
                amount=kwargs['amount'],
                status=status,
                payment_method=kwargs.get('payment_method') or (self._fake.payment_method if manual else None),
            )
        return self._fake.invoke('intent.create', kwargs, build)

    def retrieve(self, intent_id, **kwargs):
        def build():
            return self._fake.intent(intent_id)
        return self._fake.invoke('intent.retrieve', {'id': intent_id, **kwargs}, build)

    def capture(self, intent_id, **kwargs):
        def build():
            intent = self._fake.intent(intent_id)
            if intent.status != 'requires_capture':
                raise stripe.InvalidRequestError(f'PaymentIntent in status {intent.status} cannot be captured', 'intent')
            intent.status = 'succeeded'
            intent.amount_received = kwargs.get('amount_to_capture') or intent.amount
            return intent
        return self._fake.invoke('intent.capture', {'id': intent_id, **kwargs}, build)

    def cancel(self, intent_id, **kwargs):
        def build():
            intent = self._fake.intent(intent_id)
            if intent.status in ('canceled', 'succeeded'):
                raise stripe.InvalidRequestError(f'PaymentIntent in status {intent.status} cannot be canceled', 'intent')
            intent.status = 'canceled'
            return intent
        return self._fake.invoke('intent.cancel', {'id': intent_id, **kwargs}, build)


class _SimpleCreateApi(_Api):
    def __init__(self, fake, prefix, op):
        super().__init__(fake, prefix)
        self._op = op

    def create(self, **kwargs):
        def build():
            return SimpleNamespace(id=self._fake.next_id(self._prefix), **{k: v for k, v in kwargs.items() if k != 'idempotency_key'})
        return self._fake.invoke(self._op, kwargs, build)


class FakeStripe:
    """In-memory stand-in for the ``stripe`` module's resource classes.

    Records every call, replays results for a repeated idempotency key,
    rejects a reused key whose parameters changed and raises queued errors
    via ``fail``.
    """

    def __init__(self):
        # ids stay unique across resets; the database outlives each test
        self._ids = itertools.count(1)
        self.reset()

    def reset(self):
        self.calls = []
        self.intents = {}
        self.by_key = {}
        self.failures = {}
        self.hold_status = 'requires_capture'
        self.payment_method = 'pm_card_visa'
        self.PaymentIntent = _PaymentIntentApi(self, 'pi')
        self.Refund = _SimpleCreateApi(self, 're', 'refund.create')
        self.Transfer = _SimpleCreateApi(self, 'tr', 'transfer.create')
        self.Customer = _SimpleCreateApi(self, 'cus', 'customer.create')

    def next_id(self, prefix):
        return f'{prefix}_test_{next(self._ids)}'

    def add_intent(self, amount, status='requires_capture', payment_method=None):
        intent_id = self.next_id('pi')
        intent = SimpleNamespace(
            id=intent_id,
            status=status,
            amount=amount,
            amount_received=0,
            client_secret=f'{intent_id}_secret',
            payment_method=payment_method,
        )
        self.intents[intent_id] = intent
        return intent

    def intent(self, intent_id):
        if intent_id not in self.intents:
            raise stripe.InvalidRequestError(f'No such payment_intent: {intent_id}', 'intent')
        return self.intents[intent_id]

    def fail(self, op, error, times=1):
        self.failures.setdefault(op, []).extend([error] * times)

    def invoke(self, op, params, build):
        self.calls.append((op, dict(params)))
        queued = self.failures.get(op)
        if queued:
            raise queued.pop(0)
        key = params.get('idempotency_key')
        terms = {k: v for k, v in params.items() if k != 'idempotency_key'}
        if key and key in self.by_key:
            first_terms, result = self.by_key[key]
            if first_terms != terms:
                raise stripe.IdempotencyError(
                    'Keys for idempotent requests can only be used with the same parameters they were first used with.'
                )
            return result
        result = build()
        if key:
            self.by_key[key] = (terms, result)
        return result

    def calls_of(self, op):
        return [params for name, params in self.calls if name == op]


FAKE_STRIPE = FakeStripe()
SENT_NOTIFICATIONS = []


def _record_notification(user_id, event_type, message):
    SENT_NOTIFICATIONS.append({'user_id': user_id, 'event_type': event_type, **message})


@pytest.fixture(scope='session', autouse=True)
def app_instance():
    app = create_app({
        'DATABASE_URL': 'sqlite+pysqlite:///:memory:',
        'JWT_SECRET_KEY': 'rental-engine-test-secret-key-0123456789',
        'PAYMENT_CLIENT': FAKE_STRIPE,
        'PAYMENT_RETRY_ATTEMPTS': 1,
        'PAYMENT_RETRY_WAIT': 0,
        'NOTIFICATION_SINK': _record_notification,
    })
    with app.app_context():
        engine = get_db().get_bind()
        Base.metadata.create_all(engine)
    yield app


@pytest.fixture(autouse=True)
def stripe_fake():
    FAKE_STRIPE.reset()
    SENT_NOTIFICATIONS.clear()
    yield FAKE_STRIPE


@pytest.fixture()
def sent_notifications():
    return SENT_NOTIFICATIONS


@pytest.fixture()
def app_context(app_instance):
    with app_instance.app_context():
        yield app_instance


@pytest.fixture()
def client(app_context):
    return app_context.test_client()
