from __future__ import annotations
import logging
import stripe
from flask import Blueprint, current_app, request
from werkzeug.exceptions import ServiceUnavailable
from rental_engine.services.reconciliation import apply_processor_event
from rental_engine.errors import ValidationError
from rental_engine import get_db

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint('webhooks', __name__)


@webhooks_bp.post('/stripe')
def stripe_event():
    secret = current_app.config.get('STRIPE_WEBHOOK_SECRET')
    if not secret:
        raise ServiceUnavailable('Webhook signing secret not configured')
    payload = request.get_data(as_text=True)
    try:
        event = stripe.Webhook.construct_event(payload, request.headers.get('Stripe-Signature', ''), secret)
    except ValueError:
        raise ValidationError('Malformed event payload')
    except stripe.SignatureVerificationError:
        logger.warning('rejected processor event with a bad signature')
        raise ValidationError('Invalid signature')
    change = apply_processor_event(get_db(), event['type'], event['data']['object'].to_dict())
    return {'received': True, 'event_id': event['id'], 'healed': change is not None}
