"""
Gateway webhook events applied to rides and driver payout accounts.

Every handler is safe to replay: hold statuses only move forward through
the transition table, transfer ids are only written once and payout
account statuses are derived from the account as a whole.
"""

import logging

import stripe
from django.conf import settings
from django.db.models import Q

from drivers.models import DriverProfile
from rides.models import Ride, RideEvent
from services.event_log import log_ride_event
from services.ride_management.exceptions import FailedPreconditionError, InvalidArgumentError
from .gateway import StripeGateway
from .orchestrator import sync_from_snapshot

logger = logging.getLogger(__name__)

PayoutStatus = DriverProfile.PayoutStatus


def verify_event(payload: bytes, signature: str):
    """Check the signature header and parse the event."""
    secret = getattr(settings, 'STRIPE_WEBHOOK_SECRET', '')
    if not secret:
        raise FailedPreconditionError("Payment webhooks are not configured")
    if not signature:
        raise InvalidArgumentError("Missing webhook signature")

    try:
        return stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError:
        raise InvalidArgumentError("Malformed webhook payload")
    except stripe.SignatureVerificationError:
        raise InvalidArgumentError("Invalid webhook signature")


def _ride_id_from(obj):
    metadata = obj.get('metadata') or {}
    ride_id = metadata.get('ride_id')
    if not ride_id:
        group = obj.get('transfer_group') or ''
        if group.startswith('ride_'):
            ride_id = group[len('ride_'):]
    try:
        return int(ride_id) if ride_id else None
    except (TypeError, ValueError):
        return None


def _ride_for_intent(intent):
    # A ride whose hold was replaced ignores events for the old one.
    return Ride.objects.filter(payment_intent_id=intent.get('id')).first()


# PAYMENT INTENTS
def _hold_changed(event):
    intent = event['data']['object']
    ride = _ride_for_intent(intent)
    if ride is None:
        logger.info("Webhook %s for unknown hold %s", event['type'], intent.get('id'))
        return

    state = sync_from_snapshot(ride, StripeGateway._snapshot(intent))
    logger.info("Hold %s for ride %s is %s", intent.get('id'), ride.pk, state.payment_status)


def _hold_failed(event):
    intent = event['data']['object']
    ride = _ride_for_intent(intent)
    if ride is None:
        return

    error = intent.get('last_payment_error') or {}
    message = error.get('message') or 'Payment failed'
    Ride.objects.filter(pk=ride.pk).update(payment_error=message)
    logger.warning("Hold %s for ride %s failed: %s", intent.get('id'), ride.pk, message)
    sync_from_snapshot(ride, StripeGateway._snapshot(intent))


# CONNECTED ACCOUNTS
def payout_status_for(account) -> str:
    if account.get('charges_enabled') and account.get('payouts_enabled'):
        return PayoutStatus.ACTIVE
    requirements = account.get('requirements') or {}
    if requirements.get('disabled_reason'):
        return PayoutStatus.RESTRICTED
    return PayoutStatus.PENDING


def _account_updated(event):
    account = event['data']['object']
    status = payout_status_for(account)
    updated = DriverProfile.objects.filter(payout_account_id=account.get('id')).exclude(
        payout_account_status=status
    ).update(payout_account_status=status)
    if updated:
        logger.info("Payout account %s is now %s", account.get('id'), status)


def _capability_updated(event):
    capability = event['data']['object']
    if capability.get('id') != 'transfers' or capability.get('status') == 'active':
        # Activation is decided by account.updated, which sees the whole account.
        return

    updated = DriverProfile.objects.filter(
        payout_account_id=capability.get('account'),
        payout_account_status=PayoutStatus.ACTIVE,
    ).update(payout_account_status=PayoutStatus.RESTRICTED)
    if updated:
        logger.warning(
            "Transfers capability %s on account %s", capability.get('status'), capability.get('account')
        )


# TRANSFERS
def _transfer_created(event):
    transfer = event['data']['object']
    ride_id = _ride_id_from(transfer)
    if ride_id is None:
        return

    recorded = Ride.objects.filter(pk=ride_id, transfer_id='').update(
        transfer_id=transfer.get('id'),
        transfer_destination=transfer.get('destination') or '',
    )
    if recorded:
        log_ride_event(
            ride_id,
            RideEvent.EventType.PAYMENT_RECONCILED,
            action='transfer_recorded',
            transfer_id=transfer.get('id'),
            source='webhook',
        )


def _transfer_failed(event):
    transfer = event['data']['object']
    ride_id = _ride_id_from(transfer)
    logger.error("Transfer %s for ride %s failed", transfer.get('id'), ride_id)
    if ride_id is not None and Ride.objects.filter(pk=ride_id).exists():
        log_ride_event(
            ride_id,
            RideEvent.EventType.TRANSFER_MISSING,
            transfer_id=transfer.get('id'),
            source='webhook',
        )


HANDLERS = {
    'payment_intent.amount_capturable_updated': _hold_changed,
    'payment_intent.succeeded': _hold_changed,
    'payment_intent.canceled': _hold_changed,
    'payment_intent.payment_failed': _hold_failed,
    'account.updated': _account_updated,
    'capability.updated': _capability_updated,
    'transfer.created': _transfer_created,
    'transfer.failed': _transfer_failed,
}


def handle_event(event) -> bool:
    """Apply one verified event. Returns False for types that are ignored."""
    handler = HANDLERS.get(event['type'])
    if handler is None:
        logger.debug("Ignoring webhook event %s", event['type'])
        return False
    handler(event)
    return True
