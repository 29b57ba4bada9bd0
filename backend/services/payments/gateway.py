"""
Payment gateway adapter.

The orchestrator talks to a ``PaymentGateway``; the production
implementation wraps Stripe PaymentIntents in manual-capture mode.
Which class is used comes from ``settings.PAYMENT_GATEWAY_CLASS`` so
tests and other environments can swap it without touching callers.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

import stripe
from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Raised when the gateway rejects or fails a request."""
    pass


class HoldNotFoundError(GatewayError):
    """Raised when the gateway no longer knows about a hold."""
    pass


@dataclass
class HoldSnapshot:
    """The gateway's view of one hold, reduced to what the core needs."""
    id: str
    status: str
    amount: int
    amount_received: int = 0
    client_secret: Optional[str] = None
    has_destination: bool = False
    latest_charge: Optional[str] = None
    transfer_id: Optional[str] = None


class PaymentGateway:
    """Operations the orchestrator needs from a payment provider."""

    def create_hold(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, Any],
        application_fee_cents: Optional[int] = None,
        destination: Optional[str] = None,
    ) -> HoldSnapshot:
        raise NotImplementedError

    def retrieve_hold(self, hold_id: str) -> HoldSnapshot:
        raise NotImplementedError

    def capture_hold(self, hold_id: str) -> HoldSnapshot:
        raise NotImplementedError

    def cancel_hold(self, hold_id: str, reason: str) -> HoldSnapshot:
        raise NotImplementedError

    def refund_hold(self, hold_id: str) -> str:
        raise NotImplementedError

    def create_transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination: str,
        source_transaction: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        raise NotImplementedError


class StripeGateway(PaymentGateway):
    """PaymentIntent-backed gateway. Every call passes the key explicitly."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or getattr(settings, 'STRIPE_SECRET_KEY', '')

    def _call(self, func, *args, **kwargs):
        try:
            return func(*args, api_key=self.api_key, **kwargs)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, 'code', None) == 'resource_missing':
                raise HoldNotFoundError(str(exc)) from exc
            raise GatewayError(str(exc)) from exc
        except stripe.StripeError as exc:
            raise GatewayError(str(exc)) from exc

    @staticmethod
    def _snapshot(intent) -> HoldSnapshot:
        latest_charge = getattr(intent, 'latest_charge', None)
        transfer_id = None
        charge_id = latest_charge
        if latest_charge is not None and not isinstance(latest_charge, str):
            # Expanded charge object
            charge_id = latest_charge.id
            transfer = getattr(latest_charge, 'transfer', None)
            transfer_id = transfer if isinstance(transfer, str) or transfer is None else transfer.id

        return HoldSnapshot(
            id=intent.id,
            status=intent.status,
            amount=intent.amount,
            amount_received=getattr(intent, 'amount_received', 0) or 0,
            client_secret=getattr(intent, 'client_secret', None),
            has_destination=bool(getattr(intent, 'transfer_data', None)),
            latest_charge=charge_id,
            transfer_id=transfer_id,
        )

    def create_hold(self, *, amount_cents, currency, metadata, application_fee_cents=None, destination=None):
        params = {
            "amount": amount_cents,
            "currency": currency,
            "capture_method": "manual",
            "metadata": {key: str(value) for key, value in metadata.items()},
            "automatic_payment_methods": {"enabled": True},
        }
        if destination:
            params["transfer_data"] = {"destination": destination}
            if application_fee_cents:
                params["application_fee_amount"] = application_fee_cents

        intent = self._call(stripe.PaymentIntent.create, **params)
        logger.info("Created payment intent %s for %s %s", intent.id, amount_cents, currency)
        return self._snapshot(intent)

    def retrieve_hold(self, hold_id):
        intent = self._call(stripe.PaymentIntent.retrieve, hold_id, expand=["latest_charge"])
        return self._snapshot(intent)

    def capture_hold(self, hold_id):
        intent = self._call(stripe.PaymentIntent.capture, hold_id, expand=["latest_charge"])
        return self._snapshot(intent)

    def cancel_hold(self, hold_id, reason):
        intent = self._call(stripe.PaymentIntent.cancel, hold_id, cancellation_reason=reason)
        return self._snapshot(intent)

    def refund_hold(self, hold_id):
        refund = self._call(stripe.Refund.create, payment_intent=hold_id)
        return refund.id

    def create_transfer(self, *, amount_cents, currency, destination, source_transaction=None, metadata=None):
        params = {
            "amount": amount_cents,
            "currency": currency,
            "destination": destination,
            "metadata": {key: str(value) for key, value in (metadata or {}).items()},
        }
        if source_transaction:
            params["source_transaction"] = source_transaction
        transfer = self._call(stripe.Transfer.create, **params)
        return transfer.id


def get_payment_gateway() -> PaymentGateway:
    """Instantiate the configured gateway class."""
    path = getattr(settings, 'PAYMENT_GATEWAY_CLASS', 'services.payments.gateway.StripeGateway')
    return import_string(path)()
