"""
In-memory stand-ins for the payment gateway and the deferred-matching
scheduler. The test settings point ``PAYMENT_GATEWAY_CLASS`` and
``DISPATCH_SCHEDULER_CLASS`` here. State lives on the class so every
instance a code path creates sees the same holds and calls; call
``reset()`` in ``setUp``.

Also holds the model factories the test suites share.
"""

import itertools
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.utils import timezone

from drivers.models import DriverProfile
from rides.models import Ride, RideOffer, ServiceTier
from services.payments.fees import compute_fee_breakdown
from services.matching.scheduler import DispatchScheduler, RETRY
from services.payments.gateway import GatewayError, HoldNotFoundError, HoldSnapshot, PaymentGateway


class RecordingScheduler(DispatchScheduler):
    calls = []

    @classmethod
    def reset(cls):
        cls.calls = []

    def schedule_matching(self, ride_id, delay_seconds=0, reason=RETRY):
        type(self).calls.append((ride_id, delay_seconds, reason))

    @classmethod
    def reasons_for(cls, ride_id):
        return [reason for scheduled_id, _, reason in cls.calls if scheduled_id == ride_id]


class FakePaymentGateway(PaymentGateway):
    holds = {}
    transfers = []
    refunds = []
    fail_capture = False
    fail_create = False
    fail_cancel = False
    fail_refund = False
    # When False, destination holds capture without producing a transfer.
    split_charges = True
    _ids = itertools.count(1)

    @classmethod
    def reset(cls):
        cls.holds = {}
        cls.transfers = []
        cls.refunds = []
        cls.fail_capture = False
        cls.fail_create = False
        cls.fail_cancel = False
        cls.fail_refund = False
        cls.split_charges = True

    @classmethod
    def authorize(cls, hold_id):
        cls.holds[hold_id]['status'] = 'requires_capture'

    @classmethod
    def forget(cls, hold_id):
        cls.holds.pop(hold_id, None)

    @classmethod
    def _next_id(cls, prefix):
        return f"{prefix}_test_{next(cls._ids)}"

    def _hold(self, hold_id):
        hold = type(self).holds.get(hold_id)
        if hold is None:
            raise HoldNotFoundError(f"No such payment_intent: '{hold_id}'")
        return hold

    def _snapshot(self, hold_id):
        hold = self._hold(hold_id)
        return HoldSnapshot(
            id=hold_id,
            status=hold['status'],
            amount=hold['amount'],
            amount_received=hold['amount_received'],
            client_secret=f"{hold_id}_secret",
            has_destination=bool(hold['destination']),
            latest_charge=hold['charge'],
            transfer_id=hold['transfer_id'],
        )

    def create_hold(self, *, amount_cents, currency, metadata, application_fee_cents=None, destination=None):
        if type(self).fail_create:
            raise GatewayError("gateway unavailable")
        hold_id = self._next_id("pi")
        type(self).holds[hold_id] = {
            'status': 'requires_payment_method',
            'amount': amount_cents,
            'amount_received': 0,
            'currency': currency,
            'metadata': dict(metadata),
            'application_fee': application_fee_cents,
            'destination': destination,
            'charge': None,
            'transfer_id': None,
            'cancellation_reason': None,
        }
        return self._snapshot(hold_id)

    def retrieve_hold(self, hold_id):
        return self._snapshot(hold_id)

    def capture_hold(self, hold_id):
        hold = self._hold(hold_id)
        if type(self).fail_capture:
            raise GatewayError("Your card was declined.")
        if hold['status'] != 'requires_capture':
            raise GatewayError(f"PaymentIntent is {hold['status']} and cannot be captured")
        hold['status'] = 'succeeded'
        hold['amount_received'] = hold['amount']
        hold['charge'] = self._next_id("ch")
        if hold['destination'] and type(self).split_charges:
            hold['transfer_id'] = self._next_id("tr")
        return self._snapshot(hold_id)

    def cancel_hold(self, hold_id, reason):
        hold = self._hold(hold_id)
        if type(self).fail_cancel:
            raise GatewayError("gateway unavailable")
        if hold['status'] == 'succeeded':
            raise GatewayError("Captured PaymentIntents cannot be canceled")
        hold['status'] = 'canceled'
        hold['cancellation_reason'] = reason
        return self._snapshot(hold_id)

    def refund_hold(self, hold_id):
        hold = self._hold(hold_id)
        if type(self).fail_refund:
            raise GatewayError("gateway unavailable")
        if hold['status'] != 'succeeded':
            raise GatewayError("Only captured payments can be refunded")
        refund_id = self._next_id("re")
        type(self).refunds.append((hold_id, refund_id))
        return refund_id

    def create_transfer(self, *, amount_cents, currency, destination, source_transaction=None, metadata=None):
        transfer_id = self._next_id("tr")
        type(self).transfers.append({
            'id': transfer_id,
            'amount': amount_cents,
            'destination': destination,
            'source_transaction': source_transaction,
        })
        return transfer_id


# Shared fixtures for tests. Drivers default to online, approved, fresh and
# parked at PICKUP so they are eligible for a standard ride from there.

PICKUP = (Decimal('37.774900'), Decimal('-122.419400'))
DROPOFF = (Decimal('37.784900'), Decimal('-122.409400'))
# About 1.1 km north of PICKUP.
FAR_FROM_PICKUP = (Decimal('37.784900'), Decimal('-122.419400'))


def make_rider(username='rider', **extra):
    User = get_user_model()
    return User.objects.create_user(
        username=username,
        password='rider1234',
        role='rider',
        phone_number=extra.pop('phone_number', '9000000000'),
        **extra
    )


def make_driver(username='driver', location=PICKUP, tier=ServiceTier.STANDARD, **profile_fields):
    User = get_user_model()
    user = User.objects.create_user(
        username=username,
        password='driver1234',
        role='driver',
        phone_number='9100000000',
    )
    now = timezone.now()
    defaults = {
        'vehicle_number': f'KA-{username.upper()}',
        'service_tier': tier,
        'is_approved': True,
        'is_online': True,
        'last_heartbeat_at': now,
    }
    if location is not None:
        defaults.update(
            current_latitude=location[0],
            current_longitude=location[1],
            last_location_at=now,
        )
    defaults.update(profile_fields)
    DriverProfile.objects.create(user=user, **defaults)
    return user


def make_ride(rider, status=Ride.Status.REQUESTED, fare_cents=1000, **fields):
    breakdown = compute_fee_breakdown(fare_cents)
    values = {
        'pickup_latitude': PICKUP[0],
        'pickup_longitude': PICKUP[1],
        'dropoff_latitude': DROPOFF[0],
        'dropoff_longitude': DROPOFF[1],
        'search_deadline': timezone.now() + timedelta(minutes=5),
        **breakdown.as_ride_fields(),
    }
    values.update(fields)
    return Ride.objects.create(rider=rider, status=status, **values)


def make_offer(ride, driver, status=RideOffer.Status.PENDING, expires_in=60, **fields):
    now = timezone.now()
    return RideOffer.objects.create(
        ride=ride,
        driver=driver,
        status=status,
        created_at=now,
        expires_at=now + timedelta(seconds=expires_in),
        **fields
    )


def make_accepted_ride(rider, driver, authorize=True, **fields):
    """An accepted ride with the driver locked to it and, by default, an authorized hold."""
    from services.payments.orchestrator import get_payment_state, request_payment

    ride = make_ride(
        rider,
        status=Ride.Status.ACCEPTED,
        driver=driver,
        accepted_at=fields.pop('accepted_at', timezone.now()),
        **fields
    )
    DriverProfile.objects.filter(user=driver).update(
        is_busy=True,
        current_ride=ride,
        current_ride_status=Ride.Status.ACCEPTED,
    )
    if authorize:
        state = request_payment(rider, ride.pk)
        FakePaymentGateway.authorize(state.hold_id)
        get_payment_state(rider, ride.pk)
    ride.refresh_from_db()
    return ride
