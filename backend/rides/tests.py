import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal

from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIRequestFactory, force_authenticate

from common.testing import (
	DROPOFF,
	PICKUP,
	FakePaymentGateway,
	RecordingScheduler,
	make_accepted_ride,
	make_driver,
	make_ride,
	make_rider,
)
from drivers.models import DriverLedgerEntry, DriverProfile
from drivers.services import record_heartbeat
from services.janitor import run_janitor_sweep
from services.ride_management import Reason
from .models import Ride, RideOffer
from .views import (
	accept_offer_view,
	cancel_ride_view,
	complete_ride_view,
	create_ride_request,
	payment_view,
	payment_webhook,
	progress_ride_view,
	ride_events,
	ride_history,
	start_ride_view,
)


class RideApiTestCase(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		FakePaymentGateway.reset()
		self.factory = APIRequestFactory()
		self.rider = make_rider()

	def call(self, view, user, method='post', data=None, **kwargs):
		request = getattr(self.factory, method)('/api/rides/', data or {}, format='json')
		if user is not None:
			force_authenticate(request, user=user)
		return view(request, **kwargs)

	def ride_payload(self, **overrides):
		payload = {
			'pickup_latitude': float(PICKUP[0]),
			'pickup_longitude': float(PICKUP[1]),
			'dropoff_latitude': float(DROPOFF[0]),
			'dropoff_longitude': float(DROPOFF[1]),
			'estimated_fare_cents': 1000,
			'pickup_address': 'Market St',
			'dropoff_address': 'Civic Center',
		}
		payload.update(overrides)
		return payload

	def authorize(self, ride):
		response = self.call(payment_view, self.rider, ride_id=ride.id)
		self.assertEqual(response.status_code, 200)
		FakePaymentGateway.authorize(response.data['hold_id'])
		response = self.call(payment_view, self.rider, method='get', ride_id=ride.id)
		self.assertEqual(response.data['payment_status'], Ride.PaymentStatus.AUTHORIZED)
		return response


class RequestRideApiTests(RideApiTestCase):
	def test_request_offers_the_only_nearby_driver(self):
		driver = make_driver('driver')

		response = self.call(create_ride_request, self.rider, data=self.ride_payload())

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['ride']['status'], Ride.Status.OFFERED)
		self.assertEqual(response.data['offers_sent'], 1)
		self.assertEqual(response.data['ride']['total_charge_cents'], 1150)

		offers = RideOffer.objects.filter(ride_id=response.data['ride']['id'])
		self.assertEqual(offers.count(), 1)
		offer = offers.get()
		self.assertEqual(offer.driver_id, driver.id)
		self.assertEqual(offer.expires_at - offer.created_at, timedelta(seconds=60))

	def test_drivers_cannot_request(self):
		response = self.call(create_ride_request, make_driver('driver'), data=self.ride_payload())

		self.assertEqual(response.status_code, 403)
		self.assertEqual(response.data['code'], 'permission-denied')

	def test_anonymous_request_is_unauthenticated(self):
		response = self.call(create_ride_request, None, data=self.ride_payload())

		self.assertEqual(response.status_code, 401)
		self.assertEqual(response.data['code'], 'unauthenticated')

	def test_invalid_body(self):
		response = self.call(
			create_ride_request, self.rider, data=self.ride_payload(estimated_fare_cents=0, pickup_latitude=120)
		)

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['code'], 'invalid-argument')
		self.assertIn('estimated_fare_cents', response.data['details'])
		self.assertIn('pickup_latitude', response.data['details'])

	def test_second_request_conflicts(self):
		self.call(create_ride_request, self.rider, data=self.ride_payload())

		response = self.call(create_ride_request, self.rider, data=self.ride_payload())

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['reason'], Reason.ACTIVE_RIDE_EXISTS)


class AcceptApiTests(RideApiTestCase):
	def test_first_accept_wins_second_is_told_ride_is_taken(self):
		driver_a = make_driver('driver_a')
		driver_b = make_driver('driver_b')
		ride_id = self.call(create_ride_request, self.rider, data=self.ride_payload()).data['ride']['id']

		first = self.call(accept_offer_view, driver_a, ride_id=ride_id)
		second = self.call(accept_offer_view, driver_b, ride_id=ride_id)

		self.assertEqual(first.status_code, 200)
		self.assertEqual(first.data['ride']['driver']['username'], 'driver_a')
		self.assertEqual(second.status_code, 409)
		self.assertEqual(second.data['code'], 'failed-precondition')
		self.assertEqual(second.data['reason'], Reason.RIDE_TAKEN)

		ride = Ride.objects.get(pk=ride_id)
		self.assertEqual(ride.driver_id, driver_a.id)
		offer_b = RideOffer.objects.get(ride=ride, driver=driver_b)
		self.assertEqual(offer_b.status, RideOffer.Status.TAKEN_BY_OTHER)

	def test_riders_cannot_accept(self):
		ride = make_ride(self.rider, status=Ride.Status.OFFERED)

		response = self.call(accept_offer_view, self.rider, ride_id=ride.id)

		self.assertEqual(response.status_code, 403)

	def test_unknown_ride(self):
		response = self.call(accept_offer_view, make_driver('driver'), ride_id=999999)

		self.assertEqual(response.status_code, 404)
		self.assertEqual(response.data['code'], 'not-found')


class TripApiTests(RideApiTestCase):
	def setUp(self):
		super().setUp()
		self.driver = make_driver('driver')
		self.ride = make_accepted_ride(self.rider, self.driver, authorize=False)

	def test_start_far_from_pickup_is_refused(self):
		self.authorize(self.ride)
		# Roughly 5 km north of pickup
		record_heartbeat(self.driver, latitude=PICKUP[0] + Decimal('0.045'), longitude=PICKUP[1])

		response = self.call(start_ride_view, self.driver, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['reason'], Reason.TOO_FAR_FROM_PICKUP)
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, Ride.Status.ACCEPTED)

	def test_start_without_payment_is_refused(self):
		response = self.call(start_ride_view, self.driver, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['reason'], Reason.PAYMENT_NOT_AUTHORIZED)

	def test_full_trip_captures_and_records_payout(self):
		self.authorize(self.ride)
		self.assertEqual(self.call(start_ride_view, self.driver, ride_id=self.ride.id).status_code, 200)
		self.assertEqual(self.call(progress_ride_view, self.driver, ride_id=self.ride.id).status_code, 200)
		record_heartbeat(self.driver, latitude=DROPOFF[0], longitude=DROPOFF[1])

		response = self.call(complete_ride_view, self.driver, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['ride']['status'], Ride.Status.COMPLETED)
		self.assertEqual(response.data['payment_status'], Ride.PaymentStatus.CAPTURED)
		self.assertTrue(response.data['captured'])
		self.ride.refresh_from_db()
		hold = FakePaymentGateway.holds[self.ride.payment_intent_id]
		self.assertEqual(hold['amount_received'], 1150)
		entry = DriverLedgerEntry.objects.get(ride=self.ride)
		self.assertEqual(entry.amount_cents, 850)
		self.assertEqual(entry.driver_id, self.driver.id)

		again = self.call(complete_ride_view, self.driver, ride_id=self.ride.id)
		self.assertEqual(again.status_code, 200)
		self.assertTrue(again.data['already_applied'])

	def test_payment_is_private_to_participants(self):
		response = self.call(payment_view, make_rider('stranger'), method='get', ride_id=self.ride.id)

		self.assertEqual(response.status_code, 403)

	def test_rider_cancel_releases_driver(self):
		self.authorize(self.ride)

		response = self.call(cancel_ride_view, self.rider, data={'reason': 'Too slow'}, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['ride']['status'], Ride.Status.CANCELLED)
		self.assertEqual(response.data['payment_status'], Ride.PaymentStatus.CANCELLED)
		self.assertFalse(DriverProfile.objects.get(user=self.driver).is_busy)

	def test_unpaid_ride_is_cancelled_by_janitor(self):
		self.call(payment_view, self.rider, ride_id=self.ride.id)
		stale = timezone.now() - timedelta(minutes=11)
		Ride.objects.filter(pk=self.ride.pk).update(accepted_at=stale, updated_at=stale)

		run_janitor_sweep()

		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, Ride.Status.CANCELLED)
		self.assertEqual(self.ride.cancel_reason, 'payment_timeout')
		profile = DriverProfile.objects.get(user=self.driver)
		self.assertFalse(profile.is_busy)
		self.assertIsNone(profile.current_ride_id)


class TimelineAndHistoryApiTests(RideApiTestCase):
	def test_events_and_history(self):
		make_driver('driver')
		ride_id = self.call(create_ride_request, self.rider, data=self.ride_payload()).data['ride']['id']

		events = self.call(ride_events, self.rider, method='get', ride_id=ride_id)
		history = self.call(ride_history, self.rider, method='get')

		self.assertEqual(events.status_code, 200)
		self.assertEqual(
			[event['event_type'] for event in events.data['events']],
			['ride_created', 'matching_started', 'offer_created'],
		)
		self.assertEqual(history.data['count'], 1)
		self.assertEqual(history.data['rides'][0]['id'], ride_id)

	def test_history_rejects_bad_limit(self):
		request = self.factory.get('/api/rides/history/', {'limit': 'lots'})
		force_authenticate(request, user=self.rider)

		response = ride_history(request)

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['code'], 'invalid-argument')


class PaymentWebhookApiTests(RideApiTestCase):
	secret = 'whsec_test'

	def setUp(self):
		super().setUp()
		self.driver = make_driver('driver', payout_account_id='acct_driver', payout_account_status='pending')
		self.ride = make_accepted_ride(self.rider, self.driver, authorize=False)

	def deliver(self, event_type, obj, signature=None):
		payload = json.dumps({
			'id': 'evt_1',
			'object': 'event',
			'type': event_type,
			'data': {'object': obj},
		})
		if signature is None:
			timestamp = int(time.time())
			digest = hmac.new(
				self.secret.encode(), f'{timestamp}.{payload}'.encode(), hashlib.sha256
			).hexdigest()
			signature = f't={timestamp},v1={digest}'
		request = self.factory.post(
			'/api/rides/payments/webhook/',
			payload,
			content_type='application/json',
			HTTP_STRIPE_SIGNATURE=signature,
		)
		return payment_webhook(request)

	def test_authorized_hold_is_synced(self):
		hold_id = self.call(payment_view, self.rider, ride_id=self.ride.id).data['hold_id']

		response = self.deliver('payment_intent.amount_capturable_updated', {
			'id': hold_id,
			'object': 'payment_intent',
			'status': 'requires_capture',
			'amount': 1150,
			'metadata': {'ride_id': str(self.ride.id)},
		})

		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['handled'])
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.payment_status, Ride.PaymentStatus.AUTHORIZED)
		self.assertIsNotNone(self.ride.payment_authorized_at)

	def test_account_update_activates_payouts(self):
		response = self.deliver('account.updated', {
			'id': 'acct_driver',
			'object': 'account',
			'charges_enabled': True,
			'payouts_enabled': True,
			'requirements': {'disabled_reason': None},
		})

		self.assertEqual(response.status_code, 200)
		profile = DriverProfile.objects.get(user=self.driver)
		self.assertEqual(profile.payout_account_status, DriverProfile.PayoutStatus.ACTIVE)

	def test_transfer_id_is_recorded_once(self):
		transfer = {
			'id': 'tr_1',
			'object': 'transfer',
			'destination': 'acct_driver',
			'transfer_group': f'ride_{self.ride.id}',
			'metadata': {},
		}
		self.deliver('transfer.created', transfer)
		self.deliver('transfer.created', {**transfer, 'id': 'tr_2'})

		self.ride.refresh_from_db()
		self.assertEqual(self.ride.transfer_id, 'tr_1')
		self.assertEqual(self.ride.transfer_destination, 'acct_driver')

	def test_bad_signature_is_refused(self):
		response = self.deliver('account.updated', {
			'id': 'acct_driver',
			'object': 'account',
			'charges_enabled': True,
			'payouts_enabled': True,
		}, signature=f't={int(time.time())},v1=deadbeef')

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['code'], 'invalid-argument')
		profile = DriverProfile.objects.get(user=self.driver)
		self.assertEqual(profile.payout_account_status, DriverProfile.PayoutStatus.PENDING)

	def test_unknown_event_is_acknowledged(self):
		response = self.deliver('customer.created', {'id': 'cus_1', 'object': 'customer'})

		self.assertEqual(response.status_code, 200)
		self.assertFalse(response.data['handled'])
