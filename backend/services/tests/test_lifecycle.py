from datetime import timedelta
from unittest.mock import patch

from django.test import TestCase
from django.utils import timezone

from common.testing import (
	DROPOFF,
	FAR_FROM_PICKUP,
	PICKUP,
	FakePaymentGateway,
	RecordingScheduler,
	make_accepted_ride,
	make_driver,
	make_offer,
	make_ride,
	make_rider,
)
from drivers.models import DriverLedgerEntry, DriverProfile
from drivers.services import record_heartbeat
from rides.models import Ride, RideEvent, RideOffer
from services.payments.orchestrator import request_payment
from services.ride_management import (
	ActiveRideExistsError,
	FailedPreconditionError,
	InvalidArgumentError,
	PermissionDeniedError,
	Reason,
	RideNotAvailableError,
)
from services.ride_management.ride_lifecycle import (
	cancel_ride,
	complete_ride,
	get_current_driver_ride,
	get_ride_history,
	progress_ride,
	request_ride,
	start_ride,
)


def ride_request(rider, **overrides):
	values = {
		'pickup_latitude': PICKUP[0],
		'pickup_longitude': PICKUP[1],
		'dropoff_latitude': DROPOFF[0],
		'dropoff_longitude': DROPOFF[1],
		'estimated_fare_cents': 1000,
	}
	values.update(overrides)
	return request_ride(rider, **values)


class RequestRideTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		FakePaymentGateway.reset()
		self.rider = make_rider()

	def test_request_prices_ride_and_offers_nearby_driver(self):
		driver = make_driver('driver')

		result = ride_request(self.rider, pickup_address='Market St')

		ride = result.ride
		self.assertEqual(ride.status, Ride.Status.OFFERED)
		self.assertEqual(result.extra, {'matching': 'offered', 'offers_sent': 1})
		self.assertEqual(ride.total_charge_cents, 1150)
		self.assertEqual(ride.driver_payout_cents, 850)
		self.assertEqual(ride.platform_fee_cents, 300)
		self.assertEqual(ride.pickup_address, 'Market St')
		self.assertIsNotNone(ride.search_deadline)
		self.assertTrue(RideOffer.objects.filter(ride=ride, driver=driver).exists())
		self.assertEqual(
			list(ride.events.values_list('event_type', flat=True)),
			[
				RideEvent.EventType.RIDE_CREATED,
				RideEvent.EventType.MATCHING_STARTED,
				RideEvent.EventType.OFFER_CREATED,
			],
		)

	def test_request_without_drivers_keeps_searching(self):
		result = ride_request(self.rider)

		self.assertEqual(result.ride.status, Ride.Status.DISPATCHING)
		self.assertEqual(result.extra['matching'], 'retry_scheduled')
		self.assertEqual(result.extra['offers_sent'], 0)

	def test_only_riders_can_request(self):
		with self.assertRaises(PermissionDeniedError):
			ride_request(make_driver('driver'))

	def test_one_ride_in_flight_per_rider(self):
		ride_request(self.rider)

		with self.assertRaises(ActiveRideExistsError) as ctx:
			ride_request(self.rider)

		self.assertEqual(ctx.exception.reason, Reason.ACTIVE_RIDE_EXISTS)

	def test_rider_can_request_again_after_cancelling(self):
		first = ride_request(self.rider).ride
		cancel_ride(self.rider, first.id)

		second = ride_request(self.rider).ride

		self.assertNotEqual(first.id, second.id)

	def test_invalid_arguments_are_rejected(self):
		bad_inputs = [
			{'estimated_fare_cents': 0},
			{'estimated_fare_cents': 12.5},
			{'estimated_fare_cents': True},
			{'pickup_latitude': 91},
			{'dropoff_longitude': 'east'},
			{'service_tier': 'limousine'},
		]
		for overrides in bad_inputs:
			with self.subTest(overrides=overrides):
				with self.assertRaises(InvalidArgumentError):
					ride_request(self.rider, **overrides)
		self.assertFalse(Ride.objects.exists())


class StartProgressCompleteTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		FakePaymentGateway.reset()
		self.rider = make_rider()
		self.driver = make_driver('driver')
		self.ride = make_accepted_ride(self.rider, self.driver)

	def test_start_requires_authorized_payment(self):
		ride = make_accepted_ride(make_rider('other'), make_driver('other_driver'), authorize=False)

		with self.assertRaises(FailedPreconditionError) as ctx:
			start_ride(ride.driver, ride.id)

		self.assertEqual(ctx.exception.reason, Reason.PAYMENT_NOT_AUTHORIZED)

	def test_start_requires_driver_near_pickup(self):
		record_heartbeat(self.driver, *FAR_FROM_PICKUP)

		with self.assertRaises(FailedPreconditionError) as ctx:
			start_ride(self.driver, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.TOO_FAR_FROM_PICKUP)
		self.assertGreater(ctx.exception.details['distance_meters'], 200)

	def test_start_refuses_stale_location(self):
		DriverProfile.objects.filter(user=self.driver).update(
			last_location_at=timezone.now() - timedelta(minutes=2)
		)

		with self.assertRaises(FailedPreconditionError) as ctx:
			start_ride(self.driver, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.STALE_DRIVER_LOCATION)

	def test_start_refuses_missing_location(self):
		DriverProfile.objects.filter(user=self.driver).update(current_latitude=None, current_longitude=None)

		with self.assertRaises(FailedPreconditionError) as ctx:
			start_ride(self.driver, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.MISSING_DRIVER_LOCATION)

	def test_only_assigned_driver_can_start(self):
		with self.assertRaises(PermissionDeniedError):
			start_ride(make_driver('stranger'), self.ride.id)

	def test_start_then_progress(self):
		result = start_ride(self.driver, self.ride.id)

		self.assertEqual(result.ride.status, Ride.Status.STARTED)
		self.assertIsNotNone(result.ride.started_at)
		profile = DriverProfile.objects.get(user=self.driver)
		self.assertEqual(profile.current_ride_status, Ride.Status.STARTED)
		self.assertTrue(start_ride(self.driver, self.ride.id).already_applied)

		result = progress_ride(self.driver, self.ride.id)
		self.assertEqual(result.ride.status, Ride.Status.IN_PROGRESS)
		self.assertTrue(progress_ride(self.driver, self.ride.id).already_applied)

	def test_progress_requires_started_ride(self):
		with self.assertRaises(RideNotAvailableError) as ctx:
			progress_ride(self.driver, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.INVALID_STATUS)

	def test_complete_captures_and_pays_driver_once(self):
		start_ride(self.driver, self.ride.id)
		record_heartbeat(self.driver, *DROPOFF)

		result = complete_ride(self.driver, self.ride.id)

		self.assertEqual(result.ride.status, Ride.Status.COMPLETED)
		self.assertEqual(result.ride.payment_status, Ride.PaymentStatus.CAPTURED)
		self.assertTrue(result.extra['captured'])
		hold = FakePaymentGateway.holds[self.ride.payment_intent_id]
		self.assertEqual(hold['status'], 'succeeded')
		self.assertEqual(hold['amount_received'], 1150)

		profile = DriverProfile.objects.get(user=self.driver)
		self.assertFalse(profile.is_busy)
		self.assertIsNone(profile.current_ride_id)

		entry = DriverLedgerEntry.objects.get(ride=self.ride)
		self.assertEqual(entry.amount_cents, 850)
		self.assertEqual(entry.driver_id, self.driver.id)

		repeat = complete_ride(self.driver, self.ride.id)
		self.assertTrue(repeat.already_applied)
		self.assertEqual(DriverLedgerEntry.objects.filter(ride=self.ride).count(), 1)
		self.assertEqual(
			self.ride.events.filter(event_type=RideEvent.EventType.PAYMENT_CAPTURED).count(), 1
		)

	def test_complete_requires_driver_near_dropoff(self):
		start_ride(self.driver, self.ride.id)

		with self.assertRaises(FailedPreconditionError) as ctx:
			complete_ride(self.driver, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.TOO_FAR_FROM_DROPOFF)
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, Ride.Status.STARTED)

	def test_complete_requires_started_ride(self):
		with self.assertRaises(RideNotAvailableError) as ctx:
			complete_ride(self.driver, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.INVALID_STATUS)

	def test_failed_capture_still_completes_ride(self):
		start_ride(self.driver, self.ride.id)
		record_heartbeat(self.driver, *DROPOFF)
		FakePaymentGateway.fail_capture = True

		result = complete_ride(self.driver, self.ride.id)

		self.assertEqual(result.ride.status, Ride.Status.COMPLETED)
		self.assertEqual(result.ride.payment_status, Ride.PaymentStatus.CAPTURE_FAILED)
		self.assertFalse(result.extra['captured'])
		self.assertIn('declined', result.extra['capture_error'])
		self.assertTrue(
			self.ride.events.filter(event_type=RideEvent.EventType.PAYMENT_CAPTURE_FAILED).exists()
		)

	def test_vanished_hold_asks_for_reauthorization(self):
		start_ride(self.driver, self.ride.id)
		record_heartbeat(self.driver, *DROPOFF)
		FakePaymentGateway.forget(self.ride.payment_intent_id)

		result = complete_ride(self.driver, self.ride.id)

		self.assertTrue(result.extra['needs_reauthorization'])
		self.assertEqual(result.ride.payment_status, Ride.PaymentStatus.NONE)
		self.assertEqual(result.ride.payment_intent_id, '')

		state = request_payment(self.rider, self.ride.id)
		self.assertEqual(state.payment_status, Ride.PaymentStatus.REQUIRES_AUTHORIZATION)
		self.assertIn(state.hold_id, FakePaymentGateway.holds)

	def test_current_driver_ride(self):
		self.assertEqual(get_current_driver_ride(self.driver), self.ride)
		self.assertIsNone(get_current_driver_ride(make_driver('idle')))


class CancelRideTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		FakePaymentGateway.reset()
		self.rider = make_rider()
		self.driver = make_driver('driver')

	def test_rider_cancels_while_searching(self):
		ride = make_ride(self.rider, status=Ride.Status.OFFERED)
		offer = make_offer(ride, self.driver)

		result = cancel_ride(self.rider, ride.id, reason='Changed my plans')

		self.assertEqual(result.ride.status, Ride.Status.CANCELLED)
		self.assertEqual(result.ride.cancel_reason, 'rider_cancelled')
		self.assertEqual(result.ride.cancelled_by, Ride.CancelledBy.RIDER)
		self.assertFalse(result.extra['was_assigned'])
		offer.refresh_from_db()
		self.assertEqual(offer.status, RideOffer.Status.REJECTED)
		event = ride.events.get(event_type=RideEvent.EventType.RIDE_CANCELLED)
		self.assertEqual(event.metadata['note'], 'Changed my plans')
		self.assertEqual(event.metadata['previous_status'], Ride.Status.OFFERED)

	def test_rider_cancel_after_accept_releases_hold_and_driver(self):
		ride = make_accepted_ride(self.rider, self.driver)

		result = cancel_ride(self.rider, ride.id)

		self.assertTrue(result.extra['was_assigned'])
		self.assertEqual(result.extra['payment_status'], Ride.PaymentStatus.CANCELLED)
		hold = FakePaymentGateway.holds[ride.payment_intent_id]
		self.assertEqual(hold['status'], 'canceled')
		self.assertEqual(hold['cancellation_reason'], 'requested_by_customer')
		profile = DriverProfile.objects.get(user=self.driver)
		self.assertFalse(profile.is_busy)
		self.assertIsNone(profile.current_ride_id)

	def test_rider_cannot_cancel_after_start(self):
		ride = make_accepted_ride(self.rider, self.driver)
		start_ride(self.driver, ride.id)

		with self.assertRaises(RideNotAvailableError) as ctx:
			cancel_ride(self.rider, ride.id)

		self.assertEqual(ctx.exception.reason, Reason.RIDE_STARTED)

	def test_driver_can_cancel_after_start(self):
		ride = make_accepted_ride(self.rider, self.driver)
		start_ride(self.driver, ride.id)

		result = cancel_ride(self.driver, ride.id, reason='Flat tyre')

		self.assertEqual(result.ride.cancel_reason, 'driver_cancelled')
		self.assertEqual(result.ride.cancelled_by, Ride.CancelledBy.DRIVER)
		self.assertEqual(FakePaymentGateway.holds[ride.payment_intent_id]['cancellation_reason'], 'abandoned')

	def test_repeat_cancel_is_idempotent_for_same_user(self):
		ride = make_accepted_ride(self.rider, self.driver)
		cancel_ride(self.rider, ride.id)

		self.assertTrue(cancel_ride(self.rider, ride.id).already_applied)
		with self.assertRaises(RideNotAvailableError) as ctx:
			cancel_ride(self.driver, ride.id)
		self.assertEqual(ctx.exception.reason, Reason.RIDE_ALREADY_CANCELLED)

	def test_completed_ride_cannot_be_cancelled(self):
		ride = make_ride(self.rider, status=Ride.Status.COMPLETED, driver=self.driver)

		with self.assertRaises(RideNotAvailableError) as ctx:
			cancel_ride(self.rider, ride.id)

		self.assertEqual(ctx.exception.reason, Reason.RIDE_COMPLETED)

	def test_strangers_cannot_cancel(self):
		ride = make_ride(self.rider)

		with self.assertRaises(PermissionDeniedError):
			cancel_ride(make_rider('stranger'), ride.id)

	@patch('realtime.notifications._group_send')
	def test_driver_cancel_notifies_rider_after_commit(self, group_send):
		ride = make_accepted_ride(self.rider, self.driver)

		with self.captureOnCommitCallbacks(execute=True):
			cancel_ride(self.driver, ride.id)

		sent = [(call.args[0], call.args[1]['type']) for call in group_send.call_args_list]
		self.assertIn(('user_%d' % self.rider.id, 'ride_cancelled'), sent)
		self.assertIn(('ride_%d' % ride.id, 'ride_event'), sent)
		self.assertNotIn(('driver_%d' % self.driver.id, 'ride_cancelled'), sent)


class RideHistoryTests(TestCase):
	def setUp(self):
		self.rider = make_rider()
		self.driver = make_driver('driver')
		now = timezone.now()
		self.rides = [
			make_ride(
				self.rider,
				status=Ride.Status.COMPLETED,
				driver=self.driver,
				created_at=now - timedelta(hours=i),
			)
			for i in range(3)
		]

	def test_newest_first_for_rider_and_driver(self):
		expected = [ride.id for ride in self.rides]
		self.assertEqual([ride.id for ride in get_ride_history(self.rider)], expected)
		self.assertEqual([ride.id for ride in get_ride_history(self.driver)], expected)
		self.assertEqual(get_ride_history(make_rider('nobody')), [])

	def test_limit_is_validated_and_capped(self):
		self.assertEqual(len(get_ride_history(self.rider, '2')), 2)
		self.assertEqual(len(get_ride_history(self.rider, 500)), 3)
		for bad in ('abc', 0, -1):
			with self.subTest(limit=bad):
				with self.assertRaises(InvalidArgumentError):
					get_ride_history(self.rider, bad)
