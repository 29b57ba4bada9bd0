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
from rides.models import Ride, RideEvent, RideOffer
from services.ride_management import (
	DriverNotAvailableError,
	FailedPreconditionError,
	InvalidArgumentError,
	NotFoundError,
	PermissionDeniedError,
	Reason,
)
from .models import BlockedRider, DriverLedgerEntry, DriverProfile
from .services import (
	block_rider,
	get_ledger_summary,
	list_blocked_riders,
	record_heartbeat,
	set_driver_online,
	unblock_rider,
)
from .views import BlockedRidersView, DriverHeartbeatView, DriverLedgerView, DriverOnlineView


class DriverPresenceTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		FakePaymentGateway.reset()
		self.driver = make_driver('driver', is_online=False, last_heartbeat_at=None)

	def test_going_online_counts_as_heartbeat(self):
		profile = set_driver_online(self.driver, True, latitude=PICKUP[0], longitude=PICKUP[1])

		self.assertTrue(profile.is_online)
		self.assertIsNotNone(profile.last_heartbeat_at)
		self.assertTrue(profile.has_fresh_heartbeat())
		self.assertEqual(profile.current_latitude, PICKUP[0])

	def test_unapproved_driver_cannot_go_online(self):
		DriverProfile.objects.filter(user=self.driver).update(is_approved=False)

		with self.assertRaises(FailedPreconditionError) as ctx:
			set_driver_online(self.driver, True)

		self.assertEqual(ctx.exception.reason, Reason.DRIVER_NOT_APPROVED)

	def test_busy_driver_cannot_go_offline(self):
		set_driver_online(self.driver, True)
		make_accepted_ride(make_rider(), self.driver, authorize=False)

		with self.assertRaises(DriverNotAvailableError):
			set_driver_online(self.driver, False)

	def test_coming_online_nudges_oldest_searching_ride(self):
		ride = make_ride(make_rider(), status=Ride.Status.DISPATCHING, dispatch_attempts=2)

		set_driver_online(self.driver, True, latitude=PICKUP[0], longitude=PICKUP[1])

		self.assertTrue(
			RideOffer.objects.filter(ride=ride, driver=self.driver, status=RideOffer.Status.PENDING).exists()
		)
		self.assertTrue(
			ride.events.filter(event_type=RideEvent.EventType.DRIVER_ONLINE_TRIGGERED_MATCH).exists()
		)

	def test_staying_online_does_not_nudge_again(self):
		set_driver_online(self.driver, True, latitude=PICKUP[0], longitude=PICKUP[1])
		ride = make_ride(make_rider(), status=Ride.Status.DISPATCHING)

		set_driver_online(self.driver, True)

		self.assertFalse(ride.offers.exists())

	def test_riders_have_no_driver_profile(self):
		with self.assertRaises(PermissionDeniedError):
			set_driver_online(make_rider(), True)

	def test_driver_without_profile(self):
		from accounts.models import User
		orphan = User.objects.create_user(username='orphan', password='driver1234', role='driver')

		with self.assertRaises(NotFoundError):
			record_heartbeat(orphan)


class HeartbeatTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		FakePaymentGateway.reset()
		self.driver = make_driver('driver', last_heartbeat_at=timezone.now() - timedelta(minutes=5))

	def test_heartbeat_refreshes_liveness(self):
		profile = record_heartbeat(self.driver)

		self.assertTrue(profile.has_fresh_heartbeat())

	def test_location_needs_both_coordinates(self):
		with self.assertRaises(InvalidArgumentError):
			record_heartbeat(self.driver, latitude=PICKUP[0])

	def test_out_of_range_location(self):
		with self.assertRaises(InvalidArgumentError):
			record_heartbeat(self.driver, latitude=Decimal('95'), longitude=PICKUP[1])

	def test_location_is_mirrored_onto_active_ride(self):
		ride = make_accepted_ride(make_rider(), self.driver, authorize=False)

		record_heartbeat(self.driver, latitude=DROPOFF[0], longitude=DROPOFF[1])

		ride.refresh_from_db()
		self.assertEqual(ride.driver_latitude, DROPOFF[0])
		self.assertEqual(ride.driver_longitude, DROPOFF[1])


class LedgerTests(TestCase):
	def setUp(self):
		self.driver = make_driver('driver')
		rider = make_rider()
		now = timezone.now()
		for days_ago, amount in ((0, 850), (3, 400), (30, 1000)):
			ride = make_ride(rider, status=Ride.Status.COMPLETED, driver=self.driver)
			DriverLedgerEntry.objects.create(
				driver=self.driver,
				ride=ride,
				amount_cents=amount,
				created_at=now - timedelta(days=days_ago),
			)

	def test_summary_windows(self):
		summary = get_ledger_summary(self.driver)

		self.assertEqual(summary['today_cents'], 850)
		self.assertEqual(summary['today_rides'], 1)
		self.assertEqual(summary['week_cents'], 1250)
		self.assertEqual(summary['week_rides'], 2)
		self.assertEqual(summary['lifetime_cents'], 2250)
		self.assertEqual(summary['lifetime_rides'], 3)
		self.assertEqual([entry.amount_cents for entry in summary['recent']], [850, 400, 1000])

	def test_ledger_view(self):
		factory = APIRequestFactory()
		request = factory.get('/api/driver/ledger/')
		force_authenticate(request, user=self.driver)

		response = DriverLedgerView.as_view()(request)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['lifetime_cents'], 2250)
		self.assertEqual(len(response.data['recent']), 3)


class BlockedRiderTests(TestCase):
	def setUp(self):
		self.driver = make_driver('driver')
		self.rider = make_rider()

	def test_block_is_idempotent(self):
		_, created = block_rider(self.driver, self.rider.id)
		_, created_again = block_rider(self.driver, self.rider.id)

		self.assertTrue(created)
		self.assertFalse(created_again)
		self.assertEqual(BlockedRider.objects.filter(driver=self.driver).count(), 1)
		self.assertEqual([entry.rider_id for entry in list_blocked_riders(self.driver)], [self.rider.id])

	def test_only_riders_can_be_blocked(self):
		with self.assertRaises(NotFoundError):
			block_rider(self.driver, make_driver('other').id)

	def test_unblock(self):
		block_rider(self.driver, self.rider.id)

		self.assertTrue(unblock_rider(self.driver, self.rider.id))
		self.assertFalse(unblock_rider(self.driver, self.rider.id))


class DriverViewTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		self.factory = APIRequestFactory()
		self.driver = make_driver('driver', is_online=False)
		self.rider = make_rider()

	def test_online_view(self):
		request = self.factory.post(
			'/api/driver/online/',
			{'online': True, 'latitude': 37.7749, 'longitude': -122.4194},
			format='json',
		)
		force_authenticate(request, user=self.driver)

		response = DriverOnlineView.as_view()(request)

		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['is_online'])
		profile = DriverProfile.objects.get(user=self.driver)
		self.assertEqual(profile.current_latitude, Decimal('37.774900'))

	def test_unapproved_driver_gets_conflict(self):
		DriverProfile.objects.filter(user=self.driver).update(is_approved=False)
		request = self.factory.post('/api/driver/online/', {'online': True}, format='json')
		force_authenticate(request, user=self.driver)

		response = DriverOnlineView.as_view()(request)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['code'], 'failed-precondition')
		self.assertEqual(response.data['reason'], Reason.DRIVER_NOT_APPROVED)

	def test_riders_cannot_use_driver_endpoints(self):
		request = self.factory.post('/api/driver/heartbeat/', {}, format='json')
		force_authenticate(request, user=self.rider)

		response = DriverHeartbeatView.as_view()(request)

		self.assertEqual(response.status_code, 403)
		self.assertEqual(response.data['code'], 'permission-denied')

	def test_block_and_unblock_view(self):
		view = BlockedRidersView.as_view()
		request = self.factory.post('/api/driver/blocked-riders/', {'rider_id': self.rider.id}, format='json')
		force_authenticate(request, user=self.driver)
		response = view(request)
		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['rider'], self.rider.id)

		request = self.factory.delete('/api/driver/blocked-riders/', {'rider_id': self.rider.id}, format='json')
		force_authenticate(request, user=self.driver)
		response = view(request)
		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['removed'])
