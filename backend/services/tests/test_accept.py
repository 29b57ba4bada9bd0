from decimal import Decimal
from unittest.mock import patch

from django.db.models import QuerySet
from django.test import TestCase

from common.testing import (
	PICKUP,
	RecordingScheduler,
	make_driver,
	make_offer,
	make_ride,
	make_rider,
)
from drivers.models import DriverProfile
from rides.models import Ride, RideEvent, RideOffer
from services.matching.scheduler import RETRY
from services.ride_management import (
	DriverNotAvailableError,
	OfferExpiredError,
	OfferNotFoundError,
	Reason,
	RideNotAvailableError,
)
from services.ride_management.accept import accept_offer, decline_offer
from services.ride_management.ride_lifecycle import cancel_ride


def locked_models(action):
	"""Run action and return the models it row-locked, in order."""
	locked = []
	original = QuerySet.select_for_update

	def recording(queryset, *args, **kwargs):
		locked.append(queryset.model)
		return original(queryset, *args, **kwargs)

	with patch.object(QuerySet, 'select_for_update', autospec=True, side_effect=recording):
		action()
	return locked


class AcceptOfferTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		self.rider = make_rider()
		self.driver_one = make_driver('driver_one')
		self.driver_two = make_driver('driver_two')
		self.ride = make_ride(self.rider, status=Ride.Status.OFFERED)
		self.offer_one = make_offer(self.ride, self.driver_one)
		self.offer_two = make_offer(self.ride, self.driver_two)

	def test_accept_assigns_driver_and_locks_them(self):
		result = accept_offer(self.driver_one, self.ride.id)

		self.assertTrue(result.success)
		self.assertFalse(result.already_applied)
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, Ride.Status.ACCEPTED)
		self.assertEqual(self.ride.driver_id, self.driver_one.id)
		self.assertIsNotNone(self.ride.accepted_at)

		profile = DriverProfile.objects.get(user=self.driver_one)
		self.assertTrue(profile.is_busy)
		self.assertEqual(profile.current_ride_id, self.ride.id)
		self.assertEqual(profile.current_ride_status, Ride.Status.ACCEPTED)

		self.offer_one.refresh_from_db()
		self.offer_two.refresh_from_db()
		self.assertEqual(self.offer_one.status, RideOffer.Status.ACCEPTED)
		self.assertEqual(self.offer_two.status, RideOffer.Status.TAKEN_BY_OTHER)

		event_types = list(self.ride.events.values_list('event_type', flat=True))
		self.assertEqual(
			event_types,
			[RideEvent.EventType.OFFER_ACCEPTED, RideEvent.EventType.RIDE_ACCEPTED],
		)

	def test_only_one_driver_wins(self):
		accept_offer(self.driver_one, self.ride.id)

		with self.assertRaises(RideNotAvailableError) as ctx:
			accept_offer(self.driver_two, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.RIDE_TAKEN)
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.driver_id, self.driver_one.id)
		loser = DriverProfile.objects.get(user=self.driver_two)
		self.assertFalse(loser.is_busy)
		self.assertIsNone(loser.current_ride_id)

	def test_repeat_accept_is_idempotent(self):
		accept_offer(self.driver_one, self.ride.id)

		result = accept_offer(self.driver_one, self.ride.id)

		self.assertTrue(result.already_applied)
		self.assertEqual(
			self.ride.events.filter(event_type=RideEvent.EventType.RIDE_ACCEPTED).count(), 1
		)

	def test_expired_offer_cannot_be_accepted(self):
		RideOffer.objects.filter(pk=self.offer_one.pk).update(
			expires_at=self.offer_one.created_at
		)

		with self.assertRaises(OfferExpiredError) as ctx:
			accept_offer(self.driver_one, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.OFFER_EXPIRED)
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, Ride.Status.OFFERED)

	def test_driver_without_offer_is_refused(self):
		stranger = make_driver('stranger')

		with self.assertRaises(OfferNotFoundError):
			accept_offer(stranger, self.ride.id)

	def test_declined_offer_cannot_be_accepted(self):
		RideOffer.objects.filter(pk=self.offer_one.pk).update(status=RideOffer.Status.DECLINED)

		with self.assertRaises(OfferNotFoundError) as ctx:
			accept_offer(self.driver_one, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.OFFER_NOT_AVAILABLE)

	def test_cancelled_ride_cannot_be_accepted(self):
		Ride.objects.filter(pk=self.ride.pk).update(status=Ride.Status.CANCELLED)

		with self.assertRaises(RideNotAvailableError) as ctx:
			accept_offer(self.driver_one, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.RIDE_CANCELLED)

	def test_busy_driver_cannot_accept_and_nothing_changes(self):
		other_ride = make_ride(make_rider('other'), status=Ride.Status.ACCEPTED, driver=self.driver_one)
		DriverProfile.objects.filter(user=self.driver_one).update(is_busy=True, current_ride=other_ride)

		with self.assertRaises(DriverNotAvailableError) as ctx:
			accept_offer(self.driver_one, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.DRIVER_BUSY)
		self.ride.refresh_from_db()
		self.assertIsNone(self.ride.driver_id)
		self.offer_one.refresh_from_db()
		self.assertEqual(self.offer_one.status, RideOffer.Status.PENDING)

	def test_offline_driver_cannot_accept(self):
		DriverProfile.objects.filter(user=self.driver_one).update(is_online=False)

		with self.assertRaises(DriverNotAvailableError) as ctx:
			accept_offer(self.driver_one, self.ride.id)

		self.assertEqual(ctx.exception.reason, Reason.DRIVER_OFFLINE)

	def test_accept_locks_ride_before_driver_profile(self):
		locked = locked_models(lambda: accept_offer(self.driver_one, self.ride.id))

		self.assertEqual(locked, [Ride, DriverProfile, RideOffer])

	def test_cancel_and_accept_lock_in_the_same_order(self):
		accept_offer(self.driver_one, self.ride.id)

		locked = locked_models(lambda: cancel_ride(self.rider, self.ride.id))

		self.assertEqual(locked[0], Ride)

	@patch('realtime.notifications._group_send')
	def test_rider_and_losing_drivers_are_notified(self, group_send):
		accept_offer(self.driver_one, self.ride.id)

		sent = {call.args[0]: call.args[1]['type'] for call in group_send.call_args_list}
		self.assertEqual(sent['user_%d' % self.rider.id], 'ride_accepted')
		self.assertEqual(sent['driver_%d' % self.driver_two.id], 'offer_taken')
		self.assertNotIn('driver_%d' % self.driver_one.id, sent)


class DeclineOfferTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		self.rider = make_rider()
		self.driver_one = make_driver('driver_one')
		self.driver_two = make_driver('driver_two')
		self.ride = make_ride(self.rider, status=Ride.Status.OFFERED, dispatch_attempts=1)
		self.offer_one = make_offer(self.ride, self.driver_one)
		self.offer_two = make_offer(self.ride, self.driver_two)

	def test_decline_with_live_siblings_does_not_rematch(self):
		result = decline_offer(self.driver_one, self.ride.id)

		self.assertFalse(result.extra['queued_next_driver'])
		self.offer_one.refresh_from_db()
		self.assertEqual(self.offer_one.status, RideOffer.Status.DECLINED)
		self.assertEqual(RecordingScheduler.calls, [])
		self.assertTrue(
			self.ride.events.filter(event_type=RideEvent.EventType.OFFER_DECLINED).exists()
		)

	def test_last_decline_rematches_immediately(self):
		decline_offer(self.driver_one, self.ride.id)
		result = decline_offer(self.driver_two, self.ride.id)

		self.assertFalse(result.extra['queued_next_driver'])
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, Ride.Status.DISPATCHING)
		self.assertEqual(RecordingScheduler.reasons_for(self.ride.id), [RETRY])

	def test_last_decline_offers_the_next_driver(self):
		third = make_driver('third', location=(PICKUP[0] + Decimal('0.001000'), PICKUP[1]))
		decline_offer(self.driver_one, self.ride.id)

		result = decline_offer(self.driver_two, self.ride.id)

		self.assertTrue(result.extra['queued_next_driver'])
		self.assertTrue(
			RideOffer.objects.filter(ride=self.ride, driver=third, status=RideOffer.Status.PENDING).exists()
		)

	def test_repeat_decline_is_idempotent(self):
		decline_offer(self.driver_one, self.ride.id)

		result = decline_offer(self.driver_one, self.ride.id)

		self.assertTrue(result.already_applied)
		self.assertEqual(
			self.ride.events.filter(event_type=RideEvent.EventType.OFFER_DECLINED).count(), 1
		)

	def test_decline_without_offer_is_refused(self):
		with self.assertRaises(OfferNotFoundError):
			decline_offer(make_driver('stranger'), self.ride.id)
