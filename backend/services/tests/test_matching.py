from datetime import timedelta
from decimal import Decimal

from django.test import TestCase, override_settings
from django.utils import timezone

from common.testing import (
	FAR_FROM_PICKUP,
	PICKUP,
	RecordingScheduler,
	make_driver,
	make_offer,
	make_ride,
	make_rider,
)
from drivers.models import BlockedRider
from rides.models import Ride, RideEvent, RideOffer, ServiceTier
from services.matching import (
	BlockList,
	CANCELLED,
	OFFERED,
	RETRY_SCHEDULED,
	SKIPPED,
	WAITING,
	compute_backoff,
	expire_overdue_offers,
	handle_scheduled_matching,
	nudge_oldest_searching_ride,
	run_matching,
)
from services.matching.scheduler import OFFER_RECHECK, RETRY


class MidpointRng:
	def uniform(self, low, high):
		return (low + high) / 2


def north_of_pickup(delta):
	return (PICKUP[0] + Decimal(delta), PICKUP[1])


class BackoffTests(TestCase):
	def test_doubles_until_cap(self):
		rng = MidpointRng()
		self.assertEqual(compute_backoff(0, rng), 5)
		self.assertEqual(compute_backoff(1, rng), 10)
		self.assertEqual(compute_backoff(2, rng), 20)
		self.assertEqual(compute_backoff(3, rng), 40)
		self.assertEqual(compute_backoff(4, rng), 60)
		self.assertEqual(compute_backoff(10, rng), 60)

	def test_jitter_stays_within_twenty_percent(self):
		for attempt in range(6):
			base = min(5 * 2 ** attempt, 60)
			for _ in range(20):
				delay = compute_backoff(attempt)
				self.assertGreaterEqual(delay, base * 0.8)
				self.assertLessEqual(delay, base * 1.2)


class RunMatchingTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		self.rider = make_rider()

	def test_offers_nearest_drivers_first(self):
		far = make_driver('far', location=FAR_FROM_PICKUP)
		near = make_driver('near')
		mid = make_driver('mid', location=north_of_pickup('0.002000'))
		make_driver('farther', location=north_of_pickup('0.020000'))
		ride = make_ride(self.rider)

		outcome = run_matching(ride.id)

		self.assertEqual(outcome.action, OFFERED)
		self.assertEqual([offer.driver_id for offer in outcome.offers], [near.id, mid.id, far.id])
		ride.refresh_from_db()
		self.assertEqual(ride.status, Ride.Status.OFFERED)
		self.assertEqual(ride.dispatch_attempts, 1)
		self.assertEqual(ride.attempted_driver_ids, sorted([near.id, mid.id, far.id]))
		self.assertIsNotNone(ride.offer_expires_at)
		self.assertEqual(RecordingScheduler.calls, [(ride.id, 65, OFFER_RECHECK)])
		self.assertEqual(
			ride.events.filter(event_type=RideEvent.EventType.OFFER_CREATED).count(), 3
		)

	def test_next_batch_never_repeats_a_driver(self):
		drivers = [
			make_driver('d%d' % i, location=north_of_pickup('0.00%d000' % i))
			for i in range(4)
		]
		ride = make_ride(self.rider)
		run_matching(ride.id)
		RideOffer.objects.filter(ride=ride).update(expires_at=timezone.now() - timedelta(seconds=1))

		outcome = run_matching(ride.id)

		self.assertEqual(outcome.action, OFFERED)
		self.assertEqual([offer.driver_id for offer in outcome.offers], [drivers[3].id])
		self.assertEqual(outcome.offers[0].batch_number, 2)
		self.assertEqual(RideOffer.objects.filter(ride=ride).count(), 4)
		self.assertEqual(
			RideOffer.objects.filter(ride=ride, status=RideOffer.Status.EXPIRED).count(), 3
		)

	def test_waits_while_current_batch_is_live(self):
		driver = make_driver('driver')
		ride = make_ride(self.rider, status=Ride.Status.OFFERED)
		make_offer(ride, driver)

		outcome = run_matching(ride.id)

		self.assertEqual(outcome.action, WAITING)
		ride.refresh_from_db()
		self.assertEqual(ride.dispatch_attempts, 0)
		self.assertEqual(RecordingScheduler.calls, [])

	def test_no_drivers_schedules_backoff_retry(self):
		ride = make_ride(self.rider)

		outcome = run_matching(ride.id, rng=MidpointRng())

		self.assertEqual(outcome.action, RETRY_SCHEDULED)
		self.assertEqual(outcome.delay_seconds, 5)
		ride.refresh_from_db()
		self.assertEqual(ride.status, Ride.Status.DISPATCHING)
		self.assertEqual(ride.dispatch_attempts, 1)
		self.assertEqual(RecordingScheduler.calls, [(ride.id, 5, RETRY)])

	@override_settings(MATCHING_MAX_ATTEMPTS=3)
	def test_gives_up_after_max_attempts(self):
		ride = make_ride(self.rider)

		actions = [run_matching(ride.id).action for _ in range(3)]

		self.assertEqual(actions, [RETRY_SCHEDULED, RETRY_SCHEDULED, CANCELLED])
		ride.refresh_from_db()
		self.assertEqual(ride.status, Ride.Status.CANCELLED)
		self.assertEqual(ride.cancel_reason, 'no_driver_available')
		self.assertEqual(ride.cancelled_by, Ride.CancelledBy.SYSTEM)
		self.assertTrue(ride.events.filter(event_type=RideEvent.EventType.SEARCH_TIMEOUT).exists())

	def test_gives_up_once_search_deadline_passed(self):
		ride = make_ride(self.rider, search_deadline=timezone.now() - timedelta(seconds=1))

		outcome = run_matching(ride.id)

		self.assertEqual(outcome.action, CANCELLED)
		ride.refresh_from_db()
		self.assertEqual(ride.status, Ride.Status.CANCELLED)

	def test_skips_rides_no_longer_searching(self):
		ride = make_ride(self.rider, status=Ride.Status.ACCEPTED)

		outcome = run_matching(ride.id)

		self.assertEqual(outcome.action, SKIPPED)
		self.assertFalse(ride.events.exists())

	def test_only_tier_compatible_drivers(self):
		make_driver('standard')
		comfort = make_driver('comfort', tier=ServiceTier.COMFORT)
		premium = make_driver('premium', tier=ServiceTier.PREMIUM)
		ride = make_ride(self.rider, service_tier=ServiceTier.COMFORT)

		outcome = run_matching(ride.id)

		self.assertEqual(
			sorted(offer.driver_id for offer in outcome.offers), sorted([comfort.id, premium.id])
		)

	def test_ineligible_drivers_are_not_offered(self):
		make_driver('stale', last_heartbeat_at=timezone.now() - timedelta(minutes=5))
		make_driver('offline', is_online=False)
		make_driver('unapproved', is_approved=False)
		make_driver('busy', is_busy=True)
		make_driver('distant', location=north_of_pickup('0.300000'))
		make_driver('unlocated', location=None)
		eligible = make_driver('eligible')
		ride = make_ride(self.rider)

		outcome = run_matching(ride.id)

		self.assertEqual([offer.driver_id for offer in outcome.offers], [eligible.id])

	def test_drivers_who_blocked_the_rider_are_skipped(self):
		blocker = make_driver('blocker')
		other = make_driver('other', location=north_of_pickup('0.001000'))
		BlockedRider.objects.create(driver=blocker, rider=self.rider)
		ride = make_ride(self.rider)

		outcome = run_matching(ride.id)

		self.assertEqual([offer.driver_id for offer in outcome.offers], [other.id])

	def test_block_list_can_be_injected(self):
		blocked = make_driver('blocked')
		other = make_driver('other', location=north_of_pickup('0.001000'))

		class StaticBlockList(BlockList):
			def blocked_driver_ids(self, rider_id):
				return {blocked.id}

		ride = make_ride(self.rider)

		outcome = run_matching(ride.id, block_list=StaticBlockList())

		self.assertEqual([offer.driver_id for offer in outcome.offers], [other.id])


class OfferExpiryTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		self.rider = make_rider()
		self.driver = make_driver('driver')
		self.ride = make_ride(self.rider, status=Ride.Status.OFFERED)

	def test_overdue_pending_offers_expire(self):
		overdue = make_offer(self.ride, self.driver, expires_in=-1)

		expired = expire_overdue_offers()

		self.assertEqual([offer.id for offer in expired], [overdue.id])
		overdue.refresh_from_db()
		self.assertEqual(overdue.status, RideOffer.Status.EXPIRED)
		self.assertIsNotNone(overdue.responded_at)
		self.assertTrue(
			self.ride.events.filter(event_type=RideEvent.EventType.OFFER_EXPIRED).exists()
		)

	def test_live_and_answered_offers_are_untouched(self):
		live = make_offer(self.ride, self.driver)
		other = make_driver('other')
		declined = make_offer(self.ride, other, status=RideOffer.Status.DECLINED, expires_in=-1)

		self.assertEqual(expire_overdue_offers(), [])
		live.refresh_from_db()
		declined.refresh_from_db()
		self.assertEqual(live.status, RideOffer.Status.PENDING)
		self.assertEqual(declined.status, RideOffer.Status.DECLINED)


class ScheduledMatchingTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		self.rider = make_rider()

	def test_recheck_is_dropped_once_ride_is_accepted(self):
		ride = make_ride(self.rider, status=Ride.Status.ACCEPTED)
		self.assertIsNone(handle_scheduled_matching(ride.id, OFFER_RECHECK))

	def test_retry_runs_a_pass(self):
		driver = make_driver('driver')
		ride = make_ride(self.rider, status=Ride.Status.DISPATCHING, dispatch_attempts=1)

		outcome = handle_scheduled_matching(ride.id, RETRY)

		self.assertEqual(outcome.action, OFFERED)
		self.assertEqual(outcome.offers[0].driver_id, driver.id)

	def test_missing_ride_is_ignored(self):
		self.assertIsNone(handle_scheduled_matching(999999))

	def test_nudge_matches_oldest_searching_ride(self):
		older = make_ride(self.rider, status=Ride.Status.DISPATCHING, created_at=timezone.now() - timedelta(minutes=2))
		newer_rider = make_rider('newer')
		make_ride(newer_rider, status=Ride.Status.DISPATCHING)
		driver = make_driver('driver')

		outcome = nudge_oldest_searching_ride(driver_id=driver.id)

		self.assertEqual(outcome.ride_id, older.id)
		self.assertEqual(outcome.action, OFFERED)
		self.assertTrue(
			older.events.filter(event_type=RideEvent.EventType.DRIVER_ONLINE_TRIGGERED_MATCH).exists()
		)
