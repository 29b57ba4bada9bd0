from datetime import timedelta
from unittest.mock import patch

from django.test import TestCase, override_settings
from django.utils import timezone

from common.testing import (
	FakePaymentGateway,
	RecordingScheduler,
	make_accepted_ride,
	make_driver,
	make_offer,
	make_ride,
	make_rider,
)
from drivers.models import DriverProfile
from rides.models import Ride, RideEvent, RideOffer
from rides.tasks import run_janitor_task
from services.janitor import run_janitor_sweep
from services.matching.scheduler import JANITOR
from services.payments.orchestrator import request_payment
from services.ride_management.ride_lifecycle import cancel_ride

PaymentStatus = Ride.PaymentStatus
EventType = RideEvent.EventType


def minutes_ago(minutes):
	return timezone.now() - timedelta(minutes=minutes)


class JanitorSweepTests(TestCase):
	def setUp(self):
		RecordingScheduler.reset()
		FakePaymentGateway.reset()
		self.rider = make_rider()
		self.driver = make_driver('driver')

	def test_overdue_search_is_cancelled(self):
		ride = make_ride(self.rider, status=Ride.Status.OFFERED, search_deadline=minutes_ago(1))
		offer = make_offer(ride, self.driver)

		report = run_janitor_sweep()

		self.assertEqual(report.searches_timed_out, 1)
		ride.refresh_from_db()
		self.assertEqual(ride.status, Ride.Status.CANCELLED)
		self.assertEqual(ride.cancel_reason, 'search_timeout')
		self.assertEqual(ride.cancelled_by, Ride.CancelledBy.SYSTEM)
		offer.refresh_from_db()
		self.assertEqual(offer.status, RideOffer.Status.REJECTED)
		timeout = ride.events.get(event_type=EventType.SEARCH_TIMEOUT)
		self.assertEqual(timeout.metadata, {'source': 'janitor'})

	def test_lapsed_batch_is_expired_and_requeued(self):
		ride = make_ride(self.rider, status=Ride.Status.OFFERED)
		offer = make_offer(ride, self.driver, expires_in=-5)

		report = run_janitor_sweep()

		self.assertEqual(report.offers_expired, 1)
		self.assertEqual(report.rides_requeued, 1)
		offer.refresh_from_db()
		self.assertEqual(offer.status, RideOffer.Status.EXPIRED)
		self.assertEqual(RecordingScheduler.calls, [(ride.id, 0, JANITOR)])

	def test_ride_with_live_offer_is_left_alone(self):
		ride = make_ride(self.rider, status=Ride.Status.OFFERED)
		make_offer(ride, self.driver)

		report = run_janitor_sweep()

		self.assertEqual(report.rides_requeued, 0)
		self.assertEqual(RecordingScheduler.calls, [])

	def test_leftover_offers_on_assigned_ride_are_closed(self):
		ride = make_accepted_ride(self.rider, self.driver, authorize=False)
		leftover = make_offer(ride, make_driver('slow'))

		report = run_janitor_sweep()

		self.assertEqual(report.offers_closed, 1)
		leftover.refresh_from_db()
		self.assertEqual(leftover.status, RideOffer.Status.TAKEN_BY_OTHER)

	def test_silent_driver_goes_offline(self):
		ghost = make_driver('ghost', last_heartbeat_at=minutes_ago(5))
		never = make_driver('never', last_heartbeat_at=None)

		report = run_janitor_sweep()

		self.assertEqual(report.drivers_offlined, 2)
		for user in (ghost, never):
			profile = DriverProfile.objects.get(user=user)
			self.assertFalse(profile.is_online)
		self.assertTrue(DriverProfile.objects.get(user=self.driver).is_online)

	def test_silent_driver_keeps_active_ride_lock(self):
		ride = make_accepted_ride(self.rider, self.driver)
		DriverProfile.objects.filter(user=self.driver).update(last_heartbeat_at=minutes_ago(5))

		run_janitor_sweep()

		profile = DriverProfile.objects.get(user=self.driver)
		self.assertFalse(profile.is_online)
		self.assertTrue(profile.is_busy)
		self.assertEqual(profile.current_ride_id, ride.id)

	def test_stray_busy_lock_is_cleared(self):
		finished = make_ride(self.rider, status=Ride.Status.COMPLETED, driver=self.driver)
		DriverProfile.objects.filter(user=self.driver).update(
			is_busy=True, current_ride=finished, last_heartbeat_at=minutes_ago(5)
		)

		run_janitor_sweep()

		profile = DriverProfile.objects.get(user=self.driver)
		self.assertFalse(profile.is_busy)
		self.assertIsNone(profile.current_ride_id)

	def test_unpaid_accepted_ride_is_cancelled(self):
		ride = make_accepted_ride(self.rider, self.driver, authorize=False, accepted_at=minutes_ago(11))

		report = run_janitor_sweep()

		self.assertEqual(report.unpaid_rides_cancelled, 1)
		ride.refresh_from_db()
		self.assertEqual(ride.status, Ride.Status.CANCELLED)
		self.assertEqual(ride.cancel_reason, 'payment_timeout')
		self.assertFalse(DriverProfile.objects.get(user=self.driver).is_busy)

	def test_recently_accepted_ride_is_kept(self):
		ride = make_accepted_ride(self.rider, self.driver, authorize=False)

		run_janitor_sweep()

		ride.refresh_from_db()
		self.assertEqual(ride.status, Ride.Status.ACCEPTED)

	def test_unstarted_paid_ride_is_cancelled_and_hold_released(self):
		ride = make_accepted_ride(self.rider, self.driver)
		Ride.objects.filter(pk=ride.pk).update(payment_authorized_at=minutes_ago(11))

		report = run_janitor_sweep()

		self.assertEqual(report.unstarted_rides_cancelled, 1)
		ride.refresh_from_db()
		self.assertEqual(ride.status, Ride.Status.CANCELLED)
		self.assertEqual(ride.cancel_reason, 'driver_no_start_timeout')
		self.assertEqual(ride.payment_status, PaymentStatus.CANCELLED)
		self.assertEqual(FakePaymentGateway.holds[ride.payment_intent_id]['status'], 'canceled')

	def test_stale_unauthorized_hold_is_cancelled_with_ride(self):
		ride = make_accepted_ride(self.rider, self.driver, authorize=False)
		hold_id = request_payment(self.rider, ride.id).hold_id
		Ride.objects.filter(pk=ride.pk).update(updated_at=minutes_ago(11))

		report = run_janitor_sweep()

		self.assertEqual(report.holds_reconciled, 1)
		self.assertEqual(FakePaymentGateway.holds[hold_id]['status'], 'canceled')
		ride.refresh_from_db()
		self.assertEqual(ride.payment_status, PaymentStatus.CANCELLED)
		self.assertEqual(ride.status, Ride.Status.CANCELLED)
		self.assertEqual(ride.cancel_reason, 'payment_timeout')

	def test_failed_capture_is_retried(self):
		ride = make_accepted_ride(self.rider, self.driver)
		Ride.objects.filter(pk=ride.pk).update(
			status=Ride.Status.COMPLETED, payment_status=PaymentStatus.CAPTURE_FAILED
		)

		report = run_janitor_sweep()

		self.assertEqual(report.captures_reconciled, 1)
		ride.refresh_from_db()
		self.assertEqual(ride.payment_status, PaymentStatus.CAPTURED)
		self.assertEqual(FakePaymentGateway.holds[ride.payment_intent_id]['status'], 'succeeded')

	def test_capture_that_succeeded_at_gateway_is_mirrored(self):
		ride = make_accepted_ride(self.rider, self.driver)
		Ride.objects.filter(pk=ride.pk).update(
			status=Ride.Status.COMPLETED, payment_status=PaymentStatus.CAPTURE_FAILED
		)
		FakePaymentGateway.holds[ride.payment_intent_id]['status'] = 'succeeded'

		run_janitor_sweep()

		ride.refresh_from_db()
		self.assertEqual(ride.payment_status, PaymentStatus.CAPTURED)

	def test_missing_transfer_is_flagged_once(self):
		ride = make_ride(
			self.rider,
			status=Ride.Status.COMPLETED,
			driver=self.driver,
			payment_status=PaymentStatus.CAPTURED,
			payment_intent_id='pi_gone',
			payment_captured_at=minutes_ago(5),
			transfer_destination='acct_driver',
		)

		first = run_janitor_sweep()
		second = run_janitor_sweep()

		self.assertEqual(first.transfers_flagged, 1)
		self.assertEqual(second.transfers_flagged, 0)
		ride.refresh_from_db()
		self.assertIsNotNone(ride.transfer_missing_flagged_at)
		self.assertEqual(ride.events.filter(event_type=EventType.TRANSFER_MISSING).count(), 1)

	def test_recent_capture_is_within_grace(self):
		ride = make_ride(
			self.rider,
			status=Ride.Status.COMPLETED,
			driver=self.driver,
			payment_status=PaymentStatus.CAPTURED,
			payment_intent_id='pi_gone',
			payment_captured_at=timezone.now(),
			transfer_destination='acct_driver',
		)

		run_janitor_sweep()

		ride.refresh_from_db()
		self.assertIsNone(ride.transfer_missing_flagged_at)

	def test_failed_hold_release_is_retried_after_grace(self):
		ride = make_accepted_ride(self.rider, self.driver)
		FakePaymentGateway.fail_cancel = True
		cancel_ride(self.rider, ride.id)
		ride.refresh_from_db()
		self.assertEqual(ride.status, Ride.Status.CANCELLED)
		self.assertEqual(ride.payment_status, PaymentStatus.AUTHORIZED)
		FakePaymentGateway.fail_cancel = False

		self.assertEqual(run_janitor_sweep().holds_released, 0)
		report = run_janitor_sweep(now=timezone.now() + timedelta(minutes=3))

		self.assertEqual(report.holds_released, 1)
		ride.refresh_from_db()
		self.assertEqual(ride.payment_status, PaymentStatus.CANCELLED)
		hold = FakePaymentGateway.holds[ride.payment_intent_id]
		self.assertEqual(hold['status'], 'canceled')
		self.assertEqual(hold['cancellation_reason'], 'requested_by_customer')

	def test_failed_refund_is_retried(self):
		ride = make_accepted_ride(self.rider, self.driver)
		FakePaymentGateway().capture_hold(ride.payment_intent_id)
		Ride.objects.filter(pk=ride.pk).update(
			status=Ride.Status.CANCELLED,
			cancelled_at=minutes_ago(5),
			cancelled_by=Ride.CancelledBy.DRIVER,
			payment_status=PaymentStatus.REFUND_FAILED,
		)

		report = run_janitor_sweep()

		self.assertEqual(report.holds_released, 1)
		ride.refresh_from_db()
		self.assertEqual(ride.payment_status, PaymentStatus.REFUNDED)
		self.assertEqual([hold_id for hold_id, _ in FakePaymentGateway.refunds], [ride.payment_intent_id])

	def test_one_failing_offer_does_not_undo_the_other_expiries(self):
		first = make_offer(make_ride(self.rider, status=Ride.Status.OFFERED), self.driver, expires_in=-10)
		second = make_offer(
			make_ride(make_rider('second'), status=Ride.Status.OFFERED), make_driver('other'), expires_in=-5
		)

		def fail_for_first(ride_id, event_type, **metadata):
			if metadata.get('offer_id') == first.pk:
				raise RuntimeError("event store unavailable")

		with patch('services.matching.offer_dispatch.log_ride_event', side_effect=fail_for_first):
			report = run_janitor_sweep()

		self.assertEqual(report.offers_expired, 1)
		self.assertEqual(report.errors, 1)
		first.refresh_from_db()
		second.refresh_from_db()
		self.assertEqual(first.status, RideOffer.Status.PENDING)
		self.assertEqual(second.status, RideOffer.Status.EXPIRED)

	@override_settings(JANITOR_BATCH_SIZE=1)
	def test_each_step_is_bounded(self):
		first = make_ride(self.rider, search_deadline=minutes_ago(2))
		second = make_ride(make_rider('second'), search_deadline=minutes_ago(1))

		report = run_janitor_sweep()

		self.assertEqual(report.searches_timed_out, 1)
		first.refresh_from_db()
		second.refresh_from_db()
		self.assertEqual(first.status, Ride.Status.CANCELLED)
		self.assertEqual(second.status, Ride.Status.REQUESTED)

	def test_sweep_twice_changes_nothing_more(self):
		make_ride(self.rider, search_deadline=minutes_ago(1))
		run_janitor_sweep()

		report = run_janitor_sweep()

		self.assertEqual(report.searches_timed_out, 0)
		self.assertEqual(report.errors, 0)

	def test_task_returns_report(self):
		report = run_janitor_task()

		self.assertEqual(report['errors'], 0)
		self.assertIn('searches_timed_out', report)
