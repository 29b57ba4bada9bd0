from django.test import TestCase

from common.testing import make_ride, make_rider
from rides.models import Ride, TERMINAL_STATUSES
from services.ride_management.transitions import (
	PAYMENT_TRANSITIONS,
	RIDE_TRANSITIONS,
	advance_payment_status,
	can_transition_payment,
	can_transition_ride,
	transition_ride,
)

RideStatus = Ride.Status
PaymentStatus = Ride.PaymentStatus


class TransitionTableTests(TestCase):
	def test_every_status_has_an_entry(self):
		self.assertEqual(set(RIDE_TRANSITIONS), set(RideStatus))
		self.assertEqual(set(PAYMENT_TRANSITIONS), set(PaymentStatus))

	def test_terminal_ride_statuses_go_nowhere(self):
		for status in TERMINAL_STATUSES:
			self.assertEqual(RIDE_TRANSITIONS[status], set())

	def test_ride_cannot_go_back_to_searching_once_assigned(self):
		for status in (RideStatus.ACCEPTED, RideStatus.STARTED, RideStatus.IN_PROGRESS):
			for searching in (RideStatus.REQUESTED, RideStatus.DISPATCHING, RideStatus.OFFERED):
				self.assertFalse(can_transition_ride(status, searching))

	def test_captured_money_only_moves_to_refund(self):
		self.assertEqual(
			PAYMENT_TRANSITIONS[PaymentStatus.CAPTURED],
			{PaymentStatus.REFUNDED, PaymentStatus.REFUND_FAILED},
		)
		self.assertFalse(can_transition_payment(PaymentStatus.CAPTURED, PaymentStatus.CANCELLED))
		self.assertFalse(can_transition_payment(PaymentStatus.CAPTURED, PaymentStatus.NONE))
		self.assertEqual(PAYMENT_TRANSITIONS[PaymentStatus.REFUNDED], set())


class TransitionWriteTests(TestCase):
	def setUp(self):
		self.ride = make_ride(make_rider(), status=RideStatus.OFFERED)

	def test_transition_updates_row_and_instance(self):
		self.assertTrue(transition_ride(self.ride, RideStatus.DISPATCHING))
		self.assertEqual(self.ride.status, RideStatus.DISPATCHING)
		self.assertEqual(Ride.objects.get(pk=self.ride.pk).status, RideStatus.DISPATCHING)

	def test_illegal_transition_is_refused(self):
		self.assertFalse(transition_ride(self.ride, RideStatus.COMPLETED))
		self.assertEqual(Ride.objects.get(pk=self.ride.pk).status, RideStatus.OFFERED)

	def test_stale_writer_loses(self):
		stale = Ride.objects.get(pk=self.ride.pk)
		transition_ride(self.ride, RideStatus.CANCELLED)

		self.assertFalse(transition_ride(stale, RideStatus.ACCEPTED))
		self.assertEqual(Ride.objects.get(pk=self.ride.pk).status, RideStatus.CANCELLED)

	def test_payment_status_is_monotonic(self):
		self.assertTrue(advance_payment_status(self.ride, PaymentStatus.REQUIRES_AUTHORIZATION))
		self.assertTrue(advance_payment_status(self.ride, PaymentStatus.AUTHORIZED))
		self.assertTrue(advance_payment_status(self.ride, PaymentStatus.CAPTURED))

		self.assertFalse(advance_payment_status(self.ride, PaymentStatus.AUTHORIZED))
		self.assertFalse(advance_payment_status(self.ride, PaymentStatus.CANCELLED))
		self.assertEqual(Ride.objects.get(pk=self.ride.pk).payment_status, PaymentStatus.CAPTURED)
