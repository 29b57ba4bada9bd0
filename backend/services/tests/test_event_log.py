from unittest.mock import patch

from django.contrib.auth.models import AnonymousUser
from django.test import SimpleTestCase, TestCase
from channels.testing import WebsocketCommunicator
from channels.layers import get_channel_layer

from accounts.models import User
from common.testing import make_driver, make_offer, make_ride, make_rider
from realtime.consumers import RideConsumer
from rides.models import RideEvent
from services.event_log import get_ride_events, log_ride_event
from services.ride_management import PermissionDeniedError, RideNotFoundError

EventType = RideEvent.EventType


class EventLogTests(TestCase):
	def setUp(self):
		self.rider = make_rider()
		self.ride = make_ride(self.rider)

	def test_events_are_append_only(self):
		event = log_ride_event(self.ride, EventType.RIDE_CREATED, source='test')

		event.metadata = {'source': 'edited'}
		with self.assertRaises(ValueError):
			event.save()
		with self.assertRaises(ValueError):
			event.delete()
		self.assertEqual(RideEvent.objects.get(pk=event.pk).metadata, {'source': 'test'})

	def test_unknown_event_type_is_rejected(self):
		with self.assertRaises(ValueError):
			log_ride_event(self.ride, 'teleported')

	def test_timeline_is_oldest_first(self):
		log_ride_event(self.ride, EventType.RIDE_CREATED)
		log_ride_event(self.ride.pk, EventType.MATCHING_STARTED, attempt=1)

		events = get_ride_events(self.rider, self.ride.id)

		self.assertEqual(
			[event.event_type for event in events],
			[EventType.RIDE_CREATED, EventType.MATCHING_STARTED],
		)
		self.assertEqual(events[1].metadata, {'attempt': 1})

	def test_offered_driver_may_read_timeline(self):
		driver = make_driver('driver')
		make_offer(self.ride, driver)

		self.assertEqual(get_ride_events(driver, self.ride.id), [])

	def test_strangers_may_not_read_timeline(self):
		with self.assertRaises(PermissionDeniedError):
			get_ride_events(make_rider('stranger'), self.ride.id)

	def test_missing_ride(self):
		with self.assertRaises(RideNotFoundError):
			get_ride_events(self.rider, 999999)

	@patch('realtime.notifications._group_send')
	def test_event_is_published_only_after_commit(self, group_send):
		with self.captureOnCommitCallbacks(execute=True):
			log_ride_event(self.ride, EventType.RIDE_CREATED)
			group_send.assert_not_called()

		group, payload = group_send.call_args.args
		self.assertEqual(group, 'ride_%d' % self.ride.id)
		self.assertEqual(payload['type'], 'ride_event')
		self.assertEqual(payload['event_type'], EventType.RIDE_CREATED)


class RideConsumerTests(SimpleTestCase):
	async def test_anonymous_connection_is_rejected(self):
		communicator = WebsocketCommunicator(RideConsumer.as_asgi(), '/ws/rides/')
		communicator.scope['user'] = AnonymousUser()

		connected, _ = await communicator.connect()

		self.assertFalse(connected)

	async def test_driver_receives_offers_sent_to_their_group(self):
		driver = User(id=4242, username='ws_driver', role='driver')
		communicator = WebsocketCommunicator(RideConsumer.as_asgi(), '/ws/rides/')
		communicator.scope['user'] = driver

		connected, _ = await communicator.connect()
		self.assertTrue(connected)
		welcome = await communicator.receive_json_from()
		self.assertEqual(welcome['type'], 'connection_established')

		await get_channel_layer().group_send('driver_4242', {
			'type': 'ride_offer',
			'ride_id': 7,
			'driver_id': 4242,
			'offer_id': 11,
			'ride_data': {'id': 7},
		})
		message = await communicator.receive_json_from()

		self.assertEqual(message['type'], 'ride_offer')
		self.assertEqual(message['ride_id'], 7)
		self.assertEqual(message['offer_id'], 11)
		await communicator.disconnect()
