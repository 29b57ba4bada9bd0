from django.contrib.admin.sites import site
from django.test import TestCase
from rest_framework.test import APIRequestFactory, force_authenticate

from drivers.models import DriverProfile
from .admin import DriverProfileInline
from .models import User
from .views import MeView, RegisterView


class RegisterTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()

	def register(self, **data):
		request = self.factory.post('/api/auth/register/', data, format='json')
		return RegisterView.as_view()(request)

	def test_rider_registration_returns_tokens(self):
		response = self.register(username='ana', password='rider12345', email='ana@example.com')

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['user']['role'], User.ROLE_RIDER)
		self.assertIn('access', response.data['tokens'])
		self.assertFalse(DriverProfile.objects.exists())

	def test_driver_registration_creates_unapproved_profile(self):
		response = self.register(
			username='dev', password='driver12345', role='driver', vehicle_number='KA-01-1234'
		)

		self.assertEqual(response.status_code, 201)
		profile = DriverProfile.objects.get(user__username='dev')
		self.assertEqual(profile.vehicle_number, 'KA-01-1234')
		self.assertFalse(profile.is_approved)
		self.assertFalse(profile.is_online)

	def test_driver_needs_vehicle(self):
		response = self.register(username='dev', password='driver12345', role='driver')

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['code'], 'invalid-argument')
		self.assertIn('vehicle_number', response.data['details'])
		self.assertFalse(User.objects.filter(username='dev').exists())

	def test_me(self):
		user = User.objects.create_user(username='ana', password='rider12345')
		request = self.factory.get('/api/auth/me/')
		force_authenticate(request, user=user)

		response = MeView.as_view()(request)

		self.assertEqual(response.data['username'], 'ana')


class UserAdminTests(TestCase):
	def setUp(self):
		self.model_admin = site._registry[User]
		self.rider = User.objects.create_user(username='ana', password='rider12345')
		self.driver = User.objects.create_user(username='dev', password='driver12345', role='driver')
		DriverProfile.objects.create(user=self.driver, vehicle_number='KA-01-1234')

	def test_driver_profile_is_edited_inline_for_drivers_only(self):
		self.assertEqual(self.model_admin.get_inlines(None, self.driver), [DriverProfileInline])
		self.assertEqual(self.model_admin.get_inlines(None, self.rider), [])

	def test_driver_status_column(self):
		self.assertEqual(self.model_admin.driver_status(self.rider), '-')
		self.assertEqual(self.model_admin.driver_status(self.driver), 'awaiting approval')

		DriverProfile.objects.filter(user=self.driver).update(is_approved=True, is_online=True)
		self.assertEqual(self.model_admin.driver_status(User.objects.get(pk=self.driver.pk)), 'online')
