"""
PAP Dispatch Core Tests
=======================

Tests for:
1. Custom User Model (creation, roles, presence fields)
2. Dispatch sessions built from authenticated users
"""

import uuid

from django.contrib.auth.models import AnonymousUser
from django.test import TestCase

from core.models import User, UserRole
from core.session import DispatchSession, session_for


class TestUserModel(TestCase):
    """Tests for the custom User model."""

    def setUp(self):
        """Create test users for each role."""
        self.admin = User.objects.create_superuser(
            phone_number='+5511900000001',
            password='testpass123',
            full_name='Admin Test',
        )
        self.courier = User.objects.create_user(
            phone_number='+5511900000002',
            password='testpass123',
            role=UserRole.COURIER,
            full_name='Courier Test',
            city='São Paulo',
        )
        self.client_user = User.objects.create_user(
            phone_number='+5511900000003',
            role=UserRole.CLIENT,
        )

    # ==========================================
    # User Creation Tests
    # ==========================================

    def test_user_creation_with_phone(self):
        """User should be created with phone number as identifier."""
        self.assertEqual(self.courier.phone_number, '+5511900000002')
        self.assertTrue(self.courier.check_password('testpass123'))

    def test_user_without_password_is_unusable(self):
        self.assertFalse(self.client_user.has_usable_password())

    def test_phone_is_required(self):
        with self.assertRaises(ValueError):
            User.objects.create_user(phone_number='')

    def test_user_uuid_primary_key(self):
        """User should have UUID as primary key."""
        self.assertIsInstance(self.courier.id, uuid.UUID)

    def test_superuser_defaults(self):
        self.assertEqual(self.admin.role, UserRole.ADMIN)
        self.assertTrue(self.admin.is_staff)
        self.assertTrue(self.admin.is_superuser)
        self.assertTrue(self.admin.is_verified)

    def test_role_properties(self):
        self.assertTrue(self.courier.is_courier)
        self.assertFalse(self.courier.is_client)
        self.assertTrue(self.client_user.is_client)
        self.assertFalse(self.admin.is_courier)

    def test_courier_starts_offline(self):
        self.assertFalse(self.courier.is_online)
        self.assertIsNone(self.courier.last_seen_at)

    def test_display_name_falls_back_to_phone(self):
        self.assertEqual(self.courier.display_name, 'Courier Test')
        self.assertEqual(self.client_user.display_name, '+5511900000003')


class TestDispatchSession(TestCase):
    """Tests for session_for()."""

    def setUp(self):
        self.courier = User.objects.create_user(
            phone_number='+5511900000010',
            role=UserRole.COURIER,
            full_name='Carla',
        )

    def test_session_from_user(self):
        session = session_for(self.courier)

        self.assertEqual(session, DispatchSession(
            user_id=str(self.courier.pk),
            role=UserRole.COURIER,
            name='Carla',
        ))
        self.assertTrue(session.is_courier)
        self.assertFalse(session.is_client)
        self.assertFalse(session.is_admin)

    def test_anonymous_has_no_session(self):
        self.assertIsNone(session_for(AnonymousUser()))
        self.assertIsNone(session_for(None))

    def test_inactive_user_has_no_session(self):
        self.courier.is_active = False
        self.assertIsNone(session_for(self.courier))

    def test_session_is_immutable(self):
        session = session_for(self.courier)
        with self.assertRaises(AttributeError):
            session.role = UserRole.ADMIN
