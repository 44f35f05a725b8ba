"""
Notification Throttler Tests
"""

from datetime import timedelta

from django.test import TestCase
from django.utils import timezone

from shipments.models import Shipment, ShipmentState
from shipments.services.state_machine import state_machine
from shipments.services.throttling import NotificationThrottler

from .helpers import CITY, DispatchFixtures


class TestShouldNotify(DispatchFixtures, TestCase):

    def setUp(self):
        self.throttler = NotificationThrottler(max_notifications=3, cooldown_seconds=30)
        self.shipment = self.create_shipment()
        self.now = timezone.now()

    def test_fresh_shipment_is_notifiable(self):
        self.assertTrue(self.throttler.should_notify(self.shipment, CITY, self.now))

    def test_city_match_is_case_insensitive(self):
        self.assertTrue(self.throttler.should_notify(self.shipment, 'SÃO PAULO', self.now))
        self.assertFalse(self.throttler.should_notify(self.shipment, 'Campinas', self.now))

    def test_shipment_without_city_reaches_any_courier(self):
        shipment = self.create_shipment(city='')
        self.assertTrue(self.throttler.should_notify(shipment, 'Campinas', self.now))

    def test_cooldown(self):
        self.shipment.notification_count = 1
        self.shipment.last_notification_at = self.now - timedelta(seconds=29)
        self.assertFalse(self.throttler.should_notify(self.shipment, CITY, self.now))

        self.shipment.last_notification_at = self.now - timedelta(seconds=30)
        self.assertTrue(self.throttler.should_notify(self.shipment, CITY, self.now))

    def test_max_notifications(self):
        self.shipment.notification_count = 3
        self.shipment.last_notification_at = self.now - timedelta(hours=1)
        self.assertFalse(self.throttler.should_notify(self.shipment, CITY, self.now))

    def test_held_shipment_is_not_notifiable(self):
        result = state_machine.accept_dispatch(self.shipment.pk, self.session(self.create_courier()))
        self.assertFalse(self.throttler.should_notify(result.shipment, CITY, self.now))

    def test_negotiation_states_are_notifiable(self):
        self.shipment.state = ShipmentState.OFFERED
        self.assertTrue(self.throttler.should_notify(self.shipment, CITY, self.now))


class TestClaim(DispatchFixtures, TestCase):

    def setUp(self):
        self.throttler = NotificationThrottler(max_notifications=3, cooldown_seconds=30)
        self.shipment = self.create_shipment()
        self.now = timezone.now()

    def test_claim_records_notification(self):
        self.assertTrue(self.throttler.claim(self.shipment, CITY, self.now))

        shipment = Shipment.objects.get(pk=self.shipment.pk)
        self.assertEqual(shipment.notification_count, 1)
        self.assertEqual(shipment.last_notification_at, self.now)
        # Not a state transition
        self.assertEqual(shipment.version, 0)
        self.assertEqual(len(shipment.timeline), 1)

    def test_second_claim_within_cooldown_is_refused(self):
        self.throttler.claim(self.shipment, CITY, self.now)
        self.assertFalse(self.throttler.claim(self.shipment, CITY, self.now + timedelta(seconds=10)))
        self.assertEqual(Shipment.objects.get(pk=self.shipment.pk).notification_count, 1)

    def test_stops_after_max_notifications(self):
        for i in range(5):
            self.throttler.claim(self.shipment, CITY, self.now + timedelta(seconds=31 * i))

        self.assertEqual(Shipment.objects.get(pk=self.shipment.pk).notification_count, 3)

    def test_racing_claims_on_same_snapshot(self):
        first = Shipment.objects.get(pk=self.shipment.pk)
        second = Shipment.objects.get(pk=self.shipment.pk)

        self.assertTrue(self.throttler.claim(first, CITY, self.now))
        self.assertFalse(self.throttler.claim(second, CITY, self.now))
        self.assertEqual(Shipment.objects.get(pk=self.shipment.pk).notification_count, 1)

    def test_claim_does_not_conflict_with_transitions(self):
        snapshot = Shipment.objects.get(pk=self.shipment.pk)
        self.throttler.claim(self.shipment, CITY, self.now)

        result = state_machine.accept_dispatch(
            self.shipment.pk, self.session(self.create_courier()), snapshot=snapshot,
        )
        self.assertTrue(result.success)
        self.assertEqual(result.shipment.notification_count, 1)


class TestCandidates(DispatchFixtures, TestCase):

    def test_candidates_respect_cooldown_and_limit(self):
        throttler = NotificationThrottler(max_notifications=2, cooldown_seconds=30)
        now = timezone.now()
        fresh = self.create_shipment()
        cooling = self.create_shipment()
        exhausted = self.create_shipment()
        held = self.create_shipment()

        Shipment.objects.filter(pk=cooling.pk).update(notification_count=1, last_notification_at=now)
        Shipment.objects.filter(pk=exhausted.pk).update(
            notification_count=2, last_notification_at=now - timedelta(hours=1),
        )
        state_machine.accept_dispatch(held.pk, self.session(self.create_courier()))

        self.assertEqual(list(throttler.candidates(now)), [fresh])
        self.assertEqual(
            set(throttler.candidates(now + timedelta(seconds=31))),
            {fresh, cooling},
        )
