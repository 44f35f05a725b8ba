"""
Dispatch Sweep Tests
====================

1. Courier selection (presence, city, history, availability)
2. Dispatching one shipment (throttle claim + decision window)
3. Full sweeps: timeouts hand the shipment to the next courier
4. Escalated shipments announced once, never re-dispatched
5. Periodic Celery tasks
"""

from datetime import timedelta
from unittest.mock import patch

from django.test import TestCase
from django.utils import timezone

from core.models import User
from shipments.models import DecisionWindow, Shipment, ShipmentState, WindowOutcome
from shipments.services.acceptance import acceptance_controller
from shipments.services.dispatch import (
    Dispatcher,
    couriers_to_skip,
    dispatcher,
    find_available_couriers,
)
from shipments.services.escalation import escalation_policy
from shipments.services.state_machine import state_machine
from shipments.tasks import expire_stale_offers, run_dispatch_sweep

from .helpers import DispatchFixtures


class TestFindAvailableCouriers(DispatchFixtures, TestCase):

    def setUp(self):
        self.shipment = self.create_shipment()

    def test_online_couriers_of_the_city_most_recent_first(self):
        now = timezone.now()
        older = self.create_courier(last_seen_at=now - timedelta(minutes=5))
        newer = self.create_courier(last_seen_at=now)
        never = self.create_courier()

        self.assertEqual(find_available_couriers(self.shipment), [newer, older, never])

    def test_excludes_ineligible_couriers(self):
        eligible = self.create_courier()
        self.create_courier(online=False)
        self.create_courier(city='Campinas')
        self.create_courier(is_active=False)
        self.create_client(is_online=True, city=self.shipment.city)

        rejected = self.create_courier()
        escalation_policy.record_rejection(self.shipment.pk, rejected.pk)

        busy = self.create_courier()
        state_machine.accept_dispatch(self.create_shipment().pk, self.session(busy))

        deciding = self.create_courier()
        acceptance_controller.open_window(self.create_shipment(), deciding.pk)

        shipment = Shipment.objects.get(pk=self.shipment.pk)
        self.assertEqual(find_available_couriers(shipment), [eligible])

    def test_abandoning_courier_is_skipped(self):
        courier = self.create_courier()
        state_machine.accept_dispatch(self.shipment.pk, self.session(courier))
        state_machine.abandon(self.shipment.pk, self.session(courier), 'Imprevisto')

        shipment = Shipment.objects.get(pk=self.shipment.pk)
        self.assertEqual(couriers_to_skip(shipment), {str(courier.pk)})
        self.assertEqual(find_available_couriers(shipment), [])

    def test_city_match_is_case_insensitive(self):
        courier = self.create_courier(city='são paulo')
        self.assertEqual(find_available_couriers(self.shipment), [courier])

    def test_shipment_without_city_reaches_all_cities(self):
        courier = self.create_courier(city='Campinas')
        shipment = self.create_shipment(city='')
        self.assertEqual(find_available_couriers(shipment), [courier])


@patch('shipments.tasks.expire_decision_window.apply_async')
class TestDispatchShipment(DispatchFixtures, TestCase):

    def setUp(self):
        self.shipment = self.create_shipment()
        self.courier = self.create_courier()

    @patch('shipments.events.notify_shipment_available')
    def test_dispatch_opens_window_and_notifies(self, mock_notify, mock_apply_async):
        with self.captureOnCommitCallbacks(execute=True):
            window = dispatcher.dispatch_shipment(self.shipment)

        self.assertIsNotNone(window)
        self.assertEqual(window.courier_id, self.courier.pk)
        self.assertEqual(window.outcome, WindowOutcome.OPEN)

        shipment = Shipment.objects.get(pk=self.shipment.pk)
        self.assertEqual(shipment.notification_count, 1)
        self.assertIsNotNone(shipment.last_notification_at)

        mock_notify.assert_called_once()
        courier_id, notified_shipment, notified_window = mock_notify.call_args[0]
        self.assertEqual(courier_id, self.courier.pk)
        self.assertEqual(notified_shipment.pk, self.shipment.pk)
        self.assertEqual(notified_window.pk, window.pk)
        mock_apply_async.assert_called_once()

    def test_one_open_window_per_shipment(self, mock_apply_async):
        self.create_courier()
        dispatcher.dispatch_shipment(self.shipment)

        shipment = Shipment.objects.get(pk=self.shipment.pk)
        later = timezone.now() + timedelta(seconds=31)
        self.assertIsNone(dispatcher.dispatch_shipment(shipment, later))
        self.assertEqual(DecisionWindow.objects.filter(shipment=self.shipment).count(), 1)

    def test_no_courier_available(self, mock_apply_async):
        User.objects.filter(pk=self.courier.pk).update(is_online=False)
        self.assertIsNone(dispatcher.dispatch_shipment(self.shipment))
        self.assertEqual(Shipment.objects.get(pk=self.shipment.pk).notification_count, 0)


@patch('shipments.tasks.expire_decision_window.apply_async')
class TestSweep(DispatchFixtures, TestCase):

    def setUp(self):
        now = timezone.now()
        self.first = self.create_courier(last_seen_at=now)
        self.second = self.create_courier(last_seen_at=now - timedelta(minutes=1))
        self.shipment = self.create_shipment()

    def test_timeout_moves_shipment_to_next_courier(self, mock_apply_async):
        start = timezone.now()
        stats = dispatcher.sweep(start)
        self.assertEqual(stats['dispatched'], 1)
        first_window = DecisionWindow.objects.get(shipment=self.shipment)
        self.assertEqual(first_window.courier_id, self.first.pk)

        stats = dispatcher.sweep(start + timedelta(seconds=31))

        self.assertEqual(stats['expired_windows'], 1)
        self.assertEqual(stats['dispatched'], 1)
        first_window.refresh_from_db()
        self.assertEqual(first_window.outcome, WindowOutcome.TIMED_OUT)

        open_window = DecisionWindow.objects.get(shipment=self.shipment, outcome=WindowOutcome.OPEN)
        self.assertEqual(open_window.courier_id, self.second.pk)

        shipment = Shipment.objects.get(pk=self.shipment.pk)
        self.assertEqual(shipment.rejection_count, 1)
        self.assertEqual(shipment.notification_count, 2)

    def test_cooldown_holds_back_next_notification(self, mock_apply_async):
        start = timezone.now()
        dispatcher.sweep(start)
        stats = dispatcher.sweep(start + timedelta(seconds=5))
        self.assertEqual(stats['dispatched'], 0)

    def test_max_notifications_stops_dispatch(self, mock_apply_async):
        Shipment.objects.filter(pk=self.shipment.pk).update(notification_count=3)
        stats = dispatcher.sweep()
        self.assertEqual(stats['dispatched'], 0)
        self.assertFalse(DecisionWindow.objects.exists())

    def test_held_shipments_are_not_swept(self, mock_apply_async):
        state_machine.accept_dispatch(self.shipment.pk, self.session(self.first))
        stats = dispatcher.sweep()
        self.assertEqual(stats, {'expired_windows': 0, 'dispatched': 0})

    def test_batch_size(self, mock_apply_async):
        self.create_shipment()
        self.create_shipment()
        stats = Dispatcher(batch_size=1).sweep()
        self.assertEqual(stats['dispatched'], 1)

    @patch('shipments.events.broadcast_open_for_offers')
    def test_escalation_after_timeouts_is_announced_once(self, mock_broadcast, mock_apply_async):
        third = self.create_courier(last_seen_at=timezone.now() - timedelta(minutes=2))
        clock = timezone.now()

        with self.captureOnCommitCallbacks(execute=True):
            for courier in (self.first, self.second, third):
                self.assertEqual(dispatcher.sweep(clock)['dispatched'], 1)
                window = DecisionWindow.objects.get(shipment=self.shipment, outcome=WindowOutcome.OPEN)
                self.assertEqual(window.courier_id, courier.pk)
                clock += timedelta(seconds=31)

            stats = dispatcher.sweep(clock)

        self.assertEqual(stats, {'expired_windows': 1, 'dispatched': 0})
        shipment = Shipment.objects.get(pk=self.shipment.pk)
        self.assertEqual(shipment.state, ShipmentState.OFFERED)
        self.assertEqual(shipment.notification_count, 3)
        mock_broadcast.assert_called_once()
        self.assertEqual(mock_broadcast.call_args[0][0].state, ShipmentState.OFFERED)

        with self.captureOnCommitCallbacks(execute=True):
            stats = dispatcher.sweep(clock + timedelta(minutes=5))

        self.assertEqual(stats, {'expired_windows': 0, 'dispatched': 0})
        mock_broadcast.assert_called_once()
        self.assertFalse(DecisionWindow.objects.filter(outcome=WindowOutcome.OPEN).exists())

    @patch('shipments.events.broadcast_open_for_offers')
    def test_sweep_never_opens_windows_on_escalated_shipments(self, mock_broadcast, mock_apply_async):
        for _ in range(3):
            escalation_policy.record_rejection(self.shipment.pk, automatic=True, reason='timeout')

        stats = dispatcher.sweep()

        self.assertEqual(stats['dispatched'], 0)
        self.assertEqual(Shipment.objects.get(pk=self.shipment.pk).notification_count, 0)
        self.assertFalse(DecisionWindow.objects.exists())


# ==========================================
# Periodic Tasks
# ==========================================

class TestPeriodicTasks(DispatchFixtures, TestCase):

    @patch('shipments.tasks.expire_decision_window.apply_async')
    def test_sweep_task_dispatches(self, mock_apply_async):
        self.create_courier()
        self.create_shipment()

        stats = run_dispatch_sweep()

        self.assertEqual(stats['dispatched'], 1)

    @patch('shipments.services.dispatch.dispatcher.sweep', side_effect=RuntimeError('db down'))
    def test_sweep_task_logs_and_returns_empty_on_failure(self, mock_sweep):
        with self.assertLogs('shipments.tasks', level='ERROR'):
            self.assertEqual(run_dispatch_sweep(), {})

    def test_offer_expiry_task_with_nothing_pending(self):
        self.assertEqual(expire_stale_offers(), 0)
