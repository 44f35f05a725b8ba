"""
Rejection Escalation Tests
==========================

1. Counting explicit and automatic rejections
2. Escalation at the threshold, exactly once
3. Concurrent rejections (version conflicts)
"""

from unittest.mock import patch

from django.db.models import F
from django.test import TestCase

from shipments.exceptions import FailureReason
from shipments.models import Shipment, ShipmentState, TimelineEventType
from shipments.services.escalation import RejectionEscalationPolicy, escalation_policy
from shipments.services.state_machine import state_machine
from shipments.services.store import ShipmentStore

from .helpers import DispatchFixtures


class TestRejectionCounting(DispatchFixtures, TestCase):

    def setUp(self):
        self.courier = self.create_courier()
        self.shipment = self.create_shipment()

    def test_explicit_rejection_increments(self):
        result = escalation_policy.record_rejection(self.shipment.pk, self.courier.pk, reason='Longe demais')

        self.assertTrue(result.success)
        self.assertEqual(result.data['rejection_count'], 1)
        self.assertFalse(result.data['escalated'])

        shipment = result.shipment
        self.assertEqual(shipment.state, ShipmentState.CREATED)
        self.assertEqual(shipment.version, 1)
        event = shipment.timeline[-1]
        self.assertEqual(event['tipo'], TimelineEventType.REJECTED_BY_COURIER)
        self.assertEqual(event['payload']['courierUid'], str(self.courier.pk))
        self.assertEqual(event['payload']['rejectionCount'], 1)
        self.assertFalse(event['payload']['automatic'])
        self.assertEqual(event['payload']['reason'], 'Longe demais')

    def test_automatic_rejection_without_courier(self):
        result = escalation_policy.record_rejection(self.shipment.pk, automatic=True, reason='timeout')

        self.assertTrue(result.success)
        event = result.shipment.timeline[-1]
        self.assertTrue(event['payload']['automatic'])
        self.assertIsNone(event['payload']['courierUid'])
        self.assertEqual(event['payload']['actor'], 'system')

    def test_explicit_rejection_requires_courier(self):
        result = escalation_policy.record_rejection(self.shipment.pk)
        self.assertEqual(result.reason, FailureReason.VALIDATION_ERROR)
        self.assertEqual(Shipment.objects.get(pk=self.shipment.pk).rejection_count, 0)

    def test_rejecting_held_shipment_is_invalid(self):
        state_machine.accept_dispatch(self.shipment.pk, self.session(self.courier))
        result = escalation_policy.record_rejection(self.shipment.pk, self.create_courier().pk)
        self.assertEqual(result.reason, FailureReason.INVALID_TRANSITION)


class TestEscalation(DispatchFixtures, TestCase):

    def setUp(self):
        self.shipment = self.create_shipment()
        self.couriers = [self.create_courier() for _ in range(4)]

    @patch('shipments.events.broadcast_open_for_offers')
    def test_escalating_write_announces_shipment_once(self, mock_broadcast):
        with self.captureOnCommitCallbacks(execute=True):
            for courier in self.couriers:
                escalation_policy.record_rejection(self.shipment.pk, courier.pk)

        mock_broadcast.assert_called_once()
        announced = mock_broadcast.call_args[0][0]
        self.assertEqual(announced.pk, self.shipment.pk)
        self.assertEqual(announced.state, ShipmentState.OFFERED)

    def test_third_rejection_escalates(self):
        results = [
            escalation_policy.record_rejection(self.shipment.pk, courier.pk)
            for courier in self.couriers[:3]
        ]

        self.assertEqual([r.data['escalated'] for r in results], [False, False, True])
        shipment = results[-1].shipment
        self.assertEqual(shipment.state, ShipmentState.OFFERED)
        self.assertEqual(shipment.rejection_count, 3)
        self.assertIsNotNone(shipment.escalated_at)

        event = shipment.timeline[-1]
        self.assertEqual(event['tipo'], TimelineEventType.ESCALATED_TO_NEGOTIATION)
        self.assertEqual(event['payload']['rejectionCount'], 3)

    def test_fourth_rejection_does_not_escalate_again(self):
        for courier in self.couriers:
            result = escalation_policy.record_rejection(self.shipment.pk, courier.pk)

        self.assertFalse(result.data['escalated'])
        shipment = Shipment.objects.get(pk=self.shipment.pk)
        self.assertEqual(shipment.rejection_count, 4)
        self.assertEqual(shipment.state, ShipmentState.OFFERED)
        escalations = [e for e in shipment.timeline if e['tipo'] == TimelineEventType.ESCALATED_TO_NEGOTIATION]
        self.assertEqual(len(escalations), 1)

    def test_mixed_explicit_and_automatic_count_together(self):
        escalation_policy.record_rejection(self.shipment.pk, self.couriers[0].pk)
        escalation_policy.record_rejection(self.shipment.pk, self.couriers[1].pk, automatic=True, reason='timeout')
        result = escalation_policy.record_rejection(self.shipment.pk, self.couriers[2].pk, automatic=True, reason='closed')
        self.assertTrue(result.data['escalated'])

    def test_custom_threshold(self):
        policy = RejectionEscalationPolicy(threshold=1)
        result = policy.record_rejection(self.shipment.pk, self.couriers[0].pk)
        self.assertTrue(result.data['escalated'])
        self.assertEqual(result.shipment.state, ShipmentState.OFFERED)

    def test_abandoned_shipment_escalates(self):
        courier = self.couriers[0]
        state_machine.accept_dispatch(self.shipment.pk, self.session(courier))
        state_machine.abandon(self.shipment.pk, self.session(courier), 'Imprevisto')
        Shipment.objects.filter(pk=self.shipment.pk).update(rejection_count=2)

        result = escalation_policy.record_rejection(self.shipment.pk, self.couriers[1].pk)

        self.assertTrue(result.data['escalated'])
        self.assertEqual(result.shipment.state, ShipmentState.OFFERED)


class TestConcurrentRejections(DispatchFixtures, TestCase):

    def setUp(self):
        self.shipment = self.create_shipment()
        self.courier_a = self.create_courier()
        self.courier_b = self.create_courier()

    def test_conflicting_write_is_retried_on_fresh_read(self):
        """A rejection committed between read and write is not lost."""
        real_commit = ShipmentStore.commit
        raced = []

        def racing_commit(store, shipment, target_state, event, **changes):
            if not raced:
                raced.append(shipment.version)
                Shipment.objects.filter(pk=shipment.pk).update(
                    rejection_count=F('rejection_count') + 1,
                    version=F('version') + 1,
                )
            return real_commit(store, shipment, target_state, event, **changes)

        with patch.object(ShipmentStore, 'commit', autospec=True, side_effect=racing_commit):
            result = escalation_policy.record_rejection(self.shipment.pk, self.courier_a.pk)

        self.assertTrue(result.success)
        self.assertEqual(raced, [0])
        self.assertEqual(result.shipment.rejection_count, 2)
        self.assertEqual(result.shipment.version, 2)
        self.assertEqual(result.shipment.timeline[-1]['payload']['rejectionCount'], 2)

    def test_racing_rejections_at_threshold_escalate_once(self):
        Shipment.objects.filter(pk=self.shipment.pk).update(rejection_count=2)
        real_commit = ShipmentStore.commit
        raced = []

        def racing_commit(store, shipment, target_state, event, **changes):
            if not raced:
                raced.append(True)
                escalation_policy.record(shipment.pk, self.courier_b.pk)
            return real_commit(store, shipment, target_state, event, **changes)

        with patch.object(ShipmentStore, 'commit', autospec=True, side_effect=racing_commit):
            result = escalation_policy.record_rejection(self.shipment.pk, self.courier_a.pk)

        self.assertTrue(result.success)
        self.assertFalse(result.data['escalated'])

        shipment = Shipment.objects.get(pk=self.shipment.pk)
        self.assertEqual(shipment.state, ShipmentState.OFFERED)
        self.assertEqual(shipment.rejection_count, 4)
        tipos = [e['tipo'] for e in shipment.timeline]
        self.assertEqual(tipos.count(TimelineEventType.ESCALATED_TO_NEGOTIATION), 1)
        self.assertEqual(tipos.count(TimelineEventType.REJECTED_BY_COURIER), 1)

    def test_gives_up_after_retries(self):
        real_commit = ShipmentStore.commit

        def always_stale(store, shipment, target_state, event, **changes):
            Shipment.objects.filter(pk=shipment.pk).update(version=F('version') + 1)
            return real_commit(store, shipment, target_state, event, **changes)

        policy = RejectionEscalationPolicy()
        with patch.object(ShipmentStore, 'commit', autospec=True, side_effect=always_stale) as mock_commit:
            result = policy.record_rejection(self.shipment.pk, self.courier_a.pk)

        self.assertEqual(result.reason, FailureReason.INVALID_TRANSITION)
        self.assertEqual(mock_commit.call_count, 5)
        self.assertEqual(Shipment.objects.get(pk=self.shipment.pk).rejection_count, 0)
