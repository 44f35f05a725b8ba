"""
Rejection Escalation Policy for PAP Dispatch

Counts courier rejections (explicit, timed out or closed window) and opens
the shipment to counter-offers when the count reaches the threshold.
The escalating write announces the shipment to the couriers of its city.
"""

import logging
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from shipments import events
from shipments.exceptions import ValidationFailed
from shipments.models import Shipment, TimelineEventType

from .outcomes import DispatchResult, returns_result
from .state_machine import (
    Action,
    ShipmentStateMachine,
    Step,
    clean_text,
    state_machine,
)

logger = logging.getLogger(__name__)


class RejectionEscalationPolicy:
    """
    Each rejection is a version-conditional write of count + 1 on a fresh
    read. The write that takes the count from threshold - 1 to threshold
    also moves CREATED/COURIER_ABANDONED to OFFERED; escalated_at makes it a
    one-time edge, so 4, 5, ... never escalate again.
    """

    def __init__(
        self,
        machine: Optional[ShipmentStateMachine] = None,
        threshold: Optional[int] = None,
    ):
        self.machine = machine or state_machine
        self.threshold = threshold if threshold is not None else settings.DISPATCH_REJECTION_THRESHOLD

    def _plan(self, courier_id, automatic: bool, reason: Optional[str]):
        def plan(shipment: Shipment) -> Step:
            count = shipment.rejection_count + 1
            payload = {
                'courierUid': str(courier_id) if courier_id else None,
                'rejectionCount': count,
                'automatic': automatic,
            }
            if reason:
                payload['reason'] = reason

            escalate = (
                count == self.threshold
                and shipment.escalated_at is None
                and self.machine.allows(Action.ESCALATE, shipment.state)
            )
            if escalate:
                return Step(
                    action=Action.ESCALATE,
                    changes={'rejection_count': count, 'escalated_at': timezone.now()},
                    payload=payload,
                    description=(
                        f"Envio recusado {count} vezes; aberto para contra-ofertas"
                    ),
                )

            return Step(
                changes={'rejection_count': count},
                payload=payload,
                description=f"Entregador recusou pela {count}ª vez",
            )
        return plan

    def record(self, shipment_id, courier_id=None, automatic: bool = False, reason=None) -> Shipment:
        """Raising variant, used by the acceptance window controller."""
        reason = clean_text(reason, 'Motivo')
        shipment = self.machine.transition(
            shipment_id,
            Action.REJECT_DISPATCH,
            str(courier_id) if courier_id else None,
            self._plan(courier_id, automatic, reason),
        )

        if self.escalated_by_last_write(shipment):
            transaction.on_commit(lambda: events.broadcast_open_for_offers(shipment))
            logger.info(
                f"[ESCALATION] Shipment {shipment.pk} escalated to negotiation "
                f"after {shipment.rejection_count} rejections"
            )
        else:
            logger.info(
                f"[ESCALATION] Shipment {shipment.pk} rejection #{shipment.rejection_count} "
                f"({'automatic' if automatic else 'explicit'})"
            )
        return shipment

    @returns_result
    def record_rejection(
        self,
        shipment_id,
        courier_id=None,
        automatic: bool = False,
        reason: Optional[str] = None,
    ) -> DispatchResult:
        if courier_id is None and not automatic:
            raise ValidationFailed("Rejeição explícita exige o entregador")
        shipment = self.record(shipment_id, courier_id, automatic, reason)
        return DispatchResult.ok(
            shipment,
            "Rejeição registrada",
            rejection_count=shipment.rejection_count,
            escalated=self.escalated_by_last_write(shipment),
        )

    @staticmethod
    def escalated_by_last_write(shipment: Shipment) -> bool:
        return bool(shipment.timeline) and (
            shipment.timeline[-1].get('tipo') == TimelineEventType.ESCALATED_TO_NEGOTIATION
        )


# Singleton instance
escalation_policy = RejectionEscalationPolicy()
