"""
Shipment Store for PAP Dispatch

The only place that writes shipment rows. Every mutation is a conditional
UPDATE on (id, state, version); the timeline append rides the same write so
events for one shipment are serialized in commit order.
"""

import logging
from typing import Callable, Iterable, List, Optional, Tuple

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from shipments.documents import TimelineEvent
from shipments.exceptions import ShipmentNotFound, StaleWrite
from shipments.models import (
    ASSIGNED_STATES,
    PRE_ASSIGNMENT_STATES,
    Shipment,
    ShipmentState,
)

logger = logging.getLogger(__name__)

# mutation(shipment) -> (target_state, event, field changes)
Mutation = Callable[[Shipment], Tuple[str, TimelineEvent, dict]]

ACTIVE_COURIER_STATES = ASSIGNED_STATES - {ShipmentState.DELIVERED}


class ShipmentStore:
    """
    Load, create and conditionally commit shipment documents.
    """

    def __init__(self, commit_retries: Optional[int] = None):
        self.commit_retries = commit_retries or settings.DISPATCH_COMMIT_RETRIES

    # ==========================================
    # READS
    # ==========================================

    def get(self, shipment_id) -> Shipment:
        try:
            return Shipment.objects.select_related('client', 'courier').get(pk=shipment_id)
        except (Shipment.DoesNotExist, ValidationError, ValueError):
            raise ShipmentNotFound(f"Envio {shipment_id} não encontrado")

    def for_client(self, client_id):
        return Shipment.objects.filter(client_id=client_id).select_related('client', 'courier')

    def visible_to_courier(self, courier_id, city: Optional[str] = None):
        """
        Shipments the courier holds plus the ones nobody holds yet in their
        city. A shipment without a city is visible everywhere.
        """
        available = Q(state__in=PRE_ASSIGNMENT_STATES)
        if city:
            available &= Q(city__iexact=city) | Q(city='')
        return Shipment.objects.filter(
            Q(courier_id=courier_id, state__in=ASSIGNED_STATES) | available
        ).select_related('client', 'courier')

    @staticmethod
    def hide_abandoned(shipments: Iterable[Shipment], courier_id) -> List[Shipment]:
        """Shipments a courier abandoned are never shown to them again."""
        return [
            shipment for shipment in shipments
            if str(shipment.courier_id) == str(courier_id) or not shipment.abandoned_by(courier_id)
        ]

    # ==========================================
    # WRITES
    # ==========================================

    def create(self, event: TimelineEvent, **fields) -> Shipment:
        shipment = Shipment.objects.create(
            state=ShipmentState.CREATED,
            timeline=[event.to_document()],
            version=0,
            **fields
        )
        logger.info(f"[STORE] Shipment {shipment.pk} created")
        return shipment

    def commit(self, shipment: Shipment, target_state: str, event: TimelineEvent, **changes) -> Shipment:
        """
        Write `changes` + state + one timeline event if the row still has the
        snapshot's state and version. Raises StaleWrite otherwise.
        """
        with transaction.atomic():
            updated = Shipment.objects.filter(
                pk=shipment.pk,
                state=shipment.state,
                version=shipment.version,
            ).update(
                state=target_state,
                timeline=list(shipment.timeline) + [event.to_document()],
                version=F('version') + 1,
                updated_at=timezone.now(),
                **changes
            )

        if not updated:
            raise StaleWrite(shipment.pk, shipment.state, shipment.version)

        logger.debug(
            f"[STORE] Shipment {shipment.pk} {shipment.state} -> {target_state} "
            f"(v{shipment.version + 1}, {event.tipo})"
        )
        return self.get(shipment.pk)

    def apply(
        self,
        shipment_id,
        mutation: Mutation,
        snapshot: Optional[Shipment] = None,
        retries: Optional[int] = None,
    ) -> Shipment:
        """
        Read, plan and commit, re-reading on version conflicts.

        The mutation re-validates its guards against each fresh read, so a
        conflict that invalidates the transition surfaces as the mutation's
        own error. StaleWrite escapes only after every retry lost.
        """
        attempts = retries or self.commit_retries
        shipment = snapshot
        last_error = None

        for attempt in range(attempts):
            if shipment is None:
                shipment = self.get(shipment_id)
            target_state, event, changes = mutation(shipment)
            try:
                return self.commit(shipment, target_state, event, **changes)
            except StaleWrite as e:
                last_error = e
                logger.info(
                    f"[STORE] Version conflict on {shipment_id} "
                    f"(attempt {attempt + 1}/{attempts}), re-reading"
                )
                shipment = None

        raise last_error

    def claim_notification(
        self,
        shipment: Shipment,
        max_notifications: int,
        states: Iterable[str],
        now=None,
    ) -> bool:
        """
        Increment the notification counter if nobody else did since the
        snapshot. Not a state transition: no timeline event, no version bump.
        """
        now = now or timezone.now()
        queryset = Shipment.objects.filter(
            pk=shipment.pk,
            state__in=list(states),
            notification_count=shipment.notification_count,
            notification_count__lt=max_notifications,
        )
        if shipment.last_notification_at is None:
            queryset = queryset.filter(last_notification_at__isnull=True)
        else:
            queryset = queryset.filter(last_notification_at=shipment.last_notification_at)

        claimed = queryset.update(
            notification_count=F('notification_count') + 1,
            last_notification_at=now,
        ) == 1

        if claimed:
            shipment.notification_count += 1
            shipment.last_notification_at = now
        return claimed

    def overdue_for_notification(self, cooldown_cutoff, max_notifications: int, states: Iterable[str]):
        """Shipments whose throttle would currently allow another notification."""
        return Shipment.objects.filter(
            state__in=list(states),
            notification_count__lt=max_notifications,
        ).filter(
            Q(last_notification_at__isnull=True) | Q(last_notification_at__lte=cooldown_cutoff)
        ).order_by('created_at')


# Singleton instance
shipment_store = ShipmentStore()
