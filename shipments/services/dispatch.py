"""
Dispatch Service for PAP Dispatch

Background matcher: picks a courier for each waiting shipment, claims a
notification through the throttler, opens the courier's decision window
and pushes the offer over Channels.
"""

import logging
from typing import Dict, List, Optional, Set

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from core.models import User, UserRole
from shipments import events
from shipments.models import (
    DecisionWindow,
    Shipment,
    TimelineEventType,
    WindowOutcome,
)

from .acceptance import AcceptanceWindowController, acceptance_controller
from .state_machine import ESCALATABLE_STATES
from .store import ACTIVE_COURIER_STATES, ShipmentStore, shipment_store
from .throttling import NotificationThrottler, notification_throttler

logger = logging.getLogger(__name__)


# ============================================
# COURIER SELECTION
# ============================================

def couriers_to_skip(shipment: Shipment) -> Set[str]:
    """Couriers who already rejected or abandoned this shipment."""
    skipped = set()
    for event in shipment.timeline:
        if event.get('tipo') in (
            TimelineEventType.REJECTED_BY_COURIER,
            TimelineEventType.ESCALATED_TO_NEGOTIATION,
            TimelineEventType.COURIER_ABANDONED,
        ):
            courier_uid = (event.get('payload') or {}).get('courierUid')
            if courier_uid:
                skipped.add(courier_uid)
    return skipped


def find_available_couriers(shipment: Shipment, limit: int = 10) -> List[User]:
    """
    Online couriers who may be shown this shipment.

    Filters:
    - Role = COURIER, active and online
    - same city as the shipment (when it has one)
    - has not rejected or abandoned it
    - not holding another shipment or another open decision window

    Most recently seen first.
    """
    couriers = User.objects.filter(
        role=UserRole.COURIER,
        is_active=True,
        is_online=True,
    )
    if shipment.city:
        couriers = couriers.filter(city__iexact=shipment.city)

    busy = Shipment.objects.filter(
        state__in=ACTIVE_COURIER_STATES,
        courier__isnull=False,
    ).values('courier_id')
    deciding = DecisionWindow.objects.filter(outcome=WindowOutcome.OPEN).values('courier_id')

    couriers = couriers.exclude(
        pk__in=list(couriers_to_skip(shipment))
    ).exclude(
        pk__in=busy
    ).exclude(
        pk__in=deciding
    ).order_by(F('last_seen_at').desc(nulls_last=True))

    return list(couriers[:limit])


class Dispatcher:
    """
    One sweep over the shipments the throttler currently lets through.
    """

    def __init__(
        self,
        store: Optional[ShipmentStore] = None,
        throttler: Optional[NotificationThrottler] = None,
        controller: Optional[AcceptanceWindowController] = None,
        batch_size: Optional[int] = None,
    ):
        self.store = store or shipment_store
        self.throttler = throttler or notification_throttler
        self.controller = controller or acceptance_controller
        self.batch_size = batch_size or settings.DISPATCH_SWEEP_BATCH_SIZE

    def dispatch_shipment(self, shipment: Shipment, now=None) -> Optional[DecisionWindow]:
        """Show a CREATED/COURIER_ABANDONED shipment to the next courier."""
        now = now or timezone.now()

        if DecisionWindow.objects.filter(shipment=shipment, outcome=WindowOutcome.OPEN).exists():
            logger.debug(f"[DISPATCH] Shipment {shipment.pk} already has a courier deciding")
            return None

        for courier in find_available_couriers(shipment):
            if not self.throttler.should_notify(shipment, courier.city, now):
                continue
            if not self.throttler.claim(shipment, courier.city, now):
                return None

            window = self.controller.open_window(shipment, courier.pk)
            transaction.on_commit(
                lambda c=courier.pk, w=window: events.notify_shipment_available(c, shipment, w)
            )
            logger.info(
                f"[DISPATCH] Shipment {shipment.pk} -> courier {courier.phone_number} "
                f"(notification {shipment.notification_count})"
            )
            return window

        logger.debug(f"[DISPATCH] No courier available for shipment {shipment.pk}")
        return None

    def sweep(self, now=None) -> Dict[str, int]:
        now = now or timezone.now()
        stats = {
            'expired_windows': self.controller.expire_overdue(now),
            'dispatched': 0,
        }

        # Escalated shipments are announced once, by the escalating write
        waiting = self.throttler.candidates(now).filter(state__in=ESCALATABLE_STATES)
        for shipment in waiting[:self.batch_size]:
            if self.dispatch_shipment(shipment, now):
                stats['dispatched'] += 1

        if any(stats.values()):
            logger.info(
                f"[DISPATCH] Sweep: {stats['dispatched']} dispatched, "
                f"{stats['expired_windows']} windows expired"
            )
        return stats


# Singleton instance
dispatcher = Dispatcher()
