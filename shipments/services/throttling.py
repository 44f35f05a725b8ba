"""
Notification Throttler for PAP Dispatch

Decides whether a courier may be shown a shipment. The counters live on
the shipment row, so the limit holds across workers and restarts.
"""

import logging
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone

from shipments.models import NOTIFIABLE_STATES, Shipment

from .store import ShipmentStore, shipment_store

logger = logging.getLogger(__name__)


class NotificationThrottler:
    """
    A shipment is notifiable when:
    - it is still waiting for a courier (CREATED, COURIER_ABANDONED,
      OFFERED or COUNTER_OFFER)
    - it has no city, or the courier is in the same city
    - it was notified fewer than max_notifications times
    - the last notification is at least `cooldown` old

    The count is per shipment, not per courier.
    """

    def __init__(
        self,
        store: Optional[ShipmentStore] = None,
        max_notifications: Optional[int] = None,
        cooldown_seconds: Optional[int] = None,
    ):
        self.store = store or shipment_store
        self.max_notifications = (
            max_notifications if max_notifications is not None
            else settings.DISPATCH_MAX_NOTIFICATIONS
        )
        self.cooldown = timedelta(seconds=(
            cooldown_seconds if cooldown_seconds is not None
            else settings.DISPATCH_NOTIFICATION_COOLDOWN_SECONDS
        ))

    def should_notify(self, shipment: Shipment, courier_city: str, now=None) -> bool:
        if shipment.state not in NOTIFIABLE_STATES:
            return False

        if shipment.city and (courier_city or '').casefold() != shipment.city.casefold():
            return False

        if shipment.notification_count >= self.max_notifications:
            return False

        if shipment.last_notification_at:
            now = now or timezone.now()
            if now - shipment.last_notification_at < self.cooldown:
                return False

        return True

    def claim(self, shipment: Shipment, courier_city: str, now=None) -> bool:
        """
        Check and record a notification in one conditional write.

        Two dispatch workers racing on the same snapshot cannot both win.
        """
        now = now or timezone.now()
        if not self.should_notify(shipment, courier_city, now):
            return False

        claimed = self.store.claim_notification(
            shipment,
            max_notifications=self.max_notifications,
            states=NOTIFIABLE_STATES,
            now=now,
        )
        if claimed:
            logger.info(
                f"[THROTTLE] Shipment {shipment.pk} notification "
                f"{shipment.notification_count}/{self.max_notifications}"
            )
        else:
            logger.debug(f"[THROTTLE] Shipment {shipment.pk} claim lost to a concurrent notifier")
        return claimed

    def candidates(self, now=None):
        """Shipments the throttle would currently let through, any city."""
        now = now or timezone.now()
        return self.store.overdue_for_notification(
            cooldown_cutoff=now - self.cooldown,
            max_notifications=self.max_notifications,
            states=NOTIFIABLE_STATES,
        )


# Singleton instance
notification_throttler = NotificationThrottler()
