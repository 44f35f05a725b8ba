"""
SHIPMENTS App - Real-time Event Broadcasting

Pushes shipment changes and dispatch notifications over Django Channels
groups. Engine services call these after their writes commit.
"""

import logging
from typing import Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.utils import timezone
from django.utils.text import slugify

logger = logging.getLogger(__name__)


def courier_group(courier_id) -> str:
    return f'courier_{courier_id}'


def shipment_group(shipment_id) -> str:
    return f'shipment_{shipment_id}'


def dispatch_group(city: Optional[str]) -> str:
    return f"dispatch_{slugify(city or '') or 'all'}"


def _send_group_event(group_name: str, event: dict) -> bool:
    """Send event to a channel group. A broken layer must not undo a commit."""
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return False

    try:
        async_to_sync(channel_layer.group_send)(group_name, event)
        return True
    except Exception as e:
        logger.error(f"[EVENTS] Failed to send to group {group_name}: {e}")
        return False


# ============================================
# SHIPMENT EVENTS
# ============================================

def broadcast_shipment_update(shipment, event_type: str = ''):
    """
    Broadcast a committed shipment change.

    Notifies:
    - Clients tracking the shipment
    - The courier holding it (if any)
    - The dispatch monitor of its city
    """
    payload = {
        'type': 'shipment_update',
        'shipment_id': str(shipment.pk),
        'state': shipment.state,
        'event': event_type,
        'version': shipment.version,
        'timestamp': timezone.now().isoformat(),
    }

    _send_group_event(shipment_group(shipment.pk), payload)
    if shipment.courier_id:
        _send_group_event(courier_group(shipment.courier_id), payload)
    _send_group_event(dispatch_group(shipment.city), payload)

    logger.debug(f"[EVENTS] Shipment {shipment.pk} update broadcast ({shipment.state})")


def notify_shipment_available(courier_id, shipment, window) -> bool:
    """Show a shipment to one courier together with their decision deadline."""
    sent = _send_group_event(
        courier_group(courier_id),
        {
            'type': 'shipment_available',
            'shipment_id': str(shipment.pk),
            'window_id': str(window.pk),
            'deadline': window.deadline.isoformat(),
            'state': shipment.state,
            'pickup_address': shipment.pickup.get('endereco', ''),
            'dropoff_address': shipment.dropoff.get('endereco', ''),
            'distance_km': shipment.quote.get('distKm'),
            'duration_min': shipment.quote.get('tempoMin'),
            'price': str(shipment.effective_price),
            'currency': shipment.quote.get('moeda'),
        }
    )
    if sent:
        logger.info(f"[EVENTS] Shipment {shipment.pk} offered to courier {courier_id}")
    return sent


def broadcast_open_for_offers(shipment):
    """Escalated shipment: every courier of the city may send a counter-offer."""
    _send_group_event(
        dispatch_group(shipment.city),
        {
            'type': 'shipment_available',
            'shipment_id': str(shipment.pk),
            'window_id': None,
            'deadline': None,
            'state': shipment.state,
            'pickup_address': shipment.pickup.get('endereco', ''),
            'dropoff_address': shipment.dropoff.get('endereco', ''),
            'distance_km': shipment.quote.get('distKm'),
            'duration_min': shipment.quote.get('tempoMin'),
            'price': str(shipment.effective_price),
            'currency': shipment.quote.get('moeda'),
        }
    )


def notify_window_closed(window):
    _send_group_event(
        courier_group(window.courier_id),
        {
            'type': 'window_closed',
            'window_id': str(window.pk),
            'shipment_id': str(window.shipment_id),
            'outcome': window.outcome,
        }
    )
