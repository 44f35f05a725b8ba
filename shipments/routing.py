"""
SHIPMENTS App - WebSocket Routing Configuration

Maps WebSocket URLs to consumers for real-time dispatch and tracking.
"""

from django.urls import re_path
from . import consumers


websocket_urlpatterns = [
    # Track a specific shipment in real-time
    # ws://localhost:8000/ws/shipment/<uuid>/
    re_path(
        r'ws/shipment/(?P<shipment_id>[0-9a-f-]+)/$',
        consumers.ShipmentTrackingConsumer.as_asgi()
    ),

    # Courier app - receive shipment offers and window updates
    # ws://localhost:8000/ws/courier/
    re_path(
        r'ws/courier/$',
        consumers.CourierConsumer.as_asgi()
    ),
]
