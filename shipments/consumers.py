"""
SHIPMENTS App - WebSocket Consumers for Real-time Dispatch

Provides real-time updates for:
- Shipment tracking (the owning client)
- Courier dispatch notifications (shipment offers, decision windows)
"""

import logging
from typing import Any, Dict, Optional

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer
from django.core.exceptions import ValidationError
from django.utils import timezone

from .events import courier_group, dispatch_group, shipment_group

logger = logging.getLogger(__name__)


class ShipmentTrackingConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer for tracking one shipment.

    Clients connect to: ws://host/ws/shipment/<shipment_id>/

    Events received:
    - shipment_update: state changed (timeline event committed)
    """

    async def connect(self):
        self.shipment_id = self.scope['url_route']['kwargs']['shipment_id']
        self.room_group_name = shipment_group(self.shipment_id)

        shipment = await self.get_shipment()
        if not shipment:
            await self.close(code=4004)
            return

        await self.channel_layer.group_add(self.room_group_name, self.channel_name)
        await self.accept()

        await self.send_json({
            'type': 'connection_established',
            'shipment_id': self.shipment_id,
            'state': shipment['state'],
            'eta_min': shipment['eta_min'],
        })
        logger.info(f"[WS] Client connected to shipment {self.shipment_id[:8]}")

    async def disconnect(self, close_code):
        if hasattr(self, 'room_group_name'):
            await self.channel_layer.group_discard(self.room_group_name, self.channel_name)

    async def receive_json(self, content):
        if content.get('type') == 'ping':
            await self.send_json({'type': 'pong'})

    # ============================================
    # Event Handlers (called via channel_layer.group_send)
    # ============================================

    async def shipment_update(self, event):
        await self.send_json({
            'type': 'status_update',
            'state': event['state'],
            'event': event.get('event', ''),
            'timestamp': event['timestamp'],
        })

    # ============================================
    # Database helpers
    # ============================================

    @database_sync_to_async
    def get_shipment(self) -> Optional[Dict[str, Any]]:
        """Shipment summary, only for its client, courier or an admin."""
        from core.models import UserRole
        from .models import Shipment

        user = self.scope.get('user')
        if not user or not user.is_authenticated:
            return None

        try:
            shipment = Shipment.objects.get(pk=self.shipment_id)
        except (Shipment.DoesNotExist, ValidationError, ValueError):
            return None

        if user.role != UserRole.ADMIN and user.pk not in (shipment.client_id, shipment.courier_id):
            return None

        return {'state': shipment.state, 'eta_min': shipment.eta_min}


class CourierConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer for the courier app.

    Clients connect to: ws://host/ws/courier/

    Events sent by courier:
    - ping: keep-alive, refreshes last_seen_at

    Events received by courier:
    - shipment_available: a shipment offered to them (with window deadline)
    - shipment_update: a shipment they hold changed
    - window_closed: their decision window ended
    """

    courier_id = None
    city_group = None

    async def connect(self):
        user = self.scope.get('user')
        if not user or not user.is_authenticated or not user.is_courier:
            await self.close(code=4003)
            return

        self.courier_id = str(user.pk)
        self.city_group = dispatch_group(user.city)

        await self.channel_layer.group_add(courier_group(self.courier_id), self.channel_name)
        await self.channel_layer.group_add(self.city_group, self.channel_name)
        await self.accept()
        await self.touch_presence(online=True)

        await self.send_json({
            'type': 'connection_established',
            'courier_id': self.courier_id,
            'message': 'Conectado como entregador.',
        })
        logger.info(f"[WS] Courier {self.courier_id} connected")

    async def disconnect(self, close_code):
        if self.city_group:
            await self.channel_layer.group_discard(self.city_group, self.channel_name)

        if self.courier_id:
            await self.channel_layer.group_discard(courier_group(self.courier_id), self.channel_name)
            await self.touch_presence(online=False)

        logger.info(f"[WS] Courier {self.courier_id} disconnected")

    async def receive_json(self, content):
        if content.get('type') == 'ping':
            await self.touch_presence(online=True)
            await self.send_json({'type': 'pong'})

    # ============================================
    # Event Handlers (received from channel_layer)
    # ============================================

    async def shipment_available(self, event):
        await self.send_json({
            'type': 'shipment_available',
            'shipment_id': event['shipment_id'],
            'window_id': event.get('window_id'),
            'deadline': event.get('deadline'),
            'state': event['state'],
            'pickup_address': event.get('pickup_address', ''),
            'dropoff_address': event.get('dropoff_address', ''),
            'distance_km': event.get('distance_km'),
            'duration_min': event.get('duration_min'),
            'price': event['price'],
            'currency': event.get('currency'),
        })

    async def shipment_update(self, event):
        await self.send_json({
            'type': 'shipment_update',
            'shipment_id': event['shipment_id'],
            'state': event['state'],
            'event': event.get('event', ''),
        })

    async def window_closed(self, event):
        await self.send_json({
            'type': 'window_closed',
            'window_id': event['window_id'],
            'shipment_id': event['shipment_id'],
            'outcome': event['outcome'],
        })

    # ============================================
    # Database helpers
    # ============================================

    @database_sync_to_async
    def touch_presence(self, online: bool):
        from core.models import User

        User.objects.filter(pk=self.courier_id).update(
            is_online=online,
            last_seen_at=timezone.now(),
        )
