"""
SHIPMENTS App - Shipment documents & decision windows for PAP Dispatch

Handles: Shipments (aggregate root), Courier decision windows
"""

import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models

from .documents import CourierOffer


class ShipmentState(models.TextChoices):
    """Closed set of shipment states. Transitions live in services.state_machine."""
    CREATED = 'CREATED', 'Envio criado'
    PRICED = 'PRICED', 'Preço calculado'
    PAYMENT_PENDING = 'PAYMENT_PENDING', 'Aguardando pagamento'
    PAID = 'PAID', 'Pagamento confirmado'
    DISPATCHING = 'DISPATCHING', 'Procurando entregador'
    ASSIGNED = 'ASSIGNED', 'Entregador atribuído'
    ARRIVED_PICKUP = 'ARRIVED_PICKUP', 'Entregador chegou na coleta'
    PICKED_UP = 'PICKED_UP', 'Pacote coletado'
    EN_ROUTE = 'EN_ROUTE', 'Em trânsito'
    ARRIVED_DROPOFF = 'ARRIVED_DROPOFF', 'Entregador chegou na entrega'
    DELIVERED = 'DELIVERED', 'Pacote entregue'
    CANCELLED = 'CANCELLED', 'Envio cancelado'
    OFFERED = 'OFFERED', 'Aberto para ofertas'
    COUNTER_OFFER = 'COUNTER_OFFER', 'Contra-oferta pendente'
    ACCEPTED_OFFER = 'ACCEPTED_OFFER', 'Oferta aceita'
    COURIER_ABANDONED = 'COURIER_ABANDONED', 'Entregador abandonou'


# States in which a courier holds the shipment
ASSIGNED_STATES = frozenset({
    ShipmentState.ASSIGNED,
    ShipmentState.ACCEPTED_OFFER,
    ShipmentState.EN_ROUTE,
    ShipmentState.ARRIVED_PICKUP,
    ShipmentState.PICKED_UP,
    ShipmentState.ARRIVED_DROPOFF,
    ShipmentState.DELIVERED,
})

# States a courier may still reject (nobody holds the shipment yet)
PRE_ASSIGNMENT_STATES = frozenset({
    ShipmentState.CREATED,
    ShipmentState.COURIER_ABANDONED,
    ShipmentState.OFFERED,
    ShipmentState.COUNTER_OFFER,
})

# States shown to couriers by the notification throttler
NOTIFIABLE_STATES = PRE_ASSIGNMENT_STATES

NEGOTIATION_STATES = frozenset({
    ShipmentState.OFFERED,
    ShipmentState.COUNTER_OFFER,
})


class TimelineEventType(models.TextChoices):
    """Values of the timeline `tipo` field."""
    CREATED = 'CREATED', 'Envio criado'
    ACCEPTED = 'ACCEPTED', 'Corrida aceita pelo entregador'
    REJECTED_BY_COURIER = 'REJECTED_BY_COURIER', 'Entregador recusou'
    ESCALATED_TO_NEGOTIATION = 'ESCALATED_TO_NEGOTIATION', 'Aberto para contra-ofertas'
    COUNTER_OFFER_MADE = 'COUNTER_OFFER_MADE', 'Contra-oferta enviada'
    OFFER_ACCEPTED = 'OFFER_ACCEPTED', 'Oferta aceita pelo cliente'
    OFFER_REJECTED = 'OFFER_REJECTED', 'Oferta rejeitada'
    TRIP_STARTED = 'TRIP_STARTED', 'Entregador a caminho da coleta'
    ARRIVED_PICKUP = 'ARRIVED_PICKUP', 'Entregador chegou na coleta'
    PICKED_UP = 'PICKED_UP', 'Pacote coletado'
    DEPARTED_PICKUP = 'DEPARTED_PICKUP', 'Em trânsito para entrega'
    ARRIVED_DROPOFF = 'ARRIVED_DROPOFF', 'Entregador chegou na entrega'
    DELIVERED = 'DELIVERED', 'Pacote entregue'
    COURIER_ABANDONED = 'COURIER_ABANDONED', 'Entregador abandonou a corrida'
    CANCELLED = 'CANCELLED', 'Envio cancelado'


class Shipment(models.Model):
    """
    Core shipment document.

    Nested parts (pickup, dropoff, package, quote, timeline, offers) are kept
    as JSON so the row mirrors the persisted document shape. Every write goes
    through services.store.ShipmentStore, which compares `state` and
    `version` before updating; never call save() on an existing shipment.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Parties
    client = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='client_shipments',
        verbose_name="Cliente"
    )
    courier = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='courier_shipments',
        verbose_name="Entregador"
    )

    # Locations: {lat, lng, endereco, contato, instrucoes?}
    pickup = models.JSONField(verbose_name="Coleta")
    dropoff = models.JSONField(verbose_name="Entrega")
    city = models.CharField(max_length=100, blank=True, verbose_name="Cidade")

    # Package: {pesoKg, dim{c,l,a}, fragil, valorDeclarado}
    package = models.JSONField(verbose_name="Pacote")

    # Quote (frozen at creation): {preco, basePrice, variablePrice, distKm, tempoMin, moeda, source}
    quote = models.JSONField(verbose_name="Cotação")
    agreed_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        verbose_name="Preço negociado"
    )
    eta_min = models.PositiveIntegerField(null=True, blank=True, verbose_name="ETA (min)")

    # State
    state = models.CharField(
        max_length=20,
        choices=ShipmentState.choices,
        default=ShipmentState.CREATED,
        verbose_name="Estado"
    )

    # Negotiation
    offers = models.JSONField(default=list, blank=True, verbose_name="Ofertas")
    current_offer = models.JSONField(null=True, blank=True, verbose_name="Oferta atual")
    accepted_offer = models.JSONField(null=True, blank=True, verbose_name="Oferta aceita")

    # Rejection & notification counters
    rejection_count = models.PositiveIntegerField(default=0, verbose_name="Rejeições")
    escalated_at = models.DateTimeField(null=True, blank=True, verbose_name="Escalado em")
    notification_count = models.PositiveIntegerField(default=0, verbose_name="Notificações")
    last_notification_at = models.DateTimeField(null=True, blank=True, verbose_name="Última notificação")

    # Audit trail: [{tipo, descricao, payload, timestamp}]
    timeline = models.JSONField(default=list, blank=True, verbose_name="Linha do tempo")

    # Milestones
    picked_up_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)

    # Optimistic concurrency
    version = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Envio"
        verbose_name_plural = "Envios"
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['state', 'city'], name='shipment_state_city_idx'),
            models.Index(fields=['courier', 'state'], name='shipment_courier_state_idx'),
            models.Index(fields=['client', 'created_at'], name='shipment_client_created_idx'),
        ]

    def __str__(self):
        return f"Envio {str(self.id)[:8]} - {self.state}"

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def quoted_price(self) -> Decimal:
        return Decimal(str(self.quote.get('preco', 0))).quantize(Decimal('0.01'))

    @property
    def effective_price(self) -> Decimal:
        """Negotiated price when an offer was accepted, otherwise the quote."""
        if self.agreed_price is not None:
            return self.agreed_price
        return self.quoted_price

    @property
    def is_on_dropoff_leg(self) -> bool:
        """EN_ROUTE is reused for both legs; the pickup timestamp tells them apart."""
        return self.picked_up_at is not None

    @property
    def courier_uid(self):
        return str(self.courier_id) if self.courier_id else None

    def get_current_offer(self):
        if not self.current_offer:
            return None
        return CourierOffer.from_document(self.current_offer)

    def abandoned_by(self, courier_id) -> bool:
        """True if the given courier abandoned this shipment at any point."""
        courier_id = str(courier_id)
        return any(
            event.get('tipo') == TimelineEventType.COURIER_ABANDONED
            and (event.get('payload') or {}).get('courierUid') == courier_id
            for event in self.timeline
        )

    def to_document(self) -> dict:
        """Render the persisted document shape used by the mobile clients."""
        document = {
            'id': str(self.id),
            'clienteUid': str(self.client_id),
            'pickup': self.pickup,
            'dropoff': self.dropoff,
            'pacote': self.package,
            'quote': {
                'preco': self.quote.get('preco'),
                'distKm': self.quote.get('distKm'),
                'tempoMin': self.quote.get('tempoMin'),
                'moeda': self.quote.get('moeda'),
            },
            'state': self.state,
            'etaMin': self.eta_min,
            'timeline': list(self.timeline),
            'offers': list(self.offers),
            'notificationCount': self.notification_count,
            'rejectionCount': self.rejection_count,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }
        if self.courier_id:
            document['courierUid'] = str(self.courier_id)
        if self.current_offer:
            document['currentOffer'] = self.current_offer
        if self.last_notification_at:
            document['lastNotificationAt'] = self.last_notification_at.isoformat()
        if self.city:
            document['city'] = self.city
        return document


class WindowOutcome(models.TextChoices):
    """How a courier decision window ended."""
    OPEN = 'OPEN', 'Aberta'
    ACCEPTED = 'ACCEPTED', 'Aceita'
    REJECTED = 'REJECTED', 'Recusada'
    TIMED_OUT = 'TIMED_OUT', 'Expirada'
    CANCELLED = 'CANCELLED', 'Fechada pelo entregador'
    SUPERSEDED = 'SUPERSEDED', 'Perdida para outro entregador'


class DecisionWindow(models.Model):
    """
    Bounded time a courier has to decide on a dispatched shipment.

    Exactly one outcome closes a window; closing is a conditional update
    from OPEN, so a late timer and an explicit accept cannot both win.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    shipment = models.ForeignKey(
        Shipment,
        on_delete=models.CASCADE,
        related_name='decision_windows',
        verbose_name="Envio"
    )
    courier = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='decision_windows',
        verbose_name="Entregador"
    )
    opened_at = models.DateTimeField(auto_now_add=True)
    deadline = models.DateTimeField(verbose_name="Prazo")
    outcome = models.CharField(
        max_length=20,
        choices=WindowOutcome.choices,
        default=WindowOutcome.OPEN,
        verbose_name="Resultado"
    )
    closed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        verbose_name = "Janela de decisão"
        verbose_name_plural = "Janelas de decisão"
        ordering = ['-opened_at']
        indexes = [
            models.Index(fields=['outcome', 'deadline'], name='window_outcome_deadline_idx'),
            models.Index(fields=['shipment', 'courier'], name='window_shipment_courier_idx'),
        ]

    def __str__(self):
        return f"Janela {str(self.id)[:8]} - {self.outcome}"

    @property
    def is_open(self) -> bool:
        return self.outcome == WindowOutcome.OPEN
