"""
Shipment State Machine for PAP Dispatch

The single transition table for shipments, its guards, and the courier
lifecycle operations (dispatch accept, milestones, abandonment,
cancellation). Negotiation and rejection policies commit through
`ShipmentStateMachine.transition` so every write checks the same table.
"""

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional

from django.db import models, transaction
from django.utils import timezone

from core.session import DispatchSession
from shipments import events
from shipments.documents import TimelineEvent
from shipments.exceptions import (
    Forbidden,
    InvalidTransition,
    NoLongerAvailable,
    OutOfRange,
    StaleWrite,
    Unauthenticated,
    ValidationFailed,
)
from shipments.models import (
    NEGOTIATION_STATES,
    PRE_ASSIGNMENT_STATES,
    Shipment,
    ShipmentState,
    TimelineEventType,
)

from .geofence import Coordinate, GeofenceValidator, geofence_validator
from .outcomes import DispatchResult, returns_result
from .pricing import build_quote
from .store import ShipmentStore, shipment_store

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = 'system'
MAX_TEXT_LENGTH = 500


class Action(models.TextChoices):
    CREATE = 'CREATE', 'Criar envio'
    ACCEPT_DISPATCH = 'ACCEPT_DISPATCH', 'Aceitar corrida'
    REJECT_DISPATCH = 'REJECT_DISPATCH', 'Recusar corrida'
    ESCALATE = 'ESCALATE', 'Abrir para contra-ofertas'
    SUBMIT_OFFER = 'SUBMIT_OFFER', 'Enviar contra-oferta'
    ACCEPT_OFFER = 'ACCEPT_OFFER', 'Aceitar oferta'
    REJECT_OFFER = 'REJECT_OFFER', 'Rejeitar oferta'
    START_TRIP = 'START_TRIP', 'Iniciar corrida'
    ARRIVE_PICKUP = 'ARRIVE_PICKUP', 'Chegar na coleta'
    CONFIRM_PICKUP = 'CONFIRM_PICKUP', 'Confirmar coleta'
    DEPART_PICKUP = 'DEPART_PICKUP', 'Sair da coleta'
    ARRIVE_DROPOFF = 'ARRIVE_DROPOFF', 'Chegar na entrega'
    DELIVER = 'DELIVER', 'Confirmar entrega'
    ABANDON = 'ABANDON', 'Abandonar corrida'
    CANCEL = 'CANCEL', 'Cancelar envio'


@dataclass(frozen=True)
class Rule:
    sources: FrozenSet[str]
    target: Optional[str]  # None keeps the current state
    event_type: str
    description: str
    claims_courier: bool = False


S = ShipmentState

ABANDONABLE_STATES = frozenset({
    S.ASSIGNED, S.ACCEPTED_OFFER, S.EN_ROUTE,
    S.ARRIVED_PICKUP, S.PICKED_UP, S.ARRIVED_DROPOFF,
})

CANCELLABLE_STATES = frozenset({
    S.CREATED, S.PRICED, S.PAYMENT_PENDING, S.PAID, S.DISPATCHING,
    S.OFFERED, S.COUNTER_OFFER, S.COURIER_ABANDONED,
})

ESCALATABLE_STATES = frozenset({S.CREATED, S.COURIER_ABANDONED})

TRANSITIONS: Dict[str, Rule] = {
    Action.ACCEPT_DISPATCH: Rule(
        ESCALATABLE_STATES, S.EN_ROUTE,
        TimelineEventType.ACCEPTED, 'Corrida aceita pelo entregador',
        claims_courier=True,
    ),
    Action.REJECT_DISPATCH: Rule(
        PRE_ASSIGNMENT_STATES, None,
        TimelineEventType.REJECTED_BY_COURIER, 'Entregador recusou a entrega',
    ),
    Action.ESCALATE: Rule(
        ESCALATABLE_STATES, S.OFFERED,
        TimelineEventType.ESCALATED_TO_NEGOTIATION, 'Envio aberto para contra-ofertas',
    ),
    Action.SUBMIT_OFFER: Rule(
        NEGOTIATION_STATES, S.COUNTER_OFFER,
        TimelineEventType.COUNTER_OFFER_MADE, 'Contra-oferta enviada',
    ),
    Action.ACCEPT_OFFER: Rule(
        frozenset({S.COUNTER_OFFER}), S.ACCEPTED_OFFER,
        TimelineEventType.OFFER_ACCEPTED, 'Oferta aceita pelo cliente',
        claims_courier=True,
    ),
    Action.REJECT_OFFER: Rule(
        frozenset({S.COUNTER_OFFER}), S.CREATED,
        TimelineEventType.OFFER_REJECTED, 'Oferta rejeitada pelo cliente',
    ),
    Action.START_TRIP: Rule(
        frozenset({S.ACCEPTED_OFFER}), S.EN_ROUTE,
        TimelineEventType.TRIP_STARTED, 'Entregador a caminho da coleta',
    ),
    Action.ARRIVE_PICKUP: Rule(
        frozenset({S.EN_ROUTE}), S.ARRIVED_PICKUP,
        TimelineEventType.ARRIVED_PICKUP, 'Entregador chegou na coleta',
    ),
    Action.CONFIRM_PICKUP: Rule(
        frozenset({S.ARRIVED_PICKUP}), S.PICKED_UP,
        TimelineEventType.PICKED_UP, 'Pacote coletado',
    ),
    Action.DEPART_PICKUP: Rule(
        frozenset({S.PICKED_UP}), S.EN_ROUTE,
        TimelineEventType.DEPARTED_PICKUP, 'Em trânsito para entrega',
    ),
    Action.ARRIVE_DROPOFF: Rule(
        frozenset({S.EN_ROUTE}), S.ARRIVED_DROPOFF,
        TimelineEventType.ARRIVED_DROPOFF, 'Entregador chegou na entrega',
    ),
    Action.DELIVER: Rule(
        frozenset({S.EN_ROUTE, S.ARRIVED_DROPOFF}), S.DELIVERED,
        TimelineEventType.DELIVERED, 'Pacote entregue',
    ),
    Action.ABANDON: Rule(
        ABANDONABLE_STATES, S.COURIER_ABANDONED,
        TimelineEventType.COURIER_ABANDONED, 'Entregador abandonou a corrida',
    ),
    Action.CANCEL: Rule(
        CANCELLABLE_STATES, S.CANCELLED,
        TimelineEventType.CANCELLED, 'Envio cancelado',
    ),
}


@dataclass
class Step:
    """What a planned transition writes besides state and timeline."""
    changes: Dict[str, Any] = field(default_factory=dict)
    payload: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    # Switch to another rule in the same write (rejection -> escalation)
    action: Optional[str] = None


Planner = Callable[[Shipment], Step]


# ============================================
# INPUT VALIDATION
# ============================================

def require_session(session: Optional[DispatchSession]) -> DispatchSession:
    if session is None:
        raise Unauthenticated("Sessão ausente ou expirada")
    return session


def require_courier(session: Optional[DispatchSession]) -> DispatchSession:
    session = require_session(session)
    if not session.is_courier:
        raise Forbidden("Apenas entregadores podem realizar esta ação")
    return session


def require_client(session: Optional[DispatchSession]) -> DispatchSession:
    session = require_session(session)
    if not session.is_client:
        raise Forbidden("Apenas clientes podem realizar esta ação")
    return session


def parse_price(value) -> Decimal:
    """Positive finite money amount, rounded to cents."""
    if isinstance(value, bool):
        raise ValidationFailed("Preço inválido")
    try:
        price = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationFailed("Preço inválido")
    if not price.is_finite() or price <= 0:
        raise ValidationFailed("O preço deve ser maior que zero")
    return price.quantize(Decimal('0.01'))


def clean_text(value, field_name: str, required: bool = False) -> Optional[str]:
    if value is None:
        value = ''
    if not isinstance(value, str):
        raise ValidationFailed(f"{field_name} inválido")
    text = value.strip()
    if required and not text:
        raise ValidationFailed(f"{field_name} é obrigatório")
    if len(text) > MAX_TEXT_LENGTH:
        raise ValidationFailed(f"{field_name} deve ter no máximo {MAX_TEXT_LENGTH} caracteres")
    return text or None


def _number(value, field_name: str, minimum: Optional[float] = None) -> float:
    if isinstance(value, bool):
        raise ValidationFailed(f"{field_name} inválido")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field_name} inválido")
    if not math.isfinite(number) or (minimum is not None and number < minimum):
        raise ValidationFailed(f"{field_name} inválido")
    return number


def validate_location(data: Mapping[str, Any], label: str) -> Dict[str, Any]:
    if not isinstance(data, Mapping):
        raise ValidationFailed(f"{label}: dados ausentes")

    lat = _number(data.get('lat'), f"{label}: latitude")
    lng = _number(data.get('lng'), f"{label}: longitude")
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValidationFailed(f"{label}: coordenadas fora do intervalo")

    location = {
        'lat': lat,
        'lng': lng,
        'endereco': clean_text(data.get('endereco'), f"{label}: endereço", required=True),
        'contato': clean_text(data.get('contato'), f"{label}: contato", required=True),
    }
    instrucoes = clean_text(data.get('instrucoes'), f"{label}: instruções")
    if instrucoes:
        location['instrucoes'] = instrucoes
    return location


def validate_package(data: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(data, Mapping):
        raise ValidationFailed("Pacote: dados ausentes")

    dim = data.get('dim') or {}
    if not isinstance(dim, Mapping):
        raise ValidationFailed("Pacote: dimensões inválidas")

    return {
        'pesoKg': _number(data.get('pesoKg', 0), "Pacote: peso", minimum=0),
        'dim': {
            key: _number(dim.get(key, 0), f"Pacote: dimensão {key}", minimum=0)
            for key in ('c', 'l', 'a')
        },
        'fragil': bool(data.get('fragil', False)),
        'valorDeclarado': _number(data.get('valorDeclarado', 0), "Pacote: valor declarado", minimum=0),
    }


def parse_position(position) -> Coordinate:
    if position is None:
        raise ValidationFailed("Localização atual é obrigatória")
    if isinstance(position, Coordinate):
        return position
    try:
        coordinate = Coordinate.from_mapping(position)
    except (TypeError, ValueError, AttributeError):
        raise ValidationFailed("Localização atual inválida")
    if not (math.isfinite(coordinate.lat) and math.isfinite(coordinate.lng)):
        raise ValidationFailed("Localização atual inválida")
    return coordinate


# ============================================
# STATE MACHINE
# ============================================

class ShipmentStateMachine:
    """
    Moves shipments through the transition table.

    Each commit is a conditional write on (id, state, version); a planner
    re-runs its guards against every fresh read, so a stale snapshot either
    re-validates or fails with the current state.
    """

    def __init__(
        self,
        store: Optional[ShipmentStore] = None,
        geofence: Optional[GeofenceValidator] = None,
    ):
        self.store = store or shipment_store
        self.geofence = geofence or geofence_validator

    # ------------------------------------------------------------------
    # Table helpers
    # ------------------------------------------------------------------

    @staticmethod
    def allows(action: str, state: str) -> bool:
        return state in TRANSITIONS[action].sources

    def ensure_allowed(self, action: str, shipment: Shipment):
        if self.allows(action, shipment.state):
            return
        data = {'current_state': shipment.state}
        if TRANSITIONS[action].claims_courier:
            raise NoLongerAvailable("Este envio não está mais disponível", data)
        raise InvalidTransition(
            f"Ação {action} não permitida no estado {shipment.state}", data
        )

    def transition(
        self,
        shipment_id,
        action: str,
        actor_id: Optional[str] = None,
        plan: Optional[Planner] = None,
        snapshot: Optional[Shipment] = None,
    ) -> Shipment:
        """
        Commit one transition and its timeline event.

        Raises DispatchError subclasses; callers wrap with returns_result.
        """

        def mutation(shipment: Shipment):
            self.ensure_allowed(action, shipment)
            step = plan(shipment) if plan else Step()
            effective = step.action or action
            if effective != action:
                self.ensure_allowed(effective, shipment)

            rule = TRANSITIONS[effective]
            event = TimelineEvent(
                tipo=rule.event_type,
                descricao=step.description or rule.description,
                payload={'actor': actor_id or SYSTEM_ACTOR, **step.payload},
            )
            return rule.target or shipment.state, event, step.changes

        try:
            shipment = self.store.apply(shipment_id, mutation, snapshot=snapshot)
        except StaleWrite:
            current = self.store.get(shipment_id)
            data = {'current_state': current.state}
            if TRANSITIONS[action].claims_courier:
                raise NoLongerAvailable("Este envio não está mais disponível", data)
            raise InvalidTransition(
                f"Envio alterado concorrentemente (estado atual: {current.state})", data
            )

        last_event = shipment.timeline[-1]['tipo'] if shipment.timeline else ''
        logger.info(
            f"[STATE] Shipment {shipment.pk} {action} -> {shipment.state} "
            f"(by {actor_id or SYSTEM_ACTOR})"
        )
        transaction.on_commit(lambda: events.broadcast_shipment_update(shipment, last_event))
        return shipment

    def _require_holder(self, shipment: Shipment, session: DispatchSession):
        if str(shipment.courier_id) != session.user_id:
            raise Forbidden("Este envio não está atribuído a você")

    def _require_within(self, shipment: Shipment, position: Coordinate, leg: str):
        target = Coordinate.from_mapping(shipment.pickup if leg == 'pickup' else shipment.dropoff)
        check = self.geofence.check(position, target)
        if not check.within_radius:
            raise OutOfRange(
                f"Você está a {check.distance_m:.0f}m do local "
                f"(máximo {check.radius_m:.0f}m)",
                distance_m=check.distance_m,
                radius_m=check.radius_m,
            )
        return check

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @returns_result
    def create_shipment(
        self,
        session: Optional[DispatchSession],
        pickup: Mapping[str, Any],
        dropoff: Mapping[str, Any],
        package: Mapping[str, Any],
        city: str = '',
        quote: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """Validate, price and persist a new shipment in CREATED."""
        session = require_client(session)
        pickup = validate_location(pickup, 'Coleta')
        dropoff = validate_location(dropoff, 'Entrega')
        package = validate_package(package)
        city = clean_text(city, 'Cidade') or ''

        quote = quote or build_quote(pickup, dropoff, package)

        shipment = self.store.create(
            TimelineEvent(
                tipo=TimelineEventType.CREATED,
                descricao='Envio criado',
                payload={'actor': session.user_id, 'preco': quote['preco']},
            ),
            client_id=session.user_id,
            pickup=pickup,
            dropoff=dropoff,
            package=package,
            quote=quote,
            city=city,
            eta_min=quote.get('tempoMin'),
        )
        logger.info(
            f"[STATE] Shipment {shipment.pk} CREATE by {session.user_id} "
            f"| {quote['preco']} {quote.get('moeda')} | city={city or '-'}"
        )
        transaction.on_commit(
            lambda: events.broadcast_shipment_update(shipment, TimelineEventType.CREATED)
        )
        return DispatchResult.ok(shipment, "Envio criado com sucesso")

    # ------------------------------------------------------------------
    # Dispatch accept
    # ------------------------------------------------------------------

    @returns_result
    def accept_dispatch(
        self,
        shipment_id,
        session: Optional[DispatchSession],
        snapshot: Optional[Shipment] = None,
    ) -> DispatchResult:
        """
        Attach the courier. Of several couriers accepting the same shipment,
        exactly one wins; the rest get NO_LONGER_AVAILABLE.
        """
        session = require_courier(session)

        def plan(shipment: Shipment) -> Step:
            if shipment.abandoned_by(session.user_id):
                raise Forbidden("Você abandonou este envio anteriormente")
            return Step(
                changes={
                    'courier_id': session.user_id,
                    'eta_min': shipment.quote.get('tempoMin'),
                },
                payload={'courierUid': session.user_id, 'courierName': session.name},
            )

        shipment = self.transition(
            shipment_id, Action.ACCEPT_DISPATCH, session.user_id, plan, snapshot=snapshot
        )
        return DispatchResult.ok(shipment, "Corrida aceita! Dirija-se ao local de coleta.")

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def _milestone(self, shipment_id, session, action, leg=None, position=None, extra=None):
        session = require_courier(session)
        coordinate = parse_position(position) if leg else None

        def plan(shipment: Shipment) -> Step:
            self._require_holder(shipment, session)
            payload = {}
            if leg:
                expected_dropoff = leg == 'dropoff'
                if shipment.state == S.EN_ROUTE and shipment.is_on_dropoff_leg != expected_dropoff:
                    raise InvalidTransition(
                        "O pacote ainda não foi coletado" if expected_dropoff
                        else "O pacote já foi coletado",
                        {'current_state': shipment.state},
                    )
                check = self._require_within(shipment, coordinate, leg)
                payload['distance_m'] = round(check.distance_m, 1)
            return Step(
                changes=extra(shipment) if extra else {},
                payload=payload,
            )

        return self.transition(shipment_id, action, session.user_id, plan)

    @returns_result
    def start_trip(self, shipment_id, session) -> DispatchResult:
        shipment = self._milestone(shipment_id, session, Action.START_TRIP)
        return DispatchResult.ok(shipment, "Corrida iniciada")

    @returns_result
    def arrive_pickup(self, shipment_id, session, position) -> DispatchResult:
        shipment = self._milestone(shipment_id, session, Action.ARRIVE_PICKUP, 'pickup', position)
        return DispatchResult.ok(shipment, "Chegada na coleta registrada")

    @returns_result
    def confirm_pickup(self, shipment_id, session, position) -> DispatchResult:
        shipment = self._milestone(
            shipment_id, session, Action.CONFIRM_PICKUP, 'pickup', position,
            extra=lambda s: {'picked_up_at': timezone.now()},
        )
        return DispatchResult.ok(shipment, "Coleta confirmada")

    @returns_result
    def depart_pickup(self, shipment_id, session) -> DispatchResult:
        shipment = self._milestone(shipment_id, session, Action.DEPART_PICKUP)
        return DispatchResult.ok(shipment, "A caminho da entrega")

    @returns_result
    def arrive_dropoff(self, shipment_id, session, position) -> DispatchResult:
        shipment = self._milestone(shipment_id, session, Action.ARRIVE_DROPOFF, 'dropoff', position)
        return DispatchResult.ok(shipment, "Chegada na entrega registrada")

    @returns_result
    def deliver(self, shipment_id, session, position) -> DispatchResult:
        shipment = self._milestone(
            shipment_id, session, Action.DELIVER, 'dropoff', position,
            extra=lambda s: {'delivered_at': timezone.now()},
        )
        return DispatchResult.ok(shipment, "Entrega concluída!")

    # ------------------------------------------------------------------
    # Abandon / cancel
    # ------------------------------------------------------------------

    @returns_result
    def abandon(self, shipment_id, session, reason) -> DispatchResult:
        """Courier gives the shipment back; it becomes dispatchable again."""
        session = require_courier(session)
        reason = clean_text(reason, 'Motivo', required=True)

        def plan(shipment: Shipment) -> Step:
            self._require_holder(shipment, session)
            return Step(
                changes={
                    'courier_id': None,
                    'agreed_price': None,
                    'accepted_offer': None,
                    'picked_up_at': None,
                },
                payload={'courierUid': session.user_id, 'reason': reason},
                description=f"Entregador abandonou a corrida: {reason}",
            )

        shipment = self.transition(shipment_id, Action.ABANDON, session.user_id, plan)
        return DispatchResult.ok(shipment, "Corrida abandonada")

    @returns_result
    def cancel(self, shipment_id, session, reason=None) -> DispatchResult:
        """Client owner (or admin) cancels a shipment nobody holds."""
        session = require_session(session)
        reason = clean_text(reason, 'Motivo')

        def plan(shipment: Shipment) -> Step:
            if not session.is_admin and str(shipment.client_id) != session.user_id:
                raise Forbidden("Apenas o cliente dono do envio pode cancelá-lo")
            return Step(
                changes={'current_offer': None},
                payload={'reason': reason} if reason else {},
                description=f"Envio cancelado: {reason}" if reason else None,
            )

        shipment = self.transition(shipment_id, Action.CANCEL, session.user_id, plan)
        return DispatchResult.ok(shipment, "Envio cancelado")


# Singleton instance
state_machine = ShipmentStateMachine()
