"""
Offer Negotiation Manager for PAP Dispatch

Counter-offer sub-protocol for escalated shipments: couriers propose a
price, the client who owns the shipment accepts or rejects it.
"""

import logging
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone

from shipments.documents import CourierOffer
from shipments.exceptions import DispatchError, Forbidden, InvalidTransition, NoLongerAvailable, OfferExpired
from shipments.models import Shipment, ShipmentState

from .outcomes import DispatchResult, returns_result
from .state_machine import (
    Action,
    ShipmentStateMachine,
    Step,
    clean_text,
    parse_price,
    require_client,
    require_courier,
    state_machine,
)

logger = logging.getLogger(__name__)


class OfferNegotiationManager:
    """
    Offers are appended to the shipment's history; `current_offer` points
    at the latest one. Accepting attaches the offering courier and fixes
    the agreed price; rejecting sends the shipment back to CREATED with the
    rejection count untouched.
    """

    def __init__(
        self,
        machine: Optional[ShipmentStateMachine] = None,
        offer_ttl_hours: Optional[int] = None,
    ):
        self.machine = machine or state_machine
        self.offer_ttl = timedelta(hours=(
            offer_ttl_hours if offer_ttl_hours is not None else settings.DISPATCH_OFFER_TTL_HOURS
        ))

    def _require_owner(self, shipment: Shipment, session):
        if str(shipment.client_id) != session.user_id:
            raise Forbidden("Apenas o cliente dono do envio pode responder ofertas")

    @staticmethod
    def _current_offer(shipment: Shipment) -> CourierOffer:
        offer = shipment.get_current_offer()
        if offer is None:
            raise InvalidTransition(
                "Não há oferta pendente para este envio",
                {'current_state': shipment.state},
            )
        return offer

    # ==========================================
    # COURIER SIDE
    # ==========================================

    @returns_result
    def submit_offer(self, shipment_id, session, price, message=None) -> DispatchResult:
        """Courier proposes a price; replaces the current offer, keeps history."""
        session = require_courier(session)
        price = parse_price(price)
        message = clean_text(message, 'Mensagem')

        def plan(shipment: Shipment) -> Step:
            if shipment.abandoned_by(session.user_id):
                raise Forbidden("Você abandonou este envio anteriormente")

            now = timezone.now()
            offer = CourierOffer(
                courier_uid=session.user_id,
                courier_name=session.name,
                offered_price=price,
                created_at=now,
                expires_at=now + self.offer_ttl,
                message=message,
            )
            document = offer.to_document()
            return Step(
                changes={
                    'offers': list(shipment.offers) + [document],
                    'current_offer': document,
                },
                payload={
                    'courierUid': session.user_id,
                    'offeredPrice': str(price),
                    'originalPrice': str(shipment.quoted_price),
                },
                description=(
                    f"Contra-oferta de {price} (preço original {shipment.quoted_price})"
                ),
            )

        shipment = self.machine.transition(shipment_id, Action.SUBMIT_OFFER, session.user_id, plan)
        logger.info(
            f"[OFFER] Courier {session.user_id} offered {price} on shipment {shipment.pk} "
            f"(quote {shipment.quoted_price})"
        )
        return DispatchResult.ok(shipment, "Contra-oferta enviada ao cliente")

    # ==========================================
    # CLIENT SIDE
    # ==========================================

    @returns_result
    def accept_offer(self, shipment_id, session, courier_uid: Optional[str] = None) -> DispatchResult:
        """
        Client accepts the current offer. Pass `courier_uid` to pin the offer
        the client saw; a newer offer from someone else then fails with
        NO_LONGER_AVAILABLE instead of being accepted silently.
        """
        session = require_client(session)

        def plan(shipment: Shipment) -> Step:
            self._require_owner(shipment, session)
            offer = self._current_offer(shipment)
            if courier_uid and offer.courier_uid != str(courier_uid):
                raise NoLongerAvailable(
                    "A oferta foi substituída por outra",
                    {'current_state': shipment.state},
                )
            if offer.is_expired():
                raise OfferExpired(
                    "Esta oferta expirou",
                    {'expires_at': offer.expires_at.isoformat()},
                )
            return Step(
                changes={
                    'courier_id': offer.courier_uid,
                    'agreed_price': offer.offered_price,
                    'accepted_offer': shipment.current_offer,
                    'current_offer': None,
                },
                payload={
                    'courierUid': offer.courier_uid,
                    'agreedPrice': str(offer.offered_price),
                    'originalPrice': str(shipment.quoted_price),
                },
                description=f"Oferta de {offer.courier_name or 'entregador'} aceita por {offer.offered_price}",
            )

        shipment = self.machine.transition(shipment_id, Action.ACCEPT_OFFER, session.user_id, plan)
        logger.info(
            f"[OFFER] Shipment {shipment.pk} offer accepted | courier {shipment.courier_id} "
            f"| agreed {shipment.agreed_price}"
        )
        return DispatchResult.ok(shipment, "Oferta aceita! O entregador foi notificado.")

    def _reject_plan(self, automatic: bool, session=None, now=None):
        def plan(shipment: Shipment) -> Step:
            if session is not None:
                self._require_owner(shipment, session)
            offer = self._current_offer(shipment)
            if automatic and not offer.is_expired(now):
                raise InvalidTransition(
                    "A oferta ainda está válida",
                    {'current_state': shipment.state},
                )
            return Step(
                changes={'current_offer': None, 'courier_id': None},
                payload={
                    'courierUid': offer.courier_uid,
                    'offeredPrice': str(offer.offered_price),
                    'automatic': automatic,
                },
                description=(
                    "Oferta expirada" if automatic
                    else "Oferta rejeitada pelo cliente"
                ),
            )
        return plan

    @returns_result
    def reject_offer(self, shipment_id, session) -> DispatchResult:
        """Client refuses the current offer; the shipment goes back to CREATED."""
        session = require_client(session)
        shipment = self.machine.transition(
            shipment_id, Action.REJECT_OFFER, session.user_id,
            self._reject_plan(automatic=False, session=session),
        )
        logger.info(f"[OFFER] Shipment {shipment.pk} offer rejected by client")
        return DispatchResult.ok(shipment, "Oferta rejeitada")

    # ==========================================
    # EXPIRY
    # ==========================================

    def expire_stale_offers(self, now=None) -> int:
        """Treat every past-due current offer as a client rejection."""
        now = now or timezone.now()
        expired = 0

        for shipment in Shipment.objects.filter(state=ShipmentState.COUNTER_OFFER):
            offer = shipment.get_current_offer()
            if offer is None or not offer.is_expired(now):
                continue
            try:
                self.machine.transition(
                    shipment.pk, Action.REJECT_OFFER, None,
                    self._reject_plan(automatic=True, now=now),
                    snapshot=shipment,
                )
                expired += 1
            except DispatchError as e:
                logger.info(f"[OFFER] Expiry skipped for {shipment.pk}: {e.message}")

        if expired:
            logger.info(f"[OFFER] Expired {expired} stale offer(s)")
        return expired


# Singleton instance
negotiation_manager = OfferNegotiationManager()
