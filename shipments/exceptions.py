"""
SHIPMENTS App - Dispatch failures

Services raise these internally; the engine's public operations turn them
into a DispatchResult carrying the matching FailureReason.
"""

from typing import Optional

from django.db import models


class FailureReason(models.TextChoices):
    UNAUTHENTICATED = 'UNAUTHENTICATED', 'Sessão ausente'
    FORBIDDEN = 'FORBIDDEN', 'Ação não permitida'
    NOT_FOUND = 'NOT_FOUND', 'Envio não encontrado'
    VALIDATION_ERROR = 'VALIDATION_ERROR', 'Dados inválidos'
    INVALID_TRANSITION = 'INVALID_TRANSITION', 'Transição inválida'
    NO_LONGER_AVAILABLE = 'NO_LONGER_AVAILABLE', 'Envio não está mais disponível'
    OUT_OF_RANGE = 'OUT_OF_RANGE', 'Fora do raio permitido'
    WINDOW_CLOSED = 'WINDOW_CLOSED', 'Janela de decisão encerrada'
    OFFER_EXPIRED = 'OFFER_EXPIRED', 'Oferta expirada'


# HTTP status per failure, used by the API views
HTTP_STATUS_FOR_REASON = {
    FailureReason.UNAUTHENTICATED: 401,
    FailureReason.FORBIDDEN: 403,
    FailureReason.NOT_FOUND: 404,
    FailureReason.VALIDATION_ERROR: 400,
    FailureReason.INVALID_TRANSITION: 409,
    FailureReason.NO_LONGER_AVAILABLE: 409,
    FailureReason.OUT_OF_RANGE: 422,
    FailureReason.WINDOW_CLOSED: 409,
    FailureReason.OFFER_EXPIRED: 409,
}


class DispatchError(ValueError):
    """Base class for expected dispatch failures."""
    reason = FailureReason.VALIDATION_ERROR

    def __init__(self, message: str, data: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.data = data or {}


class Unauthenticated(DispatchError):
    reason = FailureReason.UNAUTHENTICATED


class Forbidden(DispatchError):
    reason = FailureReason.FORBIDDEN


class ShipmentNotFound(DispatchError):
    reason = FailureReason.NOT_FOUND


class ValidationFailed(DispatchError):
    reason = FailureReason.VALIDATION_ERROR


class InvalidTransition(DispatchError):
    reason = FailureReason.INVALID_TRANSITION


class NoLongerAvailable(DispatchError):
    reason = FailureReason.NO_LONGER_AVAILABLE


class OutOfRange(DispatchError):
    reason = FailureReason.OUT_OF_RANGE

    def __init__(self, message: str, distance_m: float, radius_m: float):
        super().__init__(message, {
            'distance_m': round(distance_m, 1),
            'radius_m': radius_m,
        })
        self.distance_m = distance_m
        self.radius_m = radius_m


class WindowClosed(DispatchError):
    reason = FailureReason.WINDOW_CLOSED


class OfferExpired(DispatchError):
    reason = FailureReason.OFFER_EXPIRED


class StaleWrite(Exception):
    """A conditional commit matched no row: state or version moved on."""

    def __init__(self, shipment_id, expected_state: str, expected_version: int):
        super().__init__(
            f"Shipment {shipment_id} changed (expected {expected_state} v{expected_version})"
        )
        self.shipment_id = shipment_id
        self.expected_state = expected_state
        self.expected_version = expected_version
