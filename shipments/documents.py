"""
SHIPMENTS App - Nested document values

Typed views over the JSON parts of a shipment (offers, timeline events).
The dict form uses the persisted document keys.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from django.utils import timezone
from django.utils.dateparse import parse_datetime


def _iso(value: datetime) -> str:
    return value.isoformat()


def _parse(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return parse_datetime(value)


@dataclass
class CourierOffer:
    """A courier's counter-offer on an escalated shipment."""
    courier_uid: str
    courier_name: str
    offered_price: Decimal
    created_at: datetime
    expires_at: datetime
    message: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or timezone.now()) >= self.expires_at

    def to_document(self) -> Dict[str, Any]:
        document = {
            'courierUid': self.courier_uid,
            'courierName': self.courier_name,
            'offeredPrice': str(self.offered_price),
            'createdAt': _iso(self.created_at),
            'expiresAt': _iso(self.expires_at),
        }
        if self.message:
            document['message'] = self.message
        return document

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> 'CourierOffer':
        return cls(
            courier_uid=data['courierUid'],
            courier_name=data.get('courierName', ''),
            offered_price=Decimal(str(data['offeredPrice'])),
            created_at=_parse(data['createdAt']),
            expires_at=_parse(data['expiresAt']),
            message=data.get('message'),
        )


@dataclass
class TimelineEvent:
    """One append-only entry of the shipment audit trail."""
    tipo: str
    descricao: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=timezone.now)

    def to_document(self) -> Dict[str, Any]:
        return {
            'tipo': self.tipo,
            'descricao': self.descricao,
            'payload': self.payload,
            'timestamp': _iso(self.timestamp),
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> 'TimelineEvent':
        return cls(
            tipo=data['tipo'],
            descricao=data.get('descricao', ''),
            payload=data.get('payload') or {},
            timestamp=_parse(data['timestamp']),
        )
