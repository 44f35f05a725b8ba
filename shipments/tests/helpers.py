"""
Shared fixtures for the shipments test suite.
"""

from core.models import User, UserRole
from core.session import session_for
from shipments.services.geofence import Coordinate
from shipments.services.state_machine import state_machine

CITY = 'São Paulo'

PICKUP = {
    'lat': -23.5505,
    'lng': -46.6333,
    'endereco': 'Praça da Sé, 100 - Sé, São Paulo',
    'contato': 'Ana +5511988887777',
    'instrucoes': 'Portaria lateral',
}

DROPOFF = {
    'lat': -23.5614,
    'lng': -46.6559,
    'endereco': 'Av. Paulista, 1578 - Bela Vista, São Paulo',
    'contato': 'Bruno +5511977776666',
}

PACKAGE = {
    'pesoKg': 2,
    'dim': {'c': 30, 'l': 20, 'a': 10},
    'fragil': False,
    'valorDeclarado': 150,
}

QUOTE = {
    'preco': '12.00',
    'basePrice': '5.00',
    'variablePrice': '7.00',
    'distKm': 2.5,
    'tempoMin': 15,
    'moeda': 'BRL',
    'source': 'osrm',
}

METERS_PER_DEGREE_LAT = 111194.9


def offset_north(point, meters: float) -> Coordinate:
    """A position `meters` north of a {lat, lng} point."""
    return Coordinate(point['lat'] + meters / METERS_PER_DEGREE_LAT, point['lng'])


def at(point) -> Coordinate:
    return Coordinate(point['lat'], point['lng'])


class DispatchFixtures:
    """Mixin for TestCase classes that need users and shipments."""

    _phone_seq = 0

    def _next_phone(self) -> str:
        DispatchFixtures._phone_seq += 1
        return f'+55119{DispatchFixtures._phone_seq:08d}'

    def create_client(self, **extra) -> User:
        extra.setdefault('full_name', 'Cliente Teste')
        return User.objects.create_user(
            phone_number=self._next_phone(),
            role=UserRole.CLIENT,
            **extra
        )

    def create_courier(self, city=CITY, online=True, **extra) -> User:
        extra.setdefault('full_name', 'Entregador Teste')
        return User.objects.create_user(
            phone_number=self._next_phone(),
            role=UserRole.COURIER,
            city=city,
            is_online=online,
            is_verified=True,
            **extra
        )

    def create_admin(self) -> User:
        return User.objects.create_superuser(phone_number=self._next_phone(), password='admin-pass-123')

    def session(self, user):
        return session_for(user)

    def create_shipment(self, client=None, city=CITY, quote=None):
        client = client or self.create_client()
        result = state_machine.create_shipment(
            session_for(client),
            pickup=dict(PICKUP),
            dropoff=dict(DROPOFF),
            package=dict(PACKAGE),
            city=city,
            quote=dict(quote or QUOTE),
        )
        assert result.success, result.message
        return result.shipment
