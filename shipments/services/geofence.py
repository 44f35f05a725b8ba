"""
Geofence Validator for PAP Dispatch

Great-circle distance and the radius check that gates pickup/dropoff
milestones.
"""

import math
from dataclasses import dataclass
from typing import Any, Mapping, NamedTuple, Optional

from django.conf import settings

EARTH_RADIUS_KM = 6371


class Coordinate(NamedTuple):
    lat: float
    lng: float

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'Coordinate':
        """Accept both {lat, lng} and {latitude, longitude} shapes."""
        lat = data.get('lat', data.get('latitude'))
        lng = data.get('lng', data.get('longitude'))
        if lat is None or lng is None:
            raise ValueError("Coordenadas incompletas")
        return cls(float(lat), float(lng))


def haversine_km(origin: Coordinate, destination: Coordinate) -> float:
    """Straight-line distance in kilometers."""
    lat1, lon1 = math.radians(origin.lat), math.radians(origin.lng)
    lat2, lon2 = math.radians(destination.lat), math.radians(destination.lng)

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(min(1.0, a)))

    return EARTH_RADIUS_KM * c


@dataclass
class GeofenceCheck:
    distance_m: float
    within_radius: bool
    radius_m: float

    def to_dict(self) -> dict:
        return {
            'distance_m': round(self.distance_m, 1),
            'within_radius': self.within_radius,
            'radius_m': self.radius_m,
        }


class GeofenceValidator:
    """
    Checks whether a courier is close enough to a pickup or dropoff point.

    The boundary is inclusive: exactly radius_m away counts as inside.
    """

    def __init__(self, radius_m: Optional[float] = None):
        self.radius_m = float(
            radius_m if radius_m is not None else settings.DISPATCH_GEOFENCE_RADIUS_M
        )

    def check(self, current: Coordinate, target: Coordinate) -> GeofenceCheck:
        distance_m = haversine_km(current, target) * 1000
        return GeofenceCheck(
            distance_m=distance_m,
            within_radius=distance_m <= self.radius_m,
            radius_m=self.radius_m,
        )

    def is_within(self, current: Coordinate, target: Coordinate) -> bool:
        return self.check(current, target).within_radius


# Singleton instance
geofence_validator = GeofenceValidator()
