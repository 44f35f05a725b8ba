"""
Routing Service for PAP Dispatch

Driving routes from OSRM and address lookup from Nominatim.
Every call degrades gracefully: network errors, non-OK answers and empty
results fall back to straight-line estimates (routes) or None/[] (lookups).
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests
from django.conf import settings

from .geofence import Coordinate, haversine_km

logger = logging.getLogger(__name__)


class RouteSource:
    OSRM = 'osrm'
    FALLBACK = 'fallback'


@dataclass
class RouteResult:
    coordinates: List[Coordinate] = field(default_factory=list)
    distance_km: float = 0.0
    duration_min: float = 0.0
    source: str = RouteSource.OSRM

    @property
    def is_fallback(self) -> bool:
        return self.source == RouteSource.FALLBACK

    def to_dict(self) -> Dict:
        return {
            'coordinates': [[c.lat, c.lng] for c in self.coordinates],
            'distance_km': round(self.distance_km, 2),
            'duration_min': round(self.duration_min),
            'source': self.source,
        }


@dataclass
class GeocodeResult:
    lat: float
    lng: float
    label: str
    city: str = ''

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.lat, self.lng)

    def to_dict(self) -> Dict:
        return {'lat': self.lat, 'lng': self.lng, 'label': self.label}


class RoutingService:
    """
    Thin client over the public OSRM and Nominatim HTTP APIs.
    """

    ACCEPT_LANGUAGE = 'pt-BR,pt;q=0.9,en;q=0.8'

    # Nominatim address parts, most specific first
    CITY_KEYS = ('city', 'town', 'village', 'municipality', 'county')

    def __init__(
        self,
        osrm_base_url: Optional[str] = None,
        nominatim_base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.osrm_base_url = (osrm_base_url or settings.OSRM_BASE_URL).rstrip('/')
        self.nominatim_base_url = (nominatim_base_url or settings.NOMINATIM_BASE_URL).rstrip('/')
        self.timeout = timeout or settings.ROUTING_TIMEOUT_SECONDS
        self.user_agent = settings.ROUTING_USER_AGENT
        self.minutes_per_km = settings.ROUTING_MINUTES_PER_KM
        self.min_duration_min = settings.ROUTING_MIN_DURATION_MIN

    def _headers(self, localized: bool = False) -> Dict[str, str]:
        headers = {'User-Agent': self.user_agent}
        if localized:
            headers['Accept-Language'] = self.ACCEPT_LANGUAGE
        return headers

    # ==========================================
    # ROUTES
    # ==========================================

    def estimate_duration_min(self, distance_km: float) -> int:
        """Heuristic used when OSRM has no answer."""
        return max(self.min_duration_min, round(distance_km * self.minutes_per_km))

    def fallback_route(self, origin: Coordinate, destination: Coordinate) -> RouteResult:
        distance_km = haversine_km(origin, destination)
        return RouteResult(
            coordinates=[origin, destination],
            distance_km=distance_km,
            duration_min=self.estimate_duration_min(distance_km),
            source=RouteSource.FALLBACK,
        )

    def route(self, origin: Coordinate, destination: Coordinate) -> RouteResult:
        """
        Driving route between two points.

        OSRM uses lng,lat order in the path; the geometry comes back as
        GeoJSON [lng, lat] pairs.
        """
        coords = f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
        url = f"{self.osrm_base_url}/route/v1/driving/{coords}"
        params = {
            'overview': 'full',
            'geometries': 'geojson',
        }

        try:
            response = requests.get(url, params=params, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"[ROUTING] OSRM request failed, using fallback: {e}")
            return self.fallback_route(origin, destination)

        routes = data.get('routes') or []
        if data.get('code') != 'Ok' or not routes:
            logger.warning(f"[ROUTING] OSRM returned no route ({data.get('code')}), using fallback")
            return self.fallback_route(origin, destination)

        best = routes[0]
        coordinates = [
            Coordinate(c[1], c[0])
            for c in (best.get('geometry') or {}).get('coordinates', [])
        ]
        result = RouteResult(
            coordinates=coordinates,
            distance_km=(best.get('distance') or 0) / 1000,
            duration_min=(best.get('duration') or 0) / 60,
            source=RouteSource.OSRM,
        )
        logger.debug(
            f"[ROUTING] OSRM route {result.distance_km:.1f}km / {result.duration_min:.0f}min"
        )
        return result

    # ==========================================
    # ADDRESS LOOKUP
    # ==========================================

    def _nominatim(self, path: str, params: Dict):
        try:
            response = requests.get(
                f"{self.nominatim_base_url}/{path}",
                params={'format': 'json', **params},
                headers=self._headers(localized=True),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"[ROUTING] Nominatim {path} failed: {e}")
            return None

    def geocode(self, address: str) -> Optional[GeocodeResult]:
        """First match for a free-text address, or None."""
        if not address or not address.strip():
            return None

        data = self._nominatim('search', {'q': address.strip(), 'limit': 1})
        if not isinstance(data, list) or not data:
            return None

        item = data[0]
        return GeocodeResult(
            lat=float(item['lat']),
            lng=float(item['lon']),
            label=item.get('display_name', ''),
        )

    def suggest(
        self,
        query: str,
        city: Optional[str] = None,
        country_codes: Optional[str] = 'br',
        limit: int = 6,
    ) -> List[GeocodeResult]:
        """Address autocomplete, biased towards a city."""
        query = (query or '').strip()
        if len(query) < 3:
            return []

        params = {
            'q': f"{query}, {city}" if city else query,
            'addressdetails': 0,
            'limit': limit,
        }
        if country_codes:
            params['countrycodes'] = country_codes

        data = self._nominatim('search', params)
        if not isinstance(data, list):
            return []

        return [
            GeocodeResult(
                lat=float(item['lat']),
                lng=float(item['lon']),
                label=item.get('display_name', ''),
            )
            for item in data
        ]

    def reverse_geocode(self, point: Coordinate) -> Optional[GeocodeResult]:
        """Address (and city) at a point, or None."""
        data = self._nominatim('reverse', {'lat': point.lat, 'lon': point.lng, 'addressdetails': 1})
        if not isinstance(data, dict) or not data.get('display_name'):
            return None

        address = data.get('address') or {}
        city = next((address[key] for key in self.CITY_KEYS if address.get(key)), '')
        return GeocodeResult(lat=point.lat, lng=point.lng, label=data['display_name'], city=city)

    def city_for(self, point: Coordinate) -> Optional[str]:
        result = self.reverse_geocode(point)
        return result.city if result and result.city else None


# Singleton instance
routing_service = RoutingService()
