"""
Routing Service Tests

OSRM and Nominatim are never reached: requests.get is patched.
"""

from unittest.mock import MagicMock, patch

import requests
from django.test import SimpleTestCase

from shipments.services.directions import RouteSource, RoutingService
from shipments.services.geofence import Coordinate, haversine_km

ORIGIN = Coordinate(-23.5505, -46.6333)
DESTINATION = Coordinate(-23.5614, -46.6559)


def _response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code}")
    return response


class TestRoute(SimpleTestCase):

    def setUp(self):
        self.service = RoutingService(
            osrm_base_url='https://osrm.test/',
            nominatim_base_url='https://nominatim.test',
            timeout=2,
        )

    @patch('shipments.services.directions.requests.get')
    def test_osrm_route(self, mock_get):
        mock_get.return_value = _response({
            'code': 'Ok',
            'routes': [{
                'distance': 2500,
                'duration': 690,
                'geometry': {'coordinates': [[-46.6333, -23.5505], [-46.6559, -23.5614]]},
            }],
        })

        route = self.service.route(ORIGIN, DESTINATION)

        self.assertEqual(route.source, RouteSource.OSRM)
        self.assertEqual(route.distance_km, 2.5)
        self.assertEqual(route.duration_min, 11.5)
        self.assertEqual(route.coordinates[0], ORIGIN)
        self.assertEqual(route.coordinates[-1], DESTINATION)

        url = mock_get.call_args[0][0]
        self.assertEqual(
            url,
            'https://osrm.test/route/v1/driving/-46.6333,-23.5505;-46.6559,-23.5614',
        )
        self.assertEqual(mock_get.call_args[1]['params']['geometries'], 'geojson')
        self.assertEqual(mock_get.call_args[1]['timeout'], 2)

    @patch('shipments.services.directions.requests.get')
    def test_network_error_falls_back_to_straight_line(self, mock_get):
        mock_get.side_effect = requests.ConnectionError('offline')

        route = self.service.route(ORIGIN, DESTINATION)

        self.assertTrue(route.is_fallback)
        self.assertAlmostEqual(route.distance_km, haversine_km(ORIGIN, DESTINATION))
        self.assertEqual(route.coordinates, [ORIGIN, DESTINATION])
        self.assertEqual(route.duration_min, 15)

    @patch('shipments.services.directions.requests.get')
    def test_no_route_falls_back(self, mock_get):
        mock_get.return_value = _response({'code': 'NoRoute', 'routes': []})
        self.assertTrue(self.service.route(ORIGIN, DESTINATION).is_fallback)

    @patch('shipments.services.directions.requests.get')
    def test_http_error_falls_back(self, mock_get):
        mock_get.return_value = _response({}, status_code=503)
        self.assertTrue(self.service.route(ORIGIN, DESTINATION).is_fallback)

    def test_duration_heuristic(self):
        self.assertEqual(self.service.estimate_duration_min(1), 15)
        self.assertEqual(self.service.estimate_duration_min(10), 30)


class TestAddressLookup(SimpleTestCase):

    def setUp(self):
        self.service = RoutingService(nominatim_base_url='https://nominatim.test')

    @patch('shipments.services.directions.requests.get')
    def test_geocode_first_match(self, mock_get):
        mock_get.return_value = _response([
            {'lat': '-23.5614', 'lon': '-46.6559', 'display_name': 'Avenida Paulista, São Paulo'},
        ])

        result = self.service.geocode('Av. Paulista, 1578')

        self.assertEqual(result.coordinate, DESTINATION)
        self.assertEqual(result.label, 'Avenida Paulista, São Paulo')
        self.assertEqual(mock_get.call_args[0][0], 'https://nominatim.test/search')
        self.assertIn('Accept-Language', mock_get.call_args[1]['headers'])

    @patch('shipments.services.directions.requests.get')
    def test_geocode_no_match(self, mock_get):
        mock_get.return_value = _response([])
        self.assertIsNone(self.service.geocode('lugar nenhum'))

    @patch('shipments.services.directions.requests.get')
    def test_suggest_short_query_skips_request(self, mock_get):
        self.assertEqual(self.service.suggest('Av'), [])
        mock_get.assert_not_called()

    @patch('shipments.services.directions.requests.get')
    def test_suggest_biases_city(self, mock_get):
        mock_get.return_value = _response([
            {'lat': '-23.56', 'lon': '-46.65', 'display_name': 'Rua A'},
            {'lat': '-23.57', 'lon': '-46.66', 'display_name': 'Rua B'},
        ])

        results = self.service.suggest('Rua', city='São Paulo')

        self.assertEqual([r.label for r in results], ['Rua A', 'Rua B'])
        params = mock_get.call_args[1]['params']
        self.assertEqual(params['q'], 'Rua, São Paulo')
        self.assertEqual(params['countrycodes'], 'br')

    @patch('shipments.services.directions.requests.get')
    def test_reverse_geocode_failure_returns_none(self, mock_get):
        mock_get.side_effect = requests.Timeout('slow')
        self.assertIsNone(self.service.reverse_geocode(ORIGIN))

    @patch('shipments.services.directions.requests.get')
    def test_reverse_geocode_extracts_city(self, mock_get):
        mock_get.return_value = _response({
            'display_name': 'Rua Barão de Jaguara, Centro, Campinas - SP',
            'address': {'road': 'Rua Barão de Jaguara', 'town': 'Campinas', 'state': 'São Paulo'},
        })

        result = self.service.reverse_geocode(ORIGIN)

        self.assertEqual(result.label, 'Rua Barão de Jaguara, Centro, Campinas - SP')
        self.assertEqual(result.city, 'Campinas')
        self.assertEqual(self.service.city_for(ORIGIN), 'Campinas')
        self.assertEqual(mock_get.call_args[1]['params']['addressdetails'], 1)

    @patch('shipments.services.directions.requests.get')
    def test_city_for_without_city_parts(self, mock_get):
        mock_get.return_value = _response({'display_name': 'Oceano Atlântico', 'address': {}})
        self.assertIsNone(self.service.city_for(ORIGIN))
