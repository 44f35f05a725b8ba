"""
Shipments App Views - Shipments, Offers & Decision Windows API
"""

from django.utils import timezone
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import filters, permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from core.models import UserRole
from core.session import session_for

from .exceptions import HTTP_STATUS_FOR_REASON
from .models import Shipment
from .serializers import (
    AddressSearchSerializer,
    CourierPresenceSerializer,
    DecisionWindowSerializer,
    OfferDecisionSerializer,
    OfferSubmitSerializer,
    PositionSerializer,
    QuoteRequestSerializer,
    ReasonSerializer,
    ShipmentCreateSerializer,
    ShipmentDocumentSerializer,
    ShipmentListSerializer,
    ShipmentSerializer,
)
from .services.acceptance import acceptance_controller
from .services.directions import routing_service
from .services.geofence import Coordinate
from .services.negotiation import negotiation_manager
from .services.pricing import build_quote, estimate_price, pricing_engine
from .services.state_machine import state_machine
from .services.store import shipment_store


def result_response(result, success_status=status.HTTP_200_OK):
    """Map a DispatchResult to an HTTP response."""
    if not result.success:
        body = {'error': result.message, 'reason': str(result.reason)}
        body.update(result.data)
        return Response(body, status=HTTP_STATUS_FOR_REASON[result.reason])

    body = result.to_dict()
    if result.shipment is not None:
        body['shipment'] = ShipmentSerializer(result.shipment).data
    return Response(body, status=success_status)


class ShipmentViewSet(viewsets.ReadOnlyModelViewSet):
    """
    ViewSet for shipments.

    Reads are role-scoped; every write goes through the dispatch engine.
    """

    serializer_class = ShipmentSerializer
    permission_classes = [permissions.IsAuthenticated]
    filter_backends = [DjangoFilterBackend, filters.OrderingFilter]
    filterset_fields = ['state', 'city']
    ordering_fields = ['created_at', 'updated_at']

    def get_queryset(self):
        user = self.request.user

        if user.role == UserRole.ADMIN:
            return Shipment.objects.select_related('client', 'courier')
        elif user.role == UserRole.COURIER:
            return shipment_store.visible_to_courier(user.pk, user.city)
        else:
            return shipment_store.for_client(user.pk)

    def get_serializer_class(self):
        if self.action == 'list':
            return ShipmentListSerializer
        return ShipmentSerializer

    def list(self, request, *args, **kwargs):
        queryset = self.filter_queryset(self.get_queryset())

        if request.user.role == UserRole.COURIER:
            queryset = shipment_store.hide_abandoned(queryset, request.user.pk)

        page = self.paginate_queryset(queryset)
        if page is not None:
            return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return Response(self.get_serializer(queryset, many=True).data)

    def create(self, request):
        """Create a new shipment priced from its route."""
        serializer = ShipmentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = state_machine.create_shipment(
            session_for(request.user),
            pickup=data['pickup'],
            dropoff=data['dropoff'],
            package=data['pacote'],
            city=data.get('city', ''),
        )
        return result_response(result, success_status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['get'])
    def document(self, request, pk=None):
        """Shipment in its persisted document shape."""
        return Response(ShipmentDocumentSerializer(self.get_object()).data)

    # ============================================
    # DISPATCH
    # ============================================

    @action(detail=True, methods=['post'])
    def window(self, request, pk=None):
        """Courier opens a decision window on an available shipment."""
        result = acceptance_controller.open(pk, session_for(request.user))
        return result_response(result, success_status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['get'])
    def windows(self, request, pk=None):
        """Decision windows of a shipment (couriers only see their own)."""
        windows = self.get_object().decision_windows.all()
        if request.user.role == UserRole.COURIER:
            windows = windows.filter(courier=request.user)
        return Response(DecisionWindowSerializer(windows, many=True).data)

    # ============================================
    # NEGOTIATION
    # ============================================

    @action(detail=True, methods=['post'])
    def offers(self, request, pk=None):
        """Courier submits a counter-offer."""
        serializer = OfferSubmitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = negotiation_manager.submit_offer(
            pk,
            session_for(request.user),
            serializer.validated_data['price'],
            serializer.validated_data.get('message'),
        )
        return result_response(result, success_status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'], url_path='offers/accept')
    def accept_offer(self, request, pk=None):
        serializer = OfferDecisionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        courier_uid = serializer.validated_data.get('courier_uid')
        result = negotiation_manager.accept_offer(
            pk,
            session_for(request.user),
            courier_uid=str(courier_uid) if courier_uid else None,
        )
        return result_response(result)

    @action(detail=True, methods=['post'], url_path='offers/reject')
    def reject_offer(self, request, pk=None):
        result = negotiation_manager.reject_offer(pk, session_for(request.user))
        return result_response(result)

    # ============================================
    # MILESTONES
    # ============================================

    def _position(self, request):
        serializer = PositionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        return Coordinate(
            serializer.validated_data['latitude'],
            serializer.validated_data['longitude'],
        )

    @action(detail=True, methods=['post'])
    def start(self, request, pk=None):
        return result_response(state_machine.start_trip(pk, session_for(request.user)))

    @action(detail=True, methods=['post'], url_path='arrive-pickup')
    def arrive_pickup(self, request, pk=None):
        position = self._position(request)
        return result_response(state_machine.arrive_pickup(pk, session_for(request.user), position))

    @action(detail=True, methods=['post'], url_path='confirm-pickup')
    def confirm_pickup(self, request, pk=None):
        position = self._position(request)
        return result_response(state_machine.confirm_pickup(pk, session_for(request.user), position))

    @action(detail=True, methods=['post'])
    def depart(self, request, pk=None):
        return result_response(state_machine.depart_pickup(pk, session_for(request.user)))

    @action(detail=True, methods=['post'], url_path='arrive-dropoff')
    def arrive_dropoff(self, request, pk=None):
        position = self._position(request)
        return result_response(state_machine.arrive_dropoff(pk, session_for(request.user), position))

    @action(detail=True, methods=['post'])
    def deliver(self, request, pk=None):
        position = self._position(request)
        return result_response(state_machine.deliver(pk, session_for(request.user), position))

    # ============================================
    # ABANDON / CANCEL
    # ============================================

    @action(detail=True, methods=['post'])
    def abandon(self, request, pk=None):
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = state_machine.abandon(
            pk, session_for(request.user), serializer.validated_data.get('reason')
        )
        return result_response(result)

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = state_machine.cancel(
            pk, session_for(request.user), serializer.validated_data.get('reason')
        )
        return result_response(result)


class DecisionWindowView(APIView):
    """
    Courier answers a decision window.

    POST /api/windows/{window_id}/accept|reject|cancel/

    Accept is race-safe: of several couriers accepting the same shipment,
    one wins and the rest get 409 NO_LONGER_AVAILABLE.
    """

    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, window_id, decision):
        session = session_for(request.user)

        if decision == 'accept':
            result = acceptance_controller.accept(window_id, session)
        elif decision == 'reject':
            serializer = ReasonSerializer(data=request.data)
            serializer.is_valid(raise_exception=True)
            result = acceptance_controller.reject(
                window_id, session, serializer.validated_data.get('reason')
            )
        else:
            result = acceptance_controller.cancel(window_id, session)

        return result_response(result)


class QuoteAPIView(APIView):
    """
    Price estimation without creating a shipment.

    POST /api/quote/
    """

    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = QuoteRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        package = {'pesoKg': data['pesoKg'], 'fragil': data['fragil']}

        if data.get('pickup') and data.get('dropoff'):
            quote = build_quote(data['pickup'], data['dropoff'], package)
            return Response(quote)

        breakdown = estimate_price(data['distance_km'], data['pesoKg'], data['fragil'])
        return Response({
            'preco': str(breakdown.total),
            'basePrice': str(breakdown.base_price),
            'variablePrice': str(breakdown.variable_price),
            'distKm': round(data['distance_km'], 2),
            'tempoMin': routing_service.estimate_duration_min(data['distance_km']),
            'moeda': pricing_engine.currency,
            'source': 'distance',
        })


class AddressSearchView(APIView):
    """
    Address autocomplete for the shipment form.

    GET /api/geocode/?q=...&city=...
    """

    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        serializer = AddressSearchSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        results = routing_service.suggest(
            serializer.validated_data['q'],
            city=serializer.validated_data.get('city') or request.user.city or None,
        )
        return Response([r.to_dict() for r in results])


class CourierPresenceView(APIView):
    """
    Courier goes online/offline for dispatch.

    The city comes from the body or, failing that, from the courier's
    reverse-geocoded position.

    POST /api/courier/presence/
    """

    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        user = request.user
        if user.role != UserRole.COURIER:
            return Response(
                {'error': 'Apenas entregadores.'},
                status=status.HTTP_403_FORBIDDEN
            )

        serializer = CourierPresenceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = serializer.validated_data
        user.is_online = data['is_online']
        city = data.get('city')
        if not city and data.get('latitude') is not None:
            city = routing_service.city_for(Coordinate(data['latitude'], data['longitude']))
        if city:
            user.city = city
        user.last_seen_at = timezone.now()
        user.save(update_fields=['is_online', 'city', 'last_seen_at'])

        return Response({
            'is_online': user.is_online,
            'city': user.city,
            'last_seen_at': user.last_seen_at.isoformat(),
        })
