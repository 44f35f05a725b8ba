"""
Shipments App Serializers - Shipments, Offers & Decision Windows
"""

from rest_framework import serializers

from .models import DecisionWindow, Shipment
from .services.directions import routing_service


class LocationSerializer(serializers.Serializer):
    """
    Pickup/dropoff point as stored on the shipment.

    Coordinates may be omitted; the address is geocoded instead.
    """

    lat = serializers.FloatField(min_value=-90, max_value=90, required=False)
    lng = serializers.FloatField(min_value=-180, max_value=180, required=False)
    endereco = serializers.CharField(max_length=500)
    contato = serializers.CharField(max_length=500)
    instrucoes = serializers.CharField(max_length=500, required=False, allow_blank=True)

    def validate(self, data):
        if data.get('lat') is not None and data.get('lng') is not None:
            return data

        result = routing_service.geocode(data['endereco'])
        if result is None:
            raise serializers.ValidationError(
                "Endereço não encontrado. Informe as coordenadas."
            )
        data['lat'] = result.lat
        data['lng'] = result.lng
        return data


class DimensionsSerializer(serializers.Serializer):
    c = serializers.FloatField(min_value=0, default=0)
    l = serializers.FloatField(min_value=0, default=0)  # noqa: E741
    a = serializers.FloatField(min_value=0, default=0)


class PackageSerializer(serializers.Serializer):
    pesoKg = serializers.FloatField(min_value=0, default=0)
    dim = DimensionsSerializer(required=False)
    fragil = serializers.BooleanField(default=False)
    valorDeclarado = serializers.FloatField(min_value=0, default=0)


class ShipmentCreateSerializer(serializers.Serializer):
    """Serializer for creating a new shipment (client app)."""

    pickup = LocationSerializer()
    dropoff = LocationSerializer()
    pacote = PackageSerializer()
    city = serializers.CharField(max_length=100, required=False, allow_blank=True, default='')


class PointSerializer(serializers.Serializer):
    lat = serializers.FloatField(min_value=-90, max_value=90)
    lng = serializers.FloatField(min_value=-180, max_value=180)


class QuoteRequestSerializer(serializers.Serializer):
    """
    Price estimation request.

    Either a route (pickup + dropoff) or a known distance in km.
    """

    pickup = PointSerializer(required=False)
    dropoff = PointSerializer(required=False)
    distance_km = serializers.FloatField(required=False, min_value=0)
    pesoKg = serializers.FloatField(min_value=0, default=0)
    fragil = serializers.BooleanField(default=False)

    def validate(self, data):
        has_route = data.get('pickup') and data.get('dropoff')
        if not has_route and data.get('distance_km') is None:
            raise serializers.ValidationError(
                "Informe coleta e entrega ou a distância em km."
            )
        return data


class ShipmentSerializer(serializers.ModelSerializer):
    """Full serializer for Shipment model."""

    client_phone = serializers.CharField(source='client.phone_number', read_only=True)
    courier_phone = serializers.CharField(source='courier.phone_number', read_only=True, default=None)
    courier_name = serializers.CharField(source='courier.display_name', read_only=True, default=None)
    effective_price = serializers.DecimalField(max_digits=10, decimal_places=2, read_only=True)

    class Meta:
        model = Shipment
        fields = [
            'id', 'client', 'client_phone', 'courier', 'courier_phone', 'courier_name',
            'state', 'city', 'pickup', 'dropoff', 'package', 'quote',
            'agreed_price', 'effective_price', 'eta_min',
            'offers', 'current_offer', 'accepted_offer',
            'rejection_count', 'notification_count', 'last_notification_at',
            'timeline', 'picked_up_at', 'delivered_at', 'version',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields


class ShipmentListSerializer(serializers.ModelSerializer):
    """Lightweight serializer for shipment listings."""

    effective_price = serializers.DecimalField(max_digits=10, decimal_places=2, read_only=True)
    pickup_address = serializers.SerializerMethodField()
    dropoff_address = serializers.SerializerMethodField()

    class Meta:
        model = Shipment
        fields = [
            'id', 'state', 'city', 'pickup_address', 'dropoff_address',
            'effective_price', 'eta_min', 'rejection_count', 'created_at',
        ]

    def get_pickup_address(self, obj):
        return obj.pickup.get('endereco', '')

    def get_dropoff_address(self, obj):
        return obj.dropoff.get('endereco', '')


class ShipmentDocumentSerializer(serializers.BaseSerializer):
    """Persisted document shape consumed by the mobile clients."""

    def to_representation(self, instance):
        return instance.to_document()


class OfferSubmitSerializer(serializers.Serializer):
    price = serializers.DecimalField(max_digits=10, decimal_places=2)
    message = serializers.CharField(max_length=500, required=False, allow_blank=True)


class OfferDecisionSerializer(serializers.Serializer):
    # Pins the offer the client saw
    courier_uid = serializers.UUIDField(required=False)


class PositionSerializer(serializers.Serializer):
    """Courier's current GPS position for geofenced milestones."""

    latitude = serializers.FloatField(min_value=-90, max_value=90)
    longitude = serializers.FloatField(min_value=-180, max_value=180)


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True)


class DecisionWindowSerializer(serializers.ModelSerializer):

    class Meta:
        model = DecisionWindow
        fields = ['id', 'shipment', 'courier', 'opened_at', 'deadline', 'outcome', 'closed_at']
        read_only_fields = fields


class CourierPresenceSerializer(serializers.Serializer):
    is_online = serializers.BooleanField()
    city = serializers.CharField(max_length=100, required=False, allow_blank=True)
    # Current position; fills in the city when it is not given
    latitude = serializers.FloatField(min_value=-90, max_value=90, required=False)
    longitude = serializers.FloatField(min_value=-180, max_value=180, required=False)

    def validate(self, data):
        if (data.get('latitude') is None) != (data.get('longitude') is None):
            raise serializers.ValidationError("Informe latitude e longitude juntas.")
        return data


class AddressSearchSerializer(serializers.Serializer):
    q = serializers.CharField(max_length=300)
    city = serializers.CharField(max_length=100, required=False, allow_blank=True)
