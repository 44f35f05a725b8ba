"""
Shipments App URLs
"""

from django.urls import include, path, re_path
from rest_framework.routers import DefaultRouter

from .views import (
    AddressSearchView,
    CourierPresenceView,
    DecisionWindowView,
    QuoteAPIView,
    ShipmentViewSet,
)

router = DefaultRouter()
router.register(r'shipments', ShipmentViewSet, basename='shipment')

urlpatterns = [
    # Pricing & address lookup
    path('quote/', QuoteAPIView.as_view(), name='quote'),
    path('geocode/', AddressSearchView.as_view(), name='geocode'),

    # Courier presence (dispatch eligibility)
    path('courier/presence/', CourierPresenceView.as_view(), name='courier-presence'),

    # Decision windows (courier)
    re_path(
        r'^windows/(?P<window_id>[0-9a-f-]+)/(?P<decision>accept|reject|cancel)/$',
        DecisionWindowView.as_view(),
        name='window-decision'
    ),

    # Router URLs
    path('', include(router.urls)),
]
