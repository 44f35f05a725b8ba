"""
Django Admin configuration for SHIPMENTS app.
"""

from django.contrib import admin, messages

from core.session import session_for

from .models import DecisionWindow, Shipment, WindowOutcome
from .services.state_machine import CANCELLABLE_STATES, state_machine


class DecisionWindowInline(admin.TabularInline):
    model = DecisionWindow
    extra = 0
    can_delete = False
    fields = ('courier', 'opened_at', 'deadline', 'outcome', 'closed_at')
    readonly_fields = fields


@admin.register(Shipment)
class ShipmentAdmin(admin.ModelAdmin):
    """
    Read-mostly view of shipments. State only changes through the engine,
    so the only write offered here is the cancel action.
    """

    list_display = (
        'short_id', 'state', 'city', 'client', 'courier',
        'quoted_price', 'agreed_price', 'rejection_count', 'notification_count', 'created_at',
    )
    list_filter = ('state', 'city')
    search_fields = ('id', 'client__phone_number', 'courier__phone_number', 'city')
    ordering = ('-created_at',)
    date_hierarchy = 'created_at'
    inlines = [DecisionWindowInline]
    actions = ['cancel_shipments']

    readonly_fields = [field.name for field in Shipment._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.display(description='ID')
    def short_id(self, obj):
        return str(obj.id)[:8]

    @admin.display(description='Preço cotado')
    def quoted_price(self, obj):
        return obj.quoted_price

    @admin.action(description='Cancelar envios selecionados')
    def cancel_shipments(self, request, queryset):
        session = session_for(request.user)
        cancelled = 0
        for shipment in queryset.filter(state__in=CANCELLABLE_STATES):
            result = state_machine.cancel(shipment.pk, session, 'Cancelado pela torre de controle')
            if result.success:
                cancelled += 1
        self.message_user(request, f"{cancelled} envio(s) cancelado(s).", messages.SUCCESS)


@admin.register(DecisionWindow)
class DecisionWindowAdmin(admin.ModelAdmin):
    list_display = ('id', 'shipment', 'courier', 'opened_at', 'deadline', 'outcome', 'is_open')
    list_filter = ('outcome',)
    search_fields = ('shipment__id', 'courier__phone_number')
    ordering = ('-opened_at',)
    readonly_fields = ('shipment', 'courier', 'opened_at', 'deadline', 'outcome', 'closed_at')

    def has_add_permission(self, request):
        return False

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('shipment', 'courier')

    @admin.display(boolean=True, description='Aberta')
    def is_open(self, obj):
        return obj.outcome == WindowOutcome.OPEN
