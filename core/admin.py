"""
Django Admin configuration for CORE app.
"""

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """Custom admin for User model with phone-based auth."""

    list_display = (
        'phone_number',
        'full_name',
        'role',
        'city',
        'is_online',
        'is_verified',
        'is_active',
        'date_joined'
    )
    list_filter = ('role', 'city', 'is_online', 'is_verified', 'is_active', 'is_staff')
    search_fields = ('phone_number', 'full_name')
    ordering = ('-date_joined',)

    fieldsets = (
        (None, {
            'fields': ('phone_number', 'password')
        }),
        ('Perfil', {
            'fields': ('full_name', 'role', 'city')
        }),
        ('Presença do entregador', {
            'fields': ('is_online', 'last_seen_at', 'is_verified'),
        }),
        ('Permissões', {
            'fields': ('is_active', 'is_staff', 'is_superuser', 'groups', 'user_permissions'),
            'classes': ('collapse',)
        }),
    )

    add_fieldsets = (
        (None, {
            'classes': ('wide',),
            'fields': ('phone_number', 'role', 'city', 'password1', 'password2'),
        }),
    )

    readonly_fields = ('date_joined', 'last_seen_at')

    actions = ['mark_offline']

    @admin.action(description="Marcar entregadores como offline")
    def mark_offline(self, request, queryset):
        updated = queryset.filter(is_online=True).update(is_online=False)
        self.message_user(request, f"{updated} entregador(es) marcados como offline.")
