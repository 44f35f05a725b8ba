"""
CORE App - Custom User Model for PAP Dispatch

Handles: Users (Clients, Couriers, Admins)
"""

import uuid
from django.contrib.auth.models import AbstractBaseUser, BaseUserManager, PermissionsMixin
from django.core.validators import RegexValidator
from django.db import models


class UserRole(models.TextChoices):
    """User role enumeration."""
    ADMIN = 'ADMIN', 'Administrador'
    CLIENT = 'CLIENT', 'Cliente'
    COURIER = 'COURIER', 'Entregador'


class UserManager(BaseUserManager):
    """Custom user manager for phone-based authentication."""

    def create_user(self, phone_number, password=None, **extra_fields):
        if not phone_number:
            raise ValueError('O número de telefone é obrigatório')

        user = self.model(phone_number=phone_number, **extra_fields)
        if password:
            user.set_password(password)
        else:
            user.set_unusable_password()
        user.save(using=self._db)
        return user

    def create_superuser(self, phone_number, password=None, **extra_fields):
        extra_fields.setdefault('is_staff', True)
        extra_fields.setdefault('is_superuser', True)
        extra_fields.setdefault('role', UserRole.ADMIN)
        extra_fields.setdefault('is_verified', True)

        if extra_fields.get('is_staff') is not True:
            raise ValueError('Superuser must have is_staff=True.')
        if extra_fields.get('is_superuser') is not True:
            raise ValueError('Superuser must have is_superuser=True.')

        return self.create_user(phone_number, password, **extra_fields)


class User(AbstractBaseUser, PermissionsMixin):
    """
    Custom User model using phone number as primary identifier.

    Couriers carry presence data (is_online, city, last_seen_at) used by
    the dispatch sweep to pick who gets shown a shipment.
    """

    phone_regex = RegexValidator(
        regex=r'^\+?[0-9]{10,15}$',
        message="Formato: +5511999999999"
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    phone_number = models.CharField(
        max_length=16,
        unique=True,
        validators=[phone_regex],
        verbose_name="Telefone"
    )

    # Profile
    full_name = models.CharField(max_length=150, blank=True, verbose_name="Nome completo")
    role = models.CharField(
        max_length=20,
        choices=UserRole.choices,
        default=UserRole.CLIENT,
        verbose_name="Papel"
    )
    city = models.CharField(max_length=100, blank=True, verbose_name="Cidade")

    # Courier presence
    is_online = models.BooleanField(default=False, verbose_name="Online")
    last_seen_at = models.DateTimeField(null=True, blank=True, verbose_name="Visto por último")
    is_verified = models.BooleanField(default=False, verbose_name="Documentos verificados")

    # Django Auth Fields
    is_active = models.BooleanField(default=True)
    is_staff = models.BooleanField(default=False)
    date_joined = models.DateTimeField(auto_now_add=True)

    objects = UserManager()

    USERNAME_FIELD = 'phone_number'
    REQUIRED_FIELDS = []

    class Meta:
        verbose_name = "Usuário"
        verbose_name_plural = "Usuários"
        ordering = ['-date_joined']
        indexes = [
            models.Index(fields=['role', 'is_online', 'city'], name='core_user_dispatch_idx'),
        ]

    def __str__(self):
        return f"{self.full_name or self.phone_number} ({self.role})"

    @property
    def is_courier(self) -> bool:
        return self.role == UserRole.COURIER

    @property
    def is_client(self) -> bool:
        return self.role == UserRole.CLIENT

    @property
    def display_name(self) -> str:
        return self.full_name or self.phone_number
