"""
CORE App - Dispatch session values.

The dispatch engine never reads an ambient "current user". Callers build a
DispatchSession from whatever authenticated the request (JWT, Django session,
WebSocket scope) and pass it explicitly into each engine call.
"""

from dataclasses import dataclass
from typing import Optional

from .models import UserRole


@dataclass(frozen=True)
class DispatchSession:
    """Identity of the actor performing a dispatch operation."""
    user_id: str
    role: str
    name: str = ''

    @property
    def is_courier(self) -> bool:
        return self.role == UserRole.COURIER

    @property
    def is_client(self) -> bool:
        return self.role == UserRole.CLIENT

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def session_for(user) -> Optional[DispatchSession]:
    """Build a session from a Django user, or None when unauthenticated."""
    if user is None or not getattr(user, 'is_authenticated', False):
        return None
    if not user.is_active:
        return None
    return DispatchSession(
        user_id=str(user.pk),
        role=user.role,
        name=user.display_name,
    )
