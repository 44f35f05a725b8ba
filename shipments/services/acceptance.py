"""
Acceptance Window Controller for PAP Dispatch

A courier shown a shipment gets a bounded decision window. Exactly one of
accept, reject, timeout or cancel closes it; timeout and cancel count as
automatic rejections.
"""

import logging
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from shipments import events
from shipments.exceptions import DispatchError, Forbidden, ShipmentNotFound, WindowClosed
from shipments.models import DecisionWindow, Shipment, WindowOutcome

from .escalation import RejectionEscalationPolicy, escalation_policy
from .outcomes import DispatchResult, returns_result
from .state_machine import (
    Action,
    ShipmentStateMachine,
    clean_text,
    require_courier,
    state_machine,
)
from .store import ShipmentStore, shipment_store

logger = logging.getLogger(__name__)


class AcceptanceWindowController:

    def __init__(
        self,
        store: Optional[ShipmentStore] = None,
        machine: Optional[ShipmentStateMachine] = None,
        policy: Optional[RejectionEscalationPolicy] = None,
        window_seconds: Optional[int] = None,
    ):
        self.store = store or shipment_store
        self.machine = machine or state_machine
        self.policy = policy or escalation_policy
        self.window = timedelta(seconds=(
            window_seconds if window_seconds is not None
            else settings.DISPATCH_DECISION_WINDOW_SECONDS
        ))

    # ==========================================
    # HELPERS
    # ==========================================

    def _get_window(self, window_id) -> DecisionWindow:
        try:
            return DecisionWindow.objects.select_related('shipment').get(pk=window_id)
        except (DecisionWindow.DoesNotExist, ValidationError, ValueError):
            raise ShipmentNotFound(f"Janela {window_id} não encontrada")

    def _own_window(self, window_id, session) -> DecisionWindow:
        window = self._get_window(window_id)
        if str(window.courier_id) != session.user_id:
            raise Forbidden("Esta janela de decisão não é sua")
        return window

    def _close(self, window: DecisionWindow, outcome: str, from_outcome: str = WindowOutcome.OPEN) -> bool:
        """Conditional close; False if another outcome got there first."""
        now = timezone.now()
        closed = DecisionWindow.objects.filter(
            pk=window.pk,
            outcome=from_outcome,
        ).update(outcome=outcome, closed_at=now) == 1

        if closed:
            window.outcome = outcome
            window.closed_at = now
            transaction.on_commit(lambda: events.notify_window_closed(window))
            logger.info(f"[WINDOW] {window.pk} {from_outcome} -> {outcome}")
        return closed

    def _schedule_expiry(self, window: DecisionWindow):
        from shipments.tasks import expire_decision_window

        transaction.on_commit(
            lambda: expire_decision_window.apply_async(args=[str(window.pk)], eta=window.deadline)
        )

    # ==========================================
    # OPEN
    # ==========================================

    def open_window(self, shipment: Shipment, courier_id) -> DecisionWindow:
        """Create (or reuse) the open window for this courier and shipment."""
        now = timezone.now()
        existing = DecisionWindow.objects.filter(
            shipment=shipment,
            courier_id=courier_id,
            outcome=WindowOutcome.OPEN,
            deadline__gt=now,
        ).first()
        if existing:
            return existing

        window = DecisionWindow.objects.create(
            shipment=shipment,
            courier_id=courier_id,
            deadline=now + self.window,
        )
        self._schedule_expiry(window)
        logger.info(
            f"[WINDOW] Opened {window.pk} for courier {courier_id} on shipment {shipment.pk} "
            f"(deadline {window.deadline.isoformat()})"
        )
        return window

    @returns_result
    def open(self, shipment_id, session) -> DispatchResult:
        session = require_courier(session)
        shipment = self.store.get(shipment_id)
        self.machine.ensure_allowed(Action.ACCEPT_DISPATCH, shipment)
        if shipment.abandoned_by(session.user_id):
            raise Forbidden("Você abandonou este envio anteriormente")

        window = self.open_window(shipment, session.user_id)
        return DispatchResult.ok(
            shipment,
            "Janela de decisão aberta",
            window_id=str(window.pk),
            deadline=window.deadline.isoformat(),
        )

    # ==========================================
    # CLOSE
    # ==========================================

    @returns_result
    def accept(self, window_id, session) -> DispatchResult:
        session = require_courier(session)
        window = self._own_window(window_id, session)

        if window.is_open and window.deadline <= timezone.now():
            self.expire(window.pk)
            raise WindowClosed("O tempo para aceitar esta corrida acabou")

        if not self._close(window, WindowOutcome.ACCEPTED):
            raise WindowClosed("Esta janela de decisão já foi encerrada")

        result = self.machine.accept_dispatch(window.shipment_id, session)
        if not result.success:
            self._close(window, WindowOutcome.SUPERSEDED, from_outcome=WindowOutcome.ACCEPTED)
        return result

    def _reject(self, window: DecisionWindow, outcome: str, courier_id, automatic: bool, reason):
        """Close the window and count the rejection in one transaction."""
        try:
            with transaction.atomic():
                if not self._close(window, outcome):
                    raise WindowClosed("Esta janela de decisão já foi encerrada")
                return self.policy.record(window.shipment_id, courier_id, automatic=automatic, reason=reason)
        except DispatchError:
            window.refresh_from_db(fields=['outcome', 'closed_at'])
            raise

    @returns_result
    def reject(self, window_id, session, reason=None) -> DispatchResult:
        session = require_courier(session)
        reason = clean_text(reason, 'Motivo')
        window = self._own_window(window_id, session)
        shipment = self._reject(window, WindowOutcome.REJECTED, session.user_id, False, reason)
        return DispatchResult.ok(shipment, "Corrida recusada", rejection_count=shipment.rejection_count)

    @returns_result
    def cancel(self, window_id, session) -> DispatchResult:
        """Courier left the decision screen without answering."""
        session = require_courier(session)
        window = self._own_window(window_id, session)
        shipment = self._reject(window, WindowOutcome.CANCELLED, session.user_id, True, 'closed')
        return DispatchResult.ok(shipment, "Janela fechada", rejection_count=shipment.rejection_count)

    def expire(self, window_id, now=None) -> bool:
        """
        Timer callback. Returns True if this call timed the window out.
        Early or repeated deliveries are no-ops.
        """
        try:
            window = self._get_window(window_id)
        except ShipmentNotFound:
            logger.warning(f"[WINDOW] Expiry for unknown window {window_id}")
            return False

        if not window.is_open or window.deadline > (now or timezone.now()):
            return False

        try:
            self._reject(window, WindowOutcome.TIMED_OUT, window.courier_id, True, 'timeout')
        except WindowClosed:
            return False
        except DispatchError as e:
            shipment = self.store.get(window.shipment_id)
            if self.machine.allows(Action.REJECT_DISPATCH, shipment.state):
                # Lost every commit retry; the next sweep tries again
                logger.warning(f"[WINDOW] {window.pk} timeout not recorded, window left open: {e.message}")
                return False
            # The shipment moved on (accepted by someone else, cancelled)
            logger.info(f"[WINDOW] {window.pk} timed out without rejection: {e.message}")
            return self._close(window, WindowOutcome.TIMED_OUT)
        return True

    def expire_overdue(self, now=None) -> int:
        """Close every OPEN window past its deadline. Covers lost timer tasks."""
        now = now or timezone.now()
        overdue = DecisionWindow.objects.filter(
            outcome=WindowOutcome.OPEN,
            deadline__lte=now,
        ).values_list('pk', flat=True)
        return sum(1 for window_id in list(overdue) if self.expire(window_id, now))


# Singleton instance
acceptance_controller = AcceptanceWindowController()
