"""
SHIPMENTS App - Celery Tasks

Decision window timers and the periodic dispatch/offer maintenance jobs.
"""

from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task(name='shipments.tasks.expire_decision_window')
def expire_decision_window(window_id: str) -> bool:
    """
    Timer for one courier decision window, scheduled with eta=deadline.

    A window already closed by accept/reject/cancel is left alone; the
    timeout counts as an automatic rejection otherwise.
    """
    from shipments.services.acceptance import acceptance_controller

    expired = acceptance_controller.expire(window_id)
    if expired:
        logger.info(f"[WINDOW TASK] Window {window_id} timed out")
    return expired


@shared_task(name='shipments.tasks.run_dispatch_sweep')
def run_dispatch_sweep():
    """
    Periodic dispatcher pass.

    Runs every DISPATCH_SWEEP_INTERVAL_SECONDS: expires overdue windows,
    then shows each throttle-eligible shipment to the next courier.
    """
    try:
        from shipments.services.dispatch import dispatcher
        return dispatcher.sweep()
    except Exception as e:
        logger.error(f"[DISPATCH TASK] Sweep failed: {e}")
        return {}


@shared_task(name='shipments.tasks.expire_stale_offers')
def expire_stale_offers():
    """
    Return shipments whose counter-offer passed its expiry to CREATED.

    Runs every 5 minutes.
    """
    try:
        from shipments.services.negotiation import negotiation_manager
        expired = negotiation_manager.expire_stale_offers()
        logger.info(f"[OFFER TASK] Expired {expired} offer(s)")
        return expired
    except Exception as e:
        logger.error(f"[OFFER TASK] Offer expiry failed: {e}")
        return 0
