from __future__ import annotations

import logging

from celery import shared_task

from .service import get_coordinator

LOGGER = logging.getLogger(__name__)


@shared_task(name="notifications.tasks.run_scheduled_batch")
def run_scheduled_batch(lease_token: str) -> str:
    """Drain owned by the lease holder that scheduled it."""
    outcome = get_coordinator().run_scheduled_drain(lease_token)
    if outcome is None:
        return "0"
    LOGGER.info("Scheduled batch drained %d events (sent=%s)", outcome.event_count, outcome.sent)
    return str(outcome.event_count if outcome.sent else 0)


@shared_task(name="notifications.tasks.process_due_notifications")
def process_due_notifications() -> str:
    outcome = get_coordinator().drain()
    if outcome is None:
        return "0"
    LOGGER.info("Periodic tick drained %d events (sent=%s)", outcome.event_count, outcome.sent)
    return str(outcome.event_count if outcome.sent else 0)
