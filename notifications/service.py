from __future__ import annotations

import logging
from functools import lru_cache
from typing import Iterable, List, Sequence, Tuple

from .config import REDIS_URL
from .models import NotificationPayload, PendingNotification

LOGGER = logging.getLogger(__name__)

SINGLE_EVENT_TITLE = "New Event Added"
MULTI_EVENT_TITLE = "New Events Added"


def unique_titles(titles: Iterable[str]) -> List[str]:
    """Distinct titles, first occurrence wins."""
    return list(dict.fromkeys(titles))


def summarize_titles(titles: Sequence[str]) -> Tuple[str, str]:
    distinct = unique_titles(titles)
    if not distinct:
        raise ValueError("cannot summarize an empty batch")
    if len(distinct) == 1:
        return SINGLE_EVENT_TITLE, f"{distinct[0]} has been added to the calendar"
    if len(distinct) <= 3:
        return MULTI_EVENT_TITLE, f"{', '.join(distinct)} have been added to the calendar"
    others = len(distinct) - 2
    return MULTI_EVENT_TITLE, f"{', '.join(distinct[:2])} and {others} other events have been added to the calendar"


def build_batch_payload(entries: Sequence[PendingNotification]) -> NotificationPayload:
    """One payload for the whole batch; the deep link points at the first entry."""
    title, body = summarize_titles([entry.event_title for entry in entries])
    first = entries[0]
    return NotificationPayload(
        title=title,
        body=body,
        event_id=first.event_id,
        event_title=first.event_title,
        event_date=first.event_date,
    )


def celery_scheduler(lease_token: str, delay_seconds: float) -> None:
    from .tasks import run_scheduled_batch

    run_scheduled_batch.apply_async(args=[lease_token], countdown=delay_seconds)


@lru_cache(maxsize=1)
def get_coordinator():
    """Process-wide coordinator wired to the configured store and web push."""
    from .batching import BatchCoordinator
    from .channels import WebPushSender
    from .store import create_store

    store = create_store(REDIS_URL)
    sender = WebPushSender(store)
    if not sender.configured:
        LOGGER.warning("VAPID keys not configured; batched notifications will be retried until they are")
    return BatchCoordinator(store, sender.send, scheduler=celery_scheduler)
