"""Batched push notifications for newly created calendar events.

Events are queued in a sorted set scored by the time they were added. The
first enqueue of a fresh window takes a lease and schedules a drain for
when the window has elapsed; everything queued in the meantime rides
along in a single summarized push. A periodic tick also calls ``drain``
so a lost scheduled drain only delays delivery.

Delivery is at-least-once: entries leave the queue only after a
successful send, and two overlapping drains may announce the same entry
twice.
"""
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .channels import NotificationDeliveryError
from .config import (
    BATCH_KEY,
    BATCH_LOG_HISTORY_KEY,
    BATCH_LOG_PREFIX,
    BATCH_WINDOW_MS,
    FAILED_NOTIFICATION_PREFIX,
    LEASE_KEY,
    LEASE_TTL_MS,
)
from .models import NotificationPayload, PendingNotification, SendResult
from .service import build_batch_payload
from .store import SharedStore

LOGGER = logging.getLogger(__name__)

Sender = Callable[[NotificationPayload], SendResult]
Scheduler = Callable[[str, float], None]
"""(lease_token, delay_seconds) -> None"""


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


def _iso_from_ms(ms: float) -> str:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()


@dataclass(slots=True)
class BatchOutcome:
    """What a drain that found work ended up doing."""

    event_count: int
    sent: bool
    payload: Optional[NotificationPayload] = None
    result: Optional[SendResult] = None
    error: Optional[str] = None


class BatchCoordinator:
    """Coalesces event notifications over a fixed window.

    Args:
        store: Shared store holding the queue, lease and log records.
        sender: Delivers one payload and returns per-recipient counts.
            Any exception it raises is treated as a delivery failure.
        scheduler: Called with ``(lease_token, delay_seconds)`` by the lease
            owner; it must eventually call :meth:`run_scheduled_drain`.
            ``None`` leaves draining to the periodic tick.
        clock: Wall clock in milliseconds since the epoch.
    """

    def __init__(
        self,
        store: SharedStore,
        sender: Sender,
        *,
        scheduler: Optional[Scheduler] = None,
        window_ms: int = BATCH_WINDOW_MS,
        lease_ttl_ms: int = LEASE_TTL_MS,
        clock: Callable[[], int] = _wall_clock_ms,
    ) -> None:
        if lease_ttl_ms <= window_ms:
            raise ValueError("lease TTL must outlive the batch window")
        self.store = store
        self.sender = sender
        self.scheduler = scheduler
        self.window_ms = window_ms
        self.lease_ttl_ms = lease_ttl_ms
        self.clock = clock

    # ------------------------------------------------------------------ enqueue

    def enqueue(self, event_id: str, event_title: str, event_date: str) -> PendingNotification:
        entry = PendingNotification(
            event_id=event_id,
            event_title=event_title,
            event_date=event_date,
            added_at=self.clock(),
        )
        self.store.zadd(BATCH_KEY, entry.added_at, entry.to_json())
        LOGGER.info("Added event %s to notification batch", event_id)
        self.acquire_lease_and_schedule()
        return entry

    def acquire_lease_and_schedule(self) -> Optional[str]:
        """Become the drain owner if nobody is; returns the lease token or None."""
        token = secrets.token_hex(16)
        if not self.store.set_if_absent(LEASE_KEY, token, self.lease_ttl_ms):
            LOGGER.debug("Batch processing already scheduled")
            return None

        LOGGER.info("Acquired batch processing lease, draining in %d ms", self.window_ms)
        if self.scheduler is None:
            return token
        try:
            self.scheduler(token, self.window_ms / 1000.0)
        except Exception:
            LOGGER.exception("Failed to schedule batch drain; releasing lease")
            self.release_lease(token)
            return None
        return token

    def release_lease(self, token: str) -> bool:
        released = self.store.compare_and_delete(LEASE_KEY, token)
        if not released:
            LOGGER.info("Batch lease no longer held by this owner; leaving it")
        return released

    def run_scheduled_drain(self, token: str) -> Optional[BatchOutcome]:
        try:
            return self.drain()
        finally:
            self.release_lease(token)

    # -------------------------------------------------------------------- drain

    def _parse(self, members: List[str]) -> List[PendingNotification]:
        entries: List[PendingNotification] = []
        for raw in members:
            try:
                entries.append(PendingNotification.from_json(raw))
            except ValueError:
                LOGGER.warning("Dropping malformed queued notification: %.120r", raw)
        return entries

    def drain(self, cutoff_ms: Optional[int] = None) -> Optional[BatchOutcome]:
        """Summarize and send every entry scored at or below ``cutoff_ms``.

        Defaults to entries that have waited out the full window. Returns
        None when there was nothing to drain.
        """
        now = self.clock()
        cutoff = now - self.window_ms if cutoff_ms is None else cutoff_ms

        members = self.store.zrangebyscore(BATCH_KEY, 0, cutoff)
        if not members:
            LOGGER.debug("No notifications to process in batch")
            return None

        LOGGER.info("Processing batch of %d notifications", len(members))
        entries = self._parse(members)
        if not entries:
            self.store.zremrangebyscore(BATCH_KEY, 0, cutoff)
            return BatchOutcome(event_count=0, sent=False)

        payload = build_batch_payload(entries)
        try:
            result = self.sender(payload)
            if result.failure_count and not result.success_count:
                raise NotificationDeliveryError(f"delivery failed for all {result.failure_count} subscribers")
        except Exception as exc:
            LOGGER.exception("Failed to send batched notification; entries kept for the next batch")
            error = str(exc) or exc.__class__.__name__
            self._record_failures(entries, now, error)
            return BatchOutcome(event_count=len(entries), sent=False, payload=payload, error=error)

        self.store.zremrangebyscore(BATCH_KEY, 0, cutoff)
        self._record_batch(now, len(entries), payload, result)
        LOGGER.info(
            "Batched notification sent: %d events, %d ok, %d failed",
            len(entries),
            result.success_count,
            result.failure_count,
        )
        return BatchOutcome(event_count=len(entries), sent=True, payload=payload, result=result)

    def _record_batch(self, now: int, event_count: int, payload: NotificationPayload, result: SendResult) -> None:
        key = f"{BATCH_LOG_PREFIX}{now}"
        self.store.hset(
            key,
            {
                "processedAt": _iso_from_ms(now),
                "eventCount": event_count,
                "title": payload.title,
                "body": payload.body,
                "successCount": result.success_count,
                "failureCount": result.failure_count,
            },
        )
        self.store.zadd(BATCH_LOG_HISTORY_KEY, now, key)

    def _record_failures(self, entries: List[PendingNotification], now: int, error: str) -> None:
        failed_at = _iso_from_ms(now)
        for entry in entries:
            self.store.hset(
                f"{FAILED_NOTIFICATION_PREFIX}{entry.event_id}:{now}",
                {**entry.to_dict(), "failedAt": failed_at, "error": error},
            )

    # -------------------------------------------------------------- admin views

    def force_process_batch(self) -> Dict[str, Any]:
        members = self.store.zrange(BATCH_KEY)
        if not members:
            return {"success": False, "message": "No pending notifications to process"}

        self.drain(cutoff_ms=self.clock())
        return {"success": True, "message": f"Processed {len(members)} notifications"}

    def get_batch_status(self) -> Dict[str, Any]:
        now = self.clock()
        pending: List[Dict[str, Any]] = []
        for raw, score in self.store.zrange(BATCH_KEY, withscores=True):
            try:
                entry = PendingNotification.from_json(raw)
            except ValueError:
                continue
            pending.append(
                {
                    **entry.to_dict(),
                    "waitTimeMs": max(0, int(self.window_ms - (now - score))),
                    "willProcessAt": _iso_from_ms(score + self.window_ms),
                }
            )
        return {"pendingCount": len(pending), "pending": pending, "batchWindowMs": self.window_ms}

    def recent_batch_logs(self, limit: int = 20) -> List[Dict[str, Any]]:
        logs: List[Dict[str, Any]] = []
        for key in self.store.zrange(BATCH_LOG_HISTORY_KEY, desc=True, limit=limit):
            data = self.store.hgetall(key)
            if data:
                logs.append({"id": key[len(BATCH_LOG_PREFIX):], **data})
        return logs
