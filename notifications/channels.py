from __future__ import annotations

import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import requests
from pywebpush import WebPushException, webpush

from .config import (
    ACTIVE_SUBSCRIPTIONS_KEY,
    EXPIRED_SUBSCRIPTION_STATUSES,
    NOTIFICATION_HISTORY_KEY,
    NOTIFICATION_PREFIX,
    PUSH_TIMEOUT_SECONDS,
    SUBSCRIPTION_PREFIX,
    VAPID_PRIVATE_KEY,
    VAPID_PUBLIC_KEY,
    VAPID_SUBJECT,
)
from .models import NotificationPayload, PushSubscriptionRecord, SendResult
from .store import SharedStore

LOGGER = logging.getLogger(__name__)


class NotificationDeliveryError(RuntimeError):
    """Raised when a notification cannot be handed to any recipient."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def store_subscription(store: SharedStore, subscription: Mapping[str, Any], user_id: Optional[str] = None) -> str:
    """Persist a browser PushSubscription and mark it active."""
    endpoint = subscription.get("endpoint") if isinstance(subscription, Mapping) else None
    keys = subscription.get("keys") if isinstance(subscription, Mapping) else None
    if not endpoint or not isinstance(keys, Mapping) or not keys.get("p256dh") or not keys.get("auth"):
        raise ValueError("Invalid subscription data")

    subscription_id = f"{SUBSCRIPTION_PREFIX}{_now_ms()}_{secrets.token_hex(5)}"
    store.hset(
        subscription_id,
        {
            "endpoint": endpoint,
            "p256dh": keys["p256dh"],
            "auth": keys["auth"],
            "userId": user_id or "anonymous",
            "createdAt": _utc_iso(),
            "active": "true",
        },
    )
    store.sadd(ACTIVE_SUBSCRIPTIONS_KEY, subscription_id)
    LOGGER.info("Stored push subscription %s", subscription_id)
    return subscription_id


def get_active_subscriptions(store: SharedStore) -> List[PushSubscriptionRecord]:
    records: List[PushSubscriptionRecord] = []
    for sub_id in sorted(store.smembers(ACTIVE_SUBSCRIPTIONS_KEY)):
        data = store.hgetall(sub_id)
        if not data.get("endpoint"):
            store.srem(ACTIVE_SUBSCRIPTIONS_KEY, sub_id)
            LOGGER.info("Removed dangling subscription %s from active set", sub_id)
            continue
        if data.get("active") != "true" or not data.get("p256dh") or not data.get("auth"):
            LOGGER.debug("Skipping inactive subscription %s", sub_id)
            continue
        records.append(
            PushSubscriptionRecord(id=sub_id, endpoint=data["endpoint"], p256dh=data["p256dh"], auth=data["auth"])
        )
    return records


def deactivate_subscription(store: SharedStore, subscription_id: str) -> None:
    store.srem(ACTIVE_SUBSCRIPTIONS_KEY, subscription_id)
    store.hset(subscription_id, {"active": "false"})
    LOGGER.info("Deactivated expired push subscription %s", subscription_id)


def get_notification_history(store: SharedStore, limit: int = 50) -> List[Dict[str, Any]]:
    history: List[Dict[str, Any]] = []
    for notification_id in store.zrange(NOTIFICATION_HISTORY_KEY, desc=True, limit=limit):
        data = store.hgetall(notification_id)
        if data:
            history.append({"id": notification_id, **data, "completedAt": data.get("completedAt") or None})
    return history


def _status_code(exc: WebPushException) -> Optional[int]:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


class WebPushSender:
    """Delivers one payload to every active push subscription."""

    def __init__(
        self,
        store: SharedStore,
        *,
        vapid_public_key: str = VAPID_PUBLIC_KEY,
        vapid_private_key: str = VAPID_PRIVATE_KEY,
        vapid_subject: str = VAPID_SUBJECT,
        timeout: int = PUSH_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.vapid_public_key = vapid_public_key
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key)

    def _deliver(self, record: PushSubscriptionRecord, data: str) -> None:
        webpush(
            subscription_info=record.subscription_info(),
            data=data,
            vapid_private_key=self.vapid_private_key,
            vapid_claims={"sub": self.vapid_subject},
            timeout=self.timeout,
        )

    def send(self, payload: NotificationPayload) -> SendResult:
        if not self.configured:
            raise NotificationDeliveryError("VAPID keys not configured")

        subscriptions = get_active_subscriptions(self.store)
        notification_id = f"{NOTIFICATION_PREFIX}{_now_ms()}"
        self.store.hset(
            notification_id,
            {
                "title": payload.title,
                "body": payload.body,
                "eventId": payload.event_id or "",
                "eventTitle": payload.event_title or "",
                "eventDate": payload.event_date or "",
                "sentAt": _utc_iso(),
                "recipientCount": len(subscriptions),
                "status": "sending",
            },
        )

        data = json.dumps(payload.to_dict())
        result = SendResult()
        for record in subscriptions:
            try:
                self._deliver(record, data)
            except WebPushException as exc:
                status = _status_code(exc)
                LOGGER.warning("Push to %s failed with status %s: %s", record.id, status, exc)
                result.failure_count += 1
                result.results.append({"subscriptionId": record.id, "success": False, "error": str(exc)})
                if status in EXPIRED_SUBSCRIPTION_STATUSES:
                    deactivate_subscription(self.store, record.id)
                continue
            except requests.RequestException as exc:
                LOGGER.warning("Push to %s failed: %s", record.id, exc)
                result.failure_count += 1
                result.results.append({"subscriptionId": record.id, "success": False, "error": str(exc)})
                continue
            except Exception as exc:
                # e.g. a stored subscription with an undecodable p256dh key
                LOGGER.exception("Push send error for %s", record.id)
                result.failure_count += 1
                result.results.append(
                    {"subscriptionId": record.id, "success": False, "error": str(exc) or exc.__class__.__name__}
                )
                continue
            result.success_count += 1
            result.results.append({"subscriptionId": record.id, "success": True})

        self.store.hset(
            notification_id,
            {
                "status": "completed",
                "successCount": result.success_count,
                "failureCount": result.failure_count,
                "completedAt": _utc_iso(),
            },
        )
        self.store.zadd(NOTIFICATION_HISTORY_KEY, _now_ms(), notification_id)
        LOGGER.info(
            "Sent notification '%s' to %d subscribers (%d ok, %d failed)",
            payload.title,
            len(subscriptions),
            result.success_count,
            result.failure_count,
        )
        return result
