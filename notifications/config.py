"""Shared configuration for the notification batching system."""
from __future__ import annotations

import os

BATCH_WINDOW_MS = 10 * 60 * 1000
LEASE_TTL_MS = 15 * 60 * 1000

BATCH_KEY = "pending_notifications_batch"
LEASE_KEY = "batch_processing_lock"
BATCH_LOG_PREFIX = "batch_log:"
BATCH_LOG_HISTORY_KEY = "batch_log_history"
FAILED_NOTIFICATION_PREFIX = "failed_notification:"

SUBSCRIPTION_PREFIX = "push_sub:"
ACTIVE_SUBSCRIPTIONS_KEY = "active_push_subscriptions"
NOTIFICATION_PREFIX = "notification:"
NOTIFICATION_HISTORY_KEY = "notification_history"

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:admin@example.com")
PUSH_TIMEOUT_SECONDS = int(os.getenv("PUSH_TIMEOUT_SECONDS", "10"))

# 404/410 from a push service means the subscription is gone for good
EXPIRED_SUBSCRIPTION_STATUSES = {404, 410}
