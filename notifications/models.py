from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(slots=True)
class PendingNotification:
    """A queued request to announce one newly created event."""

    event_id: str
    event_title: str
    event_date: str
    added_at: int  # ms since epoch, doubles as the queue score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "eventTitle": self.event_title,
            "eventDate": self.event_date,
            "addedAt": self.added_at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "PendingNotification":
        """Parse a queue member; raises ValueError on anything malformed."""
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("queue member is not an object")
        try:
            return cls(
                event_id=str(data["eventId"]),
                event_title=str(data["eventTitle"]),
                event_date=str(data["eventDate"]),
                added_at=int(data["addedAt"]),
            )
        except (KeyError, TypeError, ValueError, OverflowError) as exc:
            raise ValueError(f"incomplete queue member: {exc}") from exc


@dataclass(slots=True)
class NotificationPayload:
    """Structured payload handed to the push sender."""

    title: str
    body: str
    event_id: Optional[str] = None
    event_title: Optional[str] = None
    event_date: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"title": self.title, "body": self.body}
        if self.event_id:
            data["eventId"] = self.event_id
        if self.event_title:
            data["eventTitle"] = self.event_title
        if self.event_date:
            data["eventDate"] = self.event_date
        return data


@dataclass(slots=True)
class SendResult:
    """Per-recipient delivery counts for one outbound notification."""

    success_count: int = 0
    failure_count: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_sent(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success(self) -> bool:
        return self.success_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "totalSent": self.total_sent,
            "results": list(self.results),
        }


@dataclass(slots=True)
class PushSubscriptionRecord:
    """An active browser push endpoint."""

    id: str
    endpoint: str
    p256dh: str
    auth: str

    def subscription_info(self) -> Dict[str, Any]:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}
