# app.py
from flask import Flask, request, jsonify
import hashlib, hmac, logging, os
from datetime import datetime
from flask_login import LoginManager, UserMixin, login_required
from typing import Any, Dict, List, Optional, Tuple

import redis
from sqlalchemy import Boolean, Column, DateTime, String, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from celery_app import celery_app  # noqa: F401  binds shared tasks to the configured broker
from notifications.channels import (
    NotificationDeliveryError,
    WebPushSender,
    get_notification_history,
    store_subscription,
)
from notifications.models import NotificationPayload
from notifications.service import get_coordinator

LOGGER = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.getenv("SECRET_KEY", "dev-only-key")

login_manager = LoginManager()
login_manager.init_app(app)

ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get("DATA_DIR", BASE_DIR)

os.makedirs(DATA_DIR, exist_ok=True)


def data_path(name: str) -> str:
    return os.path.join(DATA_DIR, name)

# ------------------------------- Database -------------------------------
DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{data_path('calendar.db')}"

Base = declarative_base()


class EventModel(Base):
    __tablename__ = "events"
    id = Column(String(12), primary_key=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    location = Column(String(255))
    start_date = Column(String(10), nullable=False, index=True)
    start_time = Column(String(8))
    end_date = Column(String(10))
    end_time = Column(String(8))
    needs_enrichment = Column(Boolean, default=False, nullable=False)
    source = Column(String(32), default="email", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


def init_db(url: str) -> sessionmaker:
    engine_kwargs: dict[str, Any] = {"future": True}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_engine(url, pool_pre_ping=not url.startswith("sqlite"), **engine_kwargs)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


SessionLocal = init_db(DATABASE_URL)

EVENT_FIELDS = ("description", "location", "start_time", "end_date", "end_time")

# ------------------------------- Auth -------------------------------
class AdminUser(UserMixin):
    id = "admin"


@login_manager.request_loader
def load_admin_from_request(req):
    header = req.headers.get("Authorization", "")
    if not ADMIN_TOKEN or not header.startswith("Bearer "):
        return None
    if hmac.compare_digest(header[len("Bearer "):], ADMIN_TOKEN):
        return AdminUser()
    return None


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "Unauthorized"}), 401

# ------------------------------- Events -------------------------------
def generate_event_id(title: str, start_date: str) -> str:
    return hashlib.md5(f"{title}:{start_date}".encode("utf-8")).hexdigest()[:12]


def _event_to_dict(model: EventModel) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": model.id,
        "title": model.title,
        "start_date": model.start_date,
        "needs_enrichment": bool(model.needs_enrichment),
        "source": model.source,
        "created_at": model.created_at.isoformat() if model.created_at else None,
        "updated_at": model.updated_at.isoformat() if model.updated_at else None,
    }
    for name in EVENT_FIELDS:
        value = getattr(model, name)
        if value:
            data[name] = value
    return data


def get_event(event_id: str) -> Optional[Dict[str, Any]]:
    with SessionLocal() as db:
        model = db.get(EventModel, event_id)
        return _event_to_dict(model) if model else None


def load_events() -> List[Dict[str, Any]]:
    with SessionLocal() as db:
        rows = db.query(EventModel).order_by(EventModel.start_date, EventModel.start_time).all()
        return [_event_to_dict(row) for row in rows]


def store_event(event: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Store an event unless one with the same title and date exists.

    Returns ``(event, created)``.
    """
    title = str(event["title"]).strip()
    start_date = str(event["start_date"]).strip()
    event_id = generate_event_id(title, start_date)

    with SessionLocal() as db:
        existing = db.get(EventModel, event_id)
        if existing:
            LOGGER.info("Duplicate event prevented: %s on %s", title, start_date)
            return _event_to_dict(existing), False
        model = EventModel(
            id=event_id,
            title=title,
            start_date=start_date,
            needs_enrichment=bool(event.get("needs_enrichment")),
            source=event.get("source") or "email",
            **{name: event.get(name) or None for name in EVENT_FIELDS},
        )
        db.add(model)
        db.commit()
        return _event_to_dict(model), True


def queue_event_notification(event: Dict[str, Any]) -> bool:
    try:
        get_coordinator().enqueue(event["id"], event["title"], event["start_date"])
    except redis.RedisError:
        LOGGER.exception("Could not queue notification for event %s", event["id"])
        return False
    return True

# ------------------------------- Routes -------------------------------
@app.get("/healthz")
def healthz():
    return {"ok": True}, 200


@app.route("/api/events", methods=["GET"])
def list_events():
    return jsonify(load_events())


@app.route("/api/events", methods=["POST"])
@login_required
def create_event():
    payload = request.get_json(silent=True) or {}
    if not payload.get("title") or not payload.get("start_date"):
        return jsonify({"error": "title and start_date are required"}), 400

    event, created = store_event(payload)
    if not created:
        return jsonify({"event": event, "created": False, "notificationQueued": False}), 200

    queued = queue_event_notification(event)
    return jsonify({"event": event, "created": True, "notificationQueued": queued}), 201


@app.route("/api/push/subscribe", methods=["POST"])
def push_subscribe():
    subscription = request.get_json(silent=True)
    try:
        subscription_id = store_subscription(get_coordinator().store, subscription or {})
    except ValueError:
        return jsonify({"error": "Invalid subscription data"}), 400
    except redis.RedisError:
        LOGGER.exception("Error storing push subscription")
        return jsonify({"error": "Failed to store subscription"}), 500
    return jsonify({
        "success": True,
        "subscriptionId": subscription_id,
        "message": "Push subscription stored successfully",
    })


@app.route("/api/push/send", methods=["POST"])
@login_required
def push_send():
    data = request.get_json(silent=True) or {}
    if not data.get("title") or not data.get("body"):
        return jsonify({"error": "Title and body are required"}), 400

    payload = NotificationPayload(
        title=data["title"],
        body=data["body"],
        event_id=data.get("eventId"),
        event_title=data.get("eventTitle"),
        event_date=data.get("eventDate"),
    )
    try:
        result = WebPushSender(get_coordinator().store).send(payload)
    except NotificationDeliveryError as exc:
        return jsonify({"success": False, "error": str(exc)}), 503
    except redis.RedisError:
        LOGGER.exception("Error sending push notification")
        return jsonify({"error": "Failed to send notification"}), 500
    return jsonify(result.to_dict())


@app.get("/api/admin/notifications")
@login_required
def notification_history():
    try:
        notifications = get_notification_history(get_coordinator().store, limit=100)
    except redis.RedisError:
        LOGGER.exception("Error fetching notification history")
        return jsonify({"error": "Failed to fetch notifications"}), 500
    return jsonify({"success": True, "notifications": notifications})


@app.get("/api/admin/notifications/batch")
@login_required
def batch_status():
    try:
        return jsonify(get_coordinator().get_batch_status())
    except redis.RedisError:
        LOGGER.exception("Error fetching batch status")
        return jsonify({"error": "Failed to fetch batch status"}), 500


@app.get("/api/admin/notifications/batches")
@login_required
def batch_logs():
    limit = request.args.get("limit", default=20, type=int)
    try:
        logs = get_coordinator().recent_batch_logs(limit=max(1, min(limit, 100)))
    except redis.RedisError:
        LOGGER.exception("Error fetching batch logs")
        return jsonify({"error": "Failed to fetch batch logs"}), 500
    return jsonify({"success": True, "batches": logs})


@app.route("/api/admin/notifications/force-batch", methods=["POST"])
@login_required
def force_batch():
    try:
        return jsonify(get_coordinator().force_process_batch())
    except redis.RedisError:
        LOGGER.exception("Error forcing batch processing")
        return jsonify({"error": "Failed to process batch"}), 500


# ------------- Run -------------
if __name__ == "__main__":
    app.run(debug=os.getenv("FLASK_ENV") != "production")
