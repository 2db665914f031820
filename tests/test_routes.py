import pytest
import redis

import app
from helpers import make_coordinator
from notifications import channels
from notifications.config import BATCH_KEY, BATCH_WINDOW_MS

TOKEN = "admin-secret"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def coordinator(monkeypatch, tmp_path):
    monkeypatch.setattr(app, "ADMIN_TOKEN", TOKEN)
    monkeypatch.setattr(app, "SessionLocal", app.init_db(f"sqlite:///{tmp_path / 'events.db'}"))
    coord, store, sender, clock = make_coordinator()
    monkeypatch.setattr(app, "get_coordinator", lambda: coord)
    return coord


def test_healthz():
    with app.app.test_client() as client:
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.get_json() == {"ok": True}


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": TOKEN}])
def test_admin_routes_require_bearer_token(coordinator, headers):
    with app.app.test_client() as client:
        response = client.post("/api/admin/notifications/force-batch", headers=headers)
        assert response.status_code == 401
        assert response.get_json() == {"error": "Unauthorized"}


def test_admin_routes_locked_when_no_token_configured(coordinator, monkeypatch):
    monkeypatch.setattr(app, "ADMIN_TOKEN", "")
    with app.app.test_client() as client:
        response = client.get("/api/admin/notifications/batch", headers={"Authorization": "Bearer "})
        assert response.status_code == 401


def test_create_event_queues_notification_once(coordinator):
    event = {"title": "Sports Day", "start_date": "2025-06-01", "location": "Field"}

    with app.app.test_client() as client:
        first = client.post("/api/events", json=event, headers=AUTH)
        second = client.post("/api/events", json=event, headers=AUTH)
        listed = client.get("/api/events")

    assert first.status_code == 201
    body = first.get_json()
    assert body["created"] is True
    assert body["notificationQueued"] is True
    assert body["event"]["id"] == app.generate_event_id("Sports Day", "2025-06-01")
    assert body["event"]["location"] == "Field"

    assert second.status_code == 200
    assert second.get_json()["created"] is False

    assert [e["title"] for e in listed.get_json()] == ["Sports Day"]
    assert len(coordinator.store.zrange(BATCH_KEY)) == 1


def test_create_event_validates_payload(coordinator):
    with app.app.test_client() as client:
        response = client.post("/api/events", json={"title": "No date"}, headers=AUTH)
        assert response.status_code == 400


def test_create_event_survives_store_outage(coordinator, monkeypatch):
    def broken(*args, **kwargs):
        raise redis.ConnectionError("redis down")

    monkeypatch.setattr(coordinator, "enqueue", broken)

    with app.app.test_client() as client:
        response = client.post("/api/events", json={"title": "Concert", "start_date": "2025-07-01"}, headers=AUTH)

    assert response.status_code == 201
    assert response.get_json()["notificationQueued"] is False
    assert app.get_event(app.generate_event_id("Concert", "2025-07-01"))["title"] == "Concert"


def test_batch_status_and_force_batch(coordinator):
    coordinator.enqueue("evt1", "Sports Day", "2025-06-01")

    with app.app.test_client() as client:
        status = client.get("/api/admin/notifications/batch", headers=AUTH).get_json()
        forced = client.post("/api/admin/notifications/force-batch", headers=AUTH).get_json()
        empty = client.post("/api/admin/notifications/force-batch", headers=AUTH).get_json()
        logs = client.get("/api/admin/notifications/batches", headers=AUTH).get_json()

    assert status["pendingCount"] == 1
    assert status["batchWindowMs"] == BATCH_WINDOW_MS
    assert status["pending"][0]["waitTimeMs"] == BATCH_WINDOW_MS
    assert forced == {"success": True, "message": "Processed 1 notifications"}
    assert empty == {"success": False, "message": "No pending notifications to process"}
    assert len(coordinator.sender.calls) == 1
    assert logs["batches"][0]["title"] == "New Event Added"


def test_force_batch_store_failure_returns_500(coordinator, monkeypatch):
    def broken():
        raise redis.ConnectionError("redis down")

    monkeypatch.setattr(coordinator, "force_process_batch", broken)

    with app.app.test_client() as client:
        response = client.post("/api/admin/notifications/force-batch", headers=AUTH)

    assert response.status_code == 500
    assert response.get_json() == {"error": "Failed to process batch"}


def test_push_subscribe(coordinator):
    subscription = {"endpoint": "https://push.example.com/1", "keys": {"p256dh": "p", "auth": "a"}}

    with app.app.test_client() as client:
        ok = client.post("/api/push/subscribe", json=subscription)
        bad = client.post("/api/push/subscribe", json={"endpoint": ""})

    assert ok.status_code == 200
    assert ok.get_json()["subscriptionId"].startswith("push_sub:")
    assert bad.status_code == 400


def test_push_send_requires_configured_sender(coordinator, monkeypatch):
    monkeypatch.setattr(app, "WebPushSender", lambda store: channels.WebPushSender(
        store, vapid_public_key="", vapid_private_key=""))
    with app.app.test_client() as client:
        missing = client.post("/api/push/send", json={"title": "Hi"}, headers=AUTH)
        unconfigured = client.post("/api/push/send", json={"title": "Hi", "body": "There"}, headers=AUTH)

    assert missing.status_code == 400
    assert unconfigured.status_code == 503


def test_push_send_and_history(coordinator, monkeypatch):
    monkeypatch.setattr(app, "WebPushSender", lambda store: channels.WebPushSender(
        store, vapid_public_key="pub", vapid_private_key="priv"))
    monkeypatch.setattr(channels, "webpush", lambda **kwargs: None)
    channels.store_subscription(coordinator.store, {"endpoint": "https://push.example.com/1", "keys": {"p256dh": "p", "auth": "a"}})

    with app.app.test_client() as client:
        sent = client.post("/api/push/send", json={"title": "Hi", "body": "There"}, headers=AUTH)
        history = client.get("/api/admin/notifications", headers=AUTH)

    assert sent.get_json()["successCount"] == 1
    notifications = history.get_json()["notifications"]
    assert [n["title"] for n in notifications] == ["Hi"]
