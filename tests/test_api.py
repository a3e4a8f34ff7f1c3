"""Tests for the admin console API, with the mock data service."""

from functools import partial

import pytest
from fastapi.testclient import TestClient

from order_tracking import main
from order_tracking.services.alerts import reset_audio_backend
from order_tracking.services.data import get_data_service, reset_data_service


@pytest.fixture
def client(monkeypatch, tmp_path):
    monkeypatch.setattr(main.settings, "data_directory", str(tmp_path))
    reset_data_service()
    reset_audio_backend()
    with TestClient(main.app) as c:
        yield c
    reset_data_service()
    reset_audio_backend()


def create_test_notification(client):
    response = client.post("/api/notifications/test", json={"message": "Table 4 is waiting"})
    assert response.status_code == 201
    return response.json()["notification"]


class TestHealth:

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["health"] == "/health"

    def test_health_check(self, client):
        data = client.get("/health").json()

        assert data["status"] == "operational"
        assert data["data_service"] == "healthy"
        assert data["feed_status"] == "subscribed"
        assert data["polling_active"] is True
        assert data["alert_phase"] == "idle"
        assert data["background_agent"] == "running"

    def test_session_info(self, client):
        data = client.get("/api/session").json()

        assert data["client_id"].startswith("client_")
        assert data["identity_persisted"] is True
        assert data["authenticated_user_id"] is None


class TestNotifications:

    def test_test_notification_starts_alert(self, client):
        notification = create_test_notification(client)

        data = client.get("/api/notifications").json()
        assert notification["type"] == "test"
        assert data["unread_count"] == 1
        assert data["notifications"][0]["id"] == notification["id"]
        assert data["alert"]["is_playing"] is True
        assert data["errors"] == []

    def test_mark_read_silences(self, client):
        create_test_notification(client)

        data = client.post("/api/notifications/mark-read").json()

        assert data["success"] is True
        assert data["unread_count"] == 0
        assert data["alert"]["phase"] == "silenced"
        assert data["alert"]["user_manually_silenced"] is True

    def test_title_too_long_rejected(self, client):
        response = client.post("/api/notifications/test", json={"title": "x" * 201})

        assert response.status_code == 422


class TestAlerts:

    def test_toggle_with_nothing_unread(self, client):
        data = client.post("/api/alerts/toggle").json()

        assert data["success"] is True
        assert data["message"] == "Nothing to alert about"
        assert data["alert"]["is_playing"] is False

    def test_toggle_stops_playing_alert(self, client):
        create_test_notification(client)

        data = client.post("/api/alerts/toggle").json()

        assert data["alert"]["is_playing"] is False
        assert data["unread_count"] == 0

    def test_disable_sound(self, client):
        create_test_notification(client)

        data = client.put("/api/alerts/sound", json={"enabled": False}).json()

        assert data["is_sound_enabled"] is False
        assert data["is_playing"] is False
        assert client.get("/api/alerts").json()["is_sound_enabled"] is False

    def test_dismiss_unknown_error_kind(self, client):
        assert client.delete("/api/errors/bogus").status_code == 400

    def test_dismiss_missing_error(self, client):
        assert client.delete("/api/errors/audio").status_code == 404


class TestBackground:

    def test_push_suppressed_before_enable(self, client):
        data = client.post("/webhook/push", json={"orderNumber": 7}).json()

        assert data["shown"] is False
        assert data["alert"] is None

    def test_enable_then_push_and_click(self, client):
        enabled = client.post("/api/background/enable").json()
        assert enabled == {"permission": "granted", "background_notifications_enabled": True}

        pushed = client.post("/webhook/push", json={"orderNumber": 7, "customerName": "Ada"}).json()
        assert pushed["shown"] is True
        assert pushed["alert"]["title"] == "New Order #7"

        alerts = client.get("/api/agent/alerts").json()
        assert alerts["total"] == 1

        alert_id = alerts["alerts"][0]["id"]
        clicked = client.post(f"/api/agent/alerts/{alert_id}/click", params={"action": "view"}).json()
        assert clicked["url"] == "/orders"

    def test_click_unknown_alert(self, client):
        assert client.post("/api/agent/alerts/missing/click").status_code == 404


class TestSessionAndOrders:

    def test_login_and_logout(self, client):
        data = client.post("/api/session/login", json={"user_id": "user-1"}).json()
        assert data["authenticated_user_id"] == "user-1"

        data = client.post("/api/session/logout").json()
        assert data["authenticated_user_id"] is None

    def test_login_requires_user_id(self, client):
        assert client.post("/api/session/login", json={"user_id": ""}).status_code == 422

    def test_orders_listed(self, client, settle):
        client_id = client.get("/api/session").json()["client_id"]
        service = get_data_service()
        first = client.portal.call(partial(service.create_order, customer_name="Ada", client_id=client_id))
        second = client.portal.call(partial(service.create_order, customer_name="Bob", client_id=client_id))
        client.portal.call(partial(service.update_order, first["id"], status="delivered"))
        client.portal.call(settle)

        everything = client.get("/api/orders").json()
        active = client.get("/api/orders", params={"active": "true"}).json()

        assert everything["total"] == 2
        assert {o["id"] for o in everything["orders"]} == {first["id"], second["id"]}
        assert [o["id"] for o in active["orders"]] == [second["id"]]
