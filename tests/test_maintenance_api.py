"""tests for the maintenance gate over HTTP and WebSocket"""
import time
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from app import crud
from app.main import app
from app.core.config import settings
from app.core.realtime import change_feed
from app.core.scheduler import poll_maintenance_changes

ADMIN_URL = f"{settings.API_V1_STR}/admin/maintenance"
STATUS_URL = f"{settings.API_V1_STR}/maintenance/status"
CHECK_URL = f"{settings.API_V1_STR}/maintenance/check"
WS_URL = f"{settings.API_V1_STR}/maintenance/ws"


@pytest.fixture(scope="function")
def broken_settings_fetch():
    """settings reads fail for the app started after this fixture"""

    async def fetch():
        raise ConnectionError("database unreachable")

    with mock.patch("app.core.maintenance_state.fetch_from_database", fetch):
        yield


def bearer(headers):
    return headers["Authorization"].split(" ", 1)[1]


def wait_for_gate(enabled, attempts=50):
    guard = app.state.maintenance_guard
    for _ in range(attempts):
        if guard.config is not None and guard.config.enabled == enabled:
            return
        time.sleep(0.05)
    raise AssertionError(f"gate never saw enabled={enabled}")


# ============= MIDDLEWARE =============

def test_storefront_open_without_settings(client):
    """no settings record => fail open, route handling continues"""
    response = client.get("/shop")
    assert response.status_code == 404


def test_blocked_route_shows_notice(maintenance_enabled, client):
    response = client.get("/shop")
    assert response.status_code == 503
    assert response.headers["Retry-After"] == str(settings.MAINTENANCE_RETRY_AFTER)
    data = response.json()
    assert data["status"] == "maintenance"
    assert data["path"] == "/shop"
    assert data["notice"]["title"] == "Produk Baru Segera Hadir!"
    assert data["notice"]["message"] == "Toko sedang dalam perawatan"
    assert data["notice"]["countdown_active"] is False


@pytest.mark.parametrize("path", ["/product/kaos-polos", "/cart", "/checkout", "/orders/7", "/account"])
def test_all_storefront_routes_gated(maintenance_enabled, client, path):
    assert client.get(path).status_code == 503


@pytest.mark.parametrize("path", ["/admin", "/auth", "/about"])
def test_unblocked_routes_pass_during_maintenance(maintenance_enabled, client, path):
    assert client.get(path).status_code == 404


def test_root_and_health_pass_during_maintenance(maintenance_enabled, client):
    assert client.get("/").status_code == 200
    assert client.get("/health").status_code == 200


def test_customer_sees_notice(maintenance_enabled, client, auth_headers):
    assert client.get("/cart", headers=auth_headers).status_code == 503


def test_admin_bypasses_notice(maintenance_enabled, client, admin_auth_headers):
    assert client.get("/cart", headers=admin_auth_headers).status_code == 404


def test_admin_previews_notice_with_test_override(maintenance_enabled, client, admin_auth_headers):
    response = client.get("/cart", params={"test_maintenance": "true"}, headers=admin_auth_headers)
    assert response.status_code == 503


def test_invalid_token_is_anonymous(maintenance_enabled, client):
    response = client.get("/cart", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 503


def test_retry_after_counts_down_to_window_end(maintenance_enabled, client, admin_auth_headers):
    window_end = datetime.now(timezone.utc) + timedelta(hours=2)
    response = client.patch(ADMIN_URL, json={"window_end": window_end.isoformat()}, headers=admin_auth_headers)
    assert response.status_code == 200

    response = client.get("/checkout")
    assert response.status_code == 503
    assert 7000 < int(response.headers["Retry-After"]) <= 7200
    assert response.json()["notice"]["countdown_active"] is True


def test_settings_fetch_failure_fails_open(maintenance_enabled, broken_settings_fetch, client):
    assert client.get("/shop").status_code == 404
    assert client.get(STATUS_URL).json()["enabled"] is False


def test_gate_error_fails_open(maintenance_enabled, client):
    with mock.patch("app.middleware.maintenance.gate_request", side_effect=RuntimeError("boom")):
        assert client.get("/shop").status_code == 404


# ============= PUBLIC ENDPOINTS =============

def test_status_without_settings(client):
    response = client.get(STATUS_URL)
    assert response.status_code == 200
    data = response.json()
    assert data["enabled"] is False
    assert data["active"] is False
    assert data["countdown"] == {"days": 0, "hours": 0, "minutes": 0, "seconds": 0}


def test_status_during_maintenance(maintenance_enabled, client):
    data = client.get(STATUS_URL).json()
    assert data["enabled"] is True
    assert data["active"] is True
    assert data["title"] == "Produk Baru Segera Hadir!"
    assert data["countdown_label"] == "Produk baru akan tersedia dalam:"


def test_check_explains_decision(maintenance_enabled, client):
    response = client.get(CHECK_URL, params={"path": "/shop"})
    assert response.status_code == 200
    data = response.json()
    assert data["active"] is True
    assert data["blocked"] is True
    assert data["bypass"] is False
    assert data["verdict"] == "show_notice"
    assert data["role"] is None


def test_check_for_admin(maintenance_enabled, client, admin_auth_headers):
    data = client.get(CHECK_URL, params={"path": "/shop"}, headers=admin_auth_headers).json()
    assert data["role"] == "admin"
    assert data["bypass"] is True
    assert data["verdict"] == "allow"

    data = client.get(CHECK_URL, params={"path": "/shop", "test_maintenance": "true"}, headers=admin_auth_headers).json()
    assert data["test_override"] is True
    assert data["verdict"] == "show_notice"


# ============= ADMIN ENDPOINTS =============

def test_admin_endpoints_require_admin(client, auth_headers):
    assert client.get(ADMIN_URL).status_code == 401
    assert client.get(ADMIN_URL, headers=auth_headers).status_code == 403
    assert client.post(f"{ADMIN_URL}/enable", headers=auth_headers).status_code == 403


def test_get_settings_not_found(client, admin_auth_headers):
    assert client.get(ADMIN_URL, headers=admin_auth_headers).status_code == 404


def test_create_settings(client, admin_auth_headers):
    response = client.post(ADMIN_URL, json={"enabled": True, "message": "Kembali sebentar lagi"}, headers=admin_auth_headers)
    assert response.status_code == 201
    data = response.json()
    assert data["enabled"] is True
    assert data["message"] == "Kembali sebentar lagi"
    assert data["title"] == crud.DEFAULT_MAINTENANCE_TITLE
    assert data["version"] == 1

    #gate picks up the change before the response is returned
    assert client.get("/shop").status_code == 503

    response = client.post(ADMIN_URL, json={"enabled": False}, headers=admin_auth_headers)
    assert response.status_code == 409


def test_update_settings_with_version(maintenance_enabled, client, admin_auth_headers):
    response = client.patch(ADMIN_URL, json={"enabled": False, "version": 1}, headers=admin_auth_headers)
    assert response.status_code == 200
    assert response.json()["version"] == 2
    assert client.get("/shop").status_code == 404

    response = client.patch(ADMIN_URL, json={"enabled": True, "version": 1}, headers=admin_auth_headers)
    assert response.status_code == 409
    assert client.get("/shop").status_code == 404


def test_update_rejects_bad_input(maintenance_enabled, client, admin_auth_headers):
    assert client.patch(ADMIN_URL, json={"window_start": "tomorrow-ish"}, headers=admin_auth_headers).status_code == 422
    assert client.patch(ADMIN_URL, json={"title": None}, headers=admin_auth_headers).status_code == 422


def test_update_missing_settings(client, admin_auth_headers):
    assert client.patch(ADMIN_URL, json={"enabled": True}, headers=admin_auth_headers).status_code == 404


def test_future_window_keeps_storefront_open(maintenance_enabled, client, admin_auth_headers):
    start = datetime.now(timezone.utc) + timedelta(days=1)
    response = client.patch(ADMIN_URL, json={"window_start": start.isoformat()}, headers=admin_auth_headers)
    assert response.status_code == 200
    assert client.get("/shop").status_code == 404
    assert client.get(STATUS_URL).json()["active"] is False


def test_enable_and_disable(client, admin_auth_headers, db_session):
    response = client.post(f"{ADMIN_URL}/enable", params={"message": "Stok baru datang"}, headers=admin_auth_headers)
    assert response.status_code == 200
    assert response.json()["enabled"] is True
    assert response.json()["message"] == "Stok baru datang"
    assert client.get("/checkout").status_code == 503

    response = client.post(f"{ADMIN_URL}/disable", headers=admin_auth_headers)
    assert response.status_code == 200
    assert response.json()["enabled"] is False
    assert client.get("/checkout").status_code == 404

    actions = [entry.action for entry in crud.get_audit_logs(db_session, action=None)]
    assert "maintenance.enabled" in actions
    assert "maintenance.disabled" in actions


def test_disable_without_settings(client, admin_auth_headers):
    assert client.post(f"{ADMIN_URL}/disable", headers=admin_auth_headers).status_code == 404


def test_toggle(maintenance_enabled, client, admin_auth_headers):
    response = client.post(f"{ADMIN_URL}/toggle", json={"enabled": False}, headers=admin_auth_headers)
    assert response.status_code == 200
    assert response.json()["enabled"] is False
    assert client.get("/shop").status_code == 404

    response = client.post(f"{ADMIN_URL}/toggle", json={"enabled": True}, headers=admin_auth_headers)
    assert response.json()["enabled"] is True
    assert client.get("/shop").status_code == 503


# ============= CHANGE POLLING =============

def test_poll_picks_up_external_change(maintenance_enabled, client, db_session):
    assert client.get("/shop").status_code == 503

    #written behind the API's back, e.g. by the maintenance CLI
    maintenance_enabled.is_enabled = False
    db_session.commit()

    poll_maintenance_changes()
    wait_for_gate(enabled=False)
    assert client.get("/shop").status_code == 404


def test_poll_without_change_publishes_nothing(maintenance_enabled, client):
    with mock.patch.object(change_feed, "publish") as publish:
        poll_maintenance_changes()
    publish.assert_not_called()


# ============= NAVIGATION SESSIONS =============

def test_navigation_session_verdicts(maintenance_enabled, client):
    with client.websocket_connect(WS_URL) as websocket:
        websocket.send_json({"type": "navigate", "path": "/shop"})
        message = websocket.receive_json()
        assert message["type"] == "verdict"
        assert message["path"] == "/shop"
        assert message["state"] == "ready"
        assert message["verdict"] == "show_notice"
        assert message["notice"]["title"] == "Produk Baru Segera Hadir!"

        websocket.send_json({"type": "navigate", "path": "/admin"})
        message = websocket.receive_json()
        assert message["verdict"] == "allow"
        assert "notice" not in message


def test_navigation_session_admin_token(maintenance_enabled, client, admin_auth_headers):
    token = bearer(admin_auth_headers)
    with client.websocket_connect(f"{WS_URL}?token={token}") as websocket:
        websocket.send_json({"type": "navigate", "path": "/checkout"})
        assert websocket.receive_json()["verdict"] == "allow"

    with client.websocket_connect(f"{WS_URL}?token={token}&test_maintenance=true") as websocket:
        websocket.send_json({"type": "navigate", "path": "/checkout"})
        assert websocket.receive_json()["verdict"] == "show_notice"


def test_navigation_session_push_on_change(client, admin_auth_headers):
    with client.websocket_connect(WS_URL) as websocket:
        websocket.send_json({"type": "navigate", "path": "/cart"})
        assert websocket.receive_json()["verdict"] == "allow"

        response = client.post(f"{ADMIN_URL}/enable", headers=admin_auth_headers)
        assert response.status_code == 200

        message = websocket.receive_json()
        assert message["reason"] == "settings_changed"
        assert message["path"] == "/cart"
        assert message["verdict"] == "show_notice"
        assert message["notice"]["title"] == crud.DEFAULT_MAINTENANCE_TITLE


def test_navigation_session_rejects_bad_messages(client):
    with client.websocket_connect(WS_URL) as websocket:
        websocket.send_text("not json")
        assert websocket.receive_json()["type"] == "error"

        websocket.send_json({"type": "jump", "path": "/shop"})
        assert websocket.receive_json()["type"] == "error"

        websocket.send_json({"type": "navigate", "path": "/shop"})
        assert websocket.receive_json()["verdict"] == "allow"


def test_navigation_session_survives_binary_and_hostile_frames(client):
    with client.websocket_connect(WS_URL) as websocket:
        websocket.send_bytes(b'{"type": "navigate", "path": "/shop"}')
        assert websocket.receive_json()["type"] == "error"

        #deeply nested but under the size limit
        websocket.send_text("[" * 2000 + "]" * 2000)
        assert websocket.receive_json()["type"] == "error"

        websocket.send_text("[" * 100000 + "]" * 100000)
        message = websocket.receive_json()
        assert message["type"] == "error"
        assert "too large" in message["detail"]

        websocket.send_json({"type": "navigate", "path": "/shop"})
        assert websocket.receive_json()["verdict"] == "allow"
