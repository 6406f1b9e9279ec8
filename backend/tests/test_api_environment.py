"""
HTTP and WebSocket surface, driven through TestClient against a service
backed by the fake probe and installers.
"""

import asyncio
import time

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from provisioner.api.routes.websocket import offer
from provisioner.config import settings
from provisioner.main import create_app
from provisioner.middleware.rate_limit import client_and_kind
from provisioner.models.provisioning import DependencyKind, DependencyState


@pytest.fixture
def client(service):
    app = create_app()
    app.state.provisioning = service
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def python_present(fake_probe):
    fake_probe.states[DependencyKind.INTERPRETER] = DependencyState.INSTALLED


def _poll_progress(client, kind, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        response = client.get(f"/environment/progress/{kind}")
        if response.status_code == 200 and response.json()["status"] != "installing":
            return response.json()
        time.sleep(0.02)
    raise AssertionError(f"install of {kind} did not finish within {timeout}s")


def test_snapshot_before_check_is_unknown(client):
    response = client.get("/environment")

    assert response.status_code == 200
    body = response.json()
    assert body["interpreter"] == "unknown"
    assert body["ready"] is False
    assert "X-Request-ID" in response.headers


def test_check_reports_missing_interpreter(client):
    response = client.post("/environment/check")

    assert response.status_code == 200
    body = response.json()
    assert body["interpreter"] == "missing"
    assert body["package"] == "unknown"
    assert body["status_message"].startswith("Python was not detected")


def test_check_single_kind(client, python_present):
    response = client.post("/environment/check/interpreter")

    assert response.status_code == 200
    assert response.json()["state"] == "installed"


def test_unknown_kind_is_rejected(client):
    assert client.post("/environment/check/ffmpeg").status_code == 422


def test_package_install_without_interpreter_conflicts(client):
    client.post("/environment/check")

    response = client.post("/environment/install/package")

    assert response.status_code == 409
    assert response.json()["error_code"] == "PREREQUISITE_MISSING"
    assert response.json()["recoverable"] is False


def test_progress_404_before_any_install(client):
    assert client.get("/environment/progress/model").status_code == 404


def test_install_runs_in_background_until_installed(client, python_present):
    client.post("/environment/check")

    response = client.post("/environment/install/package")

    assert response.status_code == 202
    accepted = response.json()
    assert accepted["kind"] == "package"
    assert accepted["progress_url"] == "/environment/progress/package"

    final = _poll_progress(client, "package")
    assert final["status"] == "installed"
    assert final["progress"] == 100
    assert final["session_id"] == accepted["session_id"]
    assert client.get("/environment").json()["ready"] is True
    assert client.get("/environment/ready").status_code == 200


def test_cancel_when_idle_returns_false(client):
    response = client.post("/environment/cancel/model")

    assert response.status_code == 200
    assert response.json() == {"kind": "model", "cancelled": False}


def test_cancel_running_install(client, python_present, fake_installers):
    fake_installers[DependencyKind.MODEL].block = True
    client.post("/environment/check")
    client.post("/environment/install/model")

    response = client.post("/environment/cancel/model")

    assert response.json()["cancelled"] is True
    final = _poll_progress(client, "model")
    assert final["status"] == "cancelled"
    assert client.get("/environment").json()["model"] == "missing"


def test_remove_interpreter_conflicts(client):
    response = client.delete("/environment/interpreter")

    assert response.status_code == 409
    assert response.json()["error_code"] == "INVALID_TRANSITION"


def test_ready_conflict_lists_missing_and_guides(client):
    client.post("/environment/check")

    response = client.get("/environment/ready")

    assert response.status_code == 409
    body = response.json()
    assert body["error_code"] == "ENVIRONMENT_NOT_READY"
    assert body["context"]["missing"] == ["interpreter", "package"]


def test_guides(client):
    guides = client.get("/environment/guides").json()
    assert set(guides) == {"interpreter", "package", "model"}
    assert guides["interpreter"].startswith("https://")


def test_health(client):
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["installs_running"] == []
    assert body["environment"]["interpreter"] == "unknown"


def test_api_key_enforced_when_enabled(client, monkeypatch):
    monkeypatch.setattr(settings, "REQUIRE_AUTH", True)

    missing = client.post("/environment/check")
    assert missing.status_code == 401
    assert missing.json()["error_code"] == "API_KEY_MISSING"
    wrong = client.post("/environment/check", headers={"X-API-Key": "wrong"})
    assert wrong.status_code == 403
    assert wrong.json()["error_code"] == "API_KEY_INVALID"
    assert client.post("/environment/check", headers={"X-API-Key": "dev-key-12345"}).status_code == 200
    assert client.get("/environment").status_code == 200


def test_install_limit_key_is_per_client_and_kind():
    scope = {"type": "http", "headers": [], "client": ("10.0.0.7", 50123), "path_params": {"kind": "model"}}

    assert client_and_kind(Request(scope)) == "10.0.0.7:model"
    assert client_and_kind(Request({**scope, "path_params": {}})) == "10.0.0.7"


def test_websocket_sends_snapshot_then_pushes_updates(client, python_present):
    with client.websocket_connect("/ws/environment") as ws:
        first = ws.receive_json()
        assert first["type"] == "snapshot"
        assert first["data"]["interpreter"] == "unknown"

        ws.send_text("ping")
        assert ws.receive_json() == {"type": "pong"}

        client.post("/environment/check")
        update = ws.receive_json()
        assert update["type"] == "snapshot"
        assert update["data"]["interpreter"] == "installed"


def test_unhandled_error_reports_its_request_id(service):
    app = create_app()
    app.state.provisioning = service

    @app.get("/boom")
    async def boom():
        raise RuntimeError("boom")

    with TestClient(app, raise_server_exceptions=False) as test_client:
        response = test_client.get("/boom")

    assert response.status_code == 500
    request_id = response.json()["request_id"]
    assert request_id != "unknown"
    assert len(request_id) == 8


def test_full_websocket_queue_drops_frames_instead_of_raising():
    queue = asyncio.Queue(maxsize=1)

    assert offer(queue, {"type": "snapshot", "data": {}}, "ws-test")
    assert not offer(queue, {"type": "pong"}, "ws-test")
    assert queue.qsize() == 1
