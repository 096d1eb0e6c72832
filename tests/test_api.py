"""HTTP/WS bridge: routing, auth, and OBS error → status code mapping."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from obs_switcher.api import create_app
from obs_switcher.config import APISettings
from obs_switcher.core import (
    ConnectionManager,
    ConnectResult,
    NoMatchingInputFound,
    NotConnected,
    OBSClient,
    RequestFailed,
    RequestTimeout,
    Scene,
)

STATUS = {"state": "connected", "connected": True, "connecting": False}


@pytest.fixture
def obs():
    client = MagicMock(spec=OBSClient)
    client.is_connected.return_value = True
    client.get_status.return_value = dict(STATUS)
    client.get_scene_list.return_value = [Scene("Scene 1", True), Scene("Scene 2", False)]
    return client


def _app(obs, api_key=None):
    return create_app(ConnectionManager(client=obs), APISettings(api_key=api_key))


@pytest.fixture
def api(obs):
    with TestClient(_app(obs)) as tc:
        yield tc


# ─── Health ───────────────────────────────────────────────────────────────────

def test_health(api, obs):
    r = api.get("/health")
    assert r.status_code == 200
    assert r.json()["obs_connected"] is True


def test_healthz_degraded_when_disconnected(api, obs):
    obs.is_connected.return_value = False
    assert api.get("/healthz").status_code == 503
    obs.is_connected.return_value = True
    assert api.get("/healthz").json() == {"status": "ok"}


def test_lifespan_registers_event_bridge(obs):
    with TestClient(_app(obs)):
        obs.on_connection_changed.assert_called_once()
        obs.on_scene_changed.assert_called_once()
        obs.on_mute_changed.assert_called_once()


# ─── Connection / scenes ──────────────────────────────────────────────────────

def test_connect_passes_overrides(api, obs):
    obs.connect.return_value = ConnectResult(False, "refused", "ConnectionRefused")
    r = api.post("/obs/connect", json={"host": "10.0.0.5", "port": 4456})
    assert r.status_code == 200
    assert r.json() == {"success": False, "error": "refused", "error_type": "ConnectionRefused"}
    obs.connect.assert_awaited_once_with("10.0.0.5", 4456, None, None)


def test_disconnect(api, obs):
    assert api.post("/obs/disconnect").json() == {"status": "disconnected"}
    obs.disconnect.assert_awaited_once()


def test_status(api):
    assert api.get("/obs/status").json() == STATUS


def test_list_scenes(api):
    assert api.get("/obs/scenes").json() == [
        {"name": "Scene 1", "is_current": True},
        {"name": "Scene 2", "is_current": False},
    ]


def test_switch_scene(api, obs):
    r = api.post("/obs/scene/Scene 2")
    assert r.status_code == 200
    obs.set_current_scene.assert_awaited_once_with("Scene 2")


# ─── Error mapping ────────────────────────────────────────────────────────────

def test_not_connected_is_503(api, obs):
    obs.get_scene_list.side_effect = NotConnected("Not connected to OBS")
    r = api.get("/obs/scenes")
    assert r.status_code == 503
    assert r.json()["error"] == "NotConnected"


def test_request_failed_is_400_with_obs_status(api, obs):
    obs.set_current_scene.side_effect = RequestFailed("SetCurrentProgramScene", 600, "Scene not found")
    r = api.post("/obs/scene/Nope")
    assert r.status_code == 400
    assert r.json()["code"] == 600
    assert r.json()["comment"] == "Scene not found"


def test_request_timeout_is_504(api, obs):
    obs.get_version.side_effect = RequestTimeout("GetVersion timed out after 10s")
    assert api.get("/obs/version").status_code == 504


def test_missing_input_is_404(api, obs):
    obs.toggle_audio_mute.side_effect = NoMatchingInputFound("No desktop audio input found in OBS")
    assert api.post("/obs/audio/mute/toggle").status_code == 404


def test_value_error_is_422(api, obs):
    obs.set_current_scene.side_effect = ValueError("Scene name must not be empty")
    assert api.post("/obs/scene/%20").status_code == 422


def test_mute_endpoints(api, obs):
    obs.toggle_mic_mute.return_value = {"input": "Mic/Aux", "muted": True}
    obs.toggle_input_mute.return_value = False
    assert api.post("/obs/mic/mute/toggle").json() == {"input": "Mic/Aux", "muted": True}
    assert api.post("/obs/input/Webcam/mute/toggle").json() == {"input": "Webcam", "muted": False}


# ─── Auth ─────────────────────────────────────────────────────────────────────

def test_api_key_required(obs):
    with TestClient(_app(obs, api_key="secret")) as tc:
        assert tc.get("/obs/status").status_code == 401
        assert tc.get("/obs/status", headers={"Authorization": "Bearer nope"}).status_code == 403
        assert tc.get("/obs/status", headers={"Authorization": "Bearer secret"}).status_code == 200
        assert tc.get("/health").status_code == 200


# ─── WebSocket bridge ─────────────────────────────────────────────────────────

def test_ws_hello_and_commands(api, obs):
    with api.websocket_connect("/ws") as ws:
        hello = ws.receive_json()
        assert hello["event"] == "hello"
        assert hello["data"]["status"] == STATUS

        ws.send_json({"cmd": "get_scenes"})
        assert [s["name"] for s in ws.receive_json()["scenes"]] == ["Scene 1", "Scene 2"]

        obs.set_current_scene.side_effect = RequestFailed("SetCurrentProgramScene", 600, "Scene not found")
        ws.send_json({"cmd": "switch_scene", "params": {"scene_name": "Nope"}})
        assert ws.receive_json()["type"] == "RequestFailed"

        ws.send_json({"cmd": "bogus"})
        assert "Unknown command" in ws.receive_json()["error"]


def test_ws_rejects_non_object_commands(api, obs):
    with api.websocket_connect("/ws") as ws:
        ws.receive_json()
        assert api.get("/health").json()["ws_clients"] == 1

        ws.send_json([1, 2])
        assert "JSON object" in ws.receive_json()["error"]
        ws.send_json("get_scenes")
        assert "JSON object" in ws.receive_json()["error"]
        ws.send_json({"cmd": "switch_scene", "params": ["Scene 2"]})
        assert "params" in ws.receive_json()["error"]
        obs.set_current_scene.assert_not_awaited()

        ws.send_json({"cmd": "get_scenes"})
        assert len(ws.receive_json()["scenes"]) == 2

    assert api.get("/health").json()["ws_clients"] == 0
