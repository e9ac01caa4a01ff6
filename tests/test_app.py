"""Tests for the HTTP control surface."""

from __future__ import annotations

from pathlib import Path

import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from conftest import FakeRtspSource, frame, wait_for
from mosaic_nvr.app import create_app
from mosaic_nvr.config import CameraConfig, LiveSettings, RecordingSettings, SupervisorSettings
from mosaic_nvr.event_log import EventLog
from mosaic_nvr.supervisor import SessionSupervisor


@pytest.fixture
def supervisor(tmp_path: Path, factory):
    camera = CameraConfig(
        index=0,
        name="Lobby",
        uri="rtsp://10.0.0.20/stream",
        live=LiveSettings(resolution=None),
        recording=RecordingSettings(resolution=None, output_dir=tmp_path / "recordings"),
    )
    instance = SessionSupervisor(
        SupervisorSettings(cameras=(camera,)), event_log=EventLog(), factory=factory
    )
    yield instance
    instance.close()


@pytest.fixture
def client(tmp_path: Path, supervisor: SessionSupervisor) -> TestClient:
    application = create_app(tmp_path / "cameras.json", supervisor=supervisor, poll_interval=0)
    return TestClient(application)


def test_list_streams(client: TestClient) -> None:
    response = client.get("/api/streams")

    assert response.status_code == 200
    payload = response.json()
    assert payload["max_streams"] == 9
    assert payload["streams"][0]["name"] == "Lobby"
    assert payload["streams"][0]["state"] == "idle"


def test_unknown_stream_is_404(client: TestClient) -> None:
    assert client.get("/api/streams/5").status_code == 404
    assert client.post("/api/streams/5/start").status_code == 404


def test_start_recording_and_stop(client: TestClient) -> None:
    started = client.post("/api/streams/0/start")
    assert started.status_code == 200
    assert started.json()["state"] == "ingesting"

    recording = client.post("/api/streams/0/recording", json={"active": True})
    assert recording.status_code == 200
    assert recording.json()["recording"]["state"] == "open"

    stopped = client.post("/api/streams/0/stop")
    assert stopped.json()["state"] == "idle"

    events = client.get("/api/events", params={"stream": 0}).json()["entries"]
    assert [entry["event"] for entry in events][:2] == ["stopped", "recording_discarded"]


def test_start_failure_is_500(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(FakeRtspSource, "fail_on_start", "no route to host")

    response = client.post("/api/streams/0/start")

    assert response.status_code == 500
    assert "no route to host" in response.json()["detail"]
    errors = client.get("/api/events", params={"severity": "error"}).json()["entries"]
    assert errors[0]["event"] == "start_failed"


def test_uri_change_restarts_stream(client: TestClient) -> None:
    response = client.post("/api/streams/0/uri", json={"uri": " rtsp://10.0.0.21/alt "})

    assert response.status_code == 200
    assert response.json()["uri"] == "rtsp://10.0.0.21/alt"
    assert response.json()["state"] == "ingesting"
    assert client.post("/api/streams/0/uri", json={"uri": ""}).status_code == 422


def test_live_view_toggle(client: TestClient) -> None:
    response = client.post("/api/streams/0/live", json={"enabled": False})

    assert response.status_code == 200
    assert response.json()["live_view_enabled"] is False


def test_snapshot_requires_a_frame(client: TestClient, supervisor: SessionSupervisor) -> None:
    assert client.get("/api/streams/0/snapshot").status_code == 404

    client.post("/api/streams/0/start")
    graph = supervisor.session(0).graph
    source = graph.get("cam0-source")
    queues = [graph.get(f"cam0-{name}") for name in ("queue-net", "queue-live")]
    for position in range(6):
        source.emit(frame(), pts=position * 100_000_000)
        assert wait_for(lambda: all(queue.level == 0 for queue in queues))
    assert wait_for(lambda: supervisor.latest_frame(0) is not None)

    response = client.get("/api/streams/0/snapshot")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"
    assert response.content[:2] == b"\xff\xd8"


def test_config_update_persists_and_applies(
    client: TestClient, supervisor: SessionSupervisor, tmp_path: Path
) -> None:
    response = client.put(
        "/api/streams/0/config",
        json={"name": "Lobby East", "motion": {"threshold_percent": 4.0}},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["restarted"] is False
    assert payload["camera"]["name"] == "Lobby East"
    assert supervisor.session(0).motion.threshold_percent == pytest.approx(4.0)
    assert (tmp_path / "cameras.json").exists()


def test_config_update_adds_stream(client: TestClient) -> None:
    response = client.put("/api/streams/2/config", json={"uri": "rtsp://10.0.0.30/stream"})

    assert response.status_code == 200
    assert response.json()["status"]["index"] == 2
    assert [item["index"] for item in client.get("/api/streams").json()["streams"]] == [0, 2]


def test_invalid_config_is_400(client: TestClient) -> None:
    assert client.put("/api/streams/0/config", json={"transport": "smoke"}).status_code == 400
    assert client.put("/api/streams/0/config", json={}).status_code == 400
    assert client.put("/api/streams/12/config", json={"name": "x"}).status_code == 400
