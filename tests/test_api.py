"""Tests for the HTTP and WebSocket surface."""

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from testbed.main import app
from testbed.models.run import Run
from tests.conftest import FakeBehavior

UNKNOWN_RUN = "00000000-0000-0000-0000-000000000000"


@pytest.fixture
def client(orchestrator):
    app.state.orchestrator = orchestrator
    with TestClient(app) as test_client:
        yield test_client
    app.state.orchestrator = None


def _wait_terminal(client, run_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/runs/{run_id}").json()
        if body["run"]["status"] in ("completed", "failed"):
            return body
        time.sleep(0.02)
    raise AssertionError(f"run {run_id} did not finish")


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_submit_and_poll(client, fake_driver):
    fake_driver.behavior = FakeBehavior(chunks=["ok\n", "=== Exit code: 0 ===\n"])

    response = client.post(
        "/runs",
        json={"script_content": "echo ok", "operating_system": "ubuntu-22.04", "script_id": "s-1"},
    )

    assert response.status_code == 202
    body = response.json()
    assert body["message"] == "Test started"
    assert body["run"]["status"] == "pending"
    assert body["run"]["script_id"] == "s-1"

    run_id = body["run"]["id"]
    detail = _wait_terminal(client, run_id)
    assert detail["run"]["status"] == "completed"
    assert detail["run"]["exit_code"] == 0
    assert detail["result"]["success"] is True

    logs = client.get(f"/runs/{run_id}/logs").json()
    assert logs == {"run_id": run_id, "logs": "ok\n=== Exit code: 0 ===\n"}

    listing = client.get("/runs").json()
    assert listing["count"] == 1
    assert listing["runs"][0]["id"] == run_id


@pytest.mark.parametrize(
    "payload",
    [
        {"operating_system": "ubuntu-22.04"},
        {"script_content": "echo hi"},
        {"script_content": "echo hi", "operating_system": "ubuntu-22.04", "script_type": "s h"},
    ],
)
def test_submit_rejects_bad_input(client, payload):
    response = client.post("/runs", json=payload)

    assert response.status_code == 400
    assert client.get("/runs").json()["count"] == 0


def test_unknown_run(client):
    assert client.get(f"/runs/{UNKNOWN_RUN}").status_code == 404
    assert client.get(f"/runs/{UNKNOWN_RUN}/logs").status_code == 404
    assert client.delete(f"/runs/{UNKNOWN_RUN}").status_code == 404
    assert client.get("/runs/not-a-run-id").status_code == 404


def test_delete_finished_run(client, results_dir):
    response = client.post("/runs", json={"script_content": "echo hi", "operating_system": "ubuntu-22.04"})
    run_id = response.json()["run"]["id"]
    _wait_terminal(client, run_id)

    response = client.delete(f"/runs/{run_id}")

    assert response.status_code == 200
    assert response.json() == {"message": "Run deleted"}
    assert not (results_dir / run_id).exists()
    assert client.get(f"/runs/{run_id}").status_code == 404


def test_delete_pending_run_conflicts(client, orchestrator):
    run = Run(target_operating_system="ubuntu-22.04", script_type="sh", script_file="test-script.sh")
    orchestrator.store.save(run)

    assert client.delete(f"/runs/{run.id}").status_code == 409


def test_events_socket_unknown_run(client):
    with client.websocket_connect(f"/runs/{UNKNOWN_RUN}/events") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_text()

    assert exc_info.value.code == 4404


def test_events_socket_finished_run_closes(client):
    response = client.post("/runs", json={"script_content": "echo hi", "operating_system": "ubuntu-22.04"})
    run_id = response.json()["run"]["id"]
    _wait_terminal(client, run_id)

    with client.websocket_connect(f"/runs/{run_id}/events") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_text()

    assert exc_info.value.code == 1000


def test_list_images_marks_available_os_images(client, fake_driver):
    async def list_images():
        return [{"id": "abc", "repo_tags": ["ubuntu:22.04"], "created": None, "size_mb": 77.8}]

    fake_driver.list_images = list_images

    body = client.get("/docker/images").json()

    assert body["count"] == 1
    available = {entry["os"]: entry["available"] for entry in body["os_images"]}
    assert available["ubuntu-22.04"] is True
    assert available["debian-11"] is False


def test_pull_requires_image_or_known_os(client):
    response = client.post("/docker/images/pull", json={"os": "plan9"})

    assert response.status_code == 400


def test_corrupt_result_does_not_break_detail(client, orchestrator, results_dir):
    run = Run(target_operating_system="ubuntu-22.04", script_type="sh", script_file="test-script.sh")
    orchestrator.store.save(run)
    (results_dir / run.id / "results.json").write_text("{truncated")

    response = client.get(f"/runs/{run.id}")

    assert response.status_code == 200
    assert response.json()["result"] is None
