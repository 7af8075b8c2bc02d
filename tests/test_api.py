"""HTTP API tests against the FastAPI app with a fake agent CLI."""

import json
import time

import pytest
from fastapi.testclient import TestClient

from conftest import FAKE_COMMAND
from session_runner.config import settings
from session_runner.main import app
from session_runner.models.session import SessionMetadata
from session_runner.session_store import SessionStore

BASE = "/api/projects"


@pytest.fixture
def client(temp_dir, monkeypatch):
    monkeypatch.setattr(settings, "DATA_DIR", temp_dir)
    monkeypatch.setattr(settings, "SESSIONS_DIR", None)
    monkeypatch.setattr(settings, "CLI_COMMAND", FAKE_COMMAND)
    monkeypatch.setattr(settings, "RUNNER_MODE", "resume")
    monkeypatch.setattr(settings, "MAX_CONCURRENT_SESSIONS", 1)
    monkeypatch.setattr(settings, "KILL_GRACE_SECONDS", 1.0)
    monkeypatch.setattr(settings, "STOP_SETTLE_SECONDS", 5.0)
    with TestClient(app) as client:
        yield client


def wait_for(client, project_id, session_id, predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"{BASE}/{project_id}/sessions/{session_id}").json()
        if predicate(body):
            return body
        time.sleep(0.05)
    raise AssertionError(f"Session {session_id} never matched, last seen: {body}")


def read_sse(client, url, headers=None):
    """Parse an SSE response into (id, event, data) tuples."""
    frames = []
    with client.stream("GET", url, headers=headers or {}) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        current = {}
        for line in response.iter_lines():
            if not line:
                if current:
                    frames.append((current.get("id"), current.get("event"), json.loads(current["data"])))
                current = {}
                continue
            if line.startswith(":"):
                continue
            field, _, value = line.partition(": ")
            current[field] = value
    return frames


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["running_sessions"] == 0


def test_session_lifecycle(client):
    response = client.post(f"{BASE}/p1/sessions", json={"prompt": "hello"})
    assert response.status_code == 201
    session = response.json()
    session_id = session["id"]
    assert session["status"] == "running"
    assert session["project_id"] == "p1"

    wait_for(client, "p1", session_id, lambda s: s["state"] == "idle")

    response = client.post(f"{BASE}/p1/sessions/{session_id}/message", json={"message": "again"})
    assert response.status_code == 202
    assert response.json() == {"turn_number": 2, "state": "processing"}

    wait_for(client, "p1", session_id, lambda s: s["state"] == "idle" and s["turn_count"] == 2)

    response = client.post(f"{BASE}/p1/sessions/{session_id}/finish")
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    sessions = client.get(f"{BASE}/p1/sessions").json()
    assert [s["id"] for s in sessions] == [session_id]

    frames = read_sse(client, f"{BASE}/p1/sessions/{session_id}/events")
    events = [f for f in frames if f[1] == "session_event"]
    assert [int(f[0]) for f in events] == list(range(len(events)))
    assert frames[-1][1] == "session_done"
    assert frames[-1][2]["status"] == "completed"

    # Reconnect after the fifth event
    resumed = read_sse(
        client, f"{BASE}/p1/sessions/{session_id}/events", headers={"Last-Event-ID": "4"}
    )
    assert resumed[0][0] == "5"
    assert len(resumed) == len(frames) - 5

    # Explicit offset wins over the header
    from_offset = read_sse(
        client,
        f"{BASE}/p1/sessions/{session_id}/events?offset=2",
        headers={"Last-Event-ID": "10"},
    )
    assert from_offset[0][0] == "2"

    work_log = client.get(f"{BASE}/p1/work-log").json()
    assert work_log["total_events"] == len(events)
    assert work_log["sessions"][0]["status"] == "completed"
    assert work_log["active_session_id"] is None


def test_admission_errors(client):
    first = client.post(f"{BASE}/p1/sessions", json={"prompt": "slow"}).json()

    response = client.post(f"{BASE}/p1/sessions", json={"prompt": "again"})
    assert response.status_code == 409
    assert response.json()["code"] == "already_running"

    response = client.post(f"{BASE}/p2/sessions", json={"prompt": "hello"})
    assert response.status_code == 429
    assert response.json()["code"] == "capacity_exceeded"
    assert client.get(f"{BASE}/p2/sessions").json() == []

    response = client.post(f"{BASE}/p1/sessions/{first['id']}/stop")
    assert response.status_code == 200
    assert response.json()["status"] == "stopped"

    response = client.post(f"{BASE}/p1/sessions/{first['id']}/stop")
    assert response.status_code == 409
    assert response.json()["code"] == "not_running"


def test_message_errors(client):
    session_id = client.post(f"{BASE}/p1/sessions", json={"prompt": "slow"}).json()["id"]
    url = f"{BASE}/p1/sessions/{session_id}/message"

    assert client.post(url, json={"message": ""}).status_code == 400
    assert client.post(url, json={"message": "x" * 100_001}).status_code == 400

    response = client.post(url, json={"message": "too soon"})
    assert response.status_code == 409
    assert response.json()["code"] == "not_idle"

    response = client.post(f"{BASE}/p1/sessions/missing/message", json={"message": "hi"})
    assert response.status_code == 404


def test_message_with_lone_surrogate_rejected(client):
    session_id = client.post(f"{BASE}/p1/sessions", json={"prompt": "hello"}).json()["id"]
    wait_for(client, "p1", session_id, lambda s: s["state"] == "idle")

    response = client.post(
        f"{BASE}/p1/sessions/{session_id}/message",
        content=b'{"message": "hi \\ud800"}',
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_request"

    # Still idle and accepting turns
    response = client.post(f"{BASE}/p1/sessions/{session_id}/message", json={"message": "again"})
    assert response.status_code == 202
    assert response.json()["turn_number"] == 2


def test_unknown_session(client):
    assert client.get(f"{BASE}/p1/sessions/missing").status_code == 404
    assert client.get(f"{BASE}/p1/sessions/missing/events").status_code == 404
    assert client.post(f"{BASE}/p1/sessions/missing/stop").status_code == 404


def test_empty_prompt_rejected(client):
    response = client.post(f"{BASE}/p1/sessions", json={"prompt": ""})
    assert response.status_code == 422


def test_recovery_runs_on_startup(temp_dir, monkeypatch):
    store = SessionStore(temp_dir / "sessions")
    store.project_dir("p1").mkdir(parents=True)
    orphan = SessionMetadata(id="orphan", project_id="p1", state="idle", pid=999)
    store.metadata_path("p1", "orphan").write_text(orphan.model_dump_json())

    monkeypatch.setattr(settings, "DATA_DIR", temp_dir)
    monkeypatch.setattr(settings, "SESSIONS_DIR", None)
    with TestClient(app) as client:
        body = client.get(f"{BASE}/p1/sessions/orphan").json()

    assert body["status"] == "stopped"
    assert body["error"] == "Server restarted between turns"
    assert body["pid"] is None
