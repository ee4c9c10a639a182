import asyncio
import json
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from main import app, get_controller, relay_session_events

from conftest import PROVIDER

HEADERS = {"X-Provider-Id": PROVIDER}


@pytest.fixture
def client(controller):
    app.dependency_overrides[get_controller] = lambda: controller
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def session_id(client):
    response = client.post(
        "/sessions",
        json={"date": "2025-01-06", "sessionStartTime": "09:00", "sessionEndTime": "1:00 PM"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    session_id = response.json()["data"]["session"]["id"]
    for number in range(1, 4):
        client.post(
            f"/sessions/{session_id}/tokens",
            json={"patientId": f"patient-{number}", "patientPhone": f"+1555000{number:04d}"},
            headers=HEADERS,
        )
    client.post(f"/sessions/{session_id}/start", headers=HEADERS)
    return session_id


def appointment_ids(client):
    queue = client.get("/queue", params={"date": "2025-01-06"}, headers=HEADERS).json()["data"]["queue"]
    return {entry["token_number"]: entry["id"] for entry in queue}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "redis": False}


def test_open_session_is_get_or_create(client, session_id):
    response = client.post(
        "/sessions",
        json={"date": "2025-01-06", "sessionStartTime": "09:00", "sessionEndTime": "13:00"},
        headers=HEADERS,
    )

    session = response.json()["data"]["session"]
    assert session["id"] == session_id
    assert session["status"] == "live"
    assert session["max_tokens"] == 12


def test_queue_lists_tokens_with_etas(client, session_id):
    body = client.get("/queue", params={"date": "2025-01-06"}, headers=HEADERS).json()

    assert body["success"] is True
    data = body["data"]
    assert data["currentToken"] == 0
    assert [entry["time"] for entry in data["queue"]] == ["9:00 AM", "9:20 AM", "9:40 AM"]
    assert [entry["eta"]["patientsAhead"] for entry in data["queue"]] == [0, 1, 2]


def test_queue_for_a_day_without_session(client):
    data = client.get("/queue", params={"date": "2025-02-01"}, headers=HEADERS).json()["data"]

    assert data == {"session": None, "queue": [], "currentToken": 0}


def test_call_next_skip_recall_flow(client, session_id):
    ids = appointment_ids(client)

    called = client.post("/queue/call-next", json={"sessionId": session_id}, headers=HEADERS).json()["data"]
    assert called["appointment"]["token_number"] == 1
    assert called["session"]["current_token"] == 1

    skipped = client.patch(f"/queue/{ids[1]}/skip", headers=HEADERS).json()["data"]
    assert (skipped["oldTokenNumber"], skipped["newTokenNumber"], skipped["patientsShifted"]) == (1, 3, 2)

    recalled = client.patch(f"/queue/{ids[1]}/recall", headers=HEADERS).json()["data"]
    assert recalled["recallCount"] == 1
    assert recalled["canRecallAgain"] is True

    eta = client.get(f"/queue/{ids[1]}/eta", headers=HEADERS).json()["data"]
    assert eta["patientsAhead"] == 2
    assert eta["estimatedWaitMinutes"] == 40
    assert eta["currentToken"] == 0


def test_status_no_show_and_move(client, session_id):
    ids = appointment_ids(client)

    moved = client.patch(f"/queue/{ids[3]}/move", json={"direction": "up"}, headers=HEADERS).json()["data"]
    assert moved["moved"] is True
    assert moved["appointment"]["token_number"] == 2

    no_show = client.patch(f"/queue/{ids[1]}/no-show", headers=HEADERS).json()["data"]
    assert no_show["canReschedule"] is True
    assert no_show["appointment"]["queue_status"] == "no-show"

    done = client.patch(f"/queue/{ids[2]}/status", json={"status": "completed"}, headers=HEADERS).json()
    assert done["data"]["appointment"]["status"] == "completed"


def test_pause_and_resume(client, session_id, clock):
    paused = client.post("/queue/pause", json={"sessionId": session_id}, headers=HEADERS).json()["data"]
    assert paused["session"]["status"] == "paused"
    assert paused["session"]["is_paused"] is True

    clock.advance(10)
    resumed = client.post("/queue/resume", json={"sessionId": session_id}, headers=HEADERS).json()["data"]
    assert resumed["session"]["status"] == "live"
    assert resumed["session"]["paused_minutes_total"] == 10


def test_errors_are_rendered_with_code_and_retry_hint(client, session_id):
    missing = client.post("/queue/call-next", json={"sessionId": "nope"}, headers=HEADERS)
    assert missing.status_code == 404
    assert missing.json() == {
        "success": False,
        "code": "not_found",
        "message": "Session not found",
        "retryable": False,
        "data": {"sessionId": "nope"},
    }

    foreign = client.post("/queue/pause", json={"sessionId": session_id}, headers={"X-Provider-Id": "dr-other"})
    assert foreign.status_code == 403
    assert foreign.json()["code"] == "unauthorized"

    client.post("/queue/pause", json={"sessionId": session_id}, headers=HEADERS)
    conflict = client.post("/queue/pause", json={"sessionId": session_id}, headers=HEADERS)
    assert conflict.status_code == 409
    assert conflict.json()["code"] == "invalid_state"


def test_request_validation(client, session_id):
    ids = appointment_ids(client)

    bad_status = client.patch(f"/queue/{ids[1]}/status", json={"status": "called"}, headers=HEADERS)
    assert bad_status.status_code == 422

    no_header = client.patch(f"/queue/{ids[1]}/skip")
    assert no_header.status_code == 422


def test_cancel_session_cancels_open_appointments(client, session_id, notifier):
    response = client.post(f"/sessions/{session_id}/cancel", json={"reason": "Doctor unwell"}, headers=HEADERS)

    assert response.json()["data"]["session"]["status"] == "cancelled"
    cancelled = notifier.of_type("session_cancelled")
    assert len(cancelled) == 3
    assert all(payload["reason"] == "Doctor unwell" for _, payload in cancelled)


def test_list_sessions(client, session_id):
    body = client.get("/sessions", params={"date": "2025-01-06", "status": "live"}, headers=HEADERS).json()

    assert body["data"]["total"] == 1
    assert body["data"]["items"][0]["id"] == session_id
    paused = client.get("/sessions", params={"status": "paused"}, headers=HEADERS).json()["data"]
    assert paused == {"items": [], "total": 0}


def test_session_events_relay_polls_without_blocking():
    pubsub = MagicMock()
    pubsub.get_message.side_effect = [{"type": "message", "data": '{"type": "queue_updated"}'}, None]
    redis_client = MagicMock()
    redis_client.pubsub.return_value = pubsub

    async def first_frames():
        stream = relay_session_events(redis_client, "s1", heartbeat_seconds=0)
        try:
            return [await stream.__anext__(), await stream.__anext__()]
        finally:
            await stream.aclose()

    relayed, heartbeat = asyncio.run(first_frames())

    assert relayed == 'data: {"type": "queue_updated"}\n\n'
    assert json.loads(heartbeat[len("data: "):]) == {"type": "heartbeat"}
    pubsub.subscribe.assert_called_once_with("queue:session:s1")
    assert all(call.kwargs["timeout"] == 0 for call in pubsub.get_message.call_args_list)
    pubsub.close.assert_called_once()
