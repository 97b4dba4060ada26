"""
HTTP and WebSocket surface tests.

The application lifespan is not run; services are wired against the test
database and placed on ``app.state`` directly.
"""
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from supportdesk.database import get_db
from supportdesk.dialog import CompletionRateLimitError, FlowAuthoringService, TaskChatOrchestrator
from supportdesk.main import app
from supportdesk.models import Profile
from supportdesk.services import AttachmentService
from supportdesk.services.auth_service import auth_service
from supportdesk.session import DurationCache
from supportdesk.storage import LocalBlobStorage

API = "/api/v1"
FUNCTIONS = "/functions/v1"


@pytest.fixture
def completion(make_completion):
    return make_completion()


@pytest.fixture
def client(session_factory, db_factory, change_feed, recorder, lifecycle, clock, completion, tmp_path):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    duration_cache = DurationCache(recorder, change_feed)
    storage = LocalBlobStorage(root=str(tmp_path))

    app.state.change_feed = change_feed
    app.state.recorder = recorder
    app.state.duration_cache = duration_cache
    app.state.lifecycle = lifecycle
    app.state.storage = storage
    app.state.attachments = AttachmentService(storage, db_factory=db_factory, change_feed=change_feed, clock=clock)
    app.state.completion_client = completion
    app.state.task_chat = TaskChatOrchestrator(completion, db_factory=db_factory, change_feed=change_feed, clock=clock)
    app.state.flow_authoring = FlowAuthoringService(completion)
    app.dependency_overrides[get_db] = override_get_db

    yield TestClient(app)

    app.dependency_overrides.clear()
    duration_cache.close()


@pytest.fixture
def token(agent):
    return auth_service.create_token(agent.id, {"role": agent.role})


@pytest.fixture
def headers(token):
    return {"Authorization": f"Bearer {token}"}


# ===========================
# Health and auth
# ===========================

def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_readiness_reports_services(client):
    response = client.get("/health/ready")

    body = response.json()
    assert body["services"]["database"] == "healthy"
    assert body["services"]["completion_api"] == "configured"


def test_login_issues_token(client, db_factory):
    with db_factory() as db:
        profile = Profile(
            email="login@example.com",
            password_hash=auth_service.hash_password("geheim123"),
            role="agent"
        )
        db.add(profile)
        db.flush()

    response = client.post(f"{API}/auth/token", json={"email": "login@example.com", "password": "geheim123"})

    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == profile.id
    assert auth_service.verify_token(body["access_token"])["sub"] == profile.id


def test_login_rejects_unknown_user(client):
    response = client.post(f"{API}/auth/token", json={"email": "nobody@example.com", "password": "x"})

    assert response.status_code == 401


def test_task_routes_require_auth(client):
    assert client.get(f"{API}/tasks").status_code == 401


# ===========================
# Tasks
# ===========================

def test_create_and_fetch_task(client, headers, agent):
    created = client.post(
        f"{API}/tasks",
        json={"title": "Heizung ausgefallen", "assigned_to": agent.id, "source": "phone"},
        headers=headers
    )

    assert created.status_code == 201
    task = created.json()
    assert task["status"] == "new"
    assert task["created_by"] == agent.id

    fetched = client.get(f"{API}/tasks/{task['id']}", headers=headers)
    assert fetched.json()["title"] == "Heizung ausgefallen"


def test_unknown_task_is_404(client, headers):
    response = client.get(f"{API}/tasks/missing", headers=headers)

    assert response.status_code == 404
    assert response.json() == {"detail": "Task not found: missing"}


def test_status_errors_map_to_http_codes(client, headers, task):
    invalid = client.patch(f"{API}/tasks/{task.id}/status", json={"status": "done"}, headers=headers)
    assert invalid.status_code == 400

    client.patch(f"{API}/tasks/{task.id}/status", json={"status": "cancelled"}, headers=headers)
    conflict = client.patch(f"{API}/tasks/{task.id}/status", json={"status": "in_progress"}, headers=headers)
    assert conflict.status_code == 409


def test_open_then_close_view(client, headers, task, clock):
    opened = client.post(f"{API}/tasks/{task.id}/open", headers=headers)
    assert opened.json()["status"] == "in_progress"

    clock.advance(seconds=95)
    closed = client.post(f"{API}/tasks/{task.id}/close-view", headers=headers)

    assert closed.json() == {"task_id": task.id, "duration_seconds": 95}


def test_complete_returns_next_task(client, headers, lifecycle, task, agent, clock):
    clock.advance(seconds=1)
    waiting = lifecycle.create_task(title="Nächste Aufgabe", assigned_to=agent.id)

    response = client.post(
        f"{API}/tasks/{task.id}/complete",
        json={"closing_comment": "Schlüssel ersetzt"},
        headers=headers
    )

    assert response.status_code == 200
    assert response.json()["task"]["status"] == "completed"
    assert response.json()["next_task"]["id"] == waiting.id


def test_blank_closing_comment_is_422(client, headers, task):
    response = client.post(f"{API}/tasks/{task.id}/complete", json={"closing_comment": " "}, headers=headers)

    assert response.status_code == 422


def test_follow_up_accepts_aware_timestamps(client, headers, task):
    response = client.post(
        f"{API}/tasks/{task.id}/follow-up",
        json={"follow_up_date": "2026-01-12T10:00:00+01:00", "note": "Rückruf"},
        headers=headers
    )

    assert response.status_code == 200
    assert response.json()["status"] == "followup"
    assert response.json()["follow_up_date"].startswith("2026-01-12T09:00:00")


def test_comment_and_attachment_routes(client, headers, task):
    comment = client.post(f"{API}/tasks/{task.id}/comments", json={"content": "Kunde angerufen"}, headers=headers)
    assert comment.status_code == 201

    upload = client.post(
        f"{API}/tasks/{task.id}/attachments",
        files={"file": ("notiz.txt", b"Inhalt", "text/plain")},
        headers=headers
    )
    assert upload.status_code == 201
    assert upload.json()["file_name"] == "notiz.txt"

    listing = client.get(f"{API}/tasks/{task.id}/attachments", headers=headers)
    assert [a["id"] for a in listing.json()["attachments"]] == [upload.json()["id"]]

    deleted = client.delete(f"{API}/tasks/{task.id}/comments/{comment.json()['id']}", headers=headers)
    assert deleted.status_code == 204


# ===========================
# Sessions
# ===========================

def test_session_start_and_beacon_end(client, token, headers, task, clock):
    started = client.post(f"{API}/tasks/{task.id}/session/start", headers=headers)
    assert started.json()["started"] is True

    clock.advance(seconds=61)
    ended = client.post(
        f"{API}/tasks/{task.id}/session/end",
        content=json.dumps({"access_token": token}),
        headers={"Content-Type": "text/plain"}
    )

    assert ended.json() == {"task_id": task.id, "ended": True, "duration_seconds": 61}

    duration = client.get(f"{API}/tasks/{task.id}/session/duration", headers=headers)
    assert duration.json() == {"task_id": task.id, "total_seconds": 61, "formatted": "00:01:01"}


def test_session_start_on_closed_task_is_409(client, headers, lifecycle, recorder, task, agent):
    lifecycle.set_status(task.id, "cancelled", agent.id)

    response = client.post(f"{API}/tasks/{task.id}/session/start", headers=headers)

    assert response.status_code == 409
    assert recorder.get_active_session(task.id, agent.id) is None


def test_session_end_without_session_is_noop(client, headers, task):
    response = client.post(f"{API}/tasks/{task.id}/session/end", headers=headers)

    assert response.json() == {"task_id": task.id, "ended": False, "duration_seconds": None}


def test_session_end_without_token_is_401(client, task):
    assert client.post(f"{API}/tasks/{task.id}/session/end").status_code == 401


def test_session_start_closes_other_tasks(client, headers, lifecycle, recorder, task, agent):
    other = lifecycle.create_task(title="Andere Aufgabe")
    client.post(f"{API}/tasks/{other.id}/session/start", headers=headers)

    client.post(f"{API}/tasks/{task.id}/session/start", headers=headers)

    assert recorder.get_active_session(other.id, agent.id) is None
    assert recorder.get_active_session(task.id, agent.id) is not None


def test_recompute_requires_supervisor(client, headers, make_profile, task):
    supervisor = make_profile("lead@example.com", role="supervisor")
    supervisor_token = auth_service.create_token(supervisor.id, {"role": supervisor.role})

    denied = client.post(f"{API}/tasks/{task.id}/session/recompute", headers=headers)
    allowed = client.post(
        f"{API}/tasks/{task.id}/session/recompute",
        headers={"Authorization": f"Bearer {supervisor_token}"}
    )

    assert denied.status_code == 403
    assert allowed.json() == {"task_id": task.id, "total_seconds": 0, "formatted": "00:00:00"}


# ===========================
# Dialog functions
# ===========================

def test_handle_task_chat(client, headers, completion, task):
    completion.replies.append('{"text": "Welcher Schlüssel?", "options": ["Haus"]}')

    response = client.post(
        f"{FUNCTIONS}/handle-task-chat",
        json={"taskId": task.id, "message": "Schlüssel verloren"},
        headers=headers
    )

    assert response.status_code == 200
    body = response.json()
    assert json.loads(body["response"])["options"] == ["Haus"]
    messages = client.get(f"{API}/tasks/{task.id}/messages", headers=headers).json()["messages"]
    assert [m["role"] for m in messages] == ["agent", "assistant"]
    assert messages[1]["id"] == body["response_id"]


def test_handle_task_chat_missing_task_id(client):
    response = client.post(f"{FUNCTIONS}/handle-task-chat", json={"message": "Hallo"})

    assert response.status_code == 500
    assert response.json()["is_rate_limit"] is False


def test_handle_task_chat_flags_rate_limits(client, completion, task):
    completion.replies.append(CompletionRateLimitError("Completion API rate limit exceeded: slow down"))

    response = client.post(f"{FUNCTIONS}/handle-task-chat", json={"taskId": task.id, "message": "Hallo"})

    assert response.status_code == 500
    assert response.json()["is_rate_limit"] is True


def test_intelligent_dialog_api(client, completion):
    completion.replies.append('{"steps": [{"id": "1"}]}')

    response = client.post(
        f"{FUNCTIONS}/intelligent-dialog-api",
        json={"messages": [{"role": "user", "content": "Mietbescheinigung"}]}
    )

    assert response.status_code == 200
    assert response.json()["flow_extracted"] is True
    assert response.json()["dialog_flow"] == {"steps": [{"id": "1"}]}


def test_intelligent_dialog_api_rejects_bad_messages(client):
    response = client.post(f"{FUNCTIONS}/intelligent-dialog-api", json={"messages": "Hallo"})

    assert response.status_code == 400
    assert "Nachrichten" in response.json()["error"]


def test_intelligent_dialog_api_without_key(client, completion):
    completion.configured = False

    response = client.post(f"{FUNCTIONS}/intelligent-dialog-api", json={"messages": []})

    assert response.status_code == 500
    assert "API-Schlüssel" in response.json()["error"]


# ===========================
# WebSocket
# ===========================

def test_websocket_requires_token(client, task):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(f"/ws/tasks/{task.id}") as websocket:
            websocket.receive_json()

    assert exc_info.value.code == 4001


def test_websocket_streams_task_changes(client, token, lifecycle, task, agent):
    with client.websocket_connect(f"/ws/tasks/{task.id}?token={token}") as websocket:
        connected = websocket.receive_json()
        assert connected["type"] == "connected"
        assert connected["user_id"] == agent.id

        websocket.send_text(json.dumps({"type": "ping"}))
        assert websocket.receive_json()["type"] == "pong"

        websocket.send_text("not json")
        assert websocket.receive_json()["type"] == "error"

        lifecycle.set_status(task.id, "waiting_for_customer", agent.id)

        tables = {websocket.receive_json()["table"] for _ in range(2)}
        assert tables == {"task_activities", "tasks"}
