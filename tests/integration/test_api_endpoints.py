"""Integration tests for the HTTP API and the subscriber WebSocket."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from agentdeck.models import SessionStatus
from agentdeck.server import create_app, is_origin_allowed
from agentdeck.tmux_controller import TmuxError


def _event(event_id, event_type="stop", session_id="claude-1", **extra):
    data = {"id": event_id, "timestamp": 1000, "type": event_type, "sessionId": session_id}
    data.update(extra)
    return data


class TestHealthAndStats:
    def test_health(self, test_client):
        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"ok": True, "status": "healthy", "sessions": 0, "events": 0, "clients": 0}

    def test_stats(self, test_client):
        test_client.post("/event", json=_event("p1", "pre_tool_use", tool="Bash", toolUseId="t1"))
        test_client.post("/event", json=_event("q1", "post_tool_use", tool="Bash", toolUseId="t1"))

        stats = test_client.get("/stats").json()

        assert stats["totalEvents"] == 2
        assert stats["toolCounts"] == {"Bash": 1}
        assert stats["tokens"] == {}

    def test_no_manager_is_503(self):
        client = TestClient(create_app())

        assert client.get("/sessions").status_code == 503


class TestSessionCrud:
    def test_create_and_get(self, test_client, mock_tmux, project_dir):
        response = test_client.post("/sessions", json={"name": "Web", "cwd": str(project_dir)})

        assert response.status_code == 200
        session = response.json()["session"]
        assert session["name"] == "Web"
        assert session["status"] == "idle"
        assert session["flags"] == {"continue": True, "skipPermissions": True, "chrome": False}
        mock_tmux.spawn_session.assert_awaited_once()

        fetched = test_client.get(f"/sessions/{session['id']}").json()["session"]
        assert fetched["id"] == session["id"]
        assert [s["id"] for s in test_client.get("/sessions").json()["sessions"]] == [session["id"]]

    def test_create_with_flags(self, test_client, mock_tmux, project_dir):
        response = test_client.post("/sessions", json={
            "cwd": str(project_dir),
            "flags": {"continue": False, "skipPermissions": False, "chrome": True},
        })

        assert response.json()["session"]["flags"] == {"continue": False, "skipPermissions": False, "chrome": True}
        assert mock_tmux.spawn_session.call_args.args[2] == "claude --chrome"

    def test_create_bad_directory(self, test_client, tmp_path):
        response = test_client.post("/sessions", json={"cwd": str(tmp_path / "missing")})

        assert response.status_code == 400

    def test_create_tmux_failure(self, test_client, mock_tmux, project_dir, session_manager):
        mock_tmux.spawn_session.side_effect = TmuxError("server exited")

        response = test_client.post("/sessions", json={"cwd": str(project_dir)})

        assert response.status_code == 500
        assert session_manager.sessions == {}

    def test_unknown_session_is_404(self, test_client):
        assert test_client.get("/sessions/nope").status_code == 404
        assert test_client.delete("/sessions/nope").status_code == 404
        assert test_client.post("/sessions/nope/prompt", json={"prompt": "hi"}).status_code == 404
        assert test_client.post("/sessions/nope/cancel").status_code == 404
        assert test_client.post("/sessions/nope/restart").status_code == 404
        assert test_client.post("/sessions/nope/link", json={"claudeSessionId": "c"}).status_code == 404

    def test_rename_and_move(self, test_client, add_session):
        session = add_session()

        response = test_client.patch(f"/sessions/{session.id}", json={"name": "Docs", "zonePosition": {"q": 1, "r": 2}})

        assert response.status_code == 200
        assert response.json()["session"]["name"] == "Docs"
        assert response.json()["session"]["zonePosition"] == {"q": 1, "r": 2}

    def test_rename_rejects_control_characters(self, test_client, add_session):
        session = add_session()

        assert test_client.patch(f"/sessions/{session.id}", json={"name": "a\x07b"}).status_code == 400

    def test_delete(self, test_client, mock_tmux, add_session):
        session = add_session()

        assert test_client.delete(f"/sessions/{session.id}").json() == {"ok": True}
        mock_tmux.kill_session.assert_awaited_once_with(session.tmux_session)
        assert test_client.get(f"/sessions/{session.id}").status_code == 404


class TestSessionCommands:
    def test_prompt(self, test_client, mock_tmux, add_session):
        session = add_session()

        assert test_client.post(f"/sessions/{session.id}/prompt", json={"prompt": "run tests"}).status_code == 200
        mock_tmux.load_and_paste_buffer.assert_awaited_once_with(session.tmux_session, "run tests")

    def test_empty_prompt_is_400(self, test_client, add_session):
        session = add_session()

        assert test_client.post(f"/sessions/{session.id}/prompt", json={"prompt": ""}).status_code == 400

    def test_prompt_tmux_failure_is_500(self, test_client, mock_tmux, add_session):
        session = add_session()
        mock_tmux.load_and_paste_buffer.side_effect = TmuxError("paste failed")

        assert test_client.post(f"/sessions/{session.id}/prompt", json={"prompt": "x"}).status_code == 500

    def test_cancel(self, test_client, mock_tmux, add_session):
        session = add_session()

        assert test_client.post(f"/sessions/{session.id}/cancel").status_code == 200
        mock_tmux.send_keys.assert_awaited_once_with(session.tmux_session, "C-c")

    def test_permission_response_validation(self, test_client, mock_tmux, add_session):
        session = add_session(status=SessionStatus.WAITING)

        assert test_client.post(f"/sessions/{session.id}/permission", json={"response": "yes"}).status_code == 400
        assert test_client.post(f"/sessions/{session.id}/permission", json={"response": "1"}).status_code == 200
        mock_tmux.send_keys.assert_awaited_once_with(session.tmux_session, "1")
        assert session.status == SessionStatus.WORKING

    def test_restart(self, test_client, mock_tmux, add_session, project_dir):
        session = add_session(status=SessionStatus.OFFLINE, cwd=str(project_dir))

        response = test_client.post(f"/sessions/{session.id}/restart")

        assert response.status_code == 200
        assert response.json()["session"]["status"] == "idle"
        assert mock_tmux.spawn_session.call_args.args[0] == session.tmux_session

    def test_link_then_events_drive_status(self, test_client, add_session):
        session = add_session()

        linked = test_client.post(f"/sessions/{session.id}/link", json={"claudeSessionId": "claude-7"})
        test_client.post("/event", json=_event("e1", "pre_tool_use", session_id="claude-7", tool="Grep"))

        assert linked.json()["session"]["claudeSessionId"] == "claude-7"
        body = test_client.get(f"/sessions/{session.id}").json()["session"]
        assert body["status"] == "working"
        assert body["currentTool"] == "Grep"

    def test_output(self, test_client, mock_tmux, add_session):
        session = add_session()
        mock_tmux.capture_output.return_value = "$ ls\nREADME.md\n"

        response = test_client.get(f"/sessions/{session.id}/output?lines=20")

        assert response.json()["output"] == "$ ls\nREADME.md\n"
        mock_tmux.capture_output.assert_awaited_once_with(session.tmux_session, 20)

    def test_refresh_marks_missing_sessions_offline(self, test_client, mock_tmux, add_session):
        session = add_session()
        mock_tmux.list_live_session_names.return_value = []

        body = test_client.post("/sessions/refresh").json()

        assert body["checked"] is True
        assert body["sessions"][0]["status"] == "offline"
        assert session.status == SessionStatus.OFFLINE


class TestEventIngestion:
    def test_duplicate_event_is_not_accepted_twice(self, test_client):
        assert test_client.post("/event", json=_event("e1")).json() == {"ok": True, "accepted": True}
        assert test_client.post("/event", json=_event("e1")).json() == {"ok": True, "accepted": False}

    def test_invalid_event_is_400(self, test_client):
        assert test_client.post("/event", json={"type": "stop"}).status_code == 400

    def test_raw_hook_payload(self, test_client, add_session):
        session = add_session(claude_session_id="claude-1")

        response = test_client.post("/hooks/claude", json={
            "hook_event_name": "UserPromptSubmit",
            "session_id": "claude-1",
            "prompt": "hello",
        })

        assert response.json()["accepted"] is True
        assert session.status == SessionStatus.WORKING


class TestWebSocket:
    def test_initial_messages(self, test_client, add_session):
        add_session(claude_session_id="claude-1")
        test_client.post("/event", json=_event("e1"))
        test_client.post("/event", json=_event("e2", session_id="stranger"))

        with test_client.websocket_connect("/ws") as ws:
            connected = ws.receive_json()
            sessions = ws.receive_json()
            history = ws.receive_json()

        assert connected == {"type": "connected", "payload": {"sessionId": "stranger"}}
        assert sessions["type"] == "sessions"
        assert len(sessions["payload"]) == 1
        assert history["type"] == "history"
        assert [e["id"] for e in history["payload"]] == ["e1"]

    def test_ping_and_history_request(self, test_client):
        test_client.post("/event", json=_event("e1"))

        with test_client.websocket_connect("/ws") as ws:
            for _ in range(3):
                ws.receive_json()
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong", "payload": None}
            ws.send_json({"type": "get_history", "payload": {"limit": 5}})
            history = ws.receive_json()

        assert history["type"] == "history"
        assert [e["id"] for e in history["payload"]] == ["e1"]

    def test_events_are_pushed(self, test_client):
        with test_client.websocket_connect("/ws") as ws:
            for _ in range(3):
                ws.receive_json()
            test_client.post("/event", json=_event("e9"))
            message = ws.receive_json()

        assert message["type"] == "event"
        assert message["payload"]["id"] == "e9"

    def test_permission_response_error_is_reported(self, test_client):
        with test_client.websocket_connect("/ws") as ws:
            for _ in range(3):
                ws.receive_json()
            ws.send_json({"type": "permission_response", "payload": {"sessionId": "nope", "response": "1"}})
            message = ws.receive_json()

        assert message == {"type": "error", "payload": {"message": "Session not found"}}

    def test_foreign_origin_rejected(self, test_client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with test_client.websocket_connect("/ws", headers={"origin": "https://evil.example"}) as ws:
                ws.receive_json()

        assert exc.value.code == 1008

    def test_disconnect_unsubscribes(self, test_client, broadcaster):
        with test_client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert broadcaster.subscriber_count == 1

        assert broadcaster.subscriber_count == 0

    def test_dropped_subscriber_socket_is_closed(self, test_client, broadcaster):
        with pytest.raises(WebSocketDisconnect) as exc:
            with test_client.websocket_connect("/ws") as ws:
                for _ in range(3):
                    ws.receive_json()
                subscription = next(iter(broadcaster._subscribers.values()))
                test_client.portal.call(broadcaster.drop, subscription)
                ws.receive_json()

        assert exc.value.code == 1013
        assert broadcaster.subscriber_count == 0


@pytest.mark.parametrize("origin,allowed", [
    (None, True),
    ("http://localhost:5173", True),
    ("https://127.0.0.1", True),
    ("https://deck.example.com", True),
    ("https://evil.example", False),
    ("http://localhost.evil.example", False),
    ("file://localhost", False),
])
def test_origin_policy(origin, allowed):
    assert is_origin_allowed(origin, ["https://deck.example.com"]) is allowed
