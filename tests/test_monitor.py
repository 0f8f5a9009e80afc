"""Tests for the remote monitor."""

from __future__ import annotations

import json
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from planexec.monitor.server import create_app
from planexec.monitor.state import MonitorSession, MonitorState
from planexec.tunnel.protocol import OutputEnvelope, ReplayMarker, SessionInfo, encode_envelope

INFO = SessionInfo(command="run", plan_id="42", workspace_path="/work/a")


def _output(seq: int, message: dict) -> OutputEnvelope:
    return OutputEnvelope(seq=seq, message=message)


def _prompt_event(kind: str, request_id: str) -> dict:
    return {"type": "structured", "message": {"type": kind, "requestId": request_id}}


class TestMonitorSession:
    """Tests for MonitorSession.apply."""

    def test_replay_duplicates_dropped(self) -> None:
        """Test that envelopes already seen are not broadcast again."""
        session = MonitorSession(session_id="s")

        assert session.apply(_output(1, {"type": "stdout", "data": "a"})) is not None
        assert session.apply(_output(2, {"type": "stdout", "data": "b"})) is not None
        assert session.apply(ReplayMarker("replay_start")) is None
        assert session.replaying is True
        assert session.apply(_output(1, {"type": "stdout", "data": "a"})) is None
        assert session.apply(_output(3, {"type": "stdout", "data": "c"}))["seq"] == 3
        session.apply(ReplayMarker("replay_end"))

        assert session.replaying is False
        assert [e.seq for e in session.history] == [1, 2, 3]

    def test_pending_prompts(self) -> None:
        """Test prompt tracking from structured events."""
        session = MonitorSession(session_id="s")
        session.apply(_output(1, _prompt_event("prompt_request", "r1")))
        session.apply(_output(2, _prompt_event("prompt_request", "r2")))
        session.apply(_output(3, _prompt_event("prompt_answered", "r1")))

        assert session.summary()["pendingPrompts"] == ["r2"]

    def test_history_limit(self) -> None:
        """Test the bounded history."""
        session = MonitorSession(session_id="s", history_limit=2)
        for seq in range(1, 5):
            session.apply(_output(seq, {"type": "stdout", "data": str(seq)}))

        assert [e.seq for e in session.history] == [3, 4]

    def test_session_info(self) -> None:
        """Test that info is recorded and broadcast with the session id."""
        session = MonitorSession(session_id="s")
        record = session.apply(INFO)

        assert record["sessionId"] == "s"
        assert record["planId"] == "42"
        assert session.summary()["workspacePath"] == "/work/a"


class TestMonitorState:
    """Tests for MonitorState."""

    def test_adopt_reconnecting_relay(self) -> None:
        """Test that a reconnect with the same info resumes the old session."""
        state = MonitorState()
        first = state.open_session()
        first.apply(INFO)
        first.apply(_output(1, {"type": "stdout", "data": "a"}))
        state.close_session(first)

        second = state.open_session()
        adopted = state.adopt(second, INFO)

        assert adopted is first
        assert adopted.connected is True
        assert second.session_id not in state.sessions
        assert adopted.apply(_output(1, {"type": "stdout", "data": "a"})) is None

    def test_no_adoption_of_connected_or_different(self) -> None:
        """Test that live sessions and other relays are left alone."""
        state = MonitorState()
        live = state.open_session()
        live.apply(INFO)

        other = state.open_session()
        assert state.adopt(other, INFO) is other

        state.close_session(live)
        different = SessionInfo(command="run", plan_id="43")
        assert state.adopt(other, different) is other

    def test_rerun_of_same_plan_is_new_session(self) -> None:
        """Test that a new relay process for the same plan starts its own session."""
        state = MonitorState()
        first = state.open_session()
        first.apply(INFO)
        for seq in range(1, 6):
            first.apply(_output(seq, {"type": "stdout", "data": str(seq)}))
        state.close_session(first)

        rerun_info = SessionInfo(command="run", plan_id="42", workspace_path="/work/a")
        second = state.open_session()
        session = state.adopt(second, rerun_info)

        assert rerun_info.run_id != INFO.run_id
        assert session is second
        assert first.session_id in state.sessions
        broadcast = [session.apply(_output(seq, {"type": "stdout", "data": "new"})) for seq in range(1, 4)]
        assert [record["seq"] for record in broadcast] == [1, 2, 3]


class TestMonitorServer:
    """Tests for the FastAPI monitor app."""

    @pytest.fixture
    def client(self) -> Generator[TestClient, None, None]:
        with TestClient(create_app(MonitorState())) as client:
            yield client

    def test_sessions_api(self, client: TestClient) -> None:
        """Test the REST endpoints."""
        assert client.get("/api/sessions").json() == []
        assert client.get("/api/sessions/missing").status_code == 404

    def test_relay_to_viewer(self, client: TestClient) -> None:
        """Test envelopes flowing from a relay to a viewer and input flowing back."""
        with client.websocket_connect("/ws/viewer") as viewer:
            assert viewer.receive_json() == {"type": "state_sync", "data": {"sessions": []}}

            with client.websocket_connect("/ws/session") as relay:
                relay.send_text(encode_envelope(INFO))
                relay.send_text(encode_envelope(ReplayMarker("replay_start")))
                relay.send_text(encode_envelope(_output(1, {"type": "stdout", "data": "hello"})))
                relay.send_text(encode_envelope(ReplayMarker("replay_end")))

                info = viewer.receive_json()
                assert info["type"] == "session_info"
                session_id = info["sessionId"]
                output = viewer.receive_json()
                assert output["type"] == "output"
                assert output["message"] == {"type": "stdout", "data": "hello"}

                viewer.send_text(json.dumps({"type": "user_input", "sessionId": session_id, "content": "go on"}))
                assert json.loads(relay.receive_text()) == {"type": "user_input", "content": "go on"}

                viewer.send_text(json.dumps({
                    "type": "prompt_response", "sessionId": session_id, "requestId": "r1", "value": "allow",
                }))
                assert json.loads(relay.receive_text()) == {
                    "type": "prompt_response", "requestId": "r1", "value": "allow",
                }

                snapshot = client.get(f"/api/sessions/{session_id}").json()
                assert snapshot["messageCount"] == 1
                assert snapshot["planId"] == "42"

            closed = viewer.receive_json()
            assert closed == {"type": "session_closed", "sessionId": session_id}

    def test_viewer_errors(self, client: TestClient) -> None:
        """Test commands for unknown sessions."""
        with client.websocket_connect("/ws/viewer") as viewer:
            viewer.receive_json()
            viewer.send_text(json.dumps({"type": "user_input", "sessionId": "nope", "content": "hi"}))

            error = viewer.receive_json()
            assert error["type"] == "error"
            assert error["sessionId"] == "nope"
