"""Remote monitor server.

Relays (``planexec run`` with a headless URL) connect to ``/ws/session``
and stream their envelopes. Viewers connect to ``/ws/viewer``, receive a
``state_sync`` snapshot followed by live envelopes, and can answer
prompts or send input back to a session.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from ..tunnel.protocol import SessionInfo, decode_envelope, decode_line
from .state import MonitorSession, MonitorState

logger = logging.getLogger(__name__)

VIEWER_MESSAGE_TYPES = ("prompt_response", "user_input")


class ConnectionManager:
    """Tracks relay and viewer websockets."""

    def __init__(self, state: MonitorState) -> None:
        self.state = state
        self.viewers: list[WebSocket] = []
        self.relays: dict[str, WebSocket] = {}

    async def connect_viewer(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.viewers.append(websocket)
        logger.info(f"Viewer connected. Total viewers: {len(self.viewers)}")
        await websocket.send_json({"type": "state_sync", "data": self.state.to_dict()})

    def disconnect_viewer(self, websocket: WebSocket) -> None:
        if websocket in self.viewers:
            self.viewers.remove(websocket)
        logger.info(f"Viewer disconnected. Total viewers: {len(self.viewers)}")

    async def broadcast(self, record: dict) -> None:
        """Send a record to every viewer, dropping any that fail."""
        message = json.dumps(record)
        disconnected = []
        for viewer in self.viewers:
            try:
                await viewer.send_text(message)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.warning(f"Failed to send to viewer: {e}")
                disconnected.append(viewer)
        for viewer in disconnected:
            self.disconnect_viewer(viewer)

    async def send_to_session(self, session_id: str, record: dict) -> bool:
        websocket = self.relays.get(session_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(json.dumps(record))
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.warning(f"Failed to send to session {session_id}: {e}")
            return False
        return True


def _viewer_command(record: dict) -> Optional[tuple[str, dict]]:
    """Validate a viewer message; returns (session id, record to forward)."""
    kind = record.get("type")
    session_id = record.get("sessionId")
    if kind not in VIEWER_MESSAGE_TYPES or not isinstance(session_id, str):
        return None
    if kind == "prompt_response":
        if not isinstance(record.get("requestId"), str):
            return None
        forwarded = {"type": kind, "requestId": record["requestId"]}
        for key in ("value", "error"):
            if key in record:
                forwarded[key] = record[key]
        return session_id, forwarded
    if not isinstance(record.get("content"), str):
        return None
    return session_id, {"type": kind, "content": record["content"]}


def create_app(state: Optional[MonitorState] = None) -> FastAPI:
    """Build the monitor application around ``state``."""
    app = FastAPI(title="planexec monitor")
    manager = ConnectionManager(state or MonitorState())
    app.state.manager = manager

    @app.get("/api/sessions")
    async def list_sessions() -> list[dict]:
        return manager.state.summaries()

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str) -> dict:
        session = manager.state.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Unknown session")
        return session.snapshot()

    @app.websocket("/ws/session")
    async def session_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        session: MonitorSession = manager.state.open_session()
        manager.relays[session.session_id] = websocket
        try:
            while True:
                envelope = decode_envelope(await websocket.receive_text())
                if envelope is None:
                    continue
                if isinstance(envelope, SessionInfo) and session.info is None:
                    adopted = manager.state.adopt(session, envelope)
                    if adopted is not session:
                        manager.relays.pop(session.session_id, None)
                        session = adopted
                        manager.relays[session.session_id] = websocket
                record = session.apply(envelope)
                if record is not None:
                    await manager.broadcast(record)
        except WebSocketDisconnect:
            pass
        finally:
            if manager.relays.get(session.session_id) is websocket:
                del manager.relays[session.session_id]
            manager.state.close_session(session)
            await manager.broadcast({"type": "session_closed", "sessionId": session.session_id})

    @app.websocket("/ws/viewer")
    async def viewer_endpoint(websocket: WebSocket) -> None:
        await manager.connect_viewer(websocket)
        try:
            while True:
                record = decode_line(await websocket.receive_text())
                command = _viewer_command(record) if record is not None else None
                if command is None:
                    logger.debug("Ignoring malformed viewer message")
                    continue
                session_id, forwarded = command
                if not await manager.send_to_session(session_id, forwarded):
                    await websocket.send_json(
                        {"type": "error", "sessionId": session_id, "message": "Session is not connected"}
                    )
        except WebSocketDisconnect:
            manager.disconnect_viewer(websocket)

    return app


app = create_app()


def run_server(host: str = "127.0.0.1", port: int = 8765) -> None:
    """Run the monitor server."""
    import uvicorn

    uvicorn.run(app, host=host, port=port, log_level="warning")
