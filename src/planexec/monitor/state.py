"""Per-session state kept by the remote monitor."""

from __future__ import annotations

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..tunnel.protocol import OutputEnvelope, ReplayMarker, SessionInfo

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 5000

_session_ids = itertools.count(1)


@dataclass
class MonitorSession:
    """One relay connection as seen by viewers."""

    session_id: str
    info: Optional[SessionInfo] = None
    history_limit: int = DEFAULT_HISTORY_LIMIT
    history: deque = field(default_factory=deque)
    pending_prompts: dict[str, dict] = field(default_factory=dict)
    connected: bool = True
    replaying: bool = False
    connected_at: str = field(default_factory=lambda: datetime.now().isoformat())
    last_seq: int = 0

    def __post_init__(self) -> None:
        self.history = deque(self.history, maxlen=self.history_limit)

    def apply(self, envelope) -> Optional[dict]:
        """Fold one envelope into the session.

        Returns:
            The record to broadcast to viewers, or None when it was a
            duplicate from a replay.
        """
        if isinstance(envelope, SessionInfo):
            self.info = envelope
            return {"type": "session_info", "sessionId": self.session_id, **envelope.to_dict()}

        if isinstance(envelope, ReplayMarker):
            self.replaying = envelope.type == "replay_start"
            return None

        if isinstance(envelope, OutputEnvelope):
            # Replays resend everything; keep only what is new
            if envelope.seq <= self.last_seq:
                return None
            self.last_seq = envelope.seq
            self.history.append(envelope)
            self._track_prompts(envelope.message)
            return {"type": "output", "sessionId": self.session_id, **envelope.to_dict()}

        return None

    def _track_prompts(self, message: dict) -> None:
        if message.get("type") != "structured":
            return
        event = message.get("message") or {}
        request_id = event.get("requestId")
        if not request_id:
            return
        if event.get("type") == "prompt_request":
            self.pending_prompts[request_id] = event
        elif event.get("type") == "prompt_answered":
            self.pending_prompts.pop(request_id, None)

    def summary(self) -> dict:
        info = self.info.to_dict() if self.info else {}
        info.pop("type", None)
        return {
            "sessionId": self.session_id,
            "connected": self.connected,
            "connectedAt": self.connected_at,
            "messageCount": len(self.history),
            "pendingPrompts": list(self.pending_prompts),
            **info,
        }

    def snapshot(self) -> dict:
        """Everything a newly connected viewer needs."""
        return {
            **self.summary(),
            "history": [envelope.to_dict() for envelope in self.history],
        }


class MonitorState:
    """All sessions known to the monitor."""

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT):
        self.history_limit = history_limit
        self.sessions: dict[str, MonitorSession] = {}

    def open_session(self) -> MonitorSession:
        session = MonitorSession(session_id=str(next(_session_ids)), history_limit=self.history_limit)
        self.sessions[session.session_id] = session
        logger.info(f"Session {session.session_id} connected")
        return session

    def adopt(self, session: MonitorSession, info: SessionInfo) -> MonitorSession:
        """Merge a reconnecting relay into its earlier disconnected session.

        Only the same relay process (same run id) is adopted. It replays its
        full history on reconnect, so the earlier session's sequence numbers
        let duplicates be dropped.
        """
        for candidate in self.sessions.values():
            if candidate is session or candidate.connected or candidate.info != info:
                continue
            del self.sessions[session.session_id]
            candidate.connected = True
            logger.info(f"Session {candidate.session_id} reconnected")
            return candidate
        return session

    def close_session(self, session: MonitorSession) -> None:
        session.connected = False
        session.replaying = False
        logger.info(f"Session {session.session_id} disconnected")

    def get(self, session_id: str) -> Optional[MonitorSession]:
        return self.sessions.get(session_id)

    def summaries(self) -> list[dict]:
        return [session.summary() for session in self.sessions.values()]

    def to_dict(self) -> dict:
        return {"sessions": [session.snapshot() for session in self.sessions.values()]}
