"""Wire format for the output tunnel and the headless relay.

All records are single-line JSON objects terminated by ``\\n``.

Tunnel (child -> ancestor):
    ``{"type": "log"|"error"|"warn"|"debug", "args": [str, ...]}``
    ``{"type": "stdout"|"stderr", "data": str}``
    ``{"type": "structured", "message": {...}}``
    ``{"type": "prompt_request", "requestId", "promptType", "promptConfig", "timeoutMs"?}``

Tunnel (ancestor -> child):
    ``{"type": "prompt_response", "requestId", "value"? , "error"?}``
    ``{"type": "user_input", "content": str}``

Headless envelopes (relay -> monitor):
    ``session_info``, ``output{seq, message}``, ``replay_start``, ``replay_end``.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Union

TUNNEL_SOCKET_ENV = "PLANEXEC_OUTPUT_SOCKET"

LOG_TYPES = ("log", "error", "warn", "debug")
STREAM_TYPES = ("stdout", "stderr")
TUNNEL_MESSAGE_TYPES = LOG_TYPES + STREAM_TYPES + ("structured", "prompt_request")
SERVER_MESSAGE_TYPES = ("prompt_response", "user_input")


def encode_line(record: dict) -> bytes:
    """Serialize a record to one newline-terminated JSON line."""
    return (json.dumps(record, separators=(",", ":")) + "\n").encode("utf-8")


def decode_line(line: Union[bytes, str]) -> Optional[dict]:
    """Parse one line into a dict. Returns None for blank or malformed lines."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return None
    return record if isinstance(record, dict) else None


# =============================================================================
# Tunnel messages
# =============================================================================


def is_tunnel_message(record: Any) -> bool:
    """Validate a child-to-ancestor message."""
    if not isinstance(record, dict):
        return False
    kind = record.get("type")
    if kind in LOG_TYPES:
        return isinstance(record.get("args"), list)
    if kind in STREAM_TYPES:
        return isinstance(record.get("data"), str)
    if kind == "structured":
        message = record.get("message")
        return isinstance(message, dict) and isinstance(message.get("type"), str)
    if kind == "prompt_request":
        return isinstance(record.get("requestId"), str) and isinstance(record.get("promptType"), str)
    return False


def is_server_message(record: Any) -> bool:
    """Validate an ancestor-to-child message."""
    if not isinstance(record, dict):
        return False
    kind = record.get("type")
    if kind == "prompt_response":
        return isinstance(record.get("requestId"), str)
    if kind == "user_input":
        return isinstance(record.get("content"), str)
    return False


def prompt_request(request_id: str, prompt_type: str, config: dict, timeout_ms: Optional[int] = None) -> dict:
    record = {
        "type": "prompt_request",
        "requestId": request_id,
        "promptType": prompt_type,
        "promptConfig": config,
    }
    if timeout_ms is not None:
        record["timeoutMs"] = timeout_ms
    return record


def prompt_response(request_id: str, value: Any = None, error: Optional[str] = None) -> dict:
    record: dict = {"type": "prompt_response", "requestId": request_id}
    if error is not None:
        record["error"] = error
    else:
        record["value"] = value
    return record


def user_input(content: str) -> dict:
    return {"type": "user_input", "content": content}


# =============================================================================
# Headless envelopes
# =============================================================================


@dataclass
class SessionInfo:
    """Identifies a relay session to the remote monitor."""

    command: str
    plan_id: Optional[str] = None
    plan_title: Optional[str] = None
    workspace_path: Optional[str] = None
    git_remote: Optional[str] = None
    terminal_pane_id: Optional[str] = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict:
        record: dict = {"type": "session_info", "command": self.command, "runId": self.run_id}
        for key, value in (
            ("planId", self.plan_id),
            ("planTitle", self.plan_title),
            ("workspacePath", self.workspace_path),
            ("gitRemote", self.git_remote),
            ("terminalPaneId", self.terminal_pane_id),
        ):
            if value is not None:
                record[key] = value
        return record

    @classmethod
    def from_dict(cls, data: dict) -> SessionInfo:
        return cls(
            command=str(data.get("command", "")),
            plan_id=data.get("planId"),
            plan_title=data.get("planTitle"),
            workspace_path=data.get("workspacePath"),
            git_remote=data.get("gitRemote"),
            terminal_pane_id=data.get("terminalPaneId"),
            run_id=str(data.get("runId", "")),
        )


@dataclass
class OutputEnvelope:
    """One tunnel message wrapped with a relay sequence number."""

    seq: int
    message: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": "output", "seq": self.seq, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict) -> OutputEnvelope:
        return cls(seq=int(data.get("seq", 0)), message=dict(data.get("message") or {}))


@dataclass
class ReplayMarker:
    """``replay_start`` or ``replay_end`` bracket around history replay."""

    type: str

    def to_dict(self) -> dict:
        return {"type": self.type}


Envelope = Union[SessionInfo, OutputEnvelope, ReplayMarker]


def encode_envelope(envelope: Envelope) -> str:
    """Serialize a headless envelope to a JSON string."""
    return json.dumps(envelope.to_dict(), separators=(",", ":"))


def decode_envelope(text: str) -> Optional[Envelope]:
    """Parse a headless envelope. Returns None for anything unrecognized."""
    record = decode_line(text)
    if record is None:
        return None
    kind = record.get("type")
    if kind == "session_info":
        return SessionInfo.from_dict(record)
    if kind == "output" and isinstance(record.get("message"), dict):
        return OutputEnvelope.from_dict(record)
    if kind in ("replay_start", "replay_end"):
        return ReplayMarker(type=kind)
    return None


class ReconnectGate:
    """Allows at most one connection attempt per ``interval`` seconds."""

    def __init__(self, interval: float = 5.0, clock=time.monotonic) -> None:
        self.interval = interval
        self._clock = clock
        self._last_attempt: Optional[float] = None

    def try_acquire(self) -> bool:
        now = self._clock()
        if self._last_attempt is not None and now - self._last_attempt < self.interval:
            return False
        self._last_attempt = now
        return True

    def reset(self) -> None:
        self._last_attempt = None
