"""Process-wide output sink and structured events.

Formatted agent output and structured events go through a single sink.
When this process is a tunnel child the sink forwards everything to the
ancestor; otherwise it renders locally with rich. A headless relay, when
attached, receives a copy of every message for the remote monitor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from rich.console import Console

from .tunnel.client import get_tunnel_client
from .tunnel.protocol import LOG_TYPES

if TYPE_CHECKING:
    from .tunnel.headless import HeadlessRelay

logger = logging.getLogger(__name__)
child_logger = logging.getLogger("planexec.child")


class StructuredEventType(str, Enum):
    """Types of structured events emitted during a run."""

    # Session lifecycle
    AGENT_SESSION_START = "agent_session_start"
    AGENT_SESSION_END = "agent_session_end"

    # Role steps
    AGENT_STEP_START = "agent_step_start"
    AGENT_STEP_END = "agent_step_end"

    # Outcomes
    FAILURE_REPORT = "failure_report"
    REVIEW_VERDICT = "review_verdict"

    # Interaction
    INPUT_REQUIRED = "input_required"
    USER_TERMINAL_INPUT = "user_terminal_input"
    PROMPT_REQUEST = "prompt_request"
    PROMPT_ANSWERED = "prompt_answered"
    PERMISSION_DECISION = "permission_decision"

    # Progress
    TOKEN_USAGE = "token_usage"
    LLM_STATUS = "llm_status"


@dataclass
class StructuredEvent:
    """A single structured event."""

    type: StructuredEventType
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        """Flatten to the tunnel ``structured.message`` form."""
        return {**self.data, "type": self.type.value, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict) -> StructuredEvent:
        payload = {k: v for k, v in data.items() if k not in ("type", "timestamp")}
        return cls(
            type=StructuredEventType(data["type"]),
            data=payload,
            timestamp=data.get("timestamp") or datetime.now().isoformat(),
        )


EventLike = Union[StructuredEvent, dict]

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "log": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class OutputSink:
    """Routes formatted output to the tunnel, the local console and the headless relay."""

    def __init__(self, console: Optional[Console] = None, err_console: Optional[Console] = None):
        self.console = console or Console(highlight=False)
        self.err_console = err_console or Console(stderr=True, highlight=False)
        self.headless: Optional[HeadlessRelay] = None
        self._subscribers: list[Callable[[dict], None]] = []

    def subscribe(self, callback: Callable[[dict], None]) -> None:
        """Receive every structured event message sent through the sink."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[dict], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def attach_headless(self, relay: Optional[HeadlessRelay]) -> None:
        self.headless = relay

    def _mirror(self, record: dict) -> None:
        if self.headless is not None:
            self.headless.enqueue(record)

    def stdout(self, text: str) -> None:
        """Emit one block of formatted output."""
        record = {"type": "stdout", "data": text}
        self._mirror(record)
        client = get_tunnel_client()
        if client is not None and client.send(record):
            return
        self.console.print(text, markup=False)

    def stderr(self, text: str) -> None:
        record = {"type": "stderr", "data": text}
        self._mirror(record)
        client = get_tunnel_client()
        if client is not None and client.send(record):
            return
        self.err_console.print(text, markup=False)

    def send_structured(self, event: EventLike) -> None:
        """Emit a structured event to subscribers, the relay and any ancestor."""
        message = event.to_dict() if isinstance(event, StructuredEvent) else dict(event)

        for callback in self._subscribers:
            try:
                callback(message)
            except Exception as e:
                logger.error(f"Error in output subscriber: {e}")

        record = {"type": "structured", "message": message}
        self._mirror(record)
        client = get_tunnel_client()
        if client is not None and client.send(record):
            return
        logger.debug(f"Structured event: {message.get('type')}")

    def emit(self, event_type: StructuredEventType, data: Optional[dict] = None) -> None:
        """Convenience wrapper building a StructuredEvent."""
        self.send_structured(StructuredEvent(type=event_type, data=data or {}))

    def relay(self, record: dict) -> None:
        """Re-emit a message received from a tunneled child."""
        kind = record.get("type")
        if kind in LOG_TYPES:
            args = " ".join(str(arg) for arg in record.get("args") or [])
            child_logger.log(LOG_LEVELS[kind], args)
        elif kind == "stdout":
            self.stdout(record.get("data", ""))
        elif kind == "stderr":
            self.stderr(record.get("data", ""))
        elif kind == "structured" and isinstance(record.get("message"), dict):
            self.send_structured(record["message"])
        else:
            logger.debug(f"Unhandled child message type: {kind}")


# Global sink instance
_output: Optional[OutputSink] = None


def get_output() -> OutputSink:
    """Get the process output sink."""
    global _output
    if _output is None:
        _output = OutputSink()
    return _output


def set_output(sink: Optional[OutputSink]) -> None:
    """Replace the process output sink (tests and CLI setup)."""
    global _output
    _output = sink


def emit(event_type: StructuredEventType, data: Optional[dict] = None) -> None:
    """Convenience function to emit a structured event."""
    get_output().emit(event_type, data)
