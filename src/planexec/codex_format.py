"""Formatter for ``codex exec --json`` event lines."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

from .failure_detection import detect_failed
from .models import StreamMessage
from .stream import LineSplitter

logger = logging.getLogger(__name__)

MAX_COMMAND_OUTPUT_LINES = 20


def _header(title: str) -> str:
    return f"### {title} [{datetime.now().strftime('%H:%M:%S')}]"


def _truncate(text: str, limit: int = MAX_COMMAND_OUTPUT_LINES) -> str:
    lines = text.split("\n")
    if len(lines) <= limit:
        return text
    return "\n".join(lines[:limit] + ["(truncated long output...)"])


def _command_text(command: Any) -> str:
    if isinstance(command, list):
        return " ".join(str(part) for part in command)
    return str(command or "")


def _item_type(item: dict) -> str:
    return str(item.get("item_type") or item.get("type") or "unknown")


class CodexFormatter:
    """Stateful parser for one Codex ``exec --json`` run.

    Tracks the thread id (needed to resume), the final agent message and the
    last agent message carrying a FAILED report.
    """

    def __init__(self) -> None:
        self._splitter = LineSplitter()
        self._previous_total_tokens: Optional[int] = None
        self.thread_id: Optional[str] = None
        self.session_id: Optional[str] = None
        self.final_agent_message: Optional[str] = None
        self.failed_agent_message: Optional[str] = None
        self.touched_files: list[str] = []

    def format_chunk(self, chunk: str) -> list[StreamMessage]:
        messages = []
        for line in self._splitter.split(chunk):
            message = self.format_line(line)
            if message is not None:
                messages.append(message)
        return messages

    def flush(self) -> list[StreamMessage]:
        messages = []
        for line in self._splitter.flush():
            message = self.format_line(line)
            if message is not None:
                messages.append(message)
        return messages

    def format_line(self, line: str) -> Optional[StreamMessage]:
        """Parse one event line. Never raises; malformed lines yield a ``parse_error`` message."""
        stripped = line.strip()
        if not stripped:
            return None
        logger.debug(f"codex: {stripped}")
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            return StreamMessage(type="parse_error", raw_text=stripped)
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            return StreamMessage(type="unknown", raw_text=stripped)

        try:
            return self._format_event(data)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.debug(f"Dropping malformed Codex event: {exc}")
            return StreamMessage(type="unknown")

    def _format_event(self, data: dict) -> Optional[StreamMessage]:
        kind = data["type"]

        if kind == "thread.started":
            if data.get("thread_id") and not self.thread_id:
                self.thread_id = data["thread_id"]
            return StreamMessage(
                type=kind,
                text=f"{_header('Starting')}\nThread ID: {data.get('thread_id', '')}",
            )

        if kind == "session.created":
            session_id = data.get("session_id") or data.get("sessionId")
            if session_id and not self.session_id:
                self.session_id = session_id
            return StreamMessage(type=kind, session_id=session_id)

        if kind == "turn.started":
            return StreamMessage(type=kind)

        if kind == "turn.completed":
            return self._format_usage(data.get("usage") or {})

        if kind in ("item.started", "item.updated", "item.completed"):
            return self._format_item(kind, data.get("item") or {})

        if kind == "item.delta":
            return None

        return StreamMessage(type=kind)

    def _format_item(self, event: str, item: dict) -> StreamMessage:
        item_type = _item_type(item)

        if item_type in ("agent_message", "reasoning"):
            text = item.get("text") or ""
            title = "Model Response" if item_type == "agent_message" else "Thinking"
            message = StreamMessage(type=item_type, text=f"{_header(title)}\n{text}" if text else None)
            if event == "item.completed" and text:
                report = detect_failed(text)
                self.final_agent_message = text
                if report.failed:
                    self.failed_agent_message = text
                message.raw_text = text
                message.failed = report.failed
                message.failed_summary = report.summary if report.failed else None
            return message

        if item_type == "command_execution":
            if event != "item.completed":
                return StreamMessage(
                    type=item_type,
                    text=f"{_header('Invoke Tool: Bash')}\n{_command_text(item.get('command'))}",
                )
            parts = [_header("Tool Result: Bash"), _command_text(item.get("command"))]
            exit_code = item.get("exit_code")
            if isinstance(exit_code, int) and exit_code != 0:
                parts.append(f"Exit Code: {exit_code}")
            output = item.get("aggregated_output") or item.get("stdout") or ""
            if output:
                parts.append(_truncate(output))
            return StreamMessage(type=item_type, text="\n".join(parts))

        if item_type == "file_change":
            changes = item.get("changes") or []
            lines = [_header("File Changes")]
            paths = []
            for change in changes if isinstance(changes, list) else []:
                if not isinstance(change, dict):
                    continue
                path = str(change.get("path") or "(unknown path)")
                paths.append(path)
                lines.append(f"{change.get('kind', 'update')}: {path}")
                if path not in self.touched_files:
                    self.touched_files.append(path)
            return StreamMessage(type=item_type, text="\n".join(lines), file_paths=paths)

        if item_type == "todo_list":
            lines = [_header("Plan Update")]
            for todo in item.get("items") or []:
                if isinstance(todo, dict):
                    mark = "[x]" if todo.get("completed") else "[ ]"
                    lines.append(f"{mark} {(todo.get('text') or '').strip()}")
            return StreamMessage(type=item_type, text="\n".join(lines))

        return StreamMessage(type=item_type)

    def _format_usage(self, usage: dict) -> Optional[StreamMessage]:
        input_tokens = int(usage.get("input_tokens") or 0)
        cached = int(usage.get("cached_input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        reasoning = int(usage.get("reasoning_tokens") or 0)
        total = int(usage.get("total_tokens") or 0) or (
            max(0, input_tokens - cached) + output_tokens + reasoning
        )

        if total and total == self._previous_total_tokens:
            return None
        self._previous_total_tokens = total

        lines = [_header("Usage")]
        if input_tokens:
            lines.append(f"Input: {input_tokens:,} tokens")
        if cached:
            lines.append(f"  Cached: {cached:,} tokens")
        if output_tokens:
            lines.append(f"Output: {output_tokens:,} tokens")
        if reasoning:
            lines.append(f"Reasoning: {reasoning:,} tokens")
        if total:
            lines.append(f"Total: {total:,} tokens")
        return StreamMessage(type="turn.completed", text="\n".join(lines))
