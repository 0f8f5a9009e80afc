"""Formatter for the Claude Code ``stream-json`` output format.

Each stdout line is one JSON message. The formatter renders it into
readable markdown-ish sections and records what later stages need: the raw
assistant text, file paths touched by edit tools, FAILED reports and the
structured output of the terminal ``result`` message.
"""

from __future__ import annotations

import difflib
import json
import logging
from datetime import datetime
from typing import Any, Optional

import yaml

from .failure_detection import detect_failed
from .models import StreamMessage
from .stream import LineSplitter

logger = logging.getLogger(__name__)

MAX_RESULT_LINES = 15
EDIT_TOOLS = ("Write", "Edit", "MultiEdit")


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


def _header(title: str) -> str:
    return f"### {title} [{_timestamp()}]"


def _to_yaml(value: Any) -> str:
    return yaml.safe_dump(value, sort_keys=False, allow_unicode=True, width=120).rstrip()


def _truncate_lines(text: str, limit: int = MAX_RESULT_LINES) -> str:
    lines = text.splitlines()
    if len(lines) <= limit:
        return text
    hidden = len(lines) - limit
    return "\n".join(lines[:limit] + [f"... ({hidden} more lines)"])


def _result_text(content: Any) -> str:
    """Flatten tool_result content, which may be a string or a list of blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    if content is None:
        return ""
    return str(content)


def _format_edit(tool_input: dict) -> str:
    path = tool_input.get("file_path", "")
    old = (tool_input.get("old_string") or "").splitlines()
    new = (tool_input.get("new_string") or "").splitlines()
    diff = difflib.unified_diff(old, new, fromfile=path, tofile=path, lineterm="")
    return "\n".join(diff) or f"File path: {path}"


def _format_todos(tool_input: dict) -> str:
    marks = {"completed": "[x]", "in_progress": "[>]"}
    lines = []
    for todo in tool_input.get("todos") or []:
        if not isinstance(todo, dict):
            continue
        mark = marks.get(todo.get("status", ""), "[ ]")
        lines.append(f"{mark} {todo.get('content', '')}")
    return "\n".join(lines)


class ClaudeFormatter:
    """Stateful parser for one Claude session's stdout.

    Tool invocations are cached by id so their results can be labelled with
    the tool name. The cache lives on the instance, one per subprocess.
    """

    def __init__(self) -> None:
        self._splitter = LineSplitter()
        self._tool_uses: dict[str, dict] = {}
        self.session_id: Optional[str] = None
        self.touched_files: list[str] = []

    # =========================================================================
    # Chunk interface
    # =========================================================================

    def format_chunk(self, chunk: str) -> list[StreamMessage]:
        """Split a raw stdout chunk and parse every complete line."""
        messages = []
        for line in self._splitter.split(chunk):
            message = self.format_line(line)
            if message is not None:
                messages.append(message)
        return messages

    def flush(self) -> list[StreamMessage]:
        """Parse the buffered trailing line at end of stream."""
        messages = []
        for line in self._splitter.flush():
            message = self.format_line(line)
            if message is not None:
                messages.append(message)
        return messages

    # =========================================================================
    # Line parsing
    # =========================================================================

    def format_line(self, line: str) -> Optional[StreamMessage]:
        """Parse one line. Never raises.

        Returns:
            StreamMessage, or None for blank and ``[DEBUG]`` lines.
        """
        stripped = line.strip()
        if not stripped or stripped.startswith("[DEBUG]"):
            return None

        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            return self._unparsed(stripped)
        if not isinstance(data, dict):
            return self._unparsed(stripped)

        try:
            return self._format_message(data)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.debug(f"Dropping malformed Claude message: {exc}")
            return StreamMessage(type=str(data.get("type", "unknown")))

    def _unparsed(self, line: str) -> StreamMessage:
        report = detect_failed(line)
        return StreamMessage(
            type="unknown",
            raw_text=line,
            failed=report.failed,
            failed_summary=report.summary if report.failed else None,
        )

    def _format_message(self, data: dict) -> StreamMessage:
        kind = data.get("type")
        if kind == "system":
            return self._format_system(data)
        if kind == "assistant":
            return self._format_assistant(data)
        if kind == "user":
            return self._format_user(data)
        if kind == "result":
            return self._format_result(data)
        return StreamMessage(type=str(kind or "unknown"))

    def _format_system(self, data: dict) -> StreamMessage:
        subtype = data.get("subtype")
        if subtype == "init":
            self.session_id = data.get("session_id") or self.session_id
            lines = [_header("Starting")]
            if data.get("session_id"):
                lines.append(f"Session ID: {data['session_id']}")
            if data.get("model"):
                lines.append(f"Model: {data['model']}")
            tools = data.get("tools") or []
            if tools:
                lines.append(f"Tools: {', '.join(str(t) for t in tools)}")
            servers = data.get("mcp_servers") or []
            if servers:
                names = [
                    f"{s.get('name')} ({s.get('status')})" if isinstance(s, dict) else str(s)
                    for s in servers
                ]
                lines.append(f"MCP Servers: {', '.join(names)}")
            return StreamMessage(type="system", text="\n".join(lines), session_id=self.session_id)

        if subtype == "task_notification":
            body = data.get("message") or data.get("summary") or ""
            status = data.get("status")
            lines = [_header("Task Notification")]
            if status:
                lines.append(f"Status: {status}")
            if body:
                lines.append(str(body))
            return StreamMessage(type="system", text="\n".join(lines))

        if subtype == "status":
            status = data.get("status")
            if status is None:
                return StreamMessage(type="system")
            return StreamMessage(type="system", text=f"{_header('Status')}\n{status}")

        if subtype == "compact_boundary":
            meta = data.get("compact_metadata") or {}
            text = _header("Compacting")
            if meta.get("pre_tokens"):
                text += f"\nTokens before compaction: {meta['pre_tokens']}"
            return StreamMessage(type="system", text=text)

        return StreamMessage(type="system")

    def _format_assistant(self, data: dict) -> StreamMessage:
        content = (data.get("message") or {}).get("content") or []
        sections: list[str] = []
        raw_parts: list[str] = []
        paths: list[str] = []

        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text = block.get("text", "")
                raw_parts.append(text)
                sections.append(f"{_header('Model Response')}\n{text}")
            elif block_type == "thinking":
                sections.append(f"{_header('Thinking')}\n{block.get('thinking', '')}")
            elif block_type == "tool_use":
                sections.append(self._format_tool_use(block, paths))

        raw_text = "\n".join(raw_parts)
        report = detect_failed(raw_text)
        return StreamMessage(
            type="assistant",
            text="\n\n".join(sections) or None,
            raw_text=raw_text,
            file_paths=paths,
            failed=report.failed,
            failed_summary=report.summary if report.failed else None,
        )

    def _format_tool_use(self, block: dict, paths: list[str]) -> str:
        name = block.get("name", "unknown")
        tool_input = block.get("input") or {}
        if block.get("id"):
            self._tool_uses[block["id"]] = {"name": name, "input": tool_input}

        if name in EDIT_TOOLS and tool_input.get("file_path"):
            path = tool_input["file_path"]
            paths.append(path)
            if path not in self.touched_files:
                self.touched_files.append(path)

        header = _header(f"Invoke Tool: {name}")
        if name == "Write":
            line_count = len((tool_input.get("content") or "").splitlines())
            return f"{header}\nFile path: {tool_input.get('file_path', '')}\nNumber of lines: {line_count}"
        if name == "Edit":
            return f"{header}\n{_format_edit(tool_input)}"
        if name == "TodoWrite":
            return f"{header}\n{_format_todos(tool_input)}"
        return f"{header}\n{_to_yaml(tool_input)}"

    def _format_user(self, data: dict) -> StreamMessage:
        content = (data.get("message") or {}).get("content") or []
        if isinstance(content, str):
            return StreamMessage(type="user", text=f"{_header('Agent Request')}\n{content}", raw_text=content)

        sections: list[str] = []
        raw_parts: list[str] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                text = block.get("text", "")
                raw_parts.append(text)
                sections.append(f"{_header('Agent Request')}\n{text}")
            elif block.get("type") == "tool_result":
                sections.append(self._format_tool_result(block, data.get("tool_use_result")))

        return StreamMessage(
            type="user",
            text="\n\n".join(sections) or None,
            raw_text="\n".join(raw_parts),
        )

    def _format_tool_result(self, block: dict, extra: Any) -> str:
        cached = self._tool_uses.get(block.get("tool_use_id", ""), {})
        name = cached.get("name", "unknown")
        header = _header(f"Tool Result: {name}")
        text = _result_text(block.get("content"))
        if block.get("is_error"):
            header += " (error)"

        if name == "Read" and not block.get("is_error"):
            return f"{header}\nLines: {len(text.splitlines())}"

        if name == "Bash" and isinstance(extra, dict) and ("stdout" in extra or "stderr" in extra):
            parts = [header]
            if extra.get("stdout"):
                parts.append(f"Stdout:\n{_truncate_lines(extra['stdout'])}")
            if extra.get("stderr"):
                parts.append(f"Stderr:\n{_truncate_lines(extra['stderr'])}")
            return "\n".join(parts)

        return f"{header}\n{_truncate_lines(text)}"

    def _format_result(self, data: dict) -> StreamMessage:
        self.session_id = data.get("session_id") or self.session_id
        cost = float(data.get("total_cost_usd") or data.get("cost_usd") or 0.0)
        seconds = round(float(data.get("duration_ms") or 0) / 1000)
        turns = data.get("num_turns") or 0
        summary = f"Cost: ${cost:.2f}, {seconds}s for {turns} turns"
        if data.get("subtype") == "error_max_turns":
            summary += " (max turns reached)"

        result_text = data.get("result") if isinstance(data.get("result"), str) else ""
        return StreamMessage(
            type="result",
            text=f"{_header('Done')}\n{summary}",
            raw_text=result_text,
            structured_output=data.get("structured_output"),
            session_id=self.session_id,
        )
