"""Tests for the Codex event formatter."""

from __future__ import annotations

import json

from planexec.codex_format import CodexFormatter


def _event(data: dict) -> str:
    return json.dumps(data)


class TestCodexFormatter:
    """Tests for CodexFormatter.format_line."""

    def test_thread_started(self) -> None:
        """Test that the first thread id is kept for resuming."""
        formatter = CodexFormatter()
        formatter.format_line(_event({"type": "thread.started", "thread_id": "t-1"}))
        formatter.format_line(_event({"type": "thread.started", "thread_id": "t-2"}))

        assert formatter.thread_id == "t-1"

    def test_final_agent_message(self) -> None:
        """Test that completed agent messages update the final message."""
        formatter = CodexFormatter()
        for text in ("first", "second"):
            formatter.format_line(_event({
                "type": "item.completed",
                "item": {"type": "agent_message", "text": text},
            }))

        assert formatter.final_agent_message == "second"
        assert formatter.failed_agent_message is None

    def test_started_item_not_final(self) -> None:
        """Test that only completed items count."""
        formatter = CodexFormatter()
        formatter.format_line(_event({
            "type": "item.started",
            "item": {"type": "agent_message", "text": "draft"},
        }))

        assert formatter.final_agent_message is None

    def test_failed_agent_message(self) -> None:
        """Test FAILED detection in agent messages."""
        formatter = CodexFormatter()
        message = formatter.format_line(_event({
            "type": "item.completed",
            "item": {"item_type": "agent_message", "text": "FAILED: schema is missing"},
        }))

        assert message.failed is True
        assert message.failed_summary == "schema is missing"
        assert formatter.failed_agent_message == "FAILED: schema is missing"

    def test_command_execution(self) -> None:
        """Test command rendering with a non-zero exit code."""
        formatter = CodexFormatter()
        message = formatter.format_line(_event({
            "type": "item.completed",
            "item": {
                "type": "command_execution",
                "command": ["pytest", "-q"],
                "exit_code": 1,
                "aggregated_output": "1 failed",
            },
        }))

        assert "pytest -q" in message.text
        assert "Exit Code: 1" in message.text
        assert "1 failed" in message.text

    def test_file_changes(self) -> None:
        """Test that changed paths are tracked."""
        formatter = CodexFormatter()
        message = formatter.format_line(_event({
            "type": "item.completed",
            "item": {
                "type": "file_change",
                "changes": [{"path": "src/a.py", "kind": "add"}, {"path": "src/b.py"}],
            },
        }))

        assert message.file_paths == ["src/a.py", "src/b.py"]
        assert formatter.touched_files == ["src/a.py", "src/b.py"]
        assert "add: src/a.py" in message.text

    def test_usage_deduplicated(self) -> None:
        """Test that an unchanged token total is reported once."""
        formatter = CodexFormatter()
        usage = {"type": "turn.completed", "usage": {"input_tokens": 100, "output_tokens": 20}}

        first = formatter.format_line(_event(usage))
        second = formatter.format_line(_event(usage))

        assert first is not None
        assert "Total: 120 tokens" in first.text
        assert second is None

    def test_malformed_lines(self) -> None:
        """Test that bad input never raises."""
        formatter = CodexFormatter()

        assert formatter.format_line("") is None
        assert formatter.format_line("not json").type == "parse_error"
        assert formatter.format_line("[1, 2]").type == "unknown"
        assert formatter.format_line(_event({"type": "item.delta"})) is None
