"""Tests for Codex step execution."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Optional
from unittest.mock import patch

import pytest

from planexec.config import CodexSettings, Config
from planexec.errors import ExecutorError
from planexec.executors.codex_cli import CodexCliExecutor
from planexec.executors.codex_runner import (
    MAX_ATTEMPTS,
    build_codex_args,
    build_codex_env,
    execute_codex_step,
    failure_reason,
)
from planexec.process import SpawnResult
from planexec.tunnel.protocol import TUNNEL_SOCKET_ENV


def _codex_child(events: list[dict], exit_code: int = 0) -> list[str]:
    lines = "".join(f"print({json.dumps(json.dumps(event))}, flush=True)\n" for event in events)
    return [sys.executable, "-c", f"import sys\n{lines}sys.exit({exit_code})\n"]


def _agent_message(text: str) -> dict:
    return {"type": "item.completed", "item": {"type": "agent_message", "text": text}}


class FakeCodex:
    """Replaces build_codex_args with scripted child processes."""

    def __init__(self, fresh: list[str], resumed: Optional[list[str]] = None):
        self.fresh = fresh
        self.resumed = resumed or fresh
        self.calls: list[Optional[str]] = []

    def __call__(self, prompt, reasoning_level, allow_all_tools, model=None, resume_thread_id=None) -> list[str]:
        self.calls.append(resume_thread_id)
        return self.resumed if resume_thread_id else self.fresh


class TestBuildCodexArgs:
    """Tests for build_codex_args."""

    def test_fresh_run(self) -> None:
        """Test the sandboxed command line."""
        args = build_codex_args("do it", "high", allow_all_tools=False, model="gpt-5")

        assert args[:3] == ["codex", "--enable", "web_search_request"]
        assert "model_reasoning_effort=high" in args
        assert args[args.index("--sandbox") + 1] == "workspace-write"
        assert args[args.index("--model") + 1] == "gpt-5"
        assert args[-2:] == ["--json", "do it"]

    def test_resume(self) -> None:
        """Test resuming a thread with full permissions."""
        args = build_codex_args("do it", "low", allow_all_tools=True, resume_thread_id="t-9")

        assert "--dangerously-bypass-approvals-and-sandbox" in args
        assert "--sandbox" not in args
        assert args[-4:] == ["--json", "resume", "t-9", "continue"]
        assert "do it" not in args

    def test_env(self) -> None:
        """Test child environment overrides."""
        env = build_codex_env(None)

        assert env["PLANEXEC_EXECUTOR"] == "codex"
        assert env["PLANEXEC_NOTIFY_SUPPRESS"] == "1"
        assert env[TUNNEL_SOCKET_ENV] is None
        assert build_codex_env(None, notify_suppress=False)["PLANEXEC_NOTIFY_SUPPRESS"] == "0"


class TestFailureReason:
    """Tests for failure_reason."""

    def test_reasons(self) -> None:
        """Test each retry reason."""
        assert failure_reason(SpawnResult(exit_code=0)) is None
        assert failure_reason(SpawnResult(exit_code=143, killed_by_inactivity=True)) == "was terminated after inactivity"
        assert failure_reason(SpawnResult(exit_code=137)) == "received SIGKILL"
        assert failure_reason(SpawnResult(exit_code=143)) == "terminated unexpectedly"
        assert failure_reason(SpawnResult(exit_code=2)) == "exited with code 2"


class TestExecuteCodexStep:
    """Tests for execute_codex_step with scripted child processes."""

    @pytest.fixture
    def settings(self) -> CodexSettings:
        return CodexSettings(inactivity_timeout_ms=60000)

    @pytest.mark.asyncio
    async def test_final_message(self, tmp_path: Path, settings: CodexSettings) -> None:
        """Test a successful single attempt."""
        fake = FakeCodex(_codex_child([
            {"type": "thread.started", "thread_id": "t-1"},
            _agent_message("Looking around."),
            _agent_message("Implemented the flag."),
        ]))

        with patch("planexec.executors.codex_runner.build_codex_args", fake):
            message = await execute_codex_step("prompt", tmp_path, settings)

        assert message == "Implemented the flag."
        assert fake.calls == [None]

    @pytest.mark.asyncio
    async def test_failed_message_preferred(self, tmp_path: Path, settings: CodexSettings) -> None:
        """Test that a FAILED report wins over a later message."""
        fake = FakeCodex(_codex_child([
            _agent_message("FAILED: the schema is missing"),
            _agent_message("Stopping here."),
        ]))

        with patch("planexec.executors.codex_runner.build_codex_args", fake):
            message = await execute_codex_step("prompt", tmp_path, settings)

        assert message == "FAILED: the schema is missing"

    @pytest.mark.asyncio
    async def test_retry_resumes_thread(self, tmp_path: Path, settings: CodexSettings) -> None:
        """Test that a crashed attempt is resumed with its thread id."""
        fake = FakeCodex(
            fresh=_codex_child([{"type": "thread.started", "thread_id": "t-1"}], exit_code=1),
            resumed=_codex_child([_agent_message("Finished after resume.")]),
        )

        with patch("planexec.executors.codex_runner.build_codex_args", fake):
            message = await execute_codex_step("prompt", tmp_path, settings)

        assert message == "Finished after resume."
        assert fake.calls == [None, "t-1"]

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, tmp_path: Path, settings: CodexSettings) -> None:
        """Test the error after every attempt fails."""
        fake = FakeCodex(_codex_child([], exit_code=1))

        with patch("planexec.executors.codex_runner.build_codex_args", fake):
            with pytest.raises(ExecutorError, match=r"codex failed after 3 attempts \(exited with code 1\)"):
                await execute_codex_step("prompt", tmp_path, settings)

        assert len(fake.calls) == MAX_ATTEMPTS

    @pytest.mark.asyncio
    async def test_no_agent_message(self, tmp_path: Path, settings: CodexSettings) -> None:
        """Test a clean exit that produced nothing."""
        fake = FakeCodex(_codex_child([{"type": "turn.started"}]))

        with patch("planexec.executors.codex_runner.build_codex_args", fake):
            with pytest.raises(ExecutorError, match="No final agent message"):
                await execute_codex_step("prompt", tmp_path, settings)


class TestCodexCliExecutorEnv:
    """Tests for config values reaching the Codex child."""

    @pytest.mark.asyncio
    async def test_notify_suppress_from_config(self, tmp_path: Path, config: Config) -> None:
        """Test that a disabled PLANEXEC_NOTIFY_SUPPRESS is passed to the child."""
        script = (
            "import json, os\n"
            "text = os.environ['PLANEXEC_NOTIFY_SUPPRESS']\n"
            "print(json.dumps({'type': 'item.completed', 'item': {'type': 'agent_message', 'text': text}}), flush=True)\n"
        )
        config.notify_suppress = False
        executor = CodexCliExecutor(config, cwd=tmp_path)

        with patch("planexec.executors.codex_runner.build_codex_args", FakeCodex([sys.executable, "-c", script])):
            message = await executor.run_step("prompt")

        assert message == "0"
