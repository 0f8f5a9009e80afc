"""Tests for CLI entrypoint."""

from __future__ import annotations

from pathlib import Path
from typing import Generator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from planexec.cli import app
from planexec.config import Config
from planexec.executors.subagent import run_subagent
from planexec.models import ExecutorOutput, FailureDetails, OutputStep

runner = CliRunner()

ENV_KEYS = ("PLANEXEC_OUTPUT_SOCKET", "PLANEXEC_HEADLESS_URL", "ALLOW_ALL_TOOLS", "PLANEXEC_LOG_LEVEL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Run every command as a root process without a monitor."""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    with patch("planexec.config.load_dotenv"):
        yield


@pytest.fixture
def context_file(tmp_path: Path) -> Path:
    path = tmp_path / "context.md"
    path.write_text("## Task\nAdd a --json flag.\n")
    return path


def _mock_executor(result: ExecutorOutput) -> MagicMock:
    executor = MagicMock()
    executor.execute = AsyncMock(return_value=result)
    return executor


class TestCLI:
    """Tests for general CLI behavior."""

    def test_version(self) -> None:
        """Test --version flag."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "planexec version" in result.stdout

    def test_help(self) -> None:
        """Test --help flag."""
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        assert "run" in result.stdout
        assert "subagent" in result.stdout
        assert "monitor" in result.stdout

    def test_run_help(self) -> None:
        """Test run command help."""
        result = runner.invoke(app, ["run", "--help"])

        assert result.exit_code == 0
        assert "--executor" in result.stdout
        assert "--capture" in result.stdout


class TestRunCommand:
    """Tests for the run command."""

    def test_missing_context_file(self, tmp_path: Path) -> None:
        """Test a context file that does not exist."""
        result = runner.invoke(app, ["run", str(tmp_path / "missing.md"), "--repo", str(tmp_path)])

        assert result.exit_code == 1
        assert "Context file not found" in result.stdout

    def test_invalid_mode(self, tmp_path: Path, context_file: Path) -> None:
        """Test an unknown mode is rejected."""
        result = runner.invoke(app, ["run", str(context_file), "--mode", "fast", "--repo", str(tmp_path)])

        assert result.exit_code == 1
        assert "--mode must be one of" in result.stdout

    def test_invalid_executor(self, tmp_path: Path, context_file: Path) -> None:
        """Test an unknown executor is rejected."""
        result = runner.invoke(app, ["run", str(context_file), "--executor", "gemini", "--repo", str(tmp_path)])

        assert result.exit_code == 1

    def test_run_captures_result(self, tmp_path: Path, context_file: Path) -> None:
        """Test a successful run printing and writing captured output."""
        executor = _mock_executor(ExecutorOutput(
            content="VERDICT: ACCEPTABLE",
            steps=[OutputStep(title="Reviewer", body="VERDICT: ACCEPTABLE")],
        ))
        output_file = tmp_path / "out" / "summary.md"

        with patch("planexec.cli.build_executor", return_value=executor) as build:
            result = runner.invoke(app, [
                "run", str(context_file),
                "--executor", "codex",
                "--capture", "result",
                "--plan-id", "42",
                "--repo", str(tmp_path),
                "--output-file", str(output_file),
                "--no-interactive",
            ])

        assert result.exit_code == 0, result.stdout
        assert "VERDICT: ACCEPTABLE" in result.stdout
        assert build.call_args.args[0] == "codex"
        request = executor.execute.call_args.args[0]
        assert request.context == "## Task\nAdd a --json flag.\n"
        assert request.plan_id == "42"
        assert request.capture_output == "result"
        assert request.interactive is False
        assert "## Reviewer" in output_file.read_text()

    def test_run_failure(self, tmp_path: Path, context_file: Path) -> None:
        """Test a FAILED outcome exits non-zero with the report."""
        executor = _mock_executor(ExecutorOutput(
            content="FAILED: no test runner",
            success=False,
            failure_details=FailureDetails(problems="no test runner", source_agent="tester"),
        ))

        with patch("planexec.cli.build_executor", return_value=executor):
            result = runner.invoke(app, ["run", str(context_file), "--repo", str(tmp_path), "--no-interactive"])

        assert result.exit_code == 1
        assert "reported by tester" in result.stdout
        assert "FAILED: no test runner" in result.stdout

    def test_run_log(self, tmp_path: Path, context_file: Path) -> None:
        """Test --log-dir writes a run log."""
        executor = _mock_executor(ExecutorOutput(content="done"))
        log_dir = tmp_path / "logs"

        with patch("planexec.cli.build_executor", return_value=executor):
            result = runner.invoke(app, [
                "run", str(context_file), "--repo", str(tmp_path), "--no-interactive", "--log-dir", str(log_dir),
            ])

        assert result.exit_code == 0
        assert len(list(log_dir.glob("*.json"))) == 1

    def test_log_level_from_env(self, tmp_path: Path, context_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test PLANEXEC_LOG_LEVEL sets the level once config is loaded."""
        monkeypatch.setenv("PLANEXEC_LOG_LEVEL", "warning")
        executor = _mock_executor(ExecutorOutput(content="done"))

        with patch("planexec.cli.build_executor", return_value=executor), \
                patch("planexec.cli.setup_logging") as setup:
            result = runner.invoke(app, ["run", str(context_file), "--repo", str(tmp_path), "--no-interactive"])

        assert result.exit_code == 0, result.stdout
        assert setup.call_args.kwargs["level"] == "WARNING"


class TestSubagentCommand:
    """Tests for the subagent command."""

    def test_prints_final_message(self, tmp_path: Path) -> None:
        """Test the final message goes to stdout."""
        with patch("planexec.executors.subagent.run_subagent", AsyncMock(return_value="Implemented.")) as run:
            result = runner.invoke(app, [
                "subagent", "implementer", "--input", "Add the flag", "--repo", str(tmp_path), "--no-interactive",
            ])

        assert result.exit_code == 0
        assert "Implemented." in result.stdout
        assert run.call_args.args[:2] == ("implementer", "Add the flag")

    def test_requires_input(self, tmp_path: Path) -> None:
        """Test that instructions are required."""
        result = runner.invoke(app, ["subagent", "tester", "--repo", str(tmp_path)])

        assert result.exit_code == 1
        assert "Provide --input or --input-file" in result.stdout

    def test_unknown_role(self, tmp_path: Path) -> None:
        """Test an unknown role is rejected."""
        result = runner.invoke(app, ["subagent", "designer", "--input", "x", "--repo", str(tmp_path)])

        assert result.exit_code == 1


class TestRunSubagent:
    """Tests for run_subagent."""

    @pytest.mark.asyncio
    async def test_codex_failed_report_returned(self, config: Config) -> None:
        """Test that a FAILED implementer report becomes the final message."""
        report = "FAILED: the schema is missing\n\nProblems:\n- no schema.sql"

        with patch(
            "planexec.executors.codex_cli.CodexCliExecutor.run_step", AsyncMock(return_value=report)
        ):
            message = await run_subagent("implementer", "Add the table", config, executor_name="codex")

        assert message == report

    @pytest.mark.asyncio
    async def test_codex_other_role(self, config: Config) -> None:
        """Test a non-implementer role runs a single step with the role prompt."""
        step = AsyncMock(return_value="Tests pass.")

        with patch("planexec.executors.codex_cli.CodexCliExecutor.run_step", step):
            message = await run_subagent("tester", "Check the flag", config, executor_name="codex")

        assert message == "Tests pass."
        assert step.call_args.args[0].startswith("You are the tester")
