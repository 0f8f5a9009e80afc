"""Tests for configuration management."""

from __future__ import annotations

from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest
import yaml

from planexec.config import DEFAULT_CONFIG_RELATIVE_PATH, Config

ENV_KEYS = (
    "ALLOW_ALL_TOOLS",
    "PLANEXEC_PERMISSIONS_MCP",
    "PLANEXEC_NOTIFY_SUPPRESS",
    "CODEX_OUTPUT_TIMEOUT_MS",
    "PLANEXEC_OUTPUT_SOCKET",
    "PLANEXEC_HEADLESS_URL",
    "PLANEXEC_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Remove planexec variables and skip .env loading."""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    with patch("planexec.config.load_dotenv"):
        yield


def _write_config(repo: Path, data: dict) -> Path:
    path = repo / DEFAULT_CONFIG_RELATIVE_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    return path


class TestConfig:
    """Tests for Config class."""

    def test_defaults(self, tmp_path: Path) -> None:
        """Test defaults without a config file."""
        config = Config.from_env(repo_path=tmp_path)

        assert config.repo_path == tmp_path
        assert config.config_file is None
        assert config.allow_all_tools is False
        assert config.claude.permissions_mcp.enabled is True
        assert config.claude.permissions_mcp.default_response == "no"
        assert config.codex.reasoning_level == "medium"
        assert config.codex.inactivity_timeout_ms == 600000
        assert config.headless.url is None
        assert config.validate() == []

    def test_config_file(self, tmp_path: Path) -> None:
        """Test values read from .planexec/config.yaml."""
        path = _write_config(tmp_path, {
            "allow_all_tools": True,
            "claude": {
                "model": "opus",
                "allowed_tools": ["Bash(npm test:*)"],
                "permissions_mcp": {"default_response": "YES", "timeout_ms": 30000},
            },
            "codex": {"reasoning_level": "high"},
            "headless": {"url": "ws://localhost:8765/ws/session", "max_buffer_bytes": 1024},
            "permissions_store": {"path": str(tmp_path / "store.yaml")},
        })

        config = Config.from_env(repo_path=tmp_path)

        assert config.config_file == path
        assert config.allow_all_tools is True
        assert config.claude.model == "opus"
        assert config.claude.allowed_tools == ["Bash(npm test:*)"]
        assert config.claude.permissions_mcp.default_response == "yes"
        assert config.claude.permissions_mcp.timeout_seconds == 30.0
        assert config.codex.reasoning_level == "high"
        assert config.headless.max_buffer_bytes == 1024
        assert config.permissions_store_path == tmp_path / "store.yaml"

    def test_env_overrides(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test environment variables win over the file."""
        _write_config(tmp_path, {"allow_all_tools": False, "headless": {"url": "ws://file"}})
        monkeypatch.setenv("ALLOW_ALL_TOOLS", "true")
        monkeypatch.setenv("PLANEXEC_PERMISSIONS_MCP", "0")
        monkeypatch.setenv("CODEX_OUTPUT_TIMEOUT_MS", "5000")
        monkeypatch.setenv("PLANEXEC_HEADLESS_URL", "ws://env")
        monkeypatch.setenv("PLANEXEC_LOG_LEVEL", "debug")
        monkeypatch.setenv("PLANEXEC_NOTIFY_SUPPRESS", "0")

        config = Config.from_env(repo_path=tmp_path)

        assert config.allow_all_tools is True
        assert config.claude.permissions_mcp.enabled is False
        assert config.codex.inactivity_timeout_ms == 5000
        assert config.headless.url == "ws://env"
        assert config.log_level == "DEBUG"
        assert config.notify_suppress is False

    def test_invalid_timeout_env_ignored(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that non-positive or non-numeric timeouts keep the default."""
        monkeypatch.setenv("CODEX_OUTPUT_TIMEOUT_MS", "soon")
        assert Config.from_env(repo_path=tmp_path).codex.inactivity_timeout_ms == 600000

        monkeypatch.setenv("CODEX_OUTPUT_TIMEOUT_MS", "0")
        assert Config.from_env(repo_path=tmp_path).codex.inactivity_timeout_ms == 600000

    def test_explicit_config_file(self, tmp_path: Path) -> None:
        """Test a config file outside the repository."""
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.safe_dump({"codex": {"model": "gpt-5"}}))

        config = Config.from_env(repo_path=tmp_path, config_file=path)

        assert config.config_file == path
        assert config.codex.model == "gpt-5"

    def test_non_mapping_file(self, tmp_path: Path) -> None:
        """Test that a list at the top level is rejected."""
        path = tmp_path / "bad.yaml"
        path.write_text("- one\n- two\n")

        with pytest.raises(ValueError):
            Config.from_env(repo_path=tmp_path, config_file=path)

    def test_validate_errors(self, tmp_path: Path) -> None:
        """Test validation messages."""
        config = Config(repo_path=tmp_path / "missing")
        config.codex.reasoning_level = "extreme"
        config.claude.permissions_mcp.default_response = "maybe"
        config.headless.url = "http://monitor"
        config.log_level = "LOUD"

        errors = config.validate()

        assert len(errors) == 5
        assert any("does not exist" in e for e in errors)
        assert any("reasoning_level" in e for e in errors)
        assert any("default_response" in e for e in errors)
        assert any("ws://" in e for e in errors)
        assert any("PLANEXEC_LOG_LEVEL" in e for e in errors)
