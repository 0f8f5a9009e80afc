"""Configuration management for planexec."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv

from .permissions.store import DEFAULT_STORE_PATH
from .tunnel.headless import DEFAULT_MAX_BUFFER_BYTES

# Type alias for Codex reasoning effort
ReasoningLevel = Literal["low", "medium", "high", "xhigh"]

REASONING_LEVELS: tuple[str, ...] = ("low", "medium", "high", "xhigh")
LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
DEFAULT_CONFIG_RELATIVE_PATH = Path(".planexec") / "config.yaml"

TRUE_VALUES = ("true", "1", "yes")


def _env_flag(name: str) -> Optional[bool]:
    """Parse a boolean environment variable. Returns None when unset."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip().lower() in TRUE_VALUES


def _env_int(name: str) -> Optional[int]:
    value = os.getenv(name, "").strip()
    try:
        parsed = int(value)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


@dataclass
class PermissionsMcpSettings:
    """Settings for interactive permission brokering."""

    enabled: bool = True
    default_response: str = "no"
    timeout_ms: Optional[int] = None
    auto_approve_created_file_deletion: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> PermissionsMcpSettings:
        """Create PermissionsMcpSettings from dictionary."""
        timeout = data.get("timeout_ms")
        return cls(
            enabled=bool(data.get("enabled", True)),
            default_response=str(data.get("default_response", "no")).lower(),
            timeout_ms=int(timeout) if timeout is not None else None,
            auto_approve_created_file_deletion=bool(data.get("auto_approve_created_file_deletion", False)),
        )

    @property
    def timeout_seconds(self) -> Optional[float]:
        return self.timeout_ms / 1000 if self.timeout_ms else None


@dataclass
class ClaudeSettings:
    """Settings for the Claude executor."""

    model: Optional[str] = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    include_default_tools: bool = True
    permissions_mcp: PermissionsMcpSettings = field(default_factory=PermissionsMcpSettings)
    inactivity_timeout_ms: Optional[int] = None
    initial_inactivity_timeout_ms: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> ClaudeSettings:
        """Create ClaudeSettings from dictionary."""
        return cls(
            model=data.get("model"),
            allowed_tools=list(data.get("allowed_tools") or []),
            disallowed_tools=list(data.get("disallowed_tools") or []),
            include_default_tools=bool(data.get("include_default_tools", True)),
            permissions_mcp=PermissionsMcpSettings.from_dict(data.get("permissions_mcp") or {}),
            inactivity_timeout_ms=data.get("inactivity_timeout_ms"),
            initial_inactivity_timeout_ms=data.get("initial_inactivity_timeout_ms"),
        )


@dataclass
class CodexSettings:
    """Settings for the Codex executor."""

    model: Optional[str] = None
    reasoning_level: ReasoningLevel = "medium"
    inactivity_timeout_ms: int = 10 * 60 * 1000

    @classmethod
    def from_dict(cls, data: dict) -> CodexSettings:
        """Create CodexSettings from dictionary."""
        return cls(
            model=data.get("model"),
            reasoning_level=data.get("reasoning_level", "medium"),
            inactivity_timeout_ms=int(data.get("inactivity_timeout_ms", 10 * 60 * 1000)),
        )


@dataclass
class HeadlessSettings:
    """Remote monitor connection settings."""

    url: Optional[str] = None
    max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES

    @classmethod
    def from_dict(cls, data: dict) -> HeadlessSettings:
        return cls(
            url=data.get("url"),
            max_buffer_bytes=int(data.get("max_buffer_bytes", DEFAULT_MAX_BUFFER_BYTES)),
        )


@dataclass
class Config:
    """Configuration settings for planexec."""

    # Paths
    repo_path: Path = field(default_factory=Path.cwd)
    config_file: Optional[Path] = None
    permissions_store_path: Path = DEFAULT_STORE_PATH

    # Runtime switches
    allow_all_tools: bool = False
    notify_suppress: bool = True
    log_level: str = "INFO"

    # Executors
    claude: ClaudeSettings = field(default_factory=ClaudeSettings)
    codex: CodexSettings = field(default_factory=CodexSettings)
    headless: HeadlessSettings = field(default_factory=HeadlessSettings)

    @classmethod
    def from_dict(cls, data: dict, repo_path: Optional[Path] = None) -> Config:
        """Create Config from the parsed YAML file."""
        store = (data.get("permissions_store") or {}).get("path")
        return cls(
            repo_path=Path(repo_path) if repo_path else Path.cwd(),
            permissions_store_path=Path(store) if store else DEFAULT_STORE_PATH,
            allow_all_tools=bool(data.get("allow_all_tools", False)),
            claude=ClaudeSettings.from_dict(data.get("claude") or {}),
            codex=CodexSettings.from_dict(data.get("codex") or {}),
            headless=HeadlessSettings.from_dict(data.get("headless") or {}),
        )

    @classmethod
    def load_file(cls, path: Path) -> dict:
        """Read a YAML config file. A missing file yields an empty mapping."""
        if not path.exists():
            return {}
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        return data

    @classmethod
    def from_env(cls, repo_path: Optional[Path] = None, config_file: Optional[Path] = None) -> Config:
        """Load configuration from the config file, then apply environment overrides.

        Args:
            repo_path: Optional path to the repository. Defaults to CWD.
            config_file: Optional config file. Defaults to ``<repo>/.planexec/config.yaml``.

        Returns:
            Config instance.
        """
        load_dotenv()

        repo = Path(repo_path) if repo_path else Path.cwd()
        path = Path(config_file) if config_file else repo / DEFAULT_CONFIG_RELATIVE_PATH
        config = cls.from_dict(cls.load_file(path), repo_path=repo)
        config.config_file = path if path.exists() else None

        allow_all = _env_flag("ALLOW_ALL_TOOLS")
        if allow_all is not None:
            config.allow_all_tools = allow_all

        brokering = _env_flag("PLANEXEC_PERMISSIONS_MCP")
        if brokering is not None:
            config.claude.permissions_mcp.enabled = brokering

        suppress = _env_flag("PLANEXEC_NOTIFY_SUPPRESS")
        if suppress is not None:
            config.notify_suppress = suppress

        codex_timeout = _env_int("CODEX_OUTPUT_TIMEOUT_MS")
        if codex_timeout is not None:
            config.codex.inactivity_timeout_ms = codex_timeout

        config.headless.url = os.getenv("PLANEXEC_HEADLESS_URL") or config.headless.url
        config.log_level = os.getenv("PLANEXEC_LOG_LEVEL", config.log_level).upper()
        return config

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if not self.repo_path.exists():
            errors.append(f"Repository path does not exist: {self.repo_path}")

        if self.codex.reasoning_level not in REASONING_LEVELS:
            errors.append(
                f"codex.reasoning_level must be one of {', '.join(REASONING_LEVELS)}, "
                f"got {self.codex.reasoning_level!r}"
            )

        if self.claude.permissions_mcp.default_response not in ("yes", "no"):
            errors.append("claude.permissions_mcp.default_response must be 'yes' or 'no'")

        if self.headless.max_buffer_bytes <= 0:
            errors.append("headless.max_buffer_bytes must be positive")

        if self.headless.url and not self.headless.url.startswith(("ws://", "wss://")):
            errors.append(f"Headless URL must be a ws:// or wss:// URL: {self.headless.url}")

        if self.log_level not in LOG_LEVELS:
            errors.append(f"PLANEXEC_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")

        return errors
