"""Executor interface and shared helpers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Optional

from ..errors import ExecutorError
from ..models import ExecutionRequest, ExecutorOutput
from ..tunnel.protocol import TUNNEL_SOCKET_ENV
from ..tunnel.server import TunnelServerHandle, create_tunnel_server

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

EXECUTOR_NAMES: tuple[str, ...] = ("claude", "codex")


class Executor(ABC):
    """Runs one ExecutionRequest against an agent backend."""

    name: str = ""

    def __init__(self, config: Config, cwd: Optional[Path] = None):
        self.config = config
        self.cwd = Path(cwd) if cwd else config.repo_path

    @abstractmethod
    async def execute(self, request: ExecutionRequest) -> Optional[ExecutorOutput]:
        """Run the request.

        Returns:
            ExecutorOutput when output capture is enabled or the run failed,
            otherwise None.
        """


@asynccontextmanager
async def child_tunnel() -> AsyncIterator[Optional[TunnelServerHandle]]:
    """Open a tunnel server for agent children of this process.

    Yields None when the socket cannot be created; children then write to
    their own stdout, which this process still captures.
    """
    try:
        handle: Optional[TunnelServerHandle] = await create_tunnel_server()
    except OSError as exc:
        logger.debug(f"Could not create tunnel server for output forwarding: {exc}")
        handle = None
    try:
        yield handle
    finally:
        if handle is not None:
            await handle.close()


def tunnel_env(handle: Optional[TunnelServerHandle]) -> dict[str, Optional[str]]:
    """Environment pointing a child at ``handle``; clears any inherited socket otherwise."""
    if handle is None:
        return {TUNNEL_SOCKET_ENV: None}
    return {TUNNEL_SOCKET_ENV: handle.socket_path}


def build_executor(name: str, config: Config, cwd: Optional[Path] = None) -> Executor:
    """Create an executor by name.

    Raises:
        ExecutorError: Unknown executor name.
    """
    if name == "claude":
        from .claude_code import ClaudeCodeExecutor

        return ClaudeCodeExecutor(config, cwd)
    if name == "codex":
        from .codex_cli import CodexCliExecutor

        return CodexCliExecutor(config, cwd)
    raise ExecutorError(f"Unknown executor: {name} (expected one of {', '.join(EXECUTOR_NAMES)})")
