"""Wires a permission broker to Claude for one subprocess run."""

from __future__ import annotations

import json
import logging
import os
import shutil
import sys
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from .broker import PermissionBroker
from .socket_server import PermissionSocketServer

logger = logging.getLogger(__name__)

PERMISSION_PROMPT_TOOL = "mcp__permissions__approval_prompt"


def build_mcp_config(socket_path: str) -> dict:
    """MCP config launching this package's permission server."""
    return {
        "mcpServers": {
            "permissions": {
                "type": "stdio",
                "command": sys.executable,
                "args": ["-m", "planexec", "permissions-mcp", socket_path],
            }
        }
    }


@asynccontextmanager
async def setup_permissions_mcp(broker: PermissionBroker) -> AsyncIterator[Path]:
    """Start the permission socket and write the MCP config file.

    Yields:
        Path of the config file to pass as ``--mcp-config``.
    """
    directory = Path(tempfile.mkdtemp(prefix="planexec-permissions-"))
    os.chmod(directory, 0o700)
    socket_path = directory / "permissions.sock"
    server = PermissionSocketServer(socket_path, broker)
    await server.start()

    config_path = directory / "mcp-config.json"
    config_path.write_text(json.dumps(build_mcp_config(str(socket_path)), indent=2), encoding="utf-8")
    logger.debug(f"Permission MCP config written to {config_path}")

    try:
        yield config_path
    finally:
        await server.close()
        shutil.rmtree(directory, ignore_errors=True)
