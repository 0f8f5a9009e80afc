"""Stdio MCP server that Claude calls for permission decisions.

Started by Claude itself (``--permission-prompt-tool``) as
``python -m planexec permissions-mcp SOCKET_PATH``. Each ``approval_prompt``
call is forwarded to the executor's permission socket.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Optional

from fastmcp import FastMCP

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 10 * 60
READ_LIMIT = 1024 * 1024


class PermissionSocketClient:
    """Forwards permission requests to the executor and awaits the replies."""

    def __init__(self, socket_path: str):
        self.socket_path = socket_path
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

    async def _ensure_connected(self) -> asyncio.StreamWriter:
        async with self._lock:
            if self._writer is None or self._writer.is_closing():
                self._reader, self._writer = await asyncio.open_unix_connection(
                    self.socket_path, limit=READ_LIMIT
                )
                self._reader_task = asyncio.create_task(self._read_loop(self._reader))
            return self._writer

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except json.JSONDecodeError as exc:
                    logger.debug(f"Invalid permission response: {exc}")
                    continue
                future = self._pending.pop(str(message.get("requestId")), None)
                if future is None:
                    logger.debug(f"No pending request for {message.get('requestId')}")
                    continue
                if not future.done():
                    future.set_result(bool(message.get("approved")))
        except (ConnectionError, ValueError) as exc:
            logger.debug(f"Permission socket read failed: {exc}")
        finally:
            self._writer = None
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("Socket connection closed"))
            self._pending.clear()

    async def request(self, tool_name: str, tool_input: Any, timeout: float = REQUEST_TIMEOUT_SECONDS) -> bool:
        writer = await self._ensure_connected()
        request_id = str(uuid.uuid4())
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        request = {
            "type": "permission_request",
            "requestId": request_id,
            "tool_name": tool_name,
            "input": tool_input,
        }
        try:
            writer.write((json.dumps(request) + "\n").encode("utf-8"))
            await writer.drain()
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            raise TimeoutError("Permission request timed out") from exc
        finally:
            self._pending.pop(request_id, None)


def approval_response(tool_name: str, tool_input: Any, approved: bool) -> str:
    """JSON text Claude expects from a permission prompt tool."""
    if approved:
        return json.dumps({"behavior": "allow", "updatedInput": tool_input})
    return json.dumps({"behavior": "deny", "message": f"User denied permission for tool: {tool_name}"})


def create_permissions_mcp(socket_path: str) -> FastMCP:
    """Build the MCP server bound to one permission socket."""
    mcp = FastMCP("permissions")
    client = PermissionSocketClient(socket_path)

    @mcp.tool()
    async def approval_prompt(tool_name: str, input: dict) -> str:
        """Prompts the user for permission to execute a tool."""
        try:
            approved = await client.request(tool_name, input)
        except (OSError, TimeoutError) as exc:
            return json.dumps({"behavior": "deny", "message": f"Permission request failed: {exc}"})
        return approval_response(tool_name, input, approved)

    return mcp


def run_permissions_mcp(socket_path: str) -> None:
    """Serve the permission tool over stdio until Claude closes the pipe."""
    create_permissions_mcp(socket_path).run()
