"""Unix socket that the permission MCP server forwards requests to.

Each line is a ``permission_request`` JSON object; the reply is a
``permission_response`` carrying the same ``requestId``. Requests are
answered concurrently so one slow prompt does not hold up the others.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

from .broker import PermissionBroker

logger = logging.getLogger(__name__)

READ_LIMIT = 1024 * 1024


class PermissionSocketServer:
    """Serves permission decisions from a broker over a Unix socket."""

    def __init__(self, socket_path: Path, broker: PermissionBroker):
        self.socket_path = Path(socket_path)
        self.broker = broker
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: set[asyncio.Task] = set()
        self._writers: set[asyncio.StreamWriter] = set()

    async def start(self) -> None:
        if self.socket_path.exists():
            self.socket_path.unlink()
        self._server = await asyncio.start_unix_server(
            self._handle_client, path=str(self.socket_path), limit=READ_LIMIT
        )
        logger.debug(f"Permission socket listening on {self.socket_path}")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    logger.warning("Permission request too large, ignoring")
                    continue
                if not line:
                    break
                try:
                    message = json.loads(line)
                except json.JSONDecodeError as exc:
                    logger.debug(f"Invalid permission request: {exc}")
                    continue
                if not isinstance(message, dict) or message.get("type") != "permission_request":
                    logger.debug(f"Ignoring unexpected permission socket message: {message!r}")
                    continue
                task = asyncio.create_task(self._answer(message, writer))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug(f"Permission client disconnected: {exc}")
        finally:
            self._writers.discard(writer)
            writer.close()

    async def _answer(self, message: dict, writer: asyncio.StreamWriter) -> None:
        tool_name = str(message.get("tool_name", ""))
        approved = await self.broker.decide(tool_name, message.get("input") or {})
        response = {
            "type": "permission_response",
            "requestId": message.get("requestId"),
            "approved": approved,
        }
        if writer.is_closing():
            logger.debug(f"Permission client gone before answer for {tool_name}")
            return
        try:
            writer.write((json.dumps(response) + "\n").encode("utf-8"))
            await writer.drain()
        except (ConnectionError, OSError) as exc:
            logger.debug(f"Could not send permission response: {exc}")

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for writer in list(self._writers):
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass
