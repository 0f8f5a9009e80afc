"""Unix-socket tunnel server run by a process that spawns agent children.

A child finds the socket path in ``PLANEXEC_OUTPUT_SOCKET`` and forwards its
log lines, formatted output and structured events here. The server hands
those to ``on_message`` and answers ``prompt_request`` messages through
``on_prompt_request``. Only one client is active at a time; a new
connection supersedes the previous one.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from .protocol import (
    decode_line,
    encode_line,
    is_tunnel_message,
    prompt_response,
    user_input,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[dict], None]
PromptCallback = Callable[[dict], Awaitable[Any]]

READ_LIMIT = 16 * 1024 * 1024


class TunnelServer:
    """Accepts one tunnel client and dispatches its messages."""

    def __init__(
        self,
        socket_path: Path,
        on_message: Optional[MessageCallback] = None,
        on_prompt_request: Optional[PromptCallback] = None,
    ):
        self.socket_path = Path(socket_path)
        self.on_message = on_message
        self.on_prompt_request = on_prompt_request
        self._server: Optional[asyncio.AbstractServer] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def has_client(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def start(self) -> None:
        """Bind the socket, replacing a stale socket file left by a dead process."""
        if self.socket_path.exists():
            self.socket_path.unlink()
        self._server = await asyncio.start_unix_server(
            self._handle_client, path=str(self.socket_path), limit=READ_LIMIT
        )
        logger.debug(f"Tunnel server listening on {self.socket_path}")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        previous = self._writer
        self._writer = writer
        if previous is not None and not previous.is_closing():
            logger.debug("New tunnel client supersedes the previous connection")
            previous.close()

        try:
            while not self._closed:
                try:
                    line = await reader.readline()
                except ValueError:
                    logger.debug("Dropping oversized tunnel line")
                    continue
                if not line:
                    break
                record = decode_line(line)
                if not is_tunnel_message(record):
                    logger.debug(f"Ignoring invalid tunnel message: {line[:200]!r}")
                    continue
                self._dispatch(record, writer)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug(f"Tunnel client disconnected: {exc}")
        finally:
            if self._writer is writer:
                self._writer = None
            writer.close()

    def _dispatch(self, record: dict, writer: asyncio.StreamWriter) -> None:
        if record["type"] == "prompt_request":
            task = asyncio.create_task(self._answer_prompt(record, writer))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return
        if self.on_message is not None:
            self.on_message(record)

    async def _answer_prompt(self, record: dict, writer: asyncio.StreamWriter) -> None:
        request_id = record["requestId"]
        if self.on_prompt_request is None:
            response = prompt_response(request_id, error="No prompt handler registered")
        else:
            try:
                value = await self.on_prompt_request(record)
                response = prompt_response(request_id, value=value)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # The error travels back to the child, which raises it there
                response = prompt_response(request_id, error=str(exc) or type(exc).__name__)
        self._write(writer, response)

    def _write(self, writer: Optional[asyncio.StreamWriter], record: dict) -> bool:
        if writer is None or writer.is_closing():
            return False
        try:
            writer.write(encode_line(record))
        except (OSError, RuntimeError) as exc:
            logger.debug(f"Tunnel write failed: {exc}")
            return False
        return True

    def send_user_input(self, content: str) -> bool:
        """Inject follow-up text into the connected child."""
        return self._write(self._writer, user_input(content))

    async def close(self) -> None:
        """Stop listening, drop the client and remove the socket file. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass


class TunnelServerHandle:
    """A started server plus the temporary directory holding its socket."""

    def __init__(self, server: TunnelServer, directory: Path):
        self.server = server
        self.directory = directory

    @property
    def socket_path(self) -> str:
        return str(self.server.socket_path)

    async def close(self) -> None:
        await self.server.close()
        shutil.rmtree(self.directory, ignore_errors=True)


async def create_tunnel_server(
    on_message: Optional[MessageCallback] = None,
    on_prompt_request: Optional[PromptCallback] = None,
) -> TunnelServerHandle:
    """Start a tunnel server on a fresh socket in a private temp directory.

    Messages default to the process output sink, so a child's output is
    re-emitted here (and forwarded further up when this process is itself
    tunneled). Prompts default to the local prompt handler.
    """
    if on_message is None:
        from ..output import get_output

        on_message = get_output().relay
    if on_prompt_request is None:
        from .prompt_handler import create_prompt_request_handler

        on_prompt_request = create_prompt_request_handler()

    directory = Path(tempfile.mkdtemp(prefix="planexec-tunnel-"))
    os.chmod(directory, 0o700)
    server = TunnelServer(directory / "output.sock", on_message, on_prompt_request)
    await server.start()
    return TunnelServerHandle(server, directory)
