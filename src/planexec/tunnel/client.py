"""Tunnel client used by a process whose ancestor runs a tunnel server."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from typing import Any, Callable, Literal, Optional

from ..errors import PlanexecError, PromptTimeoutError, TunnelError
from .protocol import (
    TUNNEL_SOCKET_ENV,
    ReconnectGate,
    decode_line,
    encode_line,
    is_server_message,
    prompt_request,
)

logger = logging.getLogger(__name__)

ConnectionState = Literal["disconnected", "connecting", "connected"]

READ_LIMIT = 16 * 1024 * 1024


class TunnelClient:
    """Forwards output to an ancestor process over a Unix socket.

    Connection failures are silent: callers check :attr:`connected` (or the
    return value of :meth:`send`) and fall back to local output.
    """

    def __init__(self, socket_path: str, reconnect_interval: float = 5.0):
        self.socket_path = socket_path
        self.state: ConnectionState = "disconnected"
        self._gate = ReconnectGate(reconnect_interval)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._user_input_handler: Optional[Callable[[str], None]] = None

    @property
    def connected(self) -> bool:
        return self.state == "connected"

    async def connect(self) -> bool:
        """Open the socket. At most one attempt per reconnect interval.

        Returns:
            True when connected afterwards.
        """
        if self.state != "disconnected":
            return self.connected
        if not self._gate.try_acquire():
            return False

        self.state = "connecting"
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(
                self.socket_path, limit=READ_LIMIT
            )
        except OSError as exc:
            logger.debug(f"Tunnel connect to {self.socket_path} failed: {exc}")
            self.state = "disconnected"
            return False

        self.state = "connected"
        self._reader_task = asyncio.create_task(self._read_loop(self._reader))
        return True

    def _schedule_reconnect(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(self.connect())

    # =========================================================================
    # Outbound
    # =========================================================================

    def send(self, record: dict) -> bool:
        """Write one message. Returns False (and drops it) when not connected."""
        if not self.connected or self._writer is None:
            if self.state == "disconnected":
                self._schedule_reconnect()
            return False
        try:
            self._writer.write(encode_line(record))
        except (OSError, RuntimeError) as exc:
            logger.debug(f"Tunnel send failed: {exc}")
            self._handle_disconnect()
            return False
        return True

    def send_log(self, level: str, *args: Any) -> bool:
        return self.send({"type": level, "args": [str(arg) for arg in args]})

    def send_stdout(self, data: str) -> bool:
        return self.send({"type": "stdout", "data": data})

    def send_stderr(self, data: str) -> bool:
        return self.send({"type": "stderr", "data": data})

    def send_structured(self, message: dict) -> bool:
        return self.send({"type": "structured", "message": message})

    async def request_prompt(
        self,
        prompt_type: str,
        config: dict,
        timeout_ms: Optional[int] = None,
    ) -> Any:
        """Ask the ancestor to answer a prompt.

        Raises:
            TunnelError: Not connected, or the connection dropped while waiting.
            PromptTimeoutError: No answer within ``timeout_ms``.
            PlanexecError: The ancestor reported an error for this prompt.
        """
        if not self.connected:
            raise TunnelError("Tunnel is not connected")

        request_id = str(uuid.uuid4())
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            if not self.send(prompt_request(request_id, prompt_type, config, timeout_ms)):
                raise TunnelError("Failed to send prompt request")
            if timeout_ms:
                try:
                    return await asyncio.wait_for(future, timeout_ms / 1000)
                except asyncio.TimeoutError as exc:
                    raise PromptTimeoutError(f"Prompt timed out after {timeout_ms}ms") from exc
            return await future
        finally:
            self._pending.pop(request_id, None)

    def set_user_input_handler(self, handler: Optional[Callable[[str], None]]) -> None:
        self._user_input_handler = handler

    # =========================================================================
    # Inbound
    # =========================================================================

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    continue
                if not line:
                    break
                record = decode_line(line)
                if not is_server_message(record):
                    logger.debug(f"Ignoring invalid server message: {line[:200]!r}")
                    continue
                self._handle_server_message(record)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug(f"Tunnel read failed: {exc}")
        finally:
            self._handle_disconnect()

    def _handle_server_message(self, record: dict) -> None:
        if record["type"] == "prompt_response":
            future = self._pending.get(record["requestId"])
            if future is None or future.done():
                return
            if record.get("error") is not None:
                future.set_exception(PlanexecError(record["error"]))
            else:
                future.set_result(record.get("value"))
        elif record["type"] == "user_input" and self._user_input_handler is not None:
            self._user_input_handler(record["content"])

    def _handle_disconnect(self) -> None:
        if self.state == "disconnected":
            return
        self.state = "disconnected"
        if self._writer is not None:
            self._writer.close()
        self._writer = None
        self._reader = None
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TunnelError("Tunnel connection closed"))
        self._pending.clear()

    async def close(self) -> None:
        self._handle_disconnect()
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None


# =============================================================================
# Process-wide client
# =============================================================================

_client: Optional[TunnelClient] = None


def get_tunnel_client() -> Optional[TunnelClient]:
    """Return the process tunnel client, if one was created."""
    return _client


def set_tunnel_client(client: Optional[TunnelClient]) -> None:
    global _client
    _client = client


async def connect_from_env() -> Optional[TunnelClient]:
    """Connect to the ancestor named by ``PLANEXEC_OUTPUT_SOCKET``.

    Returns:
        The connected client, or None when the variable is unset or the
        socket is unreachable.
    """
    socket_path = os.environ.get(TUNNEL_SOCKET_ENV)
    if not socket_path:
        return None
    client = _client if _client is not None and _client.socket_path == socket_path else TunnelClient(socket_path)
    if await client.connect():
        set_tunnel_client(client)
        return client
    return None


class TunnelLogHandler(logging.Handler):
    """Logging handler forwarding records to the ancestor as tunnel log messages."""

    LEVELS = (
        (logging.ERROR, "error"),
        (logging.WARNING, "warn"),
        (logging.INFO, "log"),
    )

    def __init__(self, client: TunnelClient, level: int = logging.NOTSET):
        super().__init__(level)
        self.client = client

    def emit(self, record: logging.LogRecord) -> None:
        # Tunnel internals log about their own failures; forwarding those would loop
        if record.name.startswith("planexec.tunnel"):
            return
        kind = next((name for threshold, name in self.LEVELS if record.levelno >= threshold), "debug")
        try:
            message = self.format(record)
        except (TypeError, ValueError):
            self.handleError(record)
            return
        self.client.send_log(kind, message)
