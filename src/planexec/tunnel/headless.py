"""Websocket relay from the root process to the remote monitor.

Every tunnel message emitted at the root is wrapped in a numbered
``output`` envelope, kept in a bounded history and queued for sending.
On each (re)connect the relay sends ``session_info`` and replays the whole
history between ``replay_start`` and ``replay_end`` before live output.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .protocol import (
    OutputEnvelope,
    ReconnectGate,
    ReplayMarker,
    SessionInfo,
    decode_line,
    encode_envelope,
    is_server_message,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFER_BYTES = 10 * 1024 * 1024
DEFAULT_RECONNECT_INTERVAL = 5.0


class _Entry:
    """One serialized envelope. Compared by identity."""

    __slots__ = ("payload", "size")

    def __init__(self, payload: str, size: int):
        self.payload = payload
        self.size = size


class HeadlessRelay:
    """Buffers root output and streams it to a monitor over a websocket."""

    def __init__(
        self,
        url: str,
        session_info: SessionInfo,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        connect: Optional[Callable[[str], Any]] = None,
    ):
        self.url = url
        self.session_info = session_info
        self.max_buffer_bytes = max_buffer_bytes
        self._connect = connect or websockets.connect
        self._gate = ReconnectGate(reconnect_interval)

        self.state = "disconnected"
        self._queue: deque[_Entry] = deque()
        self._history: deque[_Entry] = deque()
        self._history_bytes = 0
        self._next_seq = 1
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._pending: dict[str, asyncio.Future] = {}
        self._user_input_handler: Optional[Callable[[str], None]] = None

    # =========================================================================
    # Buffering
    # =========================================================================

    @property
    def history_bytes(self) -> int:
        return self._history_bytes

    def history(self) -> list[str]:
        """Serialized output envelopes currently retained, oldest first."""
        return [entry.payload for entry in self._history]

    def enqueue(self, record: dict) -> None:
        """Wrap a tunnel message in an output envelope and queue it."""
        if self._closed:
            return
        envelope = OutputEnvelope(seq=self._next_seq, message=record)
        self._next_seq += 1
        payload = encode_envelope(envelope)
        entry = _Entry(payload, len(payload.encode("utf-8")))
        self._queue.append(entry)
        self._history.append(entry)
        self._history_bytes += entry.size
        self._enforce_buffer_limit()
        self._maybe_connect()
        self._wakeup.set()

    def _enforce_buffer_limit(self) -> None:
        while self._history_bytes > self.max_buffer_bytes and self._history:
            dropped = self._history.popleft()
            self._history_bytes -= dropped.size
            for index, queued in enumerate(self._queue):
                if queued is dropped:
                    del self._queue[index]
                    break

    def _handshake(self) -> None:
        """Reset the send queue to session info plus a full replay."""
        self._queue.clear()
        self._queue.append(_Entry(encode_envelope(self.session_info), 0))
        self._queue.append(_Entry(encode_envelope(ReplayMarker("replay_start")), 0))
        self._queue.extend(self._history)
        self._queue.append(_Entry(encode_envelope(ReplayMarker("replay_end")), 0))

    # =========================================================================
    # Connection
    # =========================================================================

    def _maybe_connect(self) -> None:
        if self._closed or self.state != "disconnected":
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if not self._gate.try_acquire():
            return
        self.state = "connecting"
        self._task = loop.create_task(self._run())

    async def start(self) -> None:
        """Attempt the first connection right away."""
        self._maybe_connect()

    async def _run(self) -> None:
        try:
            websocket = await self._connect(self.url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            logger.debug(f"Headless connect to {self.url} failed: {exc}")
            self.state = "disconnected"
            return

        self.state = "connected"
        self._handshake()
        receiver = asyncio.create_task(self._receive(websocket))
        try:
            while True:
                self._wakeup.clear()
                while self._queue:
                    entry = self._queue.popleft()
                    await websocket.send(entry.payload)
                if receiver.done() or self._closed:
                    break
                waiter = asyncio.create_task(self._wakeup.wait())
                await asyncio.wait({waiter, receiver}, return_when=asyncio.FIRST_COMPLETED)
                waiter.cancel()
        except (ConnectionClosed, OSError) as exc:
            logger.debug(f"Headless connection lost: {exc}")
        finally:
            receiver.cancel()
            self.state = "disconnected"
            try:
                await websocket.close()
            except (ConnectionClosed, OSError):
                pass

    async def _receive(self, websocket: Any) -> None:
        try:
            async for raw in websocket:
                record = decode_line(raw)
                if not is_server_message(record):
                    continue
                self._handle_server_message(record)
        except (ConnectionClosed, OSError) as exc:
            logger.debug(f"Headless receive ended: {exc}")

    def _handle_server_message(self, record: dict) -> None:
        if record["type"] == "prompt_response":
            future = self._pending.get(record["requestId"])
            if future is None or future.done():
                return
            if record.get("error") is not None:
                # The terminal stays available as the fallback source
                logger.warning(f"Headless prompt error for {record['requestId']}: {record['error']}")
                self._pending.pop(record["requestId"], None)
                return
            self._pending.pop(record["requestId"], None)
            future.set_result(record.get("value"))
        elif record["type"] == "user_input":
            if self._user_input_handler is not None:
                self._user_input_handler(record["content"])
            else:
                logger.debug("Dropping remote user input with no consumer")

    # =========================================================================
    # Prompts and input
    # =========================================================================

    def wait_for_prompt_response(self, request_id: str) -> asyncio.Future:
        """Future resolved by a matching ``prompt_response`` from the monitor.

        Pending prompts survive reconnects.
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        return future

    def cancel_prompt(self, request_id: str) -> None:
        future = self._pending.pop(request_id, None)
        if future is not None and not future.done():
            future.cancel()

    def set_user_input_handler(self, handler: Optional[Callable[[str], None]]) -> None:
        self._user_input_handler = handler

    async def close(self, timeout: float = 2.0) -> None:
        """Flush what can be sent within ``timeout`` and disconnect."""
        if self.state == "connected" and self._queue:
            deadline = asyncio.get_running_loop().time() + timeout
            while self._queue and self.state == "connected":
                if asyncio.get_running_loop().time() >= deadline:
                    break
                await asyncio.sleep(0.05)

        self._closed = True
        self._wakeup.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None

        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()


class HeadlessLogHandler(logging.Handler):
    """Mirrors log records to the monitor as tunnel log messages."""

    def __init__(self, relay: HeadlessRelay, level: int = logging.NOTSET):
        super().__init__(level)
        self.relay = relay

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith("planexec.tunnel"):
            return
        if record.levelno >= logging.ERROR:
            kind = "error"
        elif record.levelno >= logging.WARNING:
            kind = "warn"
        elif record.levelno >= logging.INFO:
            kind = "log"
        else:
            kind = "debug"
        try:
            message = self.format(record)
        except (TypeError, ValueError):
            self.handleError(record)
            return
        self.relay.enqueue({"type": kind, "args": [message]})
