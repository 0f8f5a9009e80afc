"""Line-oriented reader for the controlling terminal.

A single reader owns stdin for the whole process. Each line goes to the
oldest pending prompt claim if there is one, otherwise to the registered
line handler (the input multiplexer), otherwise it is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import deque
from typing import Callable, Optional, TextIO

logger = logging.getLogger(__name__)


class TerminalReader:
    """Pumps lines from stdin (or an injected StreamReader) to their consumers."""

    def __init__(self, stream: Optional[TextIO] = None, reader: Optional[asyncio.StreamReader] = None):
        self._stream = stream if stream is not None else sys.stdin
        self._reader = reader
        self._task: Optional[asyncio.Task] = None
        self._claims: deque[asyncio.Future] = deque()
        self._line_handler: Optional[Callable[[str], None]] = None
        self._closed = False

    @property
    def attached(self) -> bool:
        """True when reading from an interactive terminal or an injected reader."""
        if self._reader is not None:
            return True
        try:
            return self._stream.isatty()
        except (AttributeError, ValueError):
            return False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> bool:
        """Begin reading. Returns False when there is no terminal to read."""
        if self.running:
            return True
        if self._reader is None:
            if not self.attached:
                return False
            loop = asyncio.get_running_loop()
            reader = asyncio.StreamReader()
            protocol = asyncio.StreamReaderProtocol(reader)
            try:
                await loop.connect_read_pipe(lambda: protocol, self._stream)
            except (OSError, ValueError) as exc:
                logger.debug(f"Cannot read terminal input: {exc}")
                return False
            self._reader = reader
        self._task = asyncio.create_task(self._pump(self._reader))
        return True

    async def _pump(self, reader: asyncio.StreamReader) -> None:
        while True:
            line = await reader.readline()
            if not line:
                break
            self._deliver(line.decode("utf-8", errors="replace").rstrip("\r\n"))
        self._closed = True
        while self._claims:
            claim = self._claims.popleft()
            if not claim.done():
                claim.set_exception(EOFError("Terminal input closed"))

    def _deliver(self, line: str) -> None:
        while self._claims:
            claim = self._claims.popleft()
            if not claim.done():
                claim.set_result(line)
                return
        if self._line_handler is not None:
            self._line_handler(line)
        else:
            logger.debug("Dropping terminal line with no consumer")

    def claim_next_line(self) -> asyncio.Future:
        """Reserve the next line for a prompt. Cancel the future to release it."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        if self._closed:
            future.set_exception(EOFError("Terminal input closed"))
        else:
            self._claims.append(future)
        return future

    async def wait_closed(self) -> None:
        """Wait until terminal input reaches EOF or the reader stops."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def set_line_handler(self, handler: Optional[Callable[[str], None]]) -> None:
        self._line_handler = handler

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


_terminal: Optional[TerminalReader] = None


def get_terminal() -> Optional[TerminalReader]:
    """Return the process terminal reader, if one has been installed."""
    return _terminal


def set_terminal(reader: Optional[TerminalReader]) -> None:
    global _terminal
    _terminal = reader


async def start_terminal() -> Optional[TerminalReader]:
    """Install and start a reader on stdin when stdin is a terminal."""
    reader = _terminal or TerminalReader()
    if await reader.start():
        set_terminal(reader)
        return reader
    return None
