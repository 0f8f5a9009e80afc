"""Follow-up input for a running agent subprocess.

While an agent runs, several sources race to feed its stdin:

- lines typed at the terminal (only when one is attached and enabled);
- ``user_input`` forwarded by an ancestor over the tunnel (only when this
  process has no terminal of its own);
- ``user_input`` from the remote monitor via the headless relay;
- the subprocess's own result message, which closes stdin.

The first to fire wins. A line becomes a new user turn; after stdin closes
further input is ignored, never queued.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Optional

from .output import StructuredEventType, get_output

if TYPE_CHECKING:
    from .process import ProcessRun
    from .terminal import TerminalReader
    from .tunnel.client import TunnelClient
    from .tunnel.headless import HeadlessRelay
    from .tunnel.server import TunnelServer

logger = logging.getLogger(__name__)


def build_user_message(content: str) -> str:
    """Encode text as one stream-json user turn."""
    message = {
        "type": "user",
        "message": {
            "role": "user",
            "content": [{"type": "text", "text": content}],
        },
    }
    return json.dumps(message) + "\n"


class StdinGuard:
    """Closes the subprocess stdin exactly once."""

    def __init__(self, run: ProcessRun):
        self._run = run
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed or self._run.stdin_closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._run.close_stdin()


class InputMultiplexer:
    """Races input sources against the subprocess result for one invocation.

    Args:
        run: The running subprocess (spawned with a stdin pipe).
        terminal: Terminal reader, when terminal input is enabled.
        tunnel_client: Connection to an ancestor, for forwarded user input.
        headless: Relay to the remote monitor.
        tunnel_server: Our own tunnel server; every line written to the
            agent is also forwarded to a nested child connected there.
        close_on_result: Close stdin when the result message arrives. When
            False the subprocess runs to natural completion.
    """

    def __init__(
        self,
        run: ProcessRun,
        terminal: Optional[TerminalReader] = None,
        tunnel_client: Optional[TunnelClient] = None,
        headless: Optional[HeadlessRelay] = None,
        tunnel_server: Optional[TunnelServer] = None,
        close_on_result: bool = True,
    ):
        self.run = run
        self.guard = StdinGuard(run)
        self.terminal = terminal if terminal is not None and terminal.running else None
        self.tunnel_client = tunnel_client if self.terminal is None else None
        self.headless = headless
        self.tunnel_server = tunnel_server
        self.close_on_result = close_on_result

        self._queues: dict[str, asyncio.Queue[str]] = {
            "terminal": asyncio.Queue(),
            "tunnel": asyncio.Queue(),
            "headless": asyncio.Queue(),
        }
        self._task: Optional[asyncio.Task] = None

    @property
    def interactive(self) -> bool:
        """Whether any follow-up input source is available."""
        return self.terminal is not None or self.tunnel_client is not None or self.headless is not None

    async def start(self, prompt: Optional[str]) -> None:
        """Send the initial prompt and begin racing input sources.

        Without any interactive source the prompt is sent and stdin closed
        at once (single-prompt discipline).
        """
        if prompt is not None:
            await self.run.write_stdin(build_user_message(prompt))

        if not self.interactive:
            self.guard.close()
            return

        self._attach()
        if self.terminal is not None:
            logger.info("Type a message and press Enter to send input to the agent")
        self._task = asyncio.create_task(self._race())

    def _attach(self) -> None:
        if self.terminal is not None:
            self.terminal.set_line_handler(self._queues["terminal"].put_nowait)
        if self.tunnel_client is not None:
            self.tunnel_client.set_user_input_handler(self._queues["tunnel"].put_nowait)
        if self.headless is not None:
            self.headless.set_user_input_handler(self._queues["headless"].put_nowait)

    def _detach(self) -> None:
        if self.terminal is not None:
            self.terminal.set_line_handler(None)
        if self.tunnel_client is not None:
            self.tunnel_client.set_user_input_handler(None)
        if self.headless is not None:
            self.headless.set_user_input_handler(None)

    async def _race(self) -> None:
        sources: dict[str, asyncio.Future] = {
            "exit": asyncio.ensure_future(self.run.process.wait()),
        }
        if self.close_on_result:
            sources["result"] = asyncio.ensure_future(self.run.result_event.wait())
        if self.tunnel_client is not None:
            sources["tunnel"] = asyncio.ensure_future(self._queues["tunnel"].get())
        if self.headless is not None:
            sources["headless"] = asyncio.ensure_future(self._queues["headless"].get())
        if self.terminal is not None:
            sources["terminal"] = asyncio.ensure_future(self._queues["terminal"].get())
            if not self.close_on_result:
                # Without a result close, terminal EOF ends the conversation
                sources["terminal_eof"] = asyncio.ensure_future(self.terminal.wait_closed())

        try:
            while True:
                done, _ = await asyncio.wait(sources.values(), return_when=asyncio.FIRST_COMPLETED)
                finished = {name for name, future in sources.items() if future in done}

                if finished & {"result", "exit", "terminal_eof"}:
                    self._close()
                    return

                for name in ("terminal", "tunnel", "headless"):
                    if name in finished:
                        await self._send_line(sources[name].result(), name)
                        if self.guard.is_closed:
                            return
                        sources[name] = asyncio.ensure_future(self._queues[name].get())
        finally:
            for future in sources.values():
                if not future.done():
                    future.cancel()

    async def _send_line(self, line: str, source: str) -> None:
        if self.guard.is_closed:
            logger.debug("Ignoring input received after stdin closed")
            return

        # Tunnel lines were already announced by the ancestor that read them
        if source != "tunnel":
            get_output().emit(
                StructuredEventType.USER_TERMINAL_INPUT,
                {"content": line, "source": "terminal" if source == "terminal" else "remote"},
            )

        if not await self.run.write_stdin(build_user_message(line)):
            logger.warning("Dropped follow-up input: agent stdin is not writable")
            self._close()
            return

        if self.tunnel_server is not None:
            self.tunnel_server.send_user_input(line)

    def _close(self) -> None:
        self._detach()
        self.guard.close()

    def on_result(self) -> None:
        """Apply the closing discipline for a result message seen by the caller."""
        if self.close_on_result:
            self._close()

    async def stop(self) -> None:
        """Tear down handlers and close stdin."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._close()
