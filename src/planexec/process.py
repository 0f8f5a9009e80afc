"""Supervised agent subprocesses.

``spawn_and_stream`` starts a command in its own process group, feeds its
stdout through a formatter and exposes the parsed messages as an async
iterator with a bounded queue, so a slow consumer slows the reader rather
than growing memory. A watchdog kills the process group when no output
arrives within the inactivity window.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Protocol

from .errors import ExecutorError, ProcessFailedError
from .models import StreamMessage
from .output import get_output
from .stream import ChunkDecoder

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536
OUTPUT_TAIL_LINES = 200
KILL_GRACE_SECONDS = 2.0
QUEUE_SIZE = 256

# Default timeouts, in seconds
DEFAULT_INITIAL_INACTIVITY_TIMEOUT = 2 * 60
DEFAULT_INACTIVITY_TIMEOUT = 30 * 60
ORCHESTRATOR_INACTIVITY_TIMEOUT = 60 * 60

_DONE = object()


class StreamFormatter(Protocol):
    def format_chunk(self, chunk: str) -> list[StreamMessage]: ...

    def flush(self) -> list[StreamMessage]: ...


@dataclass
class SpawnResult:
    """Outcome of a supervised subprocess."""

    exit_code: Optional[int]
    killed_by_inactivity: bool = False
    seen_result_message: bool = False
    output_tail: list[str] = field(default_factory=list)
    signal: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.killed_by_inactivity


async def kill_process_tree(process: asyncio.subprocess.Process, grace: float = KILL_GRACE_SECONDS) -> None:
    """SIGTERM the process group, then SIGKILL it if still alive after ``grace`` seconds."""
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    except PermissionError:
        process.terminate()

    try:
        await asyncio.wait_for(process.wait(), grace)
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} ignored SIGTERM; sending SIGKILL")
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except PermissionError:
            process.kill()


class ProcessRun:
    """A running subprocess and the stream of messages parsed from its stdout."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        formatter: StreamFormatter,
        inactivity_timeout: Optional[float],
        initial_inactivity_timeout: Optional[float],
        on_inactivity_kill: Optional[Callable[[], None]] = None,
        echo: bool = True,
    ):
        self.process = process
        self.formatter = formatter
        self.inactivity_timeout = inactivity_timeout
        self.initial_inactivity_timeout = initial_inactivity_timeout
        self.on_inactivity_kill = on_inactivity_kill
        self.echo = echo

        self.result_event = asyncio.Event()
        self.exit_event = asyncio.Event()
        self.killed_by_inactivity = False
        self.seen_result_message = False

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_SIZE)
        self._tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        self._loop = asyncio.get_running_loop()
        self._last_activity = self._loop.time()
        self._seen_output = False
        self._consumer_attached = False
        self._stdin_closed = process.stdin is None
        self._result: Optional[SpawnResult] = None

        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._watchdog_task = asyncio.create_task(self._watchdog())

    @property
    def pid(self) -> int:
        return self.process.pid

    def _touch(self) -> None:
        self._last_activity = self._loop.time()
        self._seen_output = True

    def _record(self, text: str) -> None:
        self._tail.extend(text.splitlines())

    async def _emit(self, message: StreamMessage) -> None:
        if message.text:
            self._record(message.text)
            if self.echo:
                get_output().stdout(message.text)
        if message.is_result:
            self.seen_result_message = True
            self.result_event.set()
        await self._queue.put(message)

    async def _read_stdout(self) -> None:
        decoder = ChunkDecoder()
        stream = self.process.stdout
        try:
            while stream is not None:
                data = await stream.read(READ_CHUNK_SIZE)
                if not data:
                    break
                self._touch()
                for message in self.formatter.format_chunk(decoder.decode(data)):
                    await self._emit(message)
            remainder = decoder.finish()
            messages = self.formatter.format_chunk(remainder) if remainder else []
            messages.extend(self.formatter.flush())
            for message in messages:
                await self._emit(message)
        finally:
            await self._queue.put(_DONE)

    async def _read_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                continue
            if not line:
                break
            self._touch()
            text = line.decode("utf-8", errors="replace").rstrip("\n")
            self._record(text)
            if self.echo:
                get_output().stderr(text)

    async def _watchdog(self) -> None:
        while self.process.returncode is None:
            timeout = self.inactivity_timeout if self._seen_output else self.initial_inactivity_timeout
            if timeout is None:
                timeout = self.inactivity_timeout
            if timeout is None:
                return
            remaining = self._last_activity + timeout - self._loop.time()
            if remaining > 0:
                await asyncio.sleep(min(remaining, 1.0))
                continue

            logger.warning(
                f"No output from process {self.pid} for {timeout:.0f}s; terminating it"
            )
            self.killed_by_inactivity = True
            if self.on_inactivity_kill is not None:
                self.on_inactivity_kill()
            await kill_process_tree(self.process)
            return

    # =========================================================================
    # Consumer interface
    # =========================================================================

    async def messages(self) -> AsyncIterator[StreamMessage]:
        """Iterate parsed messages in output order until stdout closes."""
        self._consumer_attached = True
        while True:
            item = await self._queue.get()
            if item is _DONE:
                # Leave the sentinel for any other waiter
                self._queue.put_nowait(_DONE)
                return
            yield item

    async def write_stdin(self, data: str) -> bool:
        """Write to the child's stdin. A failed write is logged and dropped."""
        if self._stdin_closed or self.process.stdin is None:
            logger.debug("Ignoring stdin write after close")
            return False
        try:
            self.process.stdin.write(data.encode("utf-8"))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, RuntimeError, OSError) as exc:
            logger.warning(f"Failed to write to process stdin: {exc}")
            return False
        return True

    def close_stdin(self) -> None:
        """Close the child's stdin. Safe to call more than once."""
        if self._stdin_closed or self.process.stdin is None:
            return
        self._stdin_closed = True
        try:
            self.process.stdin.close()
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            logger.debug(f"Error closing stdin: {exc}")

    @property
    def stdin_closed(self) -> bool:
        return self._stdin_closed

    async def wait(self) -> SpawnResult:
        """Wait for exit and both output streams to finish."""
        if self._result is not None:
            return self._result

        if not self._consumer_attached:
            async for _ in self.messages():
                pass

        returncode = await self.process.wait()
        await asyncio.gather(self._stdout_task, self._stderr_task)
        self._watchdog_task.cancel()
        self.close_stdin()
        self.exit_event.set()

        sig = -returncode if returncode < 0 else None
        self._result = SpawnResult(
            exit_code=128 + sig if sig is not None else returncode,
            killed_by_inactivity=self.killed_by_inactivity,
            seen_result_message=self.seen_result_message,
            output_tail=list(self._tail),
            signal=sig,
        )
        return self._result

    async def terminate(self) -> None:
        await kill_process_tree(self.process)


def build_env(env_overrides: Optional[dict[str, Optional[str]]] = None) -> dict[str, str]:
    """Merge overrides into the current environment. A None value removes the key."""
    env = dict(os.environ)
    for key, value in (env_overrides or {}).items():
        if value is None:
            env.pop(key, None)
        else:
            env[key] = value
    return env


async def spawn_and_stream(
    args: list[str],
    cwd: Path,
    formatter: StreamFormatter,
    env_overrides: Optional[dict[str, Optional[str]]] = None,
    inactivity_timeout: Optional[float] = DEFAULT_INACTIVITY_TIMEOUT,
    initial_inactivity_timeout: Optional[float] = DEFAULT_INITIAL_INACTIVITY_TIMEOUT,
    on_inactivity_kill: Optional[Callable[[], None]] = None,
    stdin: bool = False,
    echo: bool = True,
) -> ProcessRun:
    """Start ``args`` in a new session and begin streaming its output.

    Args:
        args: Command and arguments.
        cwd: Working directory.
        formatter: Parser for stdout chunks.
        env_overrides: Environment changes applied to the current environment.
        inactivity_timeout: Seconds without output before the process is killed.
        initial_inactivity_timeout: Same, before the first output arrives.
        on_inactivity_kill: Called just before an inactivity kill.
        stdin: Open a pipe for the child's stdin.
        echo: Render formatted output through the output sink.

    Returns:
        A ProcessRun; call ``wait()`` for the SpawnResult.

    Raises:
        ExecutorError: The command could not be started.
    """
    logger.debug(f"Spawning: {' '.join(args[:6])}{' ...' if len(args) > 6 else ''}")
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd),
            env=build_env(env_overrides),
            stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError) as exc:
        raise ExecutorError(f"Could not start {args[0]}: {exc}") from exc

    return ProcessRun(
        process,
        formatter,
        inactivity_timeout=inactivity_timeout,
        initial_inactivity_timeout=initial_inactivity_timeout,
        on_inactivity_kill=on_inactivity_kill,
        echo=echo,
    )


def ensure_completed(result: SpawnResult, label: str) -> None:
    """Apply the lifecycle rules to a finished subprocess.

    A non-zero exit or inactivity kill is fatal unless a result message was
    already seen, in which case it is logged and treated as success.

    Raises:
        ProcessFailedError: The process failed before producing a result.
    """
    failed = result.exit_code != 0 or result.killed_by_inactivity
    if not failed:
        if not result.seen_result_message:
            logger.warning(f"{label} exited without a result message")
        return

    reason = "was killed after inactivity" if result.killed_by_inactivity else f"exited with code {result.exit_code}"
    if result.seen_result_message:
        logger.warning(f"{label} {reason} after producing its result; continuing")
        return

    tail = "\n".join(result.output_tail[-20:])
    raise ProcessFailedError(
        f"{label} {reason} before producing a result" + (f"\n{tail}" if tail else ""),
        exit_code=result.exit_code,
        killed_by_inactivity=result.killed_by_inactivity,
    )
