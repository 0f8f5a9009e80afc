"""Interactive prompts answered by the terminal, an ancestor process or the remote monitor.

Resolution order:

1. Tunneled child: the prompt is forwarded to the ancestor and its answer
   returned as-is.
2. Otherwise the local terminal and the headless relay (when attached) race;
   the first answer wins and the other source is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Optional

from .errors import PromptTimeoutError, PromptUnavailableError
from .output import StructuredEventType, get_output
from .terminal import TerminalReader, get_terminal
from .tunnel.client import get_tunnel_client

logger = logging.getLogger(__name__)

Parser = Callable[[str], tuple[bool, Any]]


def _select_parser(choices: list[dict], default: Any) -> Parser:
    def parse(line: str) -> tuple[bool, Any]:
        answer = line.strip()
        if not answer:
            return (default is not None), default
        if answer.isdigit():
            index = int(answer) - 1
            if 0 <= index < len(choices):
                return True, choices[index]["value"]
            return False, None
        lowered = answer.lower()
        for choice in choices:
            if str(choice["name"]).lower() == lowered or str(choice["value"]).lower() == lowered:
                return True, choice["value"]
        return False, None

    return parse


def _render_select(message: str, choices: list[dict], default: Any) -> None:
    console = get_output().console
    console.print(message, markup=False)
    for index, choice in enumerate(choices, start=1):
        marker = " (default)" if default is not None and choice["value"] == default else ""
        console.print(f"  [bold cyan]{index}[/bold cyan]) {choice['name']}{marker}")
    console.print("[bold green]>[/bold green] ", end="")


async def _ask_terminal(terminal: TerminalReader, render: Callable[[], None], parse: Parser) -> Any:
    render()
    while True:
        line = await terminal.claim_next_line()
        ok, value = parse(line)
        if ok:
            return value
        get_output().console.print("[yellow]Invalid choice, try again.[/yellow] ", end="")


async def _prompt(
    prompt_type: str,
    config: dict,
    render: Callable[[], None],
    parse: Parser,
    timeout: Optional[float],
) -> Any:
    client = get_tunnel_client()
    if client is not None and client.connected:
        timeout_ms = int(timeout * 1000) if timeout else None
        return await client.request_prompt(prompt_type, config, timeout_ms)

    request_id = str(uuid.uuid4())
    output = get_output()
    terminal = get_terminal()
    headless = output.headless

    sources: dict[asyncio.Future, str] = {}
    if terminal is not None and terminal.running:
        sources[asyncio.ensure_future(_ask_terminal(terminal, render, parse))] = "terminal"
    if headless is not None:
        sources[headless.wait_for_prompt_response(request_id)] = "remote"
    if not sources:
        raise PromptUnavailableError(f"No terminal or remote monitor available for prompt: {config.get('message', '')}")

    request = {
        "requestId": request_id,
        "promptType": prompt_type,
        "promptConfig": config,
    }
    if timeout:
        request["timeoutMs"] = int(timeout * 1000)
    output.emit(StructuredEventType.PROMPT_REQUEST, request)

    try:
        done, _ = await asyncio.wait(sources, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for future in sources:
            if not future.done():
                future.cancel()
        if headless is not None:
            headless.cancel_prompt(request_id)

    if not done:
        raise PromptTimeoutError(f"Prompt timed out after {timeout}s")

    # Ties go to the terminal
    winner = sorted(done, key=lambda f: sources[f] != "terminal")[0]
    if winner.cancelled():
        raise PromptUnavailableError(f"Prompt source {sources[winner]} went away before answering")
    try:
        value = winner.result()
    except EOFError as exc:
        raise PromptUnavailableError("Terminal closed before the prompt was answered") from exc
    output.emit(
        StructuredEventType.PROMPT_ANSWERED,
        {
            "requestId": request_id,
            "promptType": prompt_type,
            "value": value,
            "source": sources[winner],
        },
    )
    return value


async def prompt_select(
    message: str,
    choices: list[dict],
    default: Any = None,
    timeout: Optional[float] = None,
) -> Any:
    """Ask the user to pick one of ``choices``.

    Args:
        message: Question text.
        choices: ``{"name": label, "value": value}`` entries.
        default: Value returned for an empty answer.
        timeout: Seconds to wait before raising PromptTimeoutError.

    Returns:
        The ``value`` of the chosen entry.
    """
    config = {"message": message, "choices": choices}
    if default is not None:
        config["default"] = default
    return await _prompt(
        "select",
        config,
        lambda: _render_select(message, choices, default),
        _select_parser(choices, default),
        timeout,
    )


async def prompt_input(message: str, default: str = "", timeout: Optional[float] = None) -> str:
    """Ask the user for a line of free text."""

    def render() -> None:
        suffix = f" [{default}]" if default else ""
        get_output().console.print(f"{message}{suffix}: ", markup=False, end="")

    def parse(line: str) -> tuple[bool, Any]:
        return True, line.strip() or default

    config = {"message": message}
    if default:
        config["default"] = default
    return await _prompt("input", config, render, parse, timeout)
