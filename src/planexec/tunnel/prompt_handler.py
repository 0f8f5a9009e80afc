"""Answers prompt requests that arrive from a tunneled child."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from ..errors import PlanexecError
from ..interactive import prompt_input, prompt_select

logger = logging.getLogger(__name__)


def create_prompt_request_handler() -> Callable[[dict], Awaitable[Any]]:
    """Build the ``on_prompt_request`` callback for a TunnelServer.

    The prompt is asked here the same way a local prompt would be, so it is
    answered at this level or forwarded further up when this process is
    itself tunneled.
    """

    async def handle(record: dict) -> Any:
        prompt_type = record.get("promptType")
        config = record.get("promptConfig") or {}
        timeout_ms = record.get("timeoutMs")
        timeout = timeout_ms / 1000 if timeout_ms else None
        logger.debug(f"Child requested {prompt_type} prompt {record.get('requestId')}")

        if prompt_type == "select":
            return await prompt_select(
                config.get("message", ""),
                list(config.get("choices") or []),
                default=config.get("default"),
                timeout=timeout,
            )
        if prompt_type == "input":
            return await prompt_input(
                config.get("message", ""),
                default=config.get("default", ""),
                timeout=timeout,
            )
        raise PlanexecError(f"Unsupported prompt type: {prompt_type}")

    return handle
