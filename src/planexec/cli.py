"""CLI entrypoint for planexec.

A run executes one task context through an agent backend:

- ``claude``: a single Claude Code session orchestrates role subagents,
  which it invokes through ``planexec subagent``;
- ``codex``: planexec itself sequences one Codex call per role.

Nested planexec processes (subagents) forward their output and prompts to
the process that spawned them over a Unix socket, so everything surfaces
at the root terminal, and from there to a remote monitor when configured.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .config import Config
from .errors import PlanexecError
from .executors import EXECUTOR_NAMES, build_executor
from .models import CAPTURE_MODES, EXECUTION_MODES, ExecutionRequest, ExecutorOutput
from .output import get_output
from .repository import get_git_remote
from .run_log import RunLogger
from .terminal import set_terminal, start_terminal
from .tunnel.client import TunnelClient, TunnelLogHandler, connect_from_env, set_tunnel_client
from .tunnel.headless import HeadlessLogHandler, HeadlessRelay
from .tunnel.protocol import SessionInfo

# Initialize Typer app
app = typer.Typer(
    name="planexec",
    help="Supervised execution of coding-agent CLIs for plan runs.",
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def setup_logging(
    verbose: bool = False,
    level: str = "INFO",
    client: Optional[TunnelClient] = None,
    relay: Optional[HeadlessRelay] = None,
) -> None:
    """Configure logging.

    Records render locally through Rich, or are forwarded to the ancestor
    when this process is a tunnel child. A headless relay receives a copy.

    Args:
        verbose: If True, set DEBUG level regardless of ``level``.
        level: Level name used when not verbose (PLANEXEC_LOG_LEVEL).
        client: Connected tunnel client, when this process is a child.
        relay: Headless relay, when this process streams to a monitor.
    """
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    handlers: list[logging.Handler] = []
    if client is not None and client.connected:
        handlers.append(TunnelLogHandler(client))
    else:
        handlers.append(RichHandler(console=console, rich_tracebacks=True))
    if relay is not None:
        handlers.append(HeadlessLogHandler(relay))

    logging.basicConfig(
        level=logging.DEBUG if verbose else resolved,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"planexec version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Supervised execution of coding-agent CLIs."""
    pass


def load_config(repo: Path, config_file: Optional[Path]) -> Config:
    """Load and validate configuration, exiting on errors."""
    try:
        config = Config.from_env(repo_path=repo.resolve(), config_file=config_file)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)
    return config


def _check_choice(value: str, choices: tuple[str, ...], option: str) -> None:
    if value not in choices:
        console.print(f"[red]Error:[/red] {option} must be one of: {', '.join(choices)} (got {value!r})")
        raise typer.Exit(1)


@asynccontextmanager
async def agent_session(
    config: Config,
    command: str,
    interactive: bool,
    verbose: bool,
    plan_id: str = "",
    plan_title: str = "",
) -> AsyncIterator[None]:
    """Set up terminal input, the ancestor tunnel and the headless relay for one command."""
    client = await connect_from_env()
    terminal = await start_terminal() if interactive and client is None else None

    relay: Optional[HeadlessRelay] = None
    if client is None and config.headless.url:
        relay = HeadlessRelay(
            config.headless.url,
            SessionInfo(
                command=command,
                plan_id=plan_id or None,
                plan_title=plan_title or None,
                workspace_path=str(config.repo_path),
                git_remote=get_git_remote(config.repo_path),
            ),
            max_buffer_bytes=config.headless.max_buffer_bytes,
        )
        get_output().attach_headless(relay)
        await relay.start()

    setup_logging(verbose, level=config.log_level, client=client, relay=relay)
    try:
        yield
    finally:
        if relay is not None:
            await relay.close()
            get_output().attach_headless(None)
        if terminal is not None:
            await terminal.stop()
            set_terminal(None)
        if client is not None:
            await client.close()
            set_tunnel_client(None)


async def _run_request(
    config: Config,
    request: ExecutionRequest,
    executor_name: str,
    verbose: bool,
    log_dir: Optional[Path],
) -> Optional[ExecutorOutput]:
    run_logger: Optional[RunLogger] = None
    if log_dir is not None:
        run_logger = RunLogger(
            log_dir,
            plan_name=request.plan_id or request.plan_title or "run",
            executor=executor_name,
            mode=request.mode,
        )
        run_logger.attach(get_output())

    async with agent_session(
        config,
        "run",
        request.interactive,
        verbose,
        plan_id=request.plan_id,
        plan_title=request.plan_title,
    ):
        result: Optional[ExecutorOutput] = None
        try:
            executor = build_executor(executor_name, config)
            result = await executor.execute(request)
        except PlanexecError as e:
            if run_logger is not None:
                run_logger.log_error(str(e))
                run_logger.finalize(success=False)
            raise
        if run_logger is not None:
            run_logger.finalize(success=result is None or result.success, result=result)
        return result


@app.command()
def run(
    context_file: Path = typer.Argument(..., help="File holding the task context to execute."),
    executor: str = typer.Option("claude", "--executor", "-e", help="Agent backend: claude or codex."),
    mode: str = typer.Option("normal", "--mode", "-m", help="normal, simple, tdd, review or bare."),
    capture: str = typer.Option("none", "--capture", help="Output capture: none, result or all."),
    plan_id: str = typer.Option("", "--plan-id", help="Identifier of the plan being executed."),
    plan_title: str = typer.Option("", "--plan-title", help="Title of the plan being executed."),
    plan_file: str = typer.Option("", "--plan-file", help="Path of the plan file agents should update."),
    model: Optional[str] = typer.Option(None, "--model", help="Model override for the backend."),
    repo: Path = typer.Option(Path.cwd(), "--repo", "-r", help="Repository the agents work in."),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path."),
    output_file: Optional[Path] = typer.Option(None, "--output-file", "-o", help="Write captured output as markdown."),
    no_interactive: bool = typer.Option(False, "--no-interactive", help="Never prompt or accept follow-up input."),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Write a JSON run log to this directory."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Execute a task context through an agent backend.

    Examples:
        # Orchestrated Claude run:
        planexec run context.md

        # Role-sequenced Codex run, capturing the final review:
        planexec run context.md --executor codex --capture result

        # Plain single session, no orchestration:
        planexec run prompt.md --mode bare
    """
    setup_logging(verbose)
    _check_choice(executor, EXECUTOR_NAMES, "--executor")
    _check_choice(mode, EXECUTION_MODES, "--mode")
    _check_choice(capture, CAPTURE_MODES, "--capture")

    if not context_file.exists():
        console.print(f"[red]Error:[/red] Context file not found: {context_file}")
        raise typer.Exit(1)

    config = load_config(repo, config_file)
    request = ExecutionRequest(
        context=context_file.read_text(encoding="utf-8"),
        plan_id=plan_id,
        plan_title=plan_title,
        plan_file_path=plan_file,
        mode=mode,  # type: ignore[arg-type]
        capture_output=capture,  # type: ignore[arg-type]
        model=model,
        interactive=not no_interactive,
    )

    try:
        result = asyncio.run(_run_request(config, request, executor, verbose, log_dir))
    except PlanexecError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted.[/dim]")
        raise typer.Exit(130)

    if result is None:
        return

    if output_file is not None:
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_text(result.to_markdown(), encoding="utf-8")
        console.print(f"[dim]Output written to {output_file}[/dim]")

    if not result.success:
        source = result.failure_details.source_agent if result.failure_details else "agent"
        console.print(f"[red]Execution failed:[/red] reported by {source}")
        if result.content:
            console.print(result.content, markup=False)
        raise typer.Exit(1)

    if capture != "none" and result.content:
        console.print(result.content, markup=False)


@app.command()
def subagent(
    role: str = typer.Argument(..., help="implementer, tester, tdd-tests, verifier, reviewer or fixer."),
    input_text: Optional[str] = typer.Option(None, "--input", "-i", help="Instructions for the agent."),
    input_file: Optional[Path] = typer.Option(None, "--input-file", help="File holding the instructions."),
    executor: str = typer.Option("claude", "--executor", "-e", help="Agent backend: claude or codex."),
    plan_id: str = typer.Option("", "--plan-id", help="Identifier of the plan being executed."),
    plan_file: str = typer.Option("", "--plan-file", help="Path of the plan file."),
    model: Optional[str] = typer.Option(None, "--model", help="Model override for the backend."),
    repo: Path = typer.Option(Path.cwd(), "--repo", "-r", help="Repository the agent works in."),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path."),
    no_interactive: bool = typer.Option(False, "--no-interactive", help="Never prompt."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Run a single role agent and print its final message.

    Used by orchestrator sessions; the final message goes to stdout so the
    orchestrator can read it, while progress is forwarded to the root.
    """
    from .executors.subagent import SUBAGENT_ROLES, run_subagent

    setup_logging(verbose)
    _check_choice(role, SUBAGENT_ROLES, "ROLE")
    _check_choice(executor, EXECUTOR_NAMES, "--executor")

    if input_file is not None:
        if not input_file.exists():
            console.print(f"[red]Error:[/red] Input file not found: {input_file}")
            raise typer.Exit(1)
        instructions = input_file.read_text(encoding="utf-8")
    elif input_text is not None:
        instructions = input_text
    else:
        console.print("[red]Error:[/red] Provide --input or --input-file")
        raise typer.Exit(1)

    config = load_config(repo, config_file)

    async def _run() -> str:
        async with agent_session(config, f"subagent {role}", not no_interactive, verbose, plan_id=plan_id):
            return await run_subagent(
                role,
                instructions,
                config,
                executor_name=executor,
                plan_id=plan_id,
                plan_file=plan_file,
                model=model,
                interactive=not no_interactive,
            )

    try:
        message = asyncio.run(_run())
    except PlanexecError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    typer.echo(message)


@app.command("permissions-mcp", hidden=True)
def permissions_mcp(
    socket_path: str = typer.Argument(..., help="Permission socket of the parent planexec process."),
) -> None:
    """Stdio MCP server answering Claude permission prompts."""
    from .permissions.mcp_server import run_permissions_mcp

    # stdout carries the MCP protocol
    logging.basicConfig(
        level=logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console)],
        force=True,
    )
    run_permissions_mcp(socket_path)


@app.command("monitor")
def monitor(
    port: int = typer.Option(8765, "--port", "-p", help="Port to run the monitor on."),
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind the monitor to."),
) -> None:
    """Launch the remote monitor for headless runs.

    Start runs with PLANEXEC_HEADLESS_URL=ws://<host>:<port>/ws/session to
    stream them here; viewers connect to /ws/viewer.
    """
    from .monitor import run_server

    setup_logging()
    console.print("[bold cyan]planexec monitor[/bold cyan]")
    console.print(f"[dim]Sessions connect to ws://{host}:{port}/ws/session[/dim]")
    console.print(f"[dim]Viewers connect to ws://{host}:{port}/ws/viewer[/dim]")
    console.print()
    console.print("[dim]Press Ctrl+C to stop the server.[/dim]")

    try:
        run_server(host=host, port=port)
    except KeyboardInterrupt:
        console.print("\n[dim]Monitor stopped.[/dim]")


if __name__ == "__main__":
    app()
