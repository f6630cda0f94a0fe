"""Root Click group and async command runner."""

from __future__ import annotations

import asyncio
import functools
import json as json_mod
import signal
from typing import Any, Optional

import click

from taskfork.cli.formatters import (
    format_result,
    get_console,
    progress_line,
    subagent_types_table,
)
from taskfork.config import TaskforkConfig
from taskfork.orchestration.context import create_context
from taskfork.orchestration.models import SubagentProgressUpdate
from taskfork.orchestration.orchestrator import Orchestrator


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


def _install_interrupt(cancel_event: asyncio.Event) -> bool:
    """Route Ctrl-C to the cancel event instead of KeyboardInterrupt."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        return False
    return True


@click.group()
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.option(
    "--offline",
    is_flag=True,
    help="Do not contact the agent server; resolve models locally",
)
@click.pass_context
def cli(ctx: click.Context, no_color: bool, offline: bool) -> None:
    """taskfork - delegate tasks to supervised subagents."""
    ctx.ensure_object(dict)
    ctx.obj["no_color"] = no_color
    ctx.obj["offline"] = offline


@cli.command("types")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
@async_cmd
async def types_cmd(ctx: click.Context, json_output: bool) -> None:
    """List the registered subagent types."""
    engine = create_context(TaskforkConfig(), use_server=False)
    configs = [engine.registry.get(name) for name in engine.registry.names()]
    if json_output:
        click.echo(json_mod.dumps([c.model_dump() for c in configs], indent=2))
        return
    get_console(no_color=ctx.obj.get("no_color", False)).print(subagent_types_table(configs))


@cli.command("spawn")
@click.argument("subagent_type")
@click.argument("prompt")
@click.option("--model", "user_model", default=None, help="Model id, handle or selector")
@click.option("--agent", "agent_id", default=None, help="Deploy onto an existing agent")
@click.option("--conversation", "conversation_id", default=None, help="Resume a conversation")
@click.option("--max-turns", type=int, default=None, help="Cap the child's turns")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
@async_cmd
async def spawn_cmd(
    ctx: click.Context,
    subagent_type: str,
    prompt: str,
    user_model: Optional[str],
    agent_id: Optional[str],
    conversation_id: Optional[str],
    max_turns: Optional[int],
    json_output: bool,
) -> None:
    """Run one subagent and print its report."""
    console = get_console(no_color=ctx.obj.get("no_color", False))
    progress_console = get_console(no_color=ctx.obj.get("no_color", False), stderr=True)
    cancel_event = asyncio.Event()
    _install_interrupt(cancel_event)

    def on_progress(update: SubagentProgressUpdate) -> None:
        if not json_output:
            progress_console.print(progress_line(update))

    engine = create_context(TaskforkConfig(), use_server=not ctx.obj.get("offline", False))
    async with engine:
        orchestrator = Orchestrator(engine)
        result = await orchestrator.spawn_subagent(
            subagent_type,
            prompt,
            user_model=user_model,
            cancel_event=cancel_event,
            existing_agent_id=agent_id,
            existing_conversation_id=conversation_id,
            max_turns=max_turns,
            on_progress=on_progress,
        )

    if json_output:
        click.echo(json_mod.dumps(result.model_dump(), indent=2))
    else:
        console.print(format_result(result))
    if not result.success:
        ctx.exit(1)
