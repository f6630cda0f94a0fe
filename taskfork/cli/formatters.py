"""CLI formatters — console, tables, result rendering."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.markup import escape as markup_escape
from rich.table import Table
from rich.text import Text

from taskfork.orchestration.models import SubagentConfig, SubagentProgressUpdate, SubagentResult


def get_console(no_color: bool = False, stderr: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color, stderr=stderr)


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(str(v) for v in row))
    return table


def subagent_types_table(configs: list[SubagentConfig]) -> Table:
    rows = []
    for config in configs:
        tools = "all" if config.allowed_tools == "all" else ", ".join(config.allowed_tools)
        selector = ", ".join(config.model_selector or [config.recommended_model])
        rows.append([config.name, selector, tools, config.description])
    return build_table("Subagent types", ["Type", "Models", "Tools", "Description"], rows)


def progress_line(update: SubagentProgressUpdate) -> Text:
    """Color a progress message by its ``[tag]`` prefix."""
    message = update.message
    if message.startswith("[retry-exhausted]"):
        style = "red"
    elif message.startswith(("[retry]", "[fallback]")):
        style = "yellow"
    elif message.startswith("[tool]"):
        style = "cyan"
    else:
        style = "dim"
    return Text(message, style=style)


def format_result(result: SubagentResult) -> str:
    """Rich markup for a finished subagent."""
    if result.success:
        header = "[green]subagent finished[/green]"
        body = markup_escape(result.report)
    else:
        header = "[red]subagent failed[/red]"
        body = markup_escape(result.error or "Unknown error")
    details = []
    if result.agent_id:
        details.append(f"agent={result.agent_id}")
    if result.conversation_id:
        details.append(f"conversation={result.conversation_id}")
    if result.total_tokens is not None:
        details.append(f"tokens={result.total_tokens}")
    suffix = f" [dim]({markup_escape(' '.join(details))})[/dim]" if details else ""
    return f"{header}{suffix}\n{body}"
