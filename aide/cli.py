"""CLI application: Click-based command group for aide.

Running ``aide`` with no subcommand starts an interactive session. The
subcommands inspect and maintain the persisted state without starting one.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from aide.config import AideConfig


def _load_config() -> AideConfig:
    try:
        return AideConfig()
    except Exception as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(str(v) for v in row))
    return table


@click.group(invoke_without_command=True)
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO level")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, no_color: bool) -> None:
    """aide - a console assistant that can write its own tools."""
    from aide.main import configure_logging

    configure_logging(verbose=verbose)
    ctx.ensure_object(dict)
    ctx.obj["console"] = Console(no_color=no_color)

    if ctx.invoked_subcommand is None:
        from aide.main import AideApp

        app = AideApp(config=_load_config(), console=ctx.obj["console"])
        ctx.exit(asyncio.run(app.run()))


@cli.command("tools")
@click.pass_context
def tools_cmd(ctx: click.Context) -> None:
    """List the generated tools stored on disk."""
    from aide.tools.store import ToolStore

    config = _load_config()
    store = ToolStore(config.tools_db_path)
    store.initialize()
    try:
        stored = store.list_all()
    finally:
        store.close()

    console: Console = ctx.obj["console"]
    if not stored:
        console.print("[dim]No generated tools stored.[/dim]")
        return
    rows = [
        [
            tool.name,
            dt.datetime.fromtimestamp(tool.created_at).strftime("%Y-%m-%d %H:%M"),
            len(tool.imports),
            len(tool.source_text.splitlines()),
        ]
        for tool in stored
    ]
    console.print(build_table("Generated tools", ["Name", "Created", "Imports", "Lines"], rows))


@cli.command("remove-tool")
@click.argument("name")
@click.pass_context
def remove_tool_cmd(ctx: click.Context, name: str) -> None:
    """Delete a stored generated tool so it is not loaded again."""
    from aide.tools.store import ToolStore

    config = _load_config()
    store = ToolStore(config.tools_db_path)
    store.initialize()
    try:
        deleted = store.delete(name)
    finally:
        store.close()

    if not deleted:
        raise click.ClickException(f"No stored tool named '{name}'.")
    ctx.obj["console"].print(f"[green]Removed {name}.[/green]")


@cli.command("cache-stats")
@click.pass_context
def cache_stats_cmd(ctx: click.Context) -> None:
    """Show how many answered prompts the semantic cache holds."""
    from aide.cache.store import PromptCacheStore

    config = _load_config()
    store = PromptCacheStore(config.prompt_cache_path, config.cache.collection_name)
    store.initialize()
    try:
        stats = store.stats
    finally:
        store.close()

    rows = [[key, value] for key, value in stats.items()]
    rows.append(["distance_threshold", config.cache.distance_threshold])
    rows.append(["top_k", config.cache.top_k])
    ctx.obj["console"].print(build_table("Prompt cache", ["Field", "Value"], rows))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
