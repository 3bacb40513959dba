"""
better-query command line.

Commands take a ``module:attribute`` target naming a ``BetterQuery`` instance
(or a zero-argument factory returning one):

- migrate: print or apply the schema DDL
- routes:  list the generated HTTP routes
- serve:   run the API with uvicorn
"""

from __future__ import annotations

import asyncio
import importlib
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from better_query import __version__
from better_query.runtime.server import BetterQuery, ServerConfig, run_app

app = typer.Typer(
    help="Declarative CRUD APIs from resource definitions.",
    no_args_is_help=True,
)

console = Console()


def load_target(target: str) -> BetterQuery:
    """
    Import ``module:attribute`` and return the BetterQuery it names.

    Raises:
        typer.BadParameter: malformed target or wrong object type
    """
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise typer.BadParameter(f"Expected 'module:attribute', got '{target}'")

    cwd = str(Path.cwd())
    if cwd not in sys.path:
        sys.path.insert(0, cwd)

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"Cannot import '{module_name}': {e}") from e
    obj = getattr(module, attribute, None)
    if obj is None:
        raise typer.BadParameter(f"'{module_name}' has no attribute '{attribute}'")
    if callable(obj) and not isinstance(obj, BetterQuery):
        obj = obj()
    if not isinstance(obj, BetterQuery):
        raise typer.BadParameter(f"'{target}' is not a BetterQuery instance")
    return obj


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"better-query {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """better-query command line."""


@app.command(name="migrate")
def migrate_command(
    target: str = typer.Argument(..., help="module:attribute of the BetterQuery instance"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the DDL without executing it"),
    provider: str = typer.Option(None, "--provider", help="DDL dialect for --dry-run (sqlite or postgres)"),
) -> None:
    """Create missing tables, junction tables and foreign-key indexes."""
    query = load_target(target)

    if dry_run:
        try:
            statements = query.migration_statements(provider)
        except ValueError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
        for statement in statements:
            console.print(f"{statement};")
        return

    async def apply() -> list[str]:
        try:
            return await query.migrate()
        finally:
            await query.shutdown()

    try:
        statements = asyncio.run(apply())
    except Exception as e:
        console.print(f"[red]Migration failed: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Applied {len(statements)} statement(s)[/green]")


@app.command(name="routes")
def routes_command(
    target: str = typer.Argument(..., help="module:attribute of the BetterQuery instance"),
) -> None:
    """List the generated HTTP routes."""
    from fastapi.routing import APIRoute

    from better_query.runtime.server import create_app

    query = load_target(target)
    table = Table(title=f"Routes under {query.base_path}")
    table.add_column("Method", style="cyan")
    table.add_column("Path")
    table.add_column("Name", style="dim")

    for route in create_app(query).routes:
        if not isinstance(route, APIRoute):
            continue
        for method in sorted(route.methods):
            table.add_row(method, route.path, route.name)
    console.print(table)


@app.command(name="serve")
def serve_command(
    target: str = typer.Argument(..., help="module:attribute of the BetterQuery instance"),
    host: str = typer.Option(None, "--host", help="Bind address (default from BETTER_QUERY_HOST)"),
    port: int = typer.Option(None, "--port", "-p", help="Port (default from BETTER_QUERY_PORT)"),
    log_level: str = typer.Option(None, "--log-level", help="Log level"),
) -> None:
    """Serve the API with uvicorn."""
    query = load_target(target)
    config = ServerConfig.from_env()
    if host:
        config.host = host
    if port:
        config.port = port
    if log_level:
        config.log_level = log_level.upper()
    console.print(f"[bold]better-query[/bold] serving {len(query.resources)} resource(s)")
    run_app(query, config)


if __name__ == "__main__":
    app()
