"""CLI for usermerge.

Commands:
    merge <base> <merge>     - Merge one user into another (dry run unless --run)
    inspect [table ...]      - Show reference columns and conflicting constraints
    version                  - Show the installed version
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from sqlalchemy.ext.asyncio import create_async_engine

from usermerge import __version__
from usermerge.config import Settings, settings
from usermerge.errors import MergeError
from usermerge.merging.generic import analyze_table
from usermerge.process.orchestrator import MergeOrchestrator, MergeResult
from usermerge.schema.hints import load_schema_hints
from usermerge.schema.introspector import SchemaIntrospector

app = typer.Typer(
    name="usermerge",
    help="usermerge: consolidate two user records across a relational schema",
    no_args_is_help=True,
)
console = Console()


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


def _config(database_url: str | None) -> Settings:
    if database_url is None:
        return settings
    return settings.model_copy(update={"database_url": database_url})


@app.callback()
def _root(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show planning detail in the log")
    ] = False,
):
    """Merge two user records into one."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _print_result(result: MergeResult) -> None:
    status = "[yellow]DRY RUN[/yellow] (rolled back)" if result.dry_run else "[green]COMMITTED[/green]"
    panel_content = [
        f"[bold]Run:[/bold] {result.run_id}",
        f"[bold]Base user:[/bold] {result.base_id}",
        f"[bold]Merge user:[/bold] {result.merge_id}",
        f"[bold]Status:[/bold] {status}",
        f"[bold]Rows affected:[/bold] {result.rows_affected}",
    ]
    console.print(Panel("\n".join(panel_content), title="Merge"))

    if result.tables:
        table = Table(title="Tables")
        table.add_column("Table", style="cyan")
        table.add_column("Tier")
        table.add_column("Queries", justify="right")
        table.add_column("Rows", justify="right")
        for outcome in result.tables:
            table.add_row(
                outcome.table,
                outcome.tier.value,
                str(outcome.queries),
                str(outcome.rows_affected),
            )
        console.print(table)
    else:
        console.print("[dim]No table referenced the merge user.[/dim]")


@app.command()
def merge(
    base_id: Annotated[int, typer.Argument(help="User that is kept")],
    merge_id: Annotated[int, typer.Argument(help="User that is merged into the base user")],
    run: Annotated[
        bool, typer.Option("--run", help="Commit the merge instead of rolling it back")
    ] = False,
    confirm_users: Annotated[
        bool,
        typer.Option("--confirm-users", help="Confirm that both user ids are the right ones"),
    ] = False,
    actor: Annotated[
        str | None, typer.Option(help="Who runs the merge (lock scope and log)")
    ] = None,
    database_url: Annotated[
        str | None, typer.Option(help="Database URL (defaults to DATABASE_URL)")
    ] = None,
):
    """Merge MERGE_ID into BASE_ID.

    Without --run every change is rolled back at the end.
    """
    if not confirm_users:
        console.print(
            "[red]Error:[/red] Please double-check the user ids and pass --confirm-users"
        )
        raise typer.Exit(1)

    config = _config(database_url)

    async def _merge() -> MergeResult:
        engine = create_async_engine(config.database_url, echo=config.database_echo)
        try:
            async with engine.connect() as conn:
                orchestrator = MergeOrchestrator(conn, config=config)
                return await orchestrator.merge(
                    base_id, merge_id, actor=actor, dry_run=not run
                )
        finally:
            await engine.dispose()

    try:
        result = run_async(_merge())
    except MergeError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1) from None

    _print_result(result)


@app.command()
def inspect(
    tables: Annotated[
        list[str] | None, typer.Argument(help="Tables to inspect (default: all)")
    ] = None,
    database_url: Annotated[
        str | None, typer.Option(help="Database URL (defaults to DATABASE_URL)")
    ] = None,
):
    """Show which columns would be merged and which constraints could conflict."""
    config = _config(database_url)

    async def _inspect():
        hints = load_schema_hints(config.schema_hints_path) if config.schema_hints_path else None
        engine = create_async_engine(config.database_url, echo=config.database_echo)
        try:
            async with engine.connect() as conn:
                introspector = SchemaIntrospector(conn, hints)
                names = tables or sorted(await introspector.list_tables())
                return [await analyze_table(introspector, name, config) for name in names]
        finally:
            await engine.dispose()

    try:
        analyses = run_async(_inspect())
    except MergeError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1) from None

    table = Table(title="Reference columns")
    table.add_column("Table", style="cyan")
    table.add_column("Columns")
    table.add_column("Conflicting constraints")
    for analysis in analyses:
        constraints = "; ".join(
            f"({', '.join(c.columns)})" for c in analysis.conflicting_constraints
        )
        table.add_row(
            analysis.table.name,
            ", ".join(analysis.reference_columns) or "[dim]-[/dim]",
            constraints or "[dim]-[/dim]",
        )
    console.print(table)

    mergeable = sum(1 for analysis in analyses if analysis.mergeable)
    console.print(f"\n[dim]{mergeable} of {len(analyses)} tables reference the user[/dim]")


@app.command()
def version():
    """Show the usermerge version."""
    console.print(f"[bold green]usermerge v{__version__}[/bold green]")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
