"""Command module for running discovery."""

import asyncio
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

from site_discovery.cli.app import app, get_config
from site_discovery.config import DiscoveryConfig
from site_discovery.deps import discovery_context
from site_discovery.discovery.events import DiscoveryEvent
from site_discovery.discovery.utils import DiscoveryResult, DiscoveryState

console = Console()


def display_result(result: DiscoveryResult, verbose: bool = False, out: Optional[Console] = None):
    """Display a run summary as a tree."""
    out = out or console
    style = {
        DiscoveryState.COMPLETED: "green",
        DiscoveryState.STOPPED: "yellow",
    }.get(result.status, "red")

    tree = Tree(
        f"[bold]{result.discovery_type.value.title()} discovery[/bold] "
        f"[{style}]{result.status.value}[/{style}] in {result.duration:.1f}s"
    )
    tree.add(f"Folders: {result.completed_folders}/{result.total_folders}")
    tree.add(f"Documents: {result.total_documents}")
    if result.errors:
        tree.add(f"[red]Errors: {result.errors}[/red]")

    if not result.has_changes:
        tree.add("No changes")
    elif result.report:
        counts = result.report
        tree.add(
            f"[green]+{counts.get('new', 0)} new[/green] "
            f"[yellow]~{counts.get('updated', 0)} updated[/yellow] "
            f"[red]-{counts.get('deleted', 0)} deleted[/red]"
        )

    if result.new_folders:
        branch = tree.add("[green]New folders[/green]")
        for name in result.new_folders:
            branch.add(f"[green]{name}/[/green]")
    if result.deleted_folders:
        branch = tree.add("[red]Deleted folders[/red]")
        for name in result.deleted_folders:
            branch.add(f"[red]{name}/[/red]")

    if verbose and result.folder_errors:
        branch = tree.add("[red]Folder errors[/red]")
        for name, error in sorted(result.folder_errors.items()):
            branch.add(f"[bold]{name}[/bold]: {error}")

    out.print(Panel(tree, expand=False))


async def run_discover(config: DiscoveryConfig, force: bool = False, verbose: bool = False):
    """Run one discovery and print the outcome."""
    async with discovery_context(config) as coordinator:

        def on_folder_complete(payload: dict):
            if verbose:
                console.print(
                    f"[green]✓[/green] {payload['folderName']} ({payload['documentCount']} documents)"
                )

        def on_folder_error(payload: dict):
            console.print(f"[red]✗[/red] {payload['folderName']}: {payload['error']}")

        coordinator.on(DiscoveryEvent.FOLDER_COMPLETE, on_folder_complete)
        coordinator.on(DiscoveryEvent.FOLDER_ERROR, on_folder_error)

        result = await coordinator.start_discovery(force_rescan=force)
        display_result(result, verbose)
        return result


@app.command()
def discover(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Run a full discovery"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show per-folder output"),
) -> None:
    """Discover documents, incrementally when a previous run completed."""
    try:
        asyncio.run(run_discover(get_config(ctx), force, verbose))
    except Exception as e:
        logger.exception("Discovery failed")
        typer.echo(f"Error during discovery: {e}", err=True)
        raise typer.Exit(1)
