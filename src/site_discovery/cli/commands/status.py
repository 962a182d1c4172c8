"""Status and validation commands for site-discovery."""

import asyncio
from typing import Any, Dict, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

from site_discovery.cli.app import app, get_config
from site_discovery.config import DiscoveryConfig
from site_discovery.deps import discovery_context
from site_discovery.schemas.checkpoint import Checkpoint
from site_discovery.schemas.site import ValidationResult

console = Console()


def display_status(
    progress: Dict[str, Any], checkpoint: Checkpoint, out: Optional[Console] = None
) -> None:
    """Display local progress next to the checkpoint stored in the repository."""
    out = out or console
    tree = Tree("[bold]Discovery status[/bold]")

    local = tree.add("Local progress")
    local.add(f"Status: {progress['status']} ({progress['discovery_type']})")
    local.add(
        f"Folders: {progress['completed_folders']}/{progress['total_folders']} "
        f"({progress.get('folder_progress', 0)}%)"
    )
    local.add(f"Documents: {progress['total_documents']}")
    if progress["errors"]:
        local.add(f"[red]Errors: {progress['errors']}[/red]")

    remote = tree.add("Repository checkpoint")
    remote.add(f"Status: {checkpoint.status.value} ({checkpoint.discovery_type.value})")
    remote.add(f"Folders: {checkpoint.completed_folders}/{checkpoint.total_folders}")
    remote.add(f"Documents: {checkpoint.total_documents}")
    failed = sorted(name for name, s in checkpoint.folder_status.items() if s.error)
    if failed:
        branch = remote.add("[red]Failed folders[/red]")
        for name in failed:
            branch.add(f"[red]{name}[/red]: {checkpoint.folder_status[name].error}")

    out.print(Panel(tree, expand=False))


def display_validation(result: ValidationResult, out: Optional[Console] = None) -> None:
    out = out or console
    if result.is_valid:
        title = "[green]Site structure is valid[/green]"
    else:
        title = f"[red]Site structure is invalid[/red]: {result.reason}"

    tree = Tree(title)
    tree.add(f"Inventory files: {result.stats.total_files}")
    tree.add(f"Documents: {result.stats.total_documents}")
    if result.stats.files_with_errors:
        branch = tree.add("[red]Unreadable files[/red]")
        for name in result.stats.files_with_errors:
            branch.add(f"[red]{name}.json[/red]")

    out.print(Panel(tree, expand=False))


async def run_status(config: DiscoveryConfig) -> None:
    async with discovery_context(config) as coordinator:
        progress = await coordinator.get_progress_summary()
        checkpoint = await coordinator.persistence.load_checkpoint()
        display_status(progress, checkpoint)


async def run_validate(config: DiscoveryConfig) -> ValidationResult:
    async with discovery_context(config) as coordinator:
        result = await coordinator.validate_site_structure()
        display_validation(result)
        return result


@app.command()
def status(ctx: typer.Context) -> None:
    """Show progress of the current or last discovery."""
    try:
        asyncio.run(run_status(get_config(ctx)))
    except Exception as e:
        logger.error(f"Error checking status: {e}")
        typer.echo(f"Error checking status: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def validate(ctx: typer.Context) -> None:
    """Check that every inventory file is readable and documents were found."""
    try:
        result = asyncio.run(run_validate(get_config(ctx)))
    except Exception as e:
        logger.error(f"Error validating site structure: {e}")
        typer.echo(f"Error validating site structure: {e}", err=True)
        raise typer.Exit(1)

    if not result.is_valid:
        raise typer.Exit(1)
