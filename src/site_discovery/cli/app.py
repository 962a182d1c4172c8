from typing import Optional

import typer
from loguru import logger
from pydantic import ValidationError

from site_discovery.config import DiscoveryConfig


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:  # pragma: no cover
        import site_discovery

        typer.echo(f"site-discovery version: {site_discovery.__version__}")
        raise typer.Exit()


app = typer.Typer(name="site-discovery")


def get_config(ctx: typer.Context) -> DiscoveryConfig:
    """Config built by the app callback."""
    return ctx.obj


@app.callback()
def app_callback(
    ctx: typer.Context,
    org: Optional[str] = typer.Option(
        None, "--org", "-o", help="Repository organisation", envvar="SITE_DISCOVERY_ORG"
    ),
    repo: Optional[str] = typer.Option(
        None, "--repo", "-r", help="Repository name", envvar="SITE_DISCOVERY_REPO"
    ),
    workers: Optional[int] = typer.Option(
        None, "--workers", "-w", help="Folders scanned concurrently"
    ),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """site-discovery - find and track every page in a document repository."""
    if ctx.invoked_subcommand is None:
        return

    overrides = {"org": org, "repo": repo, "max_workers": workers}
    try:
        ctx.obj = DiscoveryConfig(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(1)
