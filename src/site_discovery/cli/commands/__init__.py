"""CLI commands for site-discovery."""

from site_discovery.cli.commands import discover, status

__all__ = ["discover", "status"]
