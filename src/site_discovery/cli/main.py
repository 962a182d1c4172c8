"""Console entry point for site-discovery.

Importing the command modules registers discover, status and validate on the
shared typer app. CLI runs log warnings to stderr and everything to a file
under ~/.site-discovery so long discoveries can be inspected afterwards.
"""

from site_discovery.cli.app import app
from site_discovery.cli.commands import discover, status
from site_discovery.utils import setup_logging

__all__ = ["app", "discover", "status"]

setup_logging(log_file=".site-discovery/site-discovery-cli.log", level="WARNING")

if __name__ == "__main__":  # pragma: no cover
    app()
