"""site-discovery: discovery and incremental scanning of remote document repositories."""

__version__ = "0.1.0"
