"""CLI tools for site-discovery."""
