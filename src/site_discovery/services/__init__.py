"""Services for site-discovery."""
