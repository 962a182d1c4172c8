"""Models package for site-discovery."""

from site_discovery.models.base import Base
from site_discovery.models.progress import PROGRESS_SCHEMA_VERSION, ProgressRecord

__all__ = ["Base", "ProgressRecord", "PROGRESS_SCHEMA_VERSION"]
