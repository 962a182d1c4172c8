from site_discovery.repository.progress_repository import ProgressRepository

__all__ = ["ProgressRepository"]
