from typing import Optional


class DiscoveryError(Exception):
    """Base exception for discovery errors"""

    pass


class RepositoryAPIError(DiscoveryError):
    """Raised when a request to the repository API fails"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RepositoryNotFoundError(RepositoryAPIError):
    """Raised when the requested path does not exist in the repository"""

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class PersistenceError(DiscoveryError):
    """Raised when an inventory, checkpoint or site structure cannot be read or written"""

    pass


class SchemaVersionError(PersistenceError):
    """Raised when a persisted file was written by a newer schema version"""

    pass


class FatalDiscoveryError(DiscoveryError):
    """Raised when a run cannot proceed at all, e.g. the top-level listing is unavailable"""

    pass


class DiscoveryInProgressError(DiscoveryError):
    """Raised when a run is requested while another run for the same repository is active"""

    pass


class UnitStopped(DiscoveryError):
    """Raised inside a folder unit when it receives a stop signal"""

    pass
