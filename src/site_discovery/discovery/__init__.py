from site_discovery.discovery.aggregator import SiteAggregator
from site_discovery.discovery.coordinator import DiscoveryCoordinator
from site_discovery.discovery.events import DiscoveryEvent, DiscoveryEvents
from site_discovery.discovery.pool import ControlSignal, FolderWorkerPool
from site_discovery.discovery.scanner import FolderScanner, merge_documents
from site_discovery.discovery.utils import (
    DiscoveryReport,
    DiscoveryResult,
    DiscoveryState,
    FolderResult,
    StructuralChanges,
)

__all__ = [
    "ControlSignal",
    "DiscoveryCoordinator",
    "DiscoveryEvent",
    "DiscoveryEvents",
    "DiscoveryReport",
    "DiscoveryResult",
    "DiscoveryState",
    "FolderResult",
    "FolderScanner",
    "FolderWorkerPool",
    "SiteAggregator",
    "StructuralChanges",
    "merge_documents",
]
