"""Wiring of site-discovery components."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from site_discovery import db
from site_discovery.api_client import RepositoryClient
from site_discovery.config import DiscoveryConfig
from site_discovery.db import DatabaseType
from site_discovery.discovery.aggregator import SiteAggregator
from site_discovery.discovery.coordinator import DiscoveryCoordinator
from site_discovery.discovery.events import DiscoveryEvents
from site_discovery.discovery.scanner import FolderScanner
from site_discovery.repository import ProgressRepository
from site_discovery.services.media_cleanup import MediaCleanup, MediaIndexCleanup
from site_discovery.services.persistence_service import PersistenceService
from site_discovery.services.stats_tracker import StatsTracker


def build_coordinator(
    config: DiscoveryConfig,
    client: RepositoryClient,
    session_maker: async_sessionmaker[AsyncSession],
    media_cleanup: Optional[MediaCleanup] = None,
    events: Optional[DiscoveryEvents] = None,
) -> DiscoveryCoordinator:
    persistence = PersistenceService(client, config)
    return DiscoveryCoordinator(
        config=config,
        persistence=persistence,
        stats=StatsTracker(ProgressRepository(session_maker), config.progress_key),
        scanner=FolderScanner(client, persistence, config),
        aggregator=SiteAggregator(persistence, config),
        media_cleanup=media_cleanup or MediaIndexCleanup(client, config),
        events=events,
    )


@asynccontextmanager
async def discovery_context(
    config: DiscoveryConfig,
    db_type: DatabaseType = DatabaseType.FILESYSTEM,
    http_client: Optional[httpx.AsyncClient] = None,
) -> AsyncIterator[DiscoveryCoordinator]:
    """Coordinator with its database and HTTP client open for the duration of the block."""
    async with db.engine_session_factory(db_path=config.database_path, db_type=db_type) as (
        engine,
        session_maker,
    ):
        async with RepositoryClient(config, http_client) as client:
            yield build_coordinator(config, client, session_maker)
