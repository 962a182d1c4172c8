"""Common test fixtures."""

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional, Set

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from site_discovery import db
from site_discovery.api_client import RepositoryClient
from site_discovery.config import DiscoveryConfig
from site_discovery.db import DatabaseType
from site_discovery.deps import build_coordinator
from site_discovery.discovery.aggregator import SiteAggregator
from site_discovery.discovery.coordinator import DiscoveryCoordinator
from site_discovery.discovery.scanner import FolderScanner
from site_discovery.repository import ProgressRepository
from site_discovery.services.media_cleanup import NullMediaCleanup
from site_discovery.services.persistence_service import PersistenceService
from site_discovery.services.stats_tracker import StatsTracker

ORG = "acme"
REPO = "site"


def _split_name(filename: str) -> tuple[str, Optional[str]]:
    stem, dot, ext = filename.rpartition(".")
    if not dot:
        return filename, None
    if not stem:
        return filename, ext
    return stem, ext


def _multipart_data(request: httpx.Request) -> bytes:
    """Payload of the "data" field of a multipart upload."""
    content_type = request.headers["content-type"]
    boundary = content_type.split("boundary=")[1].encode()
    for part in request.content.split(b"--" + boundary):
        if b'name="data"' not in part:
            continue
        _, _, payload = part.partition(b"\r\n\r\n")
        return payload[:-2] if payload.endswith(b"\r\n") else payload
    return b""


class FakeRepository:
    """In-memory repository speaking the list/source API.

    Files are keyed by repository-relative path. Folders exist implicitly
    when something is stored below them.
    """

    def __init__(self, org: str = ORG, repo: str = REPO):
        self.org = org
        self.repo = repo
        self.files: Dict[str, bytes] = {}
        self.modified: Dict[str, int] = {}
        self.fail_list: Set[str] = set()
        self.fail_write: Set[str] = set()
        self.list_gates: Dict[str, asyncio.Event] = {}
        self.gate_reached: Dict[str, asyncio.Event] = {}
        self.requests: List[httpx.Request] = []
        self._clock = 1_700_000_000_000

    @property
    def prefix(self) -> str:
        return f"/{self.org}/{self.repo}"

    def _tick(self) -> int:
        self._clock += 1000
        return self._clock

    def add_page(self, path: str, last_modified: Optional[int] = None, content: str = "<html></html>"):
        self.files[path] = content.encode()
        self.modified[path] = last_modified if last_modified is not None else self._tick()

    def put_json(self, path: str, data: Any):
        self.files[path] = json.dumps(data).encode()
        self.modified[path] = self._tick()

    def read_json(self, path: str) -> Any:
        return json.loads(self.files[path])

    def exists(self, path: str) -> bool:
        return path in self.files

    def remove(self, prefix: str):
        """Remove a file or everything below a folder."""
        for path in list(self.files):
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                del self.files[path]
                self.modified.pop(path, None)

    def gate(self, path: str) -> asyncio.Event:
        """Hold listings of path until the returned event is set."""
        self.list_gates[path] = asyncio.Event()
        self.gate_reached[path] = asyncio.Event()
        return self.list_gates[path]

    def _listing(self, folder: str) -> Optional[list]:
        base = f"{folder}/" if folder else ""
        children: Dict[str, dict] = {}
        found = folder == ""
        for path in sorted(self.files):
            if not path.startswith(base):
                continue
            found = True
            remainder = path[len(base) :]
            head, sep, _ = remainder.partition("/")
            if sep:
                children.setdefault(head, {"name": head, "path": f"{self.prefix}/{base}{head}"})
            else:
                name, ext = _split_name(head)
                item = {"name": name, "path": f"{self.prefix}/{path}", "lastModified": self.modified[path]}
                if ext:
                    item["ext"] = ext
                children[head] = item
        if not found:
            return None
        return [children[key] for key in sorted(children)]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.split("/", 4)
        # ["", "list"|"source", org, repo, rest]
        api = parts[1]
        relative = parts[4] if len(parts) > 4 else ""

        if api == "list":
            if relative in self.list_gates:
                self.gate_reached[relative].set()
                await self.list_gates[relative].wait()
            if relative in self.fail_list:
                return httpx.Response(500, json={"error": "boom"})
            listing = self._listing(relative)
            if listing is None:
                return httpx.Response(404)
            return httpx.Response(200, json=listing)

        if request.method == "GET":
            if relative not in self.files:
                return httpx.Response(404)
            return httpx.Response(200, content=self.files[relative])

        if request.method == "POST":
            if relative in self.fail_write:
                return httpx.Response(500)
            self.files[relative] = _multipart_data(request)
            self.modified[relative] = self._tick()
            return httpx.Response(201)

        if request.method == "DELETE":
            if relative not in self.files:
                return httpx.Response(404)
            del self.files[relative]
            return httpx.Response(204)

        return httpx.Response(405)


@pytest.fixture
def fake_repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def config_home(tmp_path) -> Path:
    return tmp_path / "site-discovery"


@pytest.fixture
def app_config(config_home: Path, monkeypatch) -> DiscoveryConfig:
    """Create test configuration."""
    for name in ("SITE_DISCOVERY_ORG", "SITE_DISCOVERY_REPO", "SITE_DISCOVERY_EXCLUDE_PATTERNS"):
        monkeypatch.delenv(name, raising=False)
    return DiscoveryConfig(
        org=ORG,
        repo=REPO,
        home=config_home,
        max_workers=2,
        retry_backoff=0,
        checkpoint_interval=0,
    )


@pytest_asyncio.fixture
async def http_client(
    fake_repo: FakeRepository, app_config: DiscoveryConfig
) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(fake_repo.handler), base_url=app_config.base_url
    ) as client:
        yield client


@pytest_asyncio.fixture
async def repository_client(
    http_client: httpx.AsyncClient, app_config: DiscoveryConfig
) -> RepositoryClient:
    return RepositoryClient(app_config, http_client)


@pytest_asyncio.fixture
async def session_maker(
    config_home: Path,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    async with db.engine_session_factory(
        db_path=config_home / "test.db", db_type=DatabaseType.MEMORY
    ) as (engine, session_maker):
        yield session_maker


@pytest_asyncio.fixture
async def progress_repository(session_maker) -> ProgressRepository:
    return ProgressRepository(session_maker)


@pytest_asyncio.fixture
async def stats_tracker(progress_repository, app_config) -> StatsTracker:
    return StatsTracker(progress_repository, app_config.progress_key)


@pytest_asyncio.fixture
async def persistence_service(repository_client, app_config) -> PersistenceService:
    return PersistenceService(repository_client, app_config)


@pytest_asyncio.fixture
async def folder_scanner(repository_client, persistence_service, app_config) -> FolderScanner:
    return FolderScanner(repository_client, persistence_service, app_config)


@pytest_asyncio.fixture
async def site_aggregator(persistence_service, app_config) -> SiteAggregator:
    return SiteAggregator(persistence_service, app_config)


@pytest.fixture
def media_cleanup() -> NullMediaCleanup:
    return NullMediaCleanup()


@pytest_asyncio.fixture
async def coordinator(
    app_config, repository_client, session_maker, media_cleanup
) -> DiscoveryCoordinator:
    return build_coordinator(app_config, repository_client, session_maker, media_cleanup)


@pytest.fixture
def sample_site(fake_repo: FakeRepository) -> FakeRepository:
    """Repository with a root page and two top-level folders."""
    fake_repo.add_page("root.html")
    fake_repo.add_page("a/x.html")
    fake_repo.add_page("a/nested/deep.html")
    fake_repo.add_page("b/y.html")
    return fake_repo
