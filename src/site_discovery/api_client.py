"""Async HTTP client for the repository list/source API."""

import asyncio
import json
from typing import Any, List, Optional

import httpx
from loguru import logger

from site_discovery.config import DiscoveryConfig
from site_discovery.schemas.base import RepositoryItem
from site_discovery.services.exceptions import RepositoryAPIError, RepositoryNotFoundError
from site_discovery.utils import strip_repo_prefix

FOLDER_MARKER = ".folder"


def create_http_client(config: DiscoveryConfig) -> httpx.AsyncClient:
    """Create an AsyncClient configured for the repository API."""
    timeout = httpx.Timeout(
        connect=10.0,
        read=config.request_timeout,
        write=config.request_timeout,
        pool=config.request_timeout,
    )
    headers = {}
    if config.token:
        headers["Authorization"] = f"Bearer {config.token}"
    return httpx.AsyncClient(base_url=config.base_url, timeout=timeout, headers=headers)


class RepositoryClient:
    """Lists folders and reads/writes files in one org/repo.

    Paths may be given either absolute (/org/repo/a/b.html) or relative to
    the repository root (a/b.html).
    """

    def __init__(self, config: DiscoveryConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._owns_client = client is None
        self._client = client or create_http_client(config)

    async def __aenter__(self) -> "RepositoryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _relative(self, path: str) -> str:
        return strip_repo_prefix(path, self.config.repo_prefix)

    def _list_url(self, path: str) -> str:
        relative = self._relative(path)
        url = f"/list/{self.config.org}/{self.config.repo}"
        return f"{url}/{relative}" if relative else url

    def _source_url(self, path: str) -> str:
        return f"/source/{self.config.org}/{self.config.repo}/{self._relative(path)}"

    async def _backoff(self, attempt: int, retry_after: Optional[str] = None) -> None:
        delay = self.config.retry_backoff * (2**attempt)
        if retry_after:
            try:
                delay = float(retry_after)
            except ValueError:
                pass
        if delay > 0:
            await asyncio.sleep(delay)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, retrying rate limits, server errors and transport failures.

        Raises:
            RepositoryNotFoundError: On 404
            RepositoryAPIError: On any other failure once retries are exhausted
        """
        last_error: Optional[Exception] = None
        status_code: Optional[int] = None

        for attempt in range(self.config.max_retries):
            is_last = attempt == self.config.max_retries - 1
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                last_error = e
                logger.warning(f"{method} {url} failed (attempt {attempt + 1}): {e}")
                if not is_last:
                    await self._backoff(attempt)
                continue

            if response.status_code == 429 or response.status_code >= 500:
                status_code = response.status_code
                last_error = None
                logger.warning(
                    f"{method} {url} returned {response.status_code} (attempt {attempt + 1})"
                )
                if not is_last:
                    await self._backoff(attempt, response.headers.get("retry-after"))
                continue

            if response.status_code == 404:
                raise RepositoryNotFoundError(f"Not found: {url}")

            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise RepositoryAPIError(
                    f"{method} {url} failed: HTTP {response.status_code}",
                    status_code=response.status_code,
                ) from e
            return response

        if last_error is not None:
            raise RepositoryAPIError(f"{method} {url} failed: {last_error}") from last_error
        raise RepositoryAPIError(
            f"{method} {url} failed: HTTP {status_code}", status_code=status_code
        )

    async def list_path(self, path: str = "/") -> List[RepositoryItem]:
        """List the direct children of a folder."""
        response = await self._request("GET", self._list_url(path))
        payload = response.json()
        if not isinstance(payload, list):
            raise RepositoryAPIError(f"Unexpected listing payload for {path}")
        return [RepositoryItem.model_validate(item) for item in payload]

    async def fetch_page_content(self, path: str) -> str:
        """Fetch the HTML source of a page."""
        response = await self._request("GET", self._source_url(path))
        return response.text

    async def get_json(self, path: str) -> Any | None:
        """Read a JSON file, None if it does not exist."""
        try:
            response = await self._request("GET", self._source_url(path))
        except RepositoryNotFoundError:
            return None
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise RepositoryAPIError(f"Invalid JSON in {path}: {e}") from e

    async def save_json(self, path: str, data: Any) -> None:
        """Replace a JSON file with new content."""
        body = json.dumps(data, ensure_ascii=False).encode("utf-8")
        filename = self._relative(path).split("/")[-1]
        await self._request(
            "POST",
            self._source_url(path),
            files={"data": (filename, body, "application/json")},
        )
        logger.debug(f"Saved {path} ({len(body)} bytes)")

    async def delete_file(self, path: str) -> bool:
        """Delete a file, False if it was already gone."""
        try:
            await self._request("DELETE", self._source_url(path))
        except RepositoryNotFoundError:
            return False
        return True

    async def ensure_folder(self, path: str) -> bool:
        """Create a folder if it does not exist yet."""
        try:
            await self.list_path(path)
            return True
        except RepositoryNotFoundError:
            pass
        except RepositoryAPIError as e:
            logger.warning(f"Could not check folder {path}: {e}")
            return False

        marker = f"{self._relative(path)}/{FOLDER_MARKER}"
        try:
            await self._request(
                "POST",
                self._source_url(marker),
                files={"data": (FOLDER_MARKER, b"", "text/plain")},
            )
        except RepositoryAPIError as e:
            logger.warning(f"Could not create folder {path}: {e}")
            return False
        logger.debug(f"Created folder {path}")
        return True
