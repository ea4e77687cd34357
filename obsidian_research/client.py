"""HTTP client for the Obsidian Local REST API and the Smart Connections endpoint.

Raw transport only: no caching or retries here. VaultService and
SearchService wrap these calls with the cache and the resilience facade.
"""

from typing import Any
from urllib.parse import quote

import httpx
import structlog

logger = structlog.get_logger(__name__)


class ObsidianAPIError(Exception):
    """Raised when the Local REST API returns an unusable response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NoteNotFoundError(ObsidianAPIError):
    """Raised when a note does not exist in the vault."""


class SemanticSearchUnavailable(ObsidianAPIError):
    """Raised when the semantic search endpoint is missing or not ready."""


class ObsidianClient:
    """Async client for the Local REST API plugin.

    The plugin serves HTTPS with a self-signed certificate, so TLS
    verification is off unless verify_ssl is set.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        verify_ssl: bool = False,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            verify=verify_ssl,
            timeout=timeout,
            transport=transport,
        )
        logger.info("obsidian_client_initialized", base_url=self.base_url, has_api_key=bool(api_key))

    async def __aenter__(self) -> "ObsidianClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def is_available(self) -> bool:
        """Check if the Local REST API is reachable.

        Returns:
            True if API responds successfully, False otherwise
        """
        try:
            response = await self._client.get("/", timeout=10.0)
        except httpx.HTTPError as e:
            logger.debug("obsidian_unavailable", error=str(e))
            return False
        return response.status_code == 200

    async def list_files(self, folder: str = "") -> list[str]:
        """List entries of one vault folder. Folder entries end with '/'."""
        folder = folder.strip("/")
        url = f"/vault/{quote(folder)}/" if folder else "/vault/"
        response = await self._client.get(url)
        if response.status_code == 404:
            raise NoteNotFoundError(f"Folder not found: {folder}", 404)
        response.raise_for_status()
        files = response.json().get("files", [])
        prefix = f"{folder}/" if folder else ""
        return [f"{prefix}{name}" for name in files]

    async def list_all_files(self) -> list[str]:
        """List every file in the vault, descending into folders."""
        files: list[str] = []
        pending = [""]
        while pending:
            for entry in await self.list_files(pending.pop()):
                if entry.endswith("/"):
                    pending.append(entry.rstrip("/"))
                else:
                    files.append(entry)
        return sorted(files)

    async def get_file(self, path: str) -> str:
        """Return the raw markdown of a note.

        Raises:
            NoteNotFoundError: If the note does not exist
            httpx.HTTPStatusError: For any other failed response
        """
        response = await self._client.get(
            f"/vault/{quote(path)}", headers={"Accept": "text/markdown"}
        )
        if response.status_code == 404:
            raise NoteNotFoundError(f"Note not found: {path}", 404)
        response.raise_for_status()
        return response.text

    async def put_file(self, path: str, content: str) -> None:
        """Create or replace a note."""
        response = await self._client.put(
            f"/vault/{quote(path)}",
            content=content.encode("utf-8"),
            headers={"Content-Type": "text/markdown"},
        )
        response.raise_for_status()

    async def append_file(self, path: str, content: str) -> None:
        """Append to a note, creating it when missing."""
        response = await self._client.post(
            f"/vault/{quote(path)}",
            content=content.encode("utf-8"),
            headers={"Content-Type": "text/markdown"},
        )
        response.raise_for_status()

    async def delete_file(self, path: str) -> None:
        response = await self._client.delete(f"/vault/{quote(path)}")
        if response.status_code == 404:
            raise NoteNotFoundError(f"Note not found: {path}", 404)
        response.raise_for_status()

    async def search_simple(self, query: str, context_length: int = 100) -> list[dict[str, Any]]:
        """Full-text search through the REST API.

        Returns:
            List of {filename, score, matches: [{match: {start, end}, context}]}
        """
        response = await self._client.post(
            "/search/simple/",
            params={"query": query, "contextLength": context_length},
        )
        response.raise_for_status()
        return response.json()

    async def search_smart(
        self,
        query: str,
        limit: int,
        threshold: float,
        folders: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Semantic search through the Smart Connections bridge endpoint.

        Raises:
            SemanticSearchUnavailable: If the endpoint is missing (404) or not ready (503)
        """
        search_filter: dict[str, Any] = {"limit": limit}
        if folders:
            search_filter["folders"] = folders

        response = await self._client.post(
            "/search/smart",
            json={"query": query, "filter": search_filter, "threshold": threshold},
        )
        if response.status_code in (404, 503):
            raise SemanticSearchUnavailable(
                "Smart Connections endpoint not available", response.status_code
            )
        response.raise_for_status()

        data = response.json()
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise ObsidianAPIError("Invalid response from Smart Connections endpoint")
        return results
