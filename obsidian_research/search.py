"""
Search functions for Obsidian Research MCP Server.

Semantic search through Smart Connections, falling back to the Local
REST API's full-text search when the semantic endpoint is unavailable.
"""

from pathlib import Path
from typing import Any

import structlog

from .cache import CacheStore
from .client import ObsidianClient
from .models import SearchHit, SearchResponse
from .patterns import in_folders
from .resilience import ResilienceFacade
from .utils import make_cache_key
from .vault import SEARCH_RESULTS_TAG, VAULT_FILES_TAG, file_tag

logger = structlog.get_logger(__name__)


def extract_snippet(text: str, query: str, width: int = 200) -> str:
    """Return text around the first query term found, or the start of text."""
    lowered = text.lower()
    for term in query.lower().split():
        idx = lowered.find(term)
        if idx >= 0:
            start = max(0, idx - 50)
            return "..." + text[start:start + width].replace("\n", " ") + "..."
    return text[:width].replace("\n", " ")


class SearchService:
    """Semantic search with a text-search fallback, cached per query."""

    def __init__(
        self,
        client: ObsidianClient,
        cache: CacheStore,
        resilience: ResilienceFacade,
        *,
        semantic_enabled: bool = True,
        default_threshold: float = 0.7,
        max_results: int = 50,
    ):
        self.client = client
        self.cache = cache
        self.resilience = resilience
        self.semantic_enabled = semantic_enabled
        self.default_threshold = default_threshold
        self.max_results = max_results

    async def search(
        self,
        query: str,
        limit: int = 10,
        threshold: float | None = None,
        folders: list[str] | None = None,
    ) -> SearchResponse:
        query = query.strip()
        if not query:
            raise ValueError("Query cannot be empty")

        limit = max(1, min(limit, self.max_results))
        threshold = self.default_threshold if threshold is None else threshold

        key = make_cache_key("search", query=query, limit=limit, threshold=threshold, folders=folders)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        async def text() -> SearchResponse:
            return await self._text_search(query, limit, folders)

        if self.semantic_enabled:
            response = await self.resilience.with_fallback(
                lambda: self._semantic_search(query, limit, threshold, folders),
                text,
                name="smart-connections",
            )
        else:
            response = await text()

        self.cache.set(
            key,
            response,
            dependencies=[VAULT_FILES_TAG, SEARCH_RESULTS_TAG, *(file_tag(hit.path) for hit in response.results)],
        )
        logger.debug("search_completed", query=query, method=response.method, results=len(response.results))
        return response

    async def _semantic_search(
        self,
        query: str,
        limit: int,
        threshold: float,
        folders: list[str] | None,
    ) -> SearchResponse:
        raw = await self.resilience.with_resilience(
            "smart-connections",
            lambda: self.client.search_smart(query, limit, threshold, folders),
        )
        hits = [self._semantic_hit(item, query) for item in raw]
        # The endpoint may ignore the threshold, so filter again here
        hits = [h for h in hits if h.score >= threshold]
        return SearchResponse(query=query, method="semantic", results=hits[:limit])

    async def _text_search(self, query: str, limit: int, folders: list[str] | None) -> SearchResponse:
        raw = await self.resilience.with_resilience(
            "obsidian-search", lambda: self.client.search_simple(query)
        )
        hits = []
        for item in raw:
            path = item.get("filename", "")
            if not path or not in_folders(path, folders):
                continue
            contexts = [m.get("context", "") for m in item.get("matches", [])]
            hits.append(SearchHit(
                path=path,
                title=Path(path).stem,
                score=float(item.get("score", 0.0)),
                snippet=" ... ".join(c.replace("\n", " ") for c in contexts[:2]),
            ))
        return SearchResponse(query=query, method="text", results=hits[:limit])

    @staticmethod
    def _semantic_hit(item: dict[str, Any], query: str) -> SearchHit:
        path = item.get("path", "")
        return SearchHit(
            path=path,
            title=Path(path).stem or path,
            score=float(item.get("score", 0.0)),
            snippet=extract_snippet(item.get("text", ""), query),
        )
