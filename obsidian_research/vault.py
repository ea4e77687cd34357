"""
Vault access module for Obsidian Research MCP Server.

Contains the VaultService class: cached, resilient note reads and
writes that invalidate the cache entries depending on the touched files.
"""

import asyncio
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from .cache import CacheStore
from .client import ObsidianClient
from .models import BatchReadResult, Note
from .resilience import ResilienceFacade
from .utils import (
    INLINE_TAG_PATTERN,
    WIKILINK_PATTERN,
    frontmatter_tags,
    normalize_note_path,
    note_title,
    parse_frontmatter,
    validate_path_within_vault,
)

logger = structlog.get_logger(__name__)

FILES_KEY = "files:all"
VAULT_FILES_TAG = "vault-files"
# Any note change can alter which notes a query matches
SEARCH_RESULTS_TAG = "search-results"


def file_tag(path: str) -> str:
    return f"file:{path}"


def build_note(path: str, content: str, source: str = "api") -> Note:
    """Parse raw markdown into a Note."""
    frontmatter, body = parse_frontmatter(content)
    tags = frontmatter_tags(frontmatter)
    for tag in INLINE_TAG_PATTERN.findall(body):
        if tag not in tags:
            tags.append(tag)

    links: list[str] = []
    for link in WIKILINK_PATTERN.findall(content):
        link = link.strip()
        if link not in links:
            links.append(link)

    return Note(
        path=path,
        title=note_title(path, frontmatter, body),
        content=content,
        body=body,
        frontmatter=frontmatter,
        tags=tags,
        links=links,
        word_count=len(body.split()),
        source=source,
    )


class VaultService:
    """Notes from the Local REST API, behind the result cache and resilience layer.

    Reads are cached under 'note:<path>' tagged 'file:<path>'; the file
    listing is cached under 'files:all' tagged 'vault-files'. When
    vault_path is set, a failed API read falls back to the file on disk.
    """

    def __init__(
        self,
        client: ObsidianClient,
        cache: CacheStore,
        resilience: ResilienceFacade,
        *,
        vault_path: Path | None = None,
        concurrency: int = 5,
    ):
        self.client = client
        self.cache = cache
        self.resilience = resilience
        self.vault_path = vault_path
        self.concurrency = concurrency

    async def list_files(self, markdown_only: bool = True) -> list[str]:
        """List vault files, from cache when possible."""
        files = self.cache.get(FILES_KEY)
        if files is None:
            files = await self.resilience.with_resilience(
                "obsidian-list-files", self.client.list_all_files
            )
            self.cache.set(FILES_KEY, files, dependencies=[VAULT_FILES_TAG])
        if markdown_only:
            return [f for f in files if f.endswith(".md")]
        return files

    async def read_note(self, path: str, use_cache: bool = True) -> Note:
        """Read and parse one note.

        Raises:
            PathValidationError: If the path is invalid
            RetryError / CircuitBreakerError: If the API read failed and no fallback exists
        """
        path = normalize_note_path(path)
        key = f"note:{path}"

        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        async def from_api() -> Note:
            content = await self.resilience.with_resilience(
                "obsidian-read-note", lambda: self.client.get_file(path)
            )
            return build_note(path, content)

        if self.vault_path is not None:
            note = await self.resilience.with_fallback(
                from_api, lambda: self._read_from_disk(path), name="obsidian-read-note"
            )
        else:
            note = await from_api()

        self.cache.set(key, note, dependencies=[file_tag(path)])
        return note

    async def read_notes(self, paths: list[str], use_cache: bool = True) -> list[BatchReadResult]:
        """Read several notes concurrently; failures are reported per path."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def read_one(path: str) -> BatchReadResult:
            async with semaphore:
                try:
                    note = await self.read_note(path, use_cache=use_cache)
                except Exception as e:
                    logger.warning("note_read_failed", path=path, error=str(e))
                    return BatchReadResult(path=path, success=False, error=str(e))
                return BatchReadResult(path=note.path, success=True, note=note)

        return list(await asyncio.gather(*(read_one(p) for p in paths)))

    async def write_note(self, path: str, content: str) -> str:
        """Create or replace a note. Returns the normalized path."""
        path = normalize_note_path(path)
        is_new = not self._is_listed(path)
        await self.resilience.with_resilience(
            "obsidian-update-file", lambda: self.client.put_file(path, content)
        )
        self.invalidate_file(path, structural=is_new)
        logger.info("note_written", path=path, created=is_new, length=len(content))
        return path

    async def append_note(self, path: str, content: str) -> str:
        """Append to a note. Returns the normalized path."""
        path = normalize_note_path(path)
        is_new = not self._is_listed(path)
        await self.resilience.with_resilience(
            "obsidian-update-file", lambda: self.client.append_file(path, content)
        )
        self.invalidate_file(path, structural=is_new)
        logger.info("note_appended", path=path, length=len(content))
        return path

    async def delete_note(self, path: str) -> str:
        path = normalize_note_path(path)
        await self.resilience.with_resilience(
            "obsidian-delete-file", lambda: self.client.delete_file(path)
        )
        self.invalidate_file(path, structural=True)
        logger.info("note_deleted", path=path)
        return path

    async def move_note(self, source: str, destination: str) -> str:
        """Move a note by copying its content and deleting the original."""
        source = normalize_note_path(source)
        destination = normalize_note_path(destination)
        note = await self.read_note(source, use_cache=False)
        await self.resilience.with_resilience(
            "obsidian-update-file", lambda: self.client.put_file(destination, note.content)
        )
        await self.resilience.with_resilience(
            "obsidian-delete-file", lambda: self.client.delete_file(source)
        )
        self.invalidate_file(source)
        self.invalidate_file(destination, structural=True)
        logger.info("note_moved", source=source, destination=destination)
        return destination

    def invalidate_file(self, path: str, structural: bool = False) -> int:
        """Drop cache entries depending on path and all search results; structural changes also drop listings."""
        count = self.cache.invalidate_by_dependency(file_tag(path))
        count += self.cache.invalidate_by_dependency(SEARCH_RESULTS_TAG)
        if structural:
            count += self.cache.invalidate_by_dependency(VAULT_FILES_TAG)
        logger.debug("file_cache_invalidated", path=path, structural=structural, invalidated=count)
        return count

    async def load_cache_entry(self, key: str) -> tuple[Any, list[str]] | None:
        """Warm-up loader for 'files:all' and 'note:<path>' keys."""
        if key == FILES_KEY:
            files = await self.resilience.with_resilience(
                "obsidian-list-files", self.client.list_all_files
            )
            return files, [VAULT_FILES_TAG]
        if key.startswith("note:"):
            path = normalize_note_path(key[len("note:"):])
            note = await self.read_note(path, use_cache=False)
            return note, [file_tag(path)]
        return None

    def _is_listed(self, path: str) -> bool:
        files = self.cache.get(FILES_KEY)
        return files is not None and path in files

    async def _read_from_disk(self, path: str) -> Note:
        full_path = validate_path_within_vault(path, self.vault_path)
        async with aiofiles.open(full_path, encoding="utf-8") as f:
            content = await f.read()
        logger.info("note_read_from_disk", path=path)
        return build_note(path, content, source="disk")
