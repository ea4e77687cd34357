"""
Vault exploration for Obsidian Research MCP Server.

Filtered listings of the vault with per-note content statistics, or an
overview of file counts per extension and folder.
"""

import re
from collections import Counter
from pathlib import PurePosixPath
from typing import Literal

import structlog

from .cache import CacheStore
from .models import ExploreEntry, ExploreResult
from .utils import make_cache_key
from .vault import VAULT_FILES_TAG, VaultService, file_tag

logger = structlog.get_logger(__name__)

ExploreMode = Literal["overview", "list"]


def _compile(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise ValueError(f"Invalid pattern '{pattern}': {e}") from e


def in_scope(path: str, folder: str, recursive: bool) -> bool:
    if folder and not path.startswith(folder + "/"):
        return False
    rest = path[len(folder) + 1:] if folder else path
    return recursive or "/" not in rest


class VaultExplorer:
    """Lists and summarises vault files, caching results per request."""

    def __init__(self, vault: VaultService, cache: CacheStore):
        self.vault = vault
        self.cache = cache

    async def explore(
        self,
        mode: ExploreMode = "list",
        folder: str | None = None,
        recursive: bool = True,
        extensions: list[str] | None = None,
        name_pattern: str | None = None,
        exclude_patterns: list[str] | None = None,
        limit: int = 100,
    ) -> ExploreResult:
        """Filter the vault listing. Filters combine with AND.

        Raises:
            ValueError: If mode is unknown or a pattern is not a valid regex
        """
        if mode not in ("overview", "list"):
            raise ValueError(f"Unknown explore mode: {mode}")
        folder = (folder or "").strip().strip("/")
        limit = max(1, limit)
        wanted_extensions = {e.lower().lstrip(".") for e in extensions or []}
        name_regex = _compile(name_pattern) if name_pattern else None
        excludes = [_compile(p) for p in exclude_patterns or []]

        key = make_cache_key(
            "explore",
            mode=mode,
            folder=folder,
            recursive=recursive,
            extensions=sorted(wanted_extensions),
            name_pattern=name_pattern,
            exclude_patterns=exclude_patterns,
            limit=limit,
        )
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        matched = []
        for path in await self.vault.list_files(markdown_only=False):
            if not in_scope(path, folder, recursive):
                continue
            name = PurePosixPath(path).name
            if wanted_extensions and PurePosixPath(path).suffix.lower().lstrip(".") not in wanted_extensions:
                continue
            if name_regex and not name_regex.search(name):
                continue
            if any(regex.search(path) for regex in excludes):
                continue
            matched.append(path)

        by_extension = Counter(PurePosixPath(p).suffix.lower().lstrip(".") or "(none)" for p in matched)
        relative = [p[len(folder) + 1:] if folder else p for p in matched]
        folders = Counter(r.split("/", 1)[0] for r in relative if "/" in r)
        parents = {str(PurePosixPath(p).parent) for p in matched} - {".", folder}

        result = ExploreResult(
            mode=mode,
            folder=folder,
            total_files=len(matched),
            total_folders=len(parents),
            by_extension=dict(sorted(by_extension.items())),
            folders=dict(sorted(folders.items())),
            truncated=mode == "list" and len(matched) > limit,
        )

        dependencies = [VAULT_FILES_TAG]
        if mode == "list":
            shown = matched[:limit]
            result.files = await self._entries(shown)
            dependencies += [file_tag(p) for p in shown if p.endswith(".md")]

        self.cache.set(key, result, dependencies=dependencies)
        logger.debug("vault_explored", mode=mode, folder=folder, files=result.total_files)
        return result

    async def _entries(self, paths: list[str]) -> list[ExploreEntry]:
        notes = {}
        for read in await self.vault.read_notes([p for p in paths if p.endswith(".md")]):
            if read.success:
                notes[read.path] = read.note

        entries = []
        for path in paths:
            pure = PurePosixPath(path)
            entry = ExploreEntry(
                path=path,
                name=pure.name,
                folder="" if str(pure.parent) == "." else str(pure.parent),
                extension=pure.suffix.lower().lstrip("."),
            )
            note = notes.get(path)
            if note is not None:
                entry.word_count = note.word_count
                entry.tag_count = len(note.tags)
                entry.link_count = len(note.links)
            entries.append(entry)
        return entries
