"""
Relationship functions for Obsidian Research MCP Server.

Builds a link index over the vault (forward links, backlinks, embeds and
tags) and answers relationship queries for individual notes.
"""

from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote

import structlog

from .cache import CacheStore
from .models import LinkReference, NoteRelationships, RelationshipsResult, SharedTagNote
from .utils import EMBED_PATTERN, FENCE_PATTERN, MARKDOWN_LINK_PATTERN, WIKILINK_PATTERN, normalize_note_path
from .vault import VAULT_FILES_TAG, VaultService, file_tag

logger = structlog.get_logger(__name__)

INDEX_KEY = "relationships:index"
RELATIONSHIP_TYPES = ("backlinks", "links", "embeds", "tags")


@dataclass
class LinkIndex:
    """Link graph of the vault. Link maps go source -> target -> line numbers."""

    files: list[str] = field(default_factory=list)
    forward: dict[str, dict[str, list[int]]] = field(default_factory=dict)
    embeds: dict[str, dict[str, list[int]]] = field(default_factory=dict)
    backlinks: dict[str, list[str]] = field(default_factory=dict)
    tags: dict[str, list[str]] = field(default_factory=dict)

    def stats(self) -> dict[str, int]:
        return {
            "notes": sum(1 for f in self.files if f.endswith(".md")),
            "links": sum(len(targets) for targets in self.forward.values()),
            "embeds": sum(len(targets) for targets in self.embeds.values()),
            "tagged_notes": len(self.tags),
        }


class LinkResolver:
    """Resolve link text to vault paths.

    Exact path first, then the file name: note stems match without '.md',
    attachments match on their full name. Shallower paths win ties.
    Unresolved links resolve to their own text.
    """

    def __init__(self, files: list[str]):
        self.paths = set(files)
        self.by_name: dict[str, str] = {}
        for path in sorted(files, key=lambda p: (p.count("/"), p)):
            self.by_name.setdefault(self._name_key(path), path)

    @staticmethod
    def _name_key(path: str) -> str:
        name = Path(path).name
        if name.endswith(".md"):
            name = name[:-3]
        return name.casefold()

    def resolve(self, target: str) -> str:
        target = target.strip()
        candidate = target if "." in target.rsplit("/", 1)[-1] else target + ".md"
        if candidate in self.paths:
            return candidate
        return self.by_name.get(self._name_key(candidate), target)


def scan_links(content: str, resolver: LinkResolver) -> tuple[dict[str, list[int]], dict[str, list[int]]]:
    """Collect resolved link and embed targets with their 1-based line numbers.

    Wiki links and relative markdown links count as links; '![[...]]' counts
    as an embed only. Fenced code blocks are skipped.
    """
    links: dict[str, list[int]] = {}
    embeds: dict[str, list[int]] = {}
    in_fence = False
    for idx, line in enumerate(content.split("\n"), start=1):
        if FENCE_PATTERN.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue

        for target in EMBED_PATTERN.findall(line):
            embeds.setdefault(resolver.resolve(target), []).append(idx)

        line = EMBED_PATTERN.sub("", line)
        targets = list(WIKILINK_PATTERN.findall(line))
        for _, target in MARKDOWN_LINK_PATTERN.findall(line):
            if "://" in target or target.startswith(("#", "mailto:")):
                continue
            targets.append(unquote(target.split("#", 1)[0]))
        for target in targets:
            if target.strip():
                links.setdefault(resolver.resolve(target), []).append(idx)

    return links, embeds


class RelationshipService:
    """Backlinks, outgoing links, embeds and shared tags from a cached link index."""

    def __init__(self, vault: VaultService, cache: CacheStore):
        self.vault = vault
        self.cache = cache

    async def build_index(self) -> LinkIndex:
        """Return the link index, building it from every note when not cached.

        The index depends on the file listing and on every note, so any
        write through VaultService drops it.
        """
        cached = self.cache.get(INDEX_KEY)
        if cached is not None:
            return cached

        all_files = await self.vault.list_files(markdown_only=False)
        notes = [f for f in all_files if f.endswith(".md")]
        resolver = LinkResolver(all_files)

        index = LinkIndex(files=list(all_files))
        for read in await self.vault.read_notes(notes):
            if not read.success:
                logger.warning("link_index_note_skipped", path=read.path, error=read.error)
                continue
            note = read.note
            links, embeds = scan_links(note.content, resolver)
            links.pop(note.path, None)
            if links:
                index.forward[note.path] = links
                for target in links:
                    index.backlinks.setdefault(target, []).append(note.path)
            if embeds:
                index.embeds[note.path] = embeds
            if note.tags:
                index.tags[note.path] = list(note.tags)

        self.cache.set(INDEX_KEY, index, dependencies=[VAULT_FILES_TAG, *(file_tag(p) for p in notes)])
        logger.info("link_index_built", **index.stats())
        return index

    async def get_relationships(
        self,
        paths: list[str],
        relationship_types: list[str] | None = None,
        include_context: bool = True,
        max_results: int = 50,
    ) -> RelationshipsResult:
        """Relationships of each path, limited to max_results per type.

        Raises:
            ValueError: If no paths are given or a relationship type is unknown
        """
        if not paths:
            raise ValueError("At least one path is required")
        types = list(relationship_types or ["backlinks"])
        if "all" in types:
            types = list(RELATIONSHIP_TYPES)
        unknown = [t for t in types if t not in RELATIONSHIP_TYPES]
        if unknown:
            raise ValueError(f"Unknown relationship types: {', '.join(unknown)}")
        max_results = max(1, max_results)

        index = await self.build_index()
        files = []
        for path in (normalize_note_path(p) for p in paths):
            if path not in index.files:
                files.append(NoteRelationships(path=path, error=f"Note not found: {path}"))
                continue

            rel = NoteRelationships(path=path)
            if "backlinks" in types:
                for source in index.backlinks.get(path, [])[:max_results]:
                    lines = index.forward[source][path]
                    rel.backlinks.append(await self._reference(source, source, lines, index, include_context))
            if "links" in types:
                for target, lines in list(index.forward.get(path, {}).items())[:max_results]:
                    rel.links.append(await self._reference(target, path, lines, index, include_context))
            if "embeds" in types:
                for target, lines in list(index.embeds.get(path, {}).items())[:max_results]:
                    rel.embeds.append(await self._reference(target, path, lines, index, include_context))
            if "tags" in types:
                rel.tags = list(index.tags.get(path, []))
                rel.shared_tags = self._shared_tags(path, rel.tags, index)[:max_results]
            files.append(rel)

        return RelationshipsResult(files=files, index_stats=index.stats())

    async def _reference(
        self,
        other: str,
        source: str,
        lines: list[int],
        index: LinkIndex,
        include_context: bool,
    ) -> LinkReference:
        """Describe the note at the other end of a link; contexts come from source."""
        reference = LinkReference(path=other, exists=other in index.files)
        if include_context:
            content_lines = (await self.vault.read_note(source)).content.split("\n")
            reference.contexts = [{"line": n, "text": content_lines[n - 1].strip()} for n in lines]
        return reference

    @staticmethod
    def _shared_tags(path: str, tags: list[str], index: LinkIndex) -> list[SharedTagNote]:
        shared = []
        for other, other_tags in index.tags.items():
            if other == path:
                continue
            common = [t for t in tags if t in other_tags]
            if common:
                shared.append(SharedTagNote(path=other, shared_tags=common))
        shared.sort(key=lambda s: (-len(s.shared_tags), s.path))
        return shared
