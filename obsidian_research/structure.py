"""
Structure extraction for Obsidian Research MCP Server.

Pulls headings, links, tags, tasks and code blocks out of notes.
"""

from collections import Counter

import structlog

from .cache import CacheStore
from .models import FileStructure, Note, StructureExtractionResult
from .utils import (
    FENCE_PATTERN,
    HEADING_PATTERN,
    MARKDOWN_LINK_PATTERN,
    TASK_PATTERN,
    WIKILINK_PATTERN,
    make_cache_key,
    normalize_note_path,
)
from .vault import VaultService, file_tag

logger = structlog.get_logger(__name__)

EXTRACT_TYPES = ("headings", "links", "tags", "tasks", "code_blocks")


def extract_file_structure(note: Note, extract_types: list[str]) -> FileStructure:
    """Walk a note line by line and collect the requested elements."""
    structure = FileStructure(path=note.path)
    if "tags" in extract_types:
        structure.tags = list(note.tags)

    lines = note.content.split("\n")
    fence_start: int | None = None
    fence_lang = ""
    for idx, line in enumerate(lines, start=1):
        fence = FENCE_PATTERN.match(line)
        if fence:
            if fence_start is None:
                fence_start = idx
                fence_lang = line.strip()[3:].strip()
            else:
                if "code_blocks" in extract_types:
                    structure.code_blocks.append(
                        {"language": fence_lang, "start_line": fence_start, "end_line": idx}
                    )
                fence_start = None
            continue
        if fence_start is not None:
            continue

        if "headings" in extract_types:
            heading = HEADING_PATTERN.match(line)
            if heading:
                structure.headings.append(
                    {"level": len(heading.group(1)), "text": heading.group(2).strip(), "line": idx}
                )

        if "links" in extract_types:
            for target in WIKILINK_PATTERN.findall(line):
                structure.links.append({"type": "wiki", "target": target.strip(), "line": idx})
            for text, target in MARKDOWN_LINK_PATTERN.findall(line):
                structure.links.append({"type": "markdown", "text": text, "target": target, "line": idx})

        if "tasks" in extract_types:
            task = TASK_PATTERN.match(line)
            if task:
                structure.tasks.append(
                    {"text": task.group(2).strip(), "completed": task.group(1).lower() == "x", "line": idx}
                )

    return structure


class StructureExtractor:
    """Extracts structure from notes, caching results per request."""

    def __init__(self, vault: VaultService, cache: CacheStore):
        self.vault = vault
        self.cache = cache

    async def extract(self, paths: list[str], extract_types: list[str] | None = None) -> StructureExtractionResult:
        """Extract structure from each path.

        Raises:
            ValueError: If no paths are given or an extract type is unknown
        """
        if not paths:
            raise ValueError("At least one path is required")
        types = list(extract_types or EXTRACT_TYPES)
        unknown = [t for t in types if t not in EXTRACT_TYPES]
        if unknown:
            raise ValueError(f"Unknown extract types: {', '.join(unknown)}")

        paths = [normalize_note_path(p) for p in paths]
        key = make_cache_key("structure", paths=paths, types=types)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        files: list[FileStructure] = []
        for read in await self.vault.read_notes(paths):
            if read.success:
                files.append(extract_file_structure(read.note, types))
            else:
                files.append(FileStructure(path=read.path, error=read.error))

        totals = {t: sum(len(getattr(f, t)) for f in files) for t in types}
        tag_counts = Counter(tag for f in files for tag in f.tags)

        result = StructureExtractionResult(files=files, totals=totals, top_tags=tag_counts.most_common(10))
        self.cache.set(key, result, dependencies=[file_tag(p) for p in paths])
        logger.info("structure_extracted", files=len(files), totals=totals)
        return result
