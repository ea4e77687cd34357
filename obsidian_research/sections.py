"""
Section operations for Obsidian Research MCP Server.

Contains functions for splitting notes into heading-delimited sections
and for rewriting a single section in place.
"""

from typing import Literal

import structlog

from .cache import CacheStore
from .models import NoteSection, NoteSectionsResult
from .utils import FENCE_PATTERN, HEADING_PATTERN, make_cache_key, normalize_note_path
from .vault import VaultService, file_tag

logger = structlog.get_logger(__name__)

UpdateMode = Literal["replace", "append", "prepend"]


def split_sections(content: str) -> list[NoteSection]:
    """Split markdown into sections, one per heading.

    A section runs from its heading to the line before the next heading of
    the same or a higher level. Headings inside fenced code blocks are
    ignored. Line numbers are 1-based.
    """
    lines = content.split("\n")
    headings: list[tuple[int, int, str]] = []  # (line index, level, title)
    in_fence = False
    for idx, line in enumerate(lines):
        if FENCE_PATTERN.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = HEADING_PATTERN.match(line)
        if match:
            headings.append((idx, len(match.group(1)), match.group(2).strip()))

    sections: list[NoteSection] = []
    for i, (idx, level, title) in enumerate(headings):
        end = len(lines) - 1
        nested: list[tuple[int, str]] = []
        for next_idx, next_level, next_title in headings[i + 1:]:
            if next_level <= level:
                end = next_idx - 1
                break
            nested.append((next_level, next_title))

        # Trailing blank lines belong to no section
        while end > idx and not lines[end].strip():
            end -= 1

        body = "\n".join(lines[idx + 1:end + 1])
        child_level = min((lvl for lvl, _ in nested), default=None)
        sections.append(NoteSection(
            title=title,
            level=level,
            start_line=idx + 1,
            end_line=end + 1,
            content=body,
            word_count=len(body.split()),
            subsections=[t for lvl, t in nested if lvl == child_level],
        ))

    return sections


def find_section(sections: list[NoteSection], heading: str) -> NoteSection | None:
    """Find a section by title, case-insensitive, with or without leading '#'."""
    wanted = heading.lstrip("#").strip().casefold()
    for section in sections:
        if section.title.casefold() == wanted:
            return section
    return None


class SectionOperations:
    """Read and edit notes section by section."""

    def __init__(self, vault: VaultService, cache: CacheStore):
        self.vault = vault
        self.cache = cache

    async def get_sections(self, path: str, headings: list[str] | None = None) -> NoteSectionsResult:
        path = normalize_note_path(path)
        key = make_cache_key("sections", path=path, headings=headings)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        note = await self.vault.read_note(path)
        all_sections = split_sections(note.content)

        if headings:
            sections = [s for s in (find_section(all_sections, h) for h in headings) if s is not None]
        else:
            sections = all_sections

        result = NoteSectionsResult(
            path=path,
            title=note.title,
            sections=sections,
            outline=[
                {"title": s.title, "level": s.level, "line": s.start_line, "has_content": bool(s.content.strip())}
                for s in all_sections
            ],
        )
        self.cache.set(key, result, dependencies=[file_tag(path)])
        logger.debug("sections_extracted", path=path, sections=len(sections))
        return result

    async def get_section(self, path: str, heading: str) -> NoteSection | None:
        result = await self.get_sections(path, [heading])
        return result.sections[0] if result.sections else None

    async def update_section(
        self,
        path: str,
        heading: str,
        content: str,
        mode: UpdateMode = "replace",
    ) -> NoteSection:
        """Rewrite one section of a note.

        replace swaps everything under the heading (subsections included),
        append adds after the section's last line, prepend adds right after
        the heading line.

        Raises:
            ValueError: If the heading does not exist or mode is unknown
        """
        if mode not in ("replace", "append", "prepend"):
            raise ValueError(f"Unknown update mode: {mode}")

        note = await self.vault.read_note(path, use_cache=False)
        section = find_section(split_sections(note.content), heading)
        if section is None:
            raise ValueError(f"Section not found in {note.path}: {heading}")

        lines = note.content.split("\n")
        new_lines = content.rstrip("\n").split("\n")
        heading_idx = section.start_line - 1
        end_idx = section.end_line - 1

        if mode == "replace":
            lines[heading_idx + 1:end_idx + 1] = new_lines
        elif mode == "append":
            lines[end_idx + 1:end_idx + 1] = new_lines
        else:
            lines[heading_idx + 1:heading_idx + 1] = new_lines

        updated = "\n".join(lines)
        await self.vault.write_note(note.path, updated)

        # Lines up to the heading are untouched, so it keeps its line number
        refreshed = next((s for s in split_sections(updated) if s.start_line == section.start_line), None)
        if refreshed is None:
            raise ValueError(f"Section {section.title!r} is no longer a heading in {note.path} after the update")
        logger.info("section_updated", path=note.path, heading=section.title, mode=mode)
        return refreshed
