"""
Pydantic models for Obsidian Research MCP Server.

Contains data models for notes, sections, pattern matches, search hits,
extracted structure, note relationships and vault listings.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field


class Note(BaseModel):
    """Model for a note read from the vault."""

    path: str
    title: str
    content: str
    body: str
    frontmatter: dict[str, Any]
    tags: list[str]
    links: list[str]
    word_count: int
    source: Literal["api", "disk"] = "api"


class BatchReadResult(BaseModel):
    """Model for one entry of a batch read."""

    path: str
    success: bool
    note: Note | None = None
    error: str | None = None


class NoteSection(BaseModel):
    """Model for a heading-delimited section of a note."""

    title: str
    level: int
    start_line: int
    end_line: int
    content: str
    word_count: int
    subsections: list[str] = Field(default_factory=list)


class NoteSectionsResult(BaseModel):
    """Model for the sections of one note."""

    path: str
    title: str
    sections: list[NoteSection]
    outline: list[dict[str, Any]]


class PatternMatch(BaseModel):
    """Model for a single pattern match."""

    pattern: str
    path: str
    line_number: int
    match: str
    context: str


class PatternStatistics(BaseModel):
    """Model for per-pattern match statistics."""

    pattern: str
    total_matches: int
    file_count: int
    unique_matches: int
    top_matches: list[tuple[str, int]]


class PatternExtractionResult(BaseModel):
    """Model for the result of a pattern extraction."""

    patterns: list[str]
    matches: list[PatternMatch]
    statistics: list[PatternStatistics]
    files_searched: int
    truncated: bool
    execution_time_ms: float


class SearchHit(BaseModel):
    """Model for a search result."""

    path: str
    title: str
    score: float
    snippet: str


class SearchResponse(BaseModel):
    """Model for a search response and the method that produced it."""

    query: str
    method: Literal["semantic", "text"]
    results: list[SearchHit]


class FileStructure(BaseModel):
    """Model for the structure extracted from one note."""

    path: str
    headings: list[dict[str, Any]] = Field(default_factory=list)
    links: list[dict[str, Any]] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    tasks: list[dict[str, Any]] = Field(default_factory=list)
    code_blocks: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None


class StructureExtractionResult(BaseModel):
    """Model for structure extracted from a set of notes."""

    files: list[FileStructure]
    totals: dict[str, int]
    top_tags: list[tuple[str, int]]


class LinkReference(BaseModel):
    """Model for one side of a link between notes, with the lines that make it."""

    path: str
    exists: bool = True
    contexts: list[dict[str, Any]] = Field(default_factory=list)


class SharedTagNote(BaseModel):
    """Model for a note sharing tags with another note."""

    path: str
    shared_tags: list[str]


class NoteRelationships(BaseModel):
    """Model for the relationships of one note."""

    path: str
    backlinks: list[LinkReference] = Field(default_factory=list)
    links: list[LinkReference] = Field(default_factory=list)
    embeds: list[LinkReference] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    shared_tags: list[SharedTagNote] = Field(default_factory=list)
    error: str | None = None


class RelationshipsResult(BaseModel):
    """Model for relationships of a set of notes."""

    files: list[NoteRelationships]
    index_stats: dict[str, int]


class ExploreEntry(BaseModel):
    """Model for a file in a vault listing."""

    path: str
    name: str
    folder: str
    extension: str
    word_count: int | None = None
    tag_count: int | None = None
    link_count: int | None = None


class ExploreResult(BaseModel):
    """Model for a filtered view of the vault."""

    mode: Literal["overview", "list"]
    folder: str
    total_files: int
    total_folders: int
    by_extension: dict[str, int]
    folders: dict[str, int]
    files: list[ExploreEntry] = Field(default_factory=list)
    truncated: bool = False
