"""
MCP Tools module for Obsidian Research MCP Server.

Contains the MCP tool definitions, the tool dispatcher and the server factory.
"""

import json
from typing import Any

import httpx
import structlog
from mcp.server import Server
from mcp.types import (
    Resource,
    TextContent,
    Tool,
)

from .client import NoteNotFoundError, ObsidianAPIError, SemanticSearchUnavailable
from .context import ServerContext
from .resilience import CircuitBreakerError, RetryError
from .utils import ERROR_SUGGESTIONS, PathValidationError, format_error, normalize_note_path

logger = structlog.get_logger(__name__)

TOOLS = [
    Tool(
        name="obsidian_get_notes",
        description="Read one or more notes from the vault. Returns content, frontmatter, tags and links.",
        inputSchema={
            "type": "object",
            "properties": {
                "paths": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Vault-relative note paths (e.g., 'Projects/Plan.md'); '.md' is optional"
                },
                "include_content": {
                    "type": "boolean",
                    "description": "Include the full note content (default: true)",
                    "default": True
                }
            },
            "required": ["paths"]
        }
    ),
    Tool(
        name="obsidian_write_note",
        description="Create, overwrite or append to a note.",
        inputSchema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Vault-relative note path"},
                "content": {"type": "string", "description": "Markdown content"},
                "mode": {
                    "type": "string",
                    "enum": ["overwrite", "append"],
                    "description": "overwrite replaces the note, append adds to its end (default: overwrite)",
                    "default": "overwrite"
                }
            },
            "required": ["path", "content"]
        }
    ),
    Tool(
        name="obsidian_manage",
        description="Delete or move a note.",
        inputSchema={
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["delete", "move"]},
                "path": {"type": "string", "description": "Vault-relative note path"},
                "destination": {"type": "string", "description": "New path, required for move"}
            },
            "required": ["action", "path"]
        }
    ),
    Tool(
        name="obsidian_semantic_search",
        description="Search notes by meaning using Smart Connections. Falls back to full-text search "
                    "when the semantic endpoint is unavailable.",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Natural language query"},
                "limit": {"type": "integer", "description": "Maximum results (default: 10)", "default": 10},
                "threshold": {"type": "number", "description": "Minimum similarity between 0 and 1"},
                "folders": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Restrict results to these folders"
                }
            },
            "required": ["query"]
        }
    ),
    Tool(
        name="obsidian_pattern_search",
        description="Find regular expression matches across the vault with surrounding context and statistics.",
        inputSchema={
            "type": "object",
            "properties": {
                "patterns": {"type": "array", "items": {"type": "string"}, "description": "Regular expressions"},
                "folders": {"type": "array", "items": {"type": "string"}},
                "context_window": {"type": "integer", "default": 2},
                "case_sensitive": {"type": "boolean", "default": False},
                "whole_word": {"type": "boolean", "default": False},
                "max_matches": {"type": "integer", "default": 100}
            },
            "required": ["patterns"]
        }
    ),
    Tool(
        name="obsidian_sections",
        description="List the heading-delimited sections of a note, or return only the named sections.",
        inputSchema={
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "headings": {"type": "array", "items": {"type": "string"}}
            },
            "required": ["path"]
        }
    ),
    Tool(
        name="obsidian_update_section",
        description="Replace, append to or prepend to the content under a heading.",
        inputSchema={
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "heading": {"type": "string"},
                "content": {"type": "string"},
                "mode": {"type": "string", "enum": ["replace", "append", "prepend"], "default": "replace"}
            },
            "required": ["path", "heading", "content"]
        }
    ),
    Tool(
        name="obsidian_analyze_structure",
        description="Extract headings, links, tags, tasks and code blocks from notes.",
        inputSchema={
            "type": "object",
            "properties": {
                "paths": {"type": "array", "items": {"type": "string"}},
                "extract_types": {
                    "type": "array",
                    "items": {"type": "string", "enum": ["headings", "links", "tags", "tasks", "code_blocks"]}
                }
            },
            "required": ["paths"]
        }
    ),
    Tool(
        name="obsidian_explore",
        description="Browse the vault. overview returns counts per extension and folder; "
                    "list returns matching files with word, tag and link counts for notes.",
        inputSchema={
            "type": "object",
            "properties": {
                "mode": {"type": "string", "enum": ["overview", "list"], "default": "list"},
                "folder": {"type": "string", "description": "Starting folder (default: vault root)"},
                "recursive": {"type": "boolean", "default": True},
                "extensions": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "File extensions to keep, e.g. ['md', 'pdf']"
                },
                "name_pattern": {"type": "string", "description": "Case-insensitive regex on the file name"},
                "exclude_patterns": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Case-insensitive regexes on the path; matching files are dropped"
                },
                "limit": {"type": "integer", "minimum": 1, "default": 100}
            }
        }
    ),
    Tool(
        name="obsidian_relationships",
        description="Find backlinks, outgoing links, embeds and shared tags for notes, "
                    "optionally with the lines that create each link.",
        inputSchema={
            "type": "object",
            "properties": {
                "paths": {"type": "array", "items": {"type": "string"}},
                "relationship_types": {
                    "type": "array",
                    "items": {"type": "string", "enum": ["backlinks", "links", "embeds", "tags", "all"]},
                    "description": "Relationship kinds to return (default: backlinks)"
                },
                "include_context": {"type": "boolean", "default": True},
                "max_results": {"type": "integer", "minimum": 1, "default": 50}
            },
            "required": ["paths"]
        }
    ),
    Tool(
        name="obsidian_cache",
        description="Inspect or reset the result cache and circuit breakers.",
        inputSchema={
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["stats", "clear", "invalidate", "reset_breakers"],
                    "description": "invalidate drops entries for one path; reset_breakers closes one or all breakers"
                },
                "path": {"type": "string", "description": "Note path for invalidate"},
                "breaker": {"type": "string", "description": "Breaker name for reset_breakers (default: all)"}
            },
            "required": ["action"]
        }
    ),
]


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


def _json(data: Any) -> list[TextContent]:
    return _text(json.dumps(data, indent=2, default=str))


def cache_report(context: ServerContext) -> dict[str, Any]:
    stats = context.cache.get_stats()
    stats.pop("entries")
    return {"cache": stats, "circuit_breakers": context.resilience.get_circuit_breaker_stats()}


def describe_error(error: Exception, name: str) -> str:
    """Format a failed tool call with recovery suggestions for the client."""
    cause = error.last_error if isinstance(error, RetryError) else error
    if isinstance(error, CircuitBreakerError):
        return format_error(error, name, ERROR_SUGGESTIONS["circuit_open"])
    if isinstance(cause, SemanticSearchUnavailable):
        return format_error(error, name, ERROR_SUGGESTIONS["smart_connections"])
    if isinstance(cause, (NoteNotFoundError, PathValidationError)):
        return format_error(error, name, ERROR_SUGGESTIONS["file_access"])
    if isinstance(cause, (RetryError, ObsidianAPIError, httpx.HTTPError)):
        return format_error(error, name, ERROR_SUGGESTIONS["obsidian_connection"])
    return format_error(error, name)


async def handle_tool(context: ServerContext, name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Dispatch one tool call, turning expected failures into error text."""
    try:
        return await _dispatch(context, name, arguments)
    except (
        CircuitBreakerError,
        RetryError,
        ObsidianAPIError,
        PathValidationError,
        httpx.HTTPError,
        ValueError,
    ) as e:
        logger.warning("tool_failed", tool=name, error_type=type(e).__name__, error=str(e))
        return _text(describe_error(e, name))


async def _dispatch(context: ServerContext, name: str, arguments: dict[str, Any]) -> list[TextContent]:
    if name == "obsidian_get_notes":
        paths = arguments.get("paths") or []
        if not paths:
            return _text("Error: paths is required")
        include_content = arguments.get("include_content", True)

        output = []
        for result in await context.vault.read_notes(paths):
            if not result.success:
                output.append({"path": result.path, "error": result.error})
                continue
            exclude = None if include_content else {"content", "body"}
            output.append(result.note.model_dump(exclude=exclude))
        return _json(output)

    elif name == "obsidian_write_note":
        path = arguments.get("path", "")
        content = arguments.get("content")
        if content is None:
            return _text("Error: content is required")
        if arguments.get("mode", "overwrite") == "append":
            written = await context.vault.append_note(path, content)
            return _text(f"Appended {len(content)} characters to {written}")
        written = await context.vault.write_note(path, content)
        return _text(f"Wrote {len(content)} characters to {written}")

    elif name == "obsidian_manage":
        action = arguments.get("action")
        path = arguments.get("path", "")
        if action == "delete":
            deleted = await context.vault.delete_note(path)
            return _text(f"Deleted {deleted}")
        if action == "move":
            destination = arguments.get("destination")
            if not destination:
                return _text("Error: destination is required for move")
            moved = await context.vault.move_note(path, destination)
            return _text(f"Moved {path} to {moved}")
        return _text(f"Error: Invalid action '{action}'. Valid actions: delete, move")

    elif name == "obsidian_semantic_search":
        response = await context.search.search(
            arguments.get("query", ""),
            limit=arguments.get("limit", 10),
            threshold=arguments.get("threshold"),
            folders=arguments.get("folders"),
        )
        if not response.results:
            return _text(f"No notes found for query: '{response.query}'")

        output = f"Found {len(response.results)} notes for '{response.query}' ({response.method} search):\n\n"
        for hit in response.results:
            output += f"**{hit.title}** ({hit.path}) score={hit.score:.3f}\n"
            output += f"  {hit.snippet}\n\n"
        return _text(output)

    elif name == "obsidian_pattern_search":
        result = await context.patterns.extract(
            arguments.get("patterns") or [],
            folders=arguments.get("folders"),
            context_window=arguments.get("context_window", 2),
            case_sensitive=arguments.get("case_sensitive", False),
            whole_word=arguments.get("whole_word", False),
            max_matches=arguments.get("max_matches", 100),
        )
        return _json(result.model_dump())

    elif name == "obsidian_sections":
        result = await context.sections.get_sections(arguments.get("path", ""), arguments.get("headings"))
        return _json(result.model_dump())

    elif name == "obsidian_update_section":
        section = await context.sections.update_section(
            arguments.get("path", ""),
            arguments.get("heading", ""),
            arguments.get("content", ""),
            mode=arguments.get("mode", "replace"),
        )
        return _json(section.model_dump())

    elif name == "obsidian_analyze_structure":
        result = await context.structure.extract(arguments.get("paths") or [], arguments.get("extract_types"))
        return _json(result.model_dump())

    elif name == "obsidian_explore":
        result = await context.explorer.explore(
            arguments.get("mode", "list"),
            folder=arguments.get("folder"),
            recursive=arguments.get("recursive", True),
            extensions=arguments.get("extensions"),
            name_pattern=arguments.get("name_pattern"),
            exclude_patterns=arguments.get("exclude_patterns"),
            limit=arguments.get("limit", 100),
        )
        return _json(result.model_dump(exclude={"files"} if result.mode == "overview" else None))

    elif name == "obsidian_relationships":
        result = await context.relationships.get_relationships(
            arguments.get("paths") or [],
            arguments.get("relationship_types"),
            include_context=arguments.get("include_context", True),
            max_results=arguments.get("max_results", 50),
        )
        return _json(result.model_dump())

    elif name == "obsidian_cache":
        action = arguments.get("action")
        if action == "stats":
            return _json(cache_report(context))
        if action == "clear":
            context.cache.clear()
            return _text("Cache cleared")
        if action == "invalidate":
            path = arguments.get("path")
            if not path:
                return _text("Error: path is required for invalidate")
            path = normalize_note_path(path)
            count = context.vault.invalidate_file(path, structural=True)
            return _text(f"Invalidated {count} cache entries for {path}")
        if action == "reset_breakers":
            breaker = arguments.get("breaker")
            if breaker:
                if not context.resilience.reset_circuit_breaker(breaker):
                    return _text(f"Error: Unknown circuit breaker '{breaker}'")
                return _text(f"Circuit breaker '{breaker}' reset")
            context.resilience.reset_circuit_breakers()
            return _text("All circuit breakers reset")
        return _text(f"Error: Invalid action '{action}'. Valid actions: stats, clear, invalidate, reset_breakers")

    return _text(f"Unknown tool: {name}")


def create_server(context: ServerContext) -> Server:
    """Create the MCP server with handlers bound to context."""
    server = Server("obsidian-research")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available tools."""
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool calls."""
        return await handle_tool(context, name, arguments)

    @server.list_resources()
    async def list_resources() -> list[Resource]:
        """List available resources."""
        return [
            Resource(
                uri="cache://stats",
                name="Cache Statistics",
                description="Result cache and circuit breaker statistics",
                mimeType="application/json"
            ),
        ]

    @server.read_resource()
    async def read_resource(uri) -> str:
        """Read a resource."""
        if str(uri) == "cache://stats":
            return json.dumps(cache_report(context), indent=2, default=str)

        return json.dumps({"error": f"Unknown resource: {uri}"})

    return server
