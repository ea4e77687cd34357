"""
Utility functions and compiled regex patterns for Obsidian Research MCP Server.

Contains parsing functions, path validation, cache key derivation,
size estimation and pre-compiled markdown patterns.
"""

import dataclasses
import json
import re
import unicodedata
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel

# Pre-compiled regex patterns for performance
WIKILINK_PATTERN = re.compile(r'\[\[([^\]|#]+)(?:#[^\]|]*)?(?:\|[^\]]+)?\]\]')
EMBED_PATTERN = re.compile(r'!\[\[([^\]|#]+)(?:#[^\]|]*)?(?:\|[^\]]+)?\]\]')
MARKDOWN_LINK_PATTERN = re.compile(r'(?<!!)\[([^\]]*)\]\(([^)\s]+)\)')
FRONTMATTER_PATTERN = re.compile(r'^---\s*\n(.*?)\n---\s*\n', re.DOTALL)
HEADING_PATTERN = re.compile(r'^(#{1,6})\s+(.+?)\s*#*\s*$')
INLINE_TAG_PATTERN = re.compile(r'(?<![\w/#&])#([A-Za-z_][\w/-]*)')
TASK_PATTERN = re.compile(r'^\s*[-*+]\s+\[([ xX])\]\s+(.*)$')
FENCE_PATTERN = re.compile(r'^\s*(```|~~~)')

# Known failure modes and what a user can do about them
ERROR_SUGGESTIONS = {
    "obsidian_connection": [
        "Ensure Obsidian is running with the Local REST API plugin enabled",
        "Check that the API is reachable at the configured OBSIDIAN_API_URL",
        "Verify OBSIDIAN_API_KEY matches the key shown in the plugin settings",
    ],
    "smart_connections": [
        "Ensure the Smart Connections plugin is installed and enabled",
        "Check that embeddings have been generated for your vault",
    ],
    "file_access": [
        "Check that the note exists and the path is relative to the vault root",
        "Paths without an extension are treated as .md notes",
    ],
    "circuit_open": [
        "The service failed repeatedly and is paused; retry after the recovery timeout",
        "Use the obsidian_cache tool with action 'reset_breakers' once the service is back",
    ],
}


# ============== Exceptions ==============

class PathValidationError(Exception):
    """Raised when path validation fails."""
    pass


# ============== Helper Functions ==============

def parse_frontmatter(content: str) -> tuple[dict, str]:
    """Extract YAML frontmatter and body from note content."""
    frontmatter = {}
    body = content

    match = FRONTMATTER_PATTERN.match(content)
    if match:
        try:
            frontmatter = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError:
            pass
        if not isinstance(frontmatter, dict):
            frontmatter = {}
        body = content[match.end():]

    return frontmatter, body


def frontmatter_tags(frontmatter: dict) -> list[str]:
    """Return frontmatter tags as strings without a leading '#'."""
    raw_tags = frontmatter.get("tags") or []
    if isinstance(raw_tags, str):
        raw_tags = [t for t in re.split(r'[,\s]+', raw_tags) if t]
    return [str(t).lstrip("#") for t in raw_tags]


def note_title(path: str, frontmatter: dict, body: str) -> str:
    """Frontmatter title, then first H1, then the file stem."""
    title = frontmatter.get("title")
    if isinstance(title, str) and title.strip():
        return title.strip()
    for line in body.splitlines():
        match = HEADING_PATTERN.match(line)
        if match and len(match.group(1)) == 1:
            return match.group(2).strip()
    return Path(path).stem


def make_cache_key(namespace: str, **params: Any) -> str:
    """Derive a deterministic cache key from request parameters."""
    return f"{namespace}:{json.dumps(params, sort_keys=True, default=str)}"


def estimate_size(value: Any) -> int:
    """Approximate the memory footprint of a cached value in bytes.

    Structural estimate, not exact; always positive so accounting only
    grows on insert and shrinks on removal.
    """
    if value is None:
        return 8
    if isinstance(value, bool):
        return 4
    if isinstance(value, (int, float)):
        return 8
    if isinstance(value, str):
        return len(value) * 2
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    if isinstance(value, BaseModel):
        return estimate_size(value.model_dump())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return estimate_size(dataclasses.asdict(value))
    if isinstance(value, Mapping):
        return 24 + sum(estimate_size(k) + estimate_size(v) for k, v in value.items())
    if isinstance(value, (list, tuple, set, frozenset)):
        return 24 + sum(estimate_size(item) for item in value)
    return 16


# ============== Security Validation ==============

def normalize_note_path(path_str: str) -> str:
    """Normalize a vault-relative note path for the REST API.

    Converts backslashes, strips a leading slash, applies NFC unicode
    normalization and appends '.md' when the name has no extension.

    Raises:
        PathValidationError: If the path is empty or attempts traversal
    """
    if not path_str or not path_str.strip():
        raise PathValidationError("Path cannot be empty")

    if "\0" in path_str:
        raise PathValidationError("Invalid path: null bytes detected")

    normalized = unicodedata.normalize("NFC", path_str.strip()).replace("\\", "/")

    if any(part == ".." for part in normalized.split("/")):
        raise PathValidationError("Path traversal detected: '..' is not allowed")

    normalized = normalized.lstrip("/")
    if not normalized:
        raise PathValidationError("Path cannot be empty")

    if "." not in normalized.rsplit("/", 1)[-1]:
        normalized += ".md"

    return normalized


def validate_path_within_vault(path_str: str, vault_path: Path) -> Path:
    """Validate that a path is safely within the vault directory.

    Args:
        path_str: The path string to validate (relative path or note identifier)
        vault_path: The vault root path

    Returns:
        The validated absolute Path

    Raises:
        PathValidationError: If the path attempts to escape the vault
    """
    # Reject empty paths
    if not path_str or not path_str.strip():
        raise PathValidationError("Path cannot be empty")

    # Reject paths with ".." components (path traversal attempt)
    if ".." in path_str:
        raise PathValidationError("Path traversal detected: '..' is not allowed")

    # Reject absolute paths
    if path_str.startswith("/") or (len(path_str) > 1 and path_str[1] == ":"):
        raise PathValidationError("Absolute paths are not allowed")

    # Build the full path and resolve it
    full_path = (vault_path / path_str).resolve()
    vault_resolved = vault_path.resolve()

    # Verify the resolved path is within the vault
    try:
        full_path.relative_to(vault_resolved)
    except ValueError:
        raise PathValidationError(f"Path escapes vault directory: {path_str}")

    return full_path


def format_error(error: BaseException, context: str, suggestions: list[str] | None = None) -> str:
    """Render an error with its context and recovery suggestions."""
    lines = [f"Error: {context}: {error}"]
    lines.extend(f"  - {s}" for s in suggestions or [])
    return "\n".join(lines)
