"""
Pattern extraction for Obsidian Research MCP Server.

Runs regular expressions across vault notes and collects matches with
surrounding context and per-pattern statistics.
"""

import re
import time
from collections import Counter

import structlog

from .cache import CacheStore
from .models import PatternExtractionResult, PatternMatch, PatternStatistics
from .utils import make_cache_key
from .vault import VAULT_FILES_TAG, VaultService, file_tag

logger = structlog.get_logger(__name__)

PATTERN_EXTRACTION_TAG = "pattern-extraction"


def compile_patterns(patterns: list[str], case_sensitive: bool, whole_word: bool) -> list[re.Pattern[str]]:
    """Compile user patterns.

    Raises:
        ValueError: If a pattern is not a valid regular expression
    """
    flags = 0 if case_sensitive else re.IGNORECASE
    compiled = []
    for pattern in patterns:
        source = rf"\b(?:{pattern})\b" if whole_word else pattern
        try:
            compiled.append(re.compile(source, flags | re.MULTILINE))
        except re.error as e:
            raise ValueError(f"Invalid pattern '{pattern}': {e}") from e
    return compiled


def in_folders(path: str, folders: list[str] | None) -> bool:
    if not folders:
        return True
    return any(path.startswith(folder.strip("/") + "/") for folder in folders)


class PatternExtractor:
    """Extracts regex matches across the vault, caching results per request."""

    def __init__(self, vault: VaultService, cache: CacheStore):
        self.vault = vault
        self.cache = cache

    async def extract(
        self,
        patterns: list[str],
        folders: list[str] | None = None,
        context_window: int = 2,
        case_sensitive: bool = False,
        whole_word: bool = False,
        max_matches: int = 100,
        include_statistics: bool = True,
    ) -> PatternExtractionResult:
        if not patterns:
            raise ValueError("At least one pattern is required")

        compiled = compile_patterns(patterns, case_sensitive, whole_word)
        key = make_cache_key(
            "patterns",
            patterns=patterns,
            folders=folders,
            context_window=context_window,
            case_sensitive=case_sensitive,
            whole_word=whole_word,
            max_matches=max_matches,
            include_statistics=include_statistics,
        )
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        start = time.perf_counter()
        files = [f for f in await self.vault.list_files() if in_folders(f, folders)]
        logger.info("pattern_extraction_started", patterns=len(patterns), files=len(files))

        matches: list[PatternMatch] = []
        truncated = False
        for read in await self.vault.read_notes(files):
            if truncated:
                break
            if not read.success:
                continue
            lines = read.note.content.split("\n")
            for line_idx, line in enumerate(lines):
                for pattern, regex in zip(patterns, compiled):
                    for found in regex.finditer(line):
                        if len(matches) >= max_matches:
                            truncated = True
                            break
                        lo = max(0, line_idx - context_window)
                        hi = min(len(lines), line_idx + context_window + 1)
                        matches.append(PatternMatch(
                            pattern=pattern,
                            path=read.path,
                            line_number=line_idx + 1,
                            match=found.group(0),
                            context="\n".join(lines[lo:hi]),
                        ))
                    if truncated:
                        break
                if truncated:
                    break

        result = PatternExtractionResult(
            patterns=patterns,
            matches=matches,
            statistics=self._statistics(patterns, matches) if include_statistics else [],
            files_searched=len(files),
            truncated=truncated,
            execution_time_ms=round((time.perf_counter() - start) * 1000, 2),
        )

        self.cache.set(
            key,
            result,
            dependencies=[*(file_tag(f) for f in files), VAULT_FILES_TAG, PATTERN_EXTRACTION_TAG],
        )
        logger.info(
            "pattern_extraction_completed",
            matches=len(matches),
            truncated=truncated,
            duration_ms=result.execution_time_ms,
        )
        return result

    @staticmethod
    def _statistics(patterns: list[str], matches: list[PatternMatch]) -> list[PatternStatistics]:
        stats = []
        for pattern in patterns:
            own = [m for m in matches if m.pattern == pattern]
            counts = Counter(m.match for m in own)
            stats.append(PatternStatistics(
                pattern=pattern,
                total_matches=len(own),
                file_count=len({m.path for m in own}),
                unique_matches=len(counts),
                top_matches=counts.most_common(5),
            ))
        return stats
