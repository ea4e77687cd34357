"""
Tests for sections, pattern extraction, search and structure extraction.
"""

import pytest


@pytest.fixture
def sections(vault, cache):
    from obsidian_research.sections import SectionOperations
    return SectionOperations(vault, cache)


@pytest.fixture
def patterns(vault, cache):
    from obsidian_research.patterns import PatternExtractor
    return PatternExtractor(vault, cache)


@pytest.fixture
def search(client, cache, resilience):
    from obsidian_research.search import SearchService
    return SearchService(client, cache, resilience)


@pytest.fixture
def structure(vault, cache):
    from obsidian_research.structure import StructureExtractor
    return StructureExtractor(vault, cache)


# ============== Tests for split_sections() ==============

class TestSplitSections:
    """Tests for heading-based section splitting."""

    def test_nested_sections(self):
        """Test a section spans its subsections up to the next sibling."""
        from obsidian_research.sections import split_sections

        content = "# Top\nintro\n## A\na text\n### A1\ndeep\n## B\nb text\n\n"
        result = split_sections(content)

        assert [s.title for s in result] == ["Top", "A", "A1", "B"]
        top, a, a1, b = result
        assert top.subsections == ["A", "B"]
        assert a.subsections == ["A1"]
        assert a.start_line == 3
        assert a.end_line == 6
        assert a.content == "a text\n### A1\ndeep"
        assert b.content == "b text"
        assert b.end_line == 8

    def test_headings_in_code_fences_ignored(self):
        """Test lines starting with '#' inside fences are not headings."""
        from obsidian_research.sections import split_sections

        content = "# Real\n```bash\n# comment\n```\n"
        result = split_sections(content)

        assert [s.title for s in result] == ["Real"]

    def test_no_headings(self):
        """Test plain text yields no sections."""
        from obsidian_research.sections import split_sections

        assert split_sections("just text\n") == []

    def test_find_section_case_insensitive(self):
        """Test lookups ignore case and leading hashes."""
        from obsidian_research.sections import find_section, split_sections

        result = split_sections("# Top\n## Next Steps\nx\n")

        assert find_section(result, "## next steps").title == "Next Steps"
        assert find_section(result, "missing") is None


# ============== Tests for SectionOperations ==============

class TestSectionOperations:
    """Tests for reading and editing note sections."""

    async def test_get_sections(self, sections):
        """Test sections and the outline of a note."""
        result = await sections.get_sections("Concepts/Python")

        assert result.path == "Concepts/Python.md"
        assert result.title == "Python"
        assert [s.title for s in result.sections] == ["Python", "Features", "History"]
        assert [o["level"] for o in result.outline] == [1, 2, 2]
        features = result.sections[1]
        assert "- [x] Dynamic typing" in features.content
        assert features.start_line == 12

    async def test_get_sections_filtered(self, sections):
        """Test only requested headings are returned; the outline stays complete."""
        result = await sections.get_sections("Concepts/Python.md", ["history", "Nope"])

        assert [s.title for s in result.sections] == ["History"]
        assert len(result.outline) == 3

    async def test_get_section(self, sections):
        """Test single-section lookup."""
        section = await sections.get_section("Concepts/Python.md", "History")

        assert section.content.strip() == "Created by Guido van Rossum."
        assert await sections.get_section("Concepts/Python.md", "Nope") is None

    async def test_replace_section(self, sections, fake_vault):
        """Test replace swaps the body under a heading and keeps the rest."""
        section = await sections.update_section("Concepts/Python.md", "Features", "- [x] Everything")

        assert section.content == "- [x] Everything"
        content = fake_vault.files["Concepts/Python.md"]
        assert "Dynamic typing" not in content
        assert "## History\n\nCreated by Guido van Rossum." in content

    async def test_append_and_prepend(self, sections, fake_vault):
        """Test append goes after the last line and prepend right after the heading."""
        await sections.update_section("Concepts/Python.md", "History", "More history.", mode="append")
        await sections.update_section("Concepts/Python.md", "Features", "Intro line.", mode="prepend")

        content = fake_vault.files["Concepts/Python.md"]
        assert "Created by Guido van Rossum.\nMore history." in content
        assert "## Features\nIntro line.\n" in content

    async def test_update_invalidates_cached_sections(self, sections):
        """Test a section edit is visible to the next read."""
        await sections.get_sections("Concepts/Python.md")
        await sections.update_section("Concepts/Python.md", "History", "Rewritten.")

        result = await sections.get_sections("Concepts/Python.md")
        assert result.sections[2].content == "Rewritten."

    async def test_update_opening_unclosed_fence(self, sections, fake_vault):
        """Test content that fences off later headings still returns the edited section."""
        section = await sections.update_section("Concepts/Python.md", "Features", "```python\nprint(1)")

        assert section.title == "Features"
        assert section.start_line == 12
        assert "## History" in section.content
        assert "## Features\n```python\nprint(1)\n\n## History" in fake_vault.files["Concepts/Python.md"]

    async def test_update_missing_section(self, sections):
        """Test editing an unknown heading raises ValueError."""
        with pytest.raises(ValueError, match="Section not found"):
            await sections.update_section("Concepts/Python.md", "Nope", "x")

    async def test_update_invalid_mode(self, sections):
        """Test an unknown mode raises ValueError."""
        with pytest.raises(ValueError, match="Unknown update mode"):
            await sections.update_section("Concepts/Python.md", "History", "x", mode="merge")


# ============== Tests for PatternExtractor ==============

class TestPatternExtractor:
    """Tests for regex extraction across the vault."""

    async def test_case_insensitive_by_default(self, patterns):
        """Test matches are found regardless of case."""
        result = await patterns.extract(["TODO"])

        assert result.files_searched == 4
        assert len(result.matches) == 3
        assert {m.path for m in result.matches} == {"Concepts/Python.md", "Sessions/2024-01-20 Setup.md"}
        assert result.truncated is False

    async def test_case_sensitive_statistics(self, patterns):
        """Test statistics for a case-sensitive pattern."""
        result = await patterns.extract(["TODO"], case_sensitive=True)

        stats = result.statistics[0]
        assert stats.total_matches == 2
        assert stats.file_count == 1
        assert stats.unique_matches == 1
        assert stats.top_matches == [("TODO", 2)]

    async def test_context_window(self, patterns):
        """Test context covers the configured number of surrounding lines."""
        result = await patterns.extract(["Guido"], context_window=0)
        match = result.matches[0]

        assert match.context == "Created by Guido van Rossum."
        assert match.line_number == 19

        wide = await patterns.extract(["Guido"], context_window=1)
        assert wide.matches[0].context == "\nCreated by Guido van Rossum.\n"

    async def test_folder_filter(self, patterns):
        """Test folders restrict the files searched."""
        result = await patterns.extract(["Python"], folders=["Concepts"])

        assert result.files_searched == 2
        assert all(m.path.startswith("Concepts/") for m in result.matches)

    async def test_whole_word(self, patterns):
        """Test whole_word rejects partial matches."""
        partial = await patterns.extract(["Pyth"])
        whole = await patterns.extract(["Pyth"], whole_word=True)

        assert partial.matches
        assert whole.matches == []

    async def test_max_matches_truncates(self, patterns):
        """Test extraction stops at max_matches."""
        result = await patterns.extract(["o"], max_matches=2)

        assert len(result.matches) == 2
        assert result.truncated is True

    async def test_invalid_pattern(self, patterns):
        """Test a malformed regex raises ValueError."""
        with pytest.raises(ValueError, match="Invalid pattern"):
            await patterns.extract(["("])

    async def test_empty_patterns(self, patterns):
        """Test at least one pattern is required."""
        with pytest.raises(ValueError):
            await patterns.extract([])

    async def test_results_invalidated_by_write(self, patterns, vault):
        """Test a write to a searched file drops the cached extraction."""
        first = await patterns.extract(["TODO"], case_sensitive=True)
        await vault.write_note("README.md", "TODO: one more\n")
        second = await patterns.extract(["TODO"], case_sensitive=True)

        assert len(first.matches) == 2
        assert len(second.matches) == 3


# ============== Tests for SearchService ==============

class TestSearchService:
    """Tests for semantic search with text fallback."""

    async def test_semantic_results_filtered_by_threshold(self, search, fake_vault):
        """Test semantic hits below the threshold are dropped."""
        fake_vault.smart_results = [
            {"path": "Concepts/Python.md", "score": 0.91, "text": "Python is a programming language."},
            {"path": "README.md", "score": 0.4, "text": "Plain note without headings."},
        ]

        response = await search.search("programming language")

        assert response.method == "semantic"
        assert [h.path for h in response.results] == ["Concepts/Python.md"]
        assert response.results[0].title == "Python"
        assert "programming" in response.results[0].snippet

    async def test_falls_back_to_text_search(self, search, fake_vault):
        """Test a missing semantic endpoint falls back to full-text search."""
        response = await search.search("Docker")

        assert response.method == "text"
        assert [h.path for h in response.results] == [
            "Concepts/JavaScript.md",
            "Sessions/2024-01-20 Setup.md",
        ]
        assert fake_vault.count("POST", "/search/simple/") == 1

    async def test_text_search_folder_filter(self, search):
        """Test folders restrict text search results."""
        response = await search.search("Docker", folders=["Sessions"])

        assert [h.path for h in response.results] == ["Sessions/2024-01-20 Setup.md"]

    async def test_results_are_cached(self, search, fake_vault):
        """Test repeating a query does not hit the API again."""
        fake_vault.smart_results = [{"path": "README.md", "score": 0.9, "text": "Plain"}]

        first = await search.search("plain")
        second = await search.search("plain")

        assert first == second
        assert fake_vault.count("POST", "/search/smart") == 1

    async def test_semantic_disabled(self, client, cache, resilience, fake_vault):
        """Test text search is used directly when semantic search is off."""
        from obsidian_research.search import SearchService

        service = SearchService(client, cache, resilience, semantic_enabled=False)
        response = await service.search("Guido")

        assert response.method == "text"
        assert fake_vault.count("POST", "/search/smart") == 0

    async def test_limit_applied(self, search):
        """Test the number of results is capped by limit."""
        response = await search.search("Python", limit=1)

        assert len(response.results) == 1

    async def test_empty_query(self, search):
        """Test a blank query raises ValueError."""
        with pytest.raises(ValueError):
            await search.search("   ")

    def test_extract_snippet(self):
        """Test snippets center on the first matching term."""
        from obsidian_research.search import extract_snippet

        text = "x" * 100 + " needle here"
        assert "needle" in extract_snippet(text, "needle")
        assert extract_snippet("short text", "absent") == "short text"


# ============== Tests for StructureExtractor ==============

class TestStructureExtractor:
    """Tests for structure extraction."""

    async def test_extracts_all_types(self, structure):
        """Test headings, links, tags, tasks and code blocks are collected."""
        result = await structure.extract(["Concepts/Python", "Concepts/JavaScript.md"])
        python, javascript = result.files

        assert [h["text"] for h in python.headings] == ["Python", "Features", "History"]
        assert python.headings[0] == {"level": 1, "text": "Python", "line": 8}
        assert python.tasks == [
            {"text": "Dynamic typing", "completed": True, "line": 14},
            {"text": "Pattern matching #todo", "completed": False, "line": 15},
        ]
        assert python.tags == ["programming", "language", "todo"]

        assert [h["text"] for h in javascript.headings] == ["JavaScript"]
        assert javascript.code_blocks == [{"language": "python", "start_line": 7, "end_line": 10}]
        assert {"type": "wiki", "target": "Python", "line": 5} in javascript.links
        assert {
            "type": "markdown", "text": "Docker docs", "target": "https://docs.docker.com", "line": 5
        } in javascript.links

        assert result.totals == {"headings": 4, "links": 3, "tags": 3, "tasks": 2, "code_blocks": 1}

    async def test_selected_types_only(self, structure):
        """Test unrequested types stay empty."""
        result = await structure.extract(["Concepts/Python.md"], ["headings"])

        assert result.files[0].headings
        assert result.files[0].tasks == []
        assert result.totals == {"headings": 3}

    async def test_missing_note_reported(self, structure):
        """Test unreadable notes carry an error instead of failing the batch."""
        result = await structure.extract(["Missing.md", "README.md"])

        assert result.files[0].error
        assert result.files[1].error is None

    async def test_top_tags(self, structure):
        """Test tag counts across files."""
        result = await structure.extract(["Concepts/Python.md"])

        assert ("programming", 1) in result.top_tags

    async def test_invalid_arguments(self, structure):
        """Test empty paths and unknown types are rejected."""
        with pytest.raises(ValueError):
            await structure.extract([])
        with pytest.raises(ValueError, match="Unknown extract types"):
            await structure.extract(["README.md"], ["diagrams"])


# ============== Tests for RelationshipService ==============

@pytest.fixture
def relationships(vault, cache):
    from obsidian_research.relationships import RelationshipService
    return RelationshipService(vault, cache)


PLAN_NOTE = "# Plan\n\nBuilds on [[Python]] and [[Nowhere]] #programming\n\n![[diagram.png]]\n"


class TestScanLinks:
    """Tests for link and embed scanning."""

    def test_links_embeds_and_fences(self):
        """Test embeds are kept apart from links and fenced code is skipped."""
        from obsidian_research.relationships import LinkResolver, scan_links

        resolver = LinkResolver(["Concepts/Python.md", "attachments/diagram.png", "Docs/Setup Guide.md"])
        content = (
            "See [[python|the language]] and [guide](Docs/Setup%20Guide.md).\n"
            "![[diagram.png]] [site](https://example.com)\n"
            "```\n[[Python]]\n```\n"
        )

        links, embeds = scan_links(content, resolver)

        assert links == {"Concepts/Python.md": [1], "Docs/Setup Guide.md": [1]}
        assert embeds == {"attachments/diagram.png": [2]}

    def test_unresolved_link_keeps_text(self):
        """Test a link to a missing note resolves to its own text."""
        from obsidian_research.relationships import LinkResolver

        assert LinkResolver(["README.md"]).resolve("Nowhere") == "Nowhere"


class TestRelationshipService:
    """Tests for relationship queries over the link index."""

    async def test_backlinks_by_default(self, relationships):
        """Test backlinks with the line that links back."""
        result = await relationships.get_relationships(["Concepts/Python"])
        python = result.files[0]

        assert python.path == "Concepts/Python.md"
        assert [b.path for b in python.backlinks] == ["Concepts/JavaScript.md"]
        assert python.backlinks[0].contexts == [
            {"line": 5, "text": "It links to [[Python]] and [Docker docs](https://docs.docker.com)."}
        ]
        assert python.links == []

    async def test_outgoing_links(self, relationships):
        """Test outgoing links carry the lines of the linking note."""
        result = await relationships.get_relationships(["Concepts/Python.md"], ["links"])

        link = result.files[0].links[0]
        assert link.path == "Concepts/JavaScript.md"
        assert link.exists is True
        assert link.contexts[0]["line"] == 10

    async def test_all_types_after_new_note(self, relationships, vault, cache):
        """Test a new note is indexed: links, embeds, tags and shared tags."""
        from obsidian_research.relationships import INDEX_KEY

        await relationships.build_index()
        await vault.write_note("Ideas/Plan", PLAN_NOTE)
        assert cache.get(INDEX_KEY) is None

        result = await relationships.get_relationships(["Ideas/Plan", "Concepts/Python"], ["all"])
        plan, python = result.files

        assert [(link.path, link.exists) for link in plan.links] == [
            ("Concepts/Python.md", True),
            ("Nowhere", False),
        ]
        assert [e.path for e in plan.embeds] == ["attachments/diagram.png"]
        assert plan.embeds[0].contexts == [{"line": 5, "text": "![[diagram.png]]"}]
        assert plan.tags == ["programming"]
        assert {b.path for b in python.backlinks} == {"Concepts/JavaScript.md", "Ideas/Plan.md"}
        assert [(s.path, s.shared_tags) for s in python.shared_tags] == [("Ideas/Plan.md", ["programming"])]
        assert result.index_stats["notes"] == 5

    async def test_without_context_and_limited(self, relationships, vault):
        """Test include_context=False drops contexts and max_results caps each type."""
        await vault.write_note("Ideas/Plan", PLAN_NOTE)

        result = await relationships.get_relationships(
            ["Concepts/Python"], ["backlinks"], include_context=False, max_results=1
        )

        assert len(result.files[0].backlinks) == 1
        assert result.files[0].backlinks[0].contexts == []

    async def test_missing_note_reported(self, relationships):
        """Test an unknown path carries an error instead of failing the batch."""
        result = await relationships.get_relationships(["Missing", "README"])

        assert result.files[0].error == "Note not found: Missing.md"
        assert result.files[1].error is None

    async def test_invalid_arguments(self, relationships):
        """Test empty paths and unknown types are rejected."""
        with pytest.raises(ValueError):
            await relationships.get_relationships([])
        with pytest.raises(ValueError, match="Unknown relationship types"):
            await relationships.get_relationships(["README"], ["mentions"])


# ============== Tests for VaultExplorer ==============

@pytest.fixture
def explorer(vault, cache):
    from obsidian_research.explore import VaultExplorer
    return VaultExplorer(vault, cache)


class TestVaultExplorer:
    """Tests for filtered vault listings."""

    async def test_overview(self, explorer):
        """Test overview counts files per extension and top-level folder."""
        result = await explorer.explore("overview")

        assert result.total_files == 5
        assert result.total_folders == 3
        assert result.by_extension == {"md": 4, "png": 1}
        assert result.folders == {"Concepts": 2, "Sessions": 1, "attachments": 1}
        assert result.files == []

    async def test_list_folder_with_note_stats(self, explorer):
        """Test list mode adds content statistics for notes."""
        result = await explorer.explore(folder="Concepts/")

        assert [f.path for f in result.files] == ["Concepts/JavaScript.md", "Concepts/Python.md"]
        python = result.files[1]
        assert python.name == "Python.md"
        assert python.folder == "Concepts"
        assert python.extension == "md"
        assert python.tag_count == 3
        assert python.link_count == 1

    async def test_non_recursive(self, explorer):
        """Test recursive=False keeps only files directly in the folder."""
        result = await explorer.explore(recursive=False)

        assert [f.path for f in result.files] == ["README.md"]

    async def test_extension_filter(self, explorer):
        """Test extension filters and that attachments get no note statistics."""
        result = await explorer.explore(extensions=[".PNG"])

        assert [f.path for f in result.files] == ["attachments/diagram.png"]
        assert result.files[0].word_count is None

    async def test_name_and_exclude_patterns(self, explorer):
        """Test name and exclusion regexes combine with AND."""
        by_name = await explorer.explore(name_pattern="^py")
        excluded = await explorer.explore(extensions=["md"], exclude_patterns=["^concepts/"])

        assert [f.path for f in by_name.files] == ["Concepts/Python.md"]
        assert [f.path for f in excluded.files] == ["README.md", "Sessions/2024-01-20 Setup.md"]

    async def test_limit_truncates(self, explorer):
        """Test the file list is capped while totals stay complete."""
        result = await explorer.explore(limit=2)

        assert len(result.files) == 2
        assert result.total_files == 5
        assert result.truncated is True

    async def test_new_note_refreshes_listing(self, explorer, vault):
        """Test creating a note drops the cached overview."""
        await explorer.explore("overview")
        await vault.write_note("Ideas/New", "fresh")

        result = await explorer.explore("overview")
        assert result.total_files == 6

    async def test_invalid_arguments(self, explorer):
        """Test unknown modes and malformed patterns raise ValueError."""
        with pytest.raises(ValueError, match="Unknown explore mode"):
            await explorer.explore("tree")
        with pytest.raises(ValueError, match="Invalid pattern"):
            await explorer.explore(exclude_patterns=["("])
