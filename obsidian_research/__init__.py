# Obsidian Research MCP Server
#
# Package structure:
# - config.py: Settings loaded from OBSIDIAN_* environment variables
# - logging.py: structlog configuration
# - utils.py: Regex patterns, path validation, cache keys and error formatting
# - cache.py: CacheStore with TTL, LRU/memory eviction and dependency invalidation
# - resilience.py: Retry with backoff, circuit breakers and fallbacks
# - client.py: httpx client for the Local REST API and Smart Connections
# - models.py: Pydantic result models
# - vault.py: Cached, resilient note reads and writes
# - sections.py: Heading-based section reading and editing
# - patterns.py: Regex pattern extraction across the vault
# - search.py: Semantic search with text-search fallback
# - structure.py: Headings, links, tags, tasks and code block extraction
# - relationships.py: Link index with backlinks, embeds and shared tags
# - explore.py: Filtered vault listings and overviews
# - context.py: Service wiring from Settings
# - tools.py: MCP tool handlers and server factory
# - main.py: Entry point and server initialization
