"""
Service wiring for Obsidian Research MCP Server.

Builds the cache, resilience facade, API client and feature services
from Settings and hands them to the tool layer as one ServerContext.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass

from .cache import CacheOptions, CacheStore
from .client import ObsidianClient
from .config import Settings
from .explore import VaultExplorer
from .patterns import PatternExtractor
from .relationships import RelationshipService
from .resilience import CircuitBreakerConfig, ResilienceFacade, RetryPolicy, Sleep
from .search import SearchService
from .sections import SectionOperations
from .structure import StructureExtractor
from .vault import VaultService


@dataclass
class ServerContext:
    """Everything a tool handler needs, constructed once per server."""

    settings: Settings
    cache: CacheStore
    resilience: ResilienceFacade
    client: ObsidianClient
    vault: VaultService
    sections: SectionOperations
    patterns: PatternExtractor
    search: SearchService
    structure: StructureExtractor
    relationships: RelationshipService
    explorer: VaultExplorer

    async def aclose(self) -> None:
        await self.client.aclose()


def build_context(
    settings: Settings,
    *,
    client: ObsidianClient | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Sleep = asyncio.sleep,
) -> ServerContext:
    """Construct the services described by settings.

    client, clock and sleep can be supplied to run against a mock
    transport and a controllable clock.
    """
    cache = CacheStore(
        CacheOptions(
            enabled=settings.cache_enabled,
            default_ttl=settings.cache_ttl,
            max_size=settings.cache_max_size,
            max_memory_mb=settings.cache_max_memory_mb,
            warmup_keys=list(settings.cache_warmup_keys),
        ),
        clock=clock,
    )
    resilience = ResilienceFacade(
        RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            backoff_factor=settings.retry_backoff_factor,
        ),
        CircuitBreakerConfig(
            failure_threshold=settings.breaker_failure_threshold,
            recovery_timeout=settings.breaker_recovery_timeout,
            monitoring_window=settings.breaker_monitoring_window,
        ),
        clock=clock,
        sleep=sleep,
    )
    if client is None:
        client = ObsidianClient(
            settings.api_url,
            settings.api_key,
            verify_ssl=settings.verify_ssl,
            timeout=settings.request_timeout,
        )
    vault = VaultService(
        client,
        cache,
        resilience,
        vault_path=settings.vault_path,
        concurrency=settings.batch_concurrency,
    )
    return ServerContext(
        settings=settings,
        cache=cache,
        resilience=resilience,
        client=client,
        vault=vault,
        sections=SectionOperations(vault, cache),
        patterns=PatternExtractor(vault, cache),
        search=SearchService(
            client,
            cache,
            resilience,
            semantic_enabled=settings.smart_connections_enabled,
            default_threshold=settings.semantic_threshold,
            max_results=settings.max_search_results,
        ),
        structure=StructureExtractor(vault, cache),
        relationships=RelationshipService(vault, cache),
        explorer=VaultExplorer(vault, cache),
    )
