"""
Main entry point for Obsidian Research MCP Server.

This module provides the main() function and server initialization.
"""

import asyncio

from mcp.server.stdio import stdio_server

from .config import settings
from .context import build_context
from .logging import configure_logging, get_logger
from .tools import create_server


def main():
    """Main entry point."""
    configure_logging(settings.log_level)
    logger = get_logger(__name__)

    async def run():
        context = build_context(settings)
        server = create_server(context)
        try:
            if not await context.client.is_available():
                logger.warning("obsidian_api_unreachable", api_url=settings.api_url)

            if settings.cache_enabled and settings.cache_warmup_keys:
                await context.cache.warm_up(context.vault.load_cache_entry)

            logger.info("server_starting", cache_enabled=settings.cache_enabled)
            async with stdio_server() as (read_stream, write_stream):
                await server.run(read_stream, write_stream, server.create_initialization_options())
        finally:
            await context.aclose()

    asyncio.run(run())


if __name__ == "__main__":
    main()
