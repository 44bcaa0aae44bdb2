"""
YtProxy Application.

Main orchestrator that wires together all components and manages lifecycle.
"""

import asyncio
import logging
import signal
from typing import Optional

from ytproxy.config import Config
from ytproxy.resolver import MetadataResolver, ResolutionCache, YtDlpResolver
from ytproxy.server import ProxyServer, StreamRelay

logger = logging.getLogger(__name__)


def create_resolver(config: Config) -> YtDlpResolver:
    """Create the yt-dlp resolver described by the configuration."""
    return YtDlpResolver(
        command=config.extractor.command,
        audio_format=config.extractor.format,
        extra_args=config.extractor.extra_args,
        timeout=config.extractor.timeout,
    )


class YtProxy:
    """
    Main YtProxy application.

    Orchestrates all components:
    - Metadata resolution (YtDlpResolver)
    - Resolution caching (ResolutionCache)
    - HTTP serving (ProxyServer, StreamRelay)

    Usage:
        config = load_config(...)
        app = YtProxy(config)
        await app.run()
    """

    def __init__(self, config: Config, resolver: Optional[MetadataResolver] = None):
        """
        Initialize YtProxy.

        Args:
            config: Validated configuration
            resolver: Resolver override (defaults to yt-dlp)
        """
        self._config = config
        self._resolver = resolver
        self._is_running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self._cache: Optional[ResolutionCache] = None
        self._server: Optional[ProxyServer] = None

    @property
    def cache(self) -> Optional[ResolutionCache]:
        return self._cache

    @property
    def server(self) -> Optional[ProxyServer]:
        return self._server

    async def start(self) -> None:
        """
        Start YtProxy and all components.

        Startup order:
        1. Resolver and resolution cache
        2. Proxy server

        Raises:
            OSError: If the server can't bind its address
        """
        logger.info("Starting YtProxy...")

        # 1. Resolver and cache
        resolver = self._resolver or create_resolver(self._config)
        self._cache = ResolutionCache(
            resolver,
            max_age=self._config.cache.max_age,
            max_entries=self._config.cache.max_entries,
        )

        # 2. Proxy server
        relay = StreamRelay(
            chunk_size=self._config.relay.chunk_size,
            connect_timeout=self._config.relay.connect_timeout,
        )
        self._server = ProxyServer(
            self._cache,
            relay,
            host=self._config.server.bind_address,
            port=self._config.server.port,
        )
        await self._server.start()

        self._is_running = True
        logger.info(f"YtProxy ready at {self._server.base_url}/<URL>/")

    async def stop(self) -> None:
        """Stop YtProxy and all components."""
        if not self._is_running:
            return

        logger.info("Stopping YtProxy...")
        self._is_running = False

        if self._server:
            try:
                await self._server.stop()
            except Exception as e:
                logger.warning(f"Error stopping proxy server: {e}")

        if self._cache:
            logger.info(
                f"Cache: {len(self._cache)} entries, "
                f"{self._cache.hits} hits, {self._cache.misses} misses"
            )

        logger.info("YtProxy stopped")

    async def run(self) -> None:
        """
        Run YtProxy until interrupted.

        Sets up signal handlers for graceful shutdown on SIGINT/SIGTERM.
        """
        loop = asyncio.get_running_loop()

        def handle_signal() -> None:
            logger.info("Shutdown signal received")
            self._shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, handle_signal)

        try:
            await self.start()

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        """Ask a running application to stop."""
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        """Check if the application is running."""
        return self._is_running
