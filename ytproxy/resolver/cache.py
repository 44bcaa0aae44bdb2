"""
Resolution cache.

In-memory cache of link resolutions with staleness tracking, bounded LRU
eviction and single-flight coalescing of concurrent resolutions.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Callable, Optional

from .types import MetadataResolver, Resolution, ResolutionError

logger = logging.getLogger(__name__)

# Platforms sign stream URLs for a limited time; refresh well before that
DEFAULT_MAX_AGE_SECONDS = 600
DEFAULT_MAX_ENTRIES = 256


class ResolutionCache:
    """
    Cache of resolutions keyed by canonical link.

    At most one resolution per link is in flight at any time. Requesters that
    arrive while one is running await the same task and share its result or
    its exception. Failures are never cached.

    Usage:
        cache = ResolutionCache(YtDlpResolver(), max_age=600)
        resolution = await cache.get_or_resolve(link)
    """

    def __init__(
        self,
        resolver: MetadataResolver,
        max_age: float = DEFAULT_MAX_AGE_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize resolution cache.

        Args:
            resolver: Resolver called on cache misses
            max_age: Seconds after which a resolution is re-resolved
            max_entries: Maximum number of cached links (LRU eviction)
            clock: Time source, overridable in tests
        """
        self._resolver = resolver
        self._max_age = max_age
        self._max_entries = max_entries
        self._clock = clock

        self._entries: "OrderedDict[str, Resolution]" = OrderedDict()
        self._pending: dict[str, "asyncio.Task[Resolution]"] = {}
        self._lock = asyncio.Lock()

        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, link: object) -> bool:
        return link in self._entries

    @property
    def max_age(self) -> float:
        return self._max_age

    def peek(self, link: str) -> Optional[Resolution]:
        """Get the cached resolution for a link without touching recency."""
        return self._entries.get(link)

    def is_pending(self, link: str) -> bool:
        """Check if a resolution for the link is in flight."""
        return link in self._pending

    async def get_or_resolve(self, link: str) -> Resolution:
        """
        Get a fresh resolution for a link, resolving it if needed.

        Args:
            link: Canonical link

        Returns:
            Cached or freshly resolved Resolution

        Raises:
            ResolutionError: If the resolution failed
        """
        async with self._lock:
            cached = self._entries.get(link)
            if cached is not None and not cached.is_stale(self._max_age, self._clock()):
                self._entries.move_to_end(link)
                self.hits += 1
                return cached

            task = self._pending.get(link)
            if task is None:
                self.misses += 1
                if cached is not None:
                    logger.info(f"Cached resolution is stale, refreshing: {link}")
                else:
                    logger.info(f"Resolving: {link}")
                task = asyncio.ensure_future(self._resolve(link))
                task.add_done_callback(_consume_exception)
                self._pending[link] = task
            else:
                logger.debug(f"Joining in-flight resolution: {link}")

        # Shielded so one requester going away doesn't cancel the others
        return await asyncio.shield(task)

    async def mark_stale(self, link: str, resolution: Resolution) -> bool:
        """
        Age out a cached resolution so the next request re-resolves it.

        The entry is only touched if it is still the given resolution, so a
        newer one stored in the meantime survives.

        Returns:
            True if the entry was marked stale
        """
        async with self._lock:
            if self._entries.get(link) is not resolution:
                return False
            self._entries[link] = replace(resolution, resolved_at=self._clock() - self._max_age)
            logger.debug(f"Marked resolution stale: {link}")
            return True

    async def _resolve(self, link: str) -> Resolution:
        """Run the resolver and store its result. Always clears the pending marker."""
        try:
            started = self._clock()
            try:
                resolution = await self._resolver.resolve(link)
            except ResolutionError as e:
                logger.warning(f"Resolution failed for {link}: {type(e).__name__}: {e}")
                raise

            resolution = replace(resolution, resolved_at=self._clock())
            async with self._lock:
                self._store(link, resolution)

            logger.debug(
                f"Resolved {link} in {self._clock() - started:.2f}s "
                f"(title={resolution.title!r}, image={'yes' if resolution.image_url else 'no'})"
            )
            return resolution
        finally:
            async with self._lock:
                self._pending.pop(link, None)

    def _store(self, link: str, resolution: Resolution) -> None:
        """Store a resolution, evicting the least recently used entry if full."""
        self._entries[link] = resolution
        self._entries.move_to_end(link)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted least recently used resolution: {evicted}")


def _consume_exception(task: "asyncio.Task[Resolution]") -> None:
    """Retrieve the task exception so an unawaited failure isn't reported as lost."""
    if not task.cancelled():
        task.exception()
