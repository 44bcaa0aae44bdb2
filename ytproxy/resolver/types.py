"""
Resolution types and errors.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable


class ResolutionError(Exception):
    """Base class for failures resolving a link."""

    def __init__(self, message: str, link: str = ""):
        super().__init__(message)
        self.link = link


class ToolUnavailable(ResolutionError):
    """The extractor process could not be started."""

    pass


class ExtractionFailed(ResolutionError):
    """The extractor failed or produced output that could not be used."""

    pass


class LinkUnresolvable(ResolutionError):
    """The extractor reports the link as unsupported, private or removed."""

    pass


@dataclass(frozen=True)
class Resolution:
    """
    Upstream media URLs resolved for a link.

    Stream URLs handed out by platforms are signed and short-lived, so a
    resolution is only trusted for a limited age (see is_stale).
    """

    audio_url: str
    image_url: Optional[str] = None
    title: Optional[str] = None
    duration: Optional[float] = None
    audio_ext: Optional[str] = None
    http_headers: dict[str, str] = field(default_factory=dict)
    resolved_at: float = field(default_factory=time.time)

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since this resolution was made."""
        if now is None:
            now = time.time()
        return now - self.resolved_at

    def is_stale(self, max_age: float, now: Optional[float] = None) -> bool:
        """Check if the resolution is too old to be served."""
        return self.age(now) >= max_age

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "audio_url": self.audio_url,
            "image_url": self.image_url,
            "title": self.title,
            "duration": self.duration,
            "audio_ext": self.audio_ext,
            "resolved_at": self.resolved_at,
        }


@runtime_checkable
class MetadataResolver(Protocol):
    """
    Protocol for resolving a link to upstream media URLs.

    Implementations are stateless between calls. The resolution cache is the
    only caller in the proxy.
    """

    async def resolve(self, link: str) -> Resolution:
        """
        Resolve a canonical link.

        Args:
            link: Canonical (decoded) source URL

        Returns:
            Fresh Resolution

        Raises:
            ResolutionError: ToolUnavailable, ExtractionFailed or
                LinkUnresolvable
        """
        ...
