"""Link resolution and caching module."""

from .types import (
    ExtractionFailed,
    LinkUnresolvable,
    MetadataResolver,
    Resolution,
    ResolutionError,
    ToolUnavailable,
)
from .extractor import YtDlpResolver
from .cache import ResolutionCache

__all__ = [
    # Types
    "MetadataResolver",
    "Resolution",
    # Errors
    "ResolutionError",
    "ExtractionFailed",
    "LinkUnresolvable",
    "ToolUnavailable",
    # Implementations
    "YtDlpResolver",
    "ResolutionCache",
]
