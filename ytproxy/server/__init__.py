"""
HTTP server module.

Request path parsing, upstream stream relaying and the proxy server.
"""

from .link_codec import (
    USAGE,
    ParsedRequest,
    ResourceKind,
    is_image_filename,
    parse_request_path,
)
from .relay import (
    RelayOutcome,
    StreamRelay,
    UpstreamStreamFailure,
    content_type_for_extension,
)
from .proxy_server import ProxyServer

__all__ = [
    # Link codec
    "USAGE",
    "ParsedRequest",
    "ResourceKind",
    "is_image_filename",
    "parse_request_path",
    # Relay
    "RelayOutcome",
    "StreamRelay",
    "UpstreamStreamFailure",
    "content_type_for_extension",
    # Server
    "ProxyServer",
]
