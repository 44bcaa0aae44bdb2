"""
Request path parsing.

Players address media as /<link>/ for audio and /<link>/cover.jpg for
artwork, where <link> is the source URL, percent-encoded or not.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import unquote, urlsplit

USAGE = "Usage: GET /<URL>/[cover.jpg]"

IMAGE_STEMS = ("cover", "folder", "front", "album", "albumart", "thumb", "thumbnail")
IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "webp")

IMAGE_FILENAME = re.compile(
    r"^(?:%s)\.(?:%s)$" % ("|".join(IMAGE_STEMS), "|".join(IMAGE_EXTENSIONS)),
    re.IGNORECASE,
)

LINK_SCHEMES = ("http", "https")


class ResourceKind(Enum):
    """What a request path asks for."""

    AUDIO = "audio"
    IMAGE = "image"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class ParsedRequest:
    """Result of parsing a request path."""

    kind: ResourceKind
    link: Optional[str] = None
    variant: Optional[str] = None  # Image filename, e.g. "cover.jpg"
    reason: str = ""  # Why a path is malformed

    @property
    def is_malformed(self) -> bool:
        return self.kind is ResourceKind.MALFORMED


def _malformed(reason: str) -> ParsedRequest:
    return ParsedRequest(kind=ResourceKind.MALFORMED, reason=reason)


def is_image_filename(name: str) -> bool:
    """Check if a filename is one of the recognized artwork names."""
    return bool(IMAGE_FILENAME.match(name))


def is_valid_link(link: str) -> bool:
    """Check if a decoded link is an absolute http(s) URL."""
    try:
        parts = urlsplit(link)
    except ValueError:
        return False
    return parts.scheme.lower() in LINK_SCHEMES and bool(parts.hostname)


def parse_request_path(raw_path: str) -> ParsedRequest:
    """
    Classify a raw request target.

    Args:
        raw_path: Undecoded path and query string as sent by the client

    Returns:
        ParsedRequest; malformed input yields ResourceKind.MALFORMED and
        never raises
    """
    if not raw_path.startswith("/") or raw_path.startswith("//"):
        return _malformed("Path must start with a single '/'")

    body = raw_path[1:]
    if "/" not in body:
        return _malformed("No '/' or '/cover.*' after the URL")

    raw_link, tail = body.rsplit("/", 1)
    if not raw_link:
        return _malformed("Empty URL")

    if tail:
        if not is_image_filename(tail):
            return _malformed(f"Unrecognized file name after the URL: {tail!r}")
        kind = ResourceKind.IMAGE
    else:
        kind = ResourceKind.AUDIO

    link = unquote(raw_link)
    if not is_valid_link(link):
        return _malformed(f"Not a valid http(s) URL: {link!r}")

    return ParsedRequest(kind=kind, link=link, variant=tail or None)
