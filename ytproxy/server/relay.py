"""
Stream relay.

Pipes an upstream HTTP body to a client response chunk by chunk, so
arbitrarily long audio streams never sit in memory.
"""

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from typing import Mapping, Optional

from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout, web

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024  # 64KB chunks
CONNECT_TIMEOUT_SECONDS = 30

# Request storage key holding the client response once its headers are sent
STARTED_RESPONSE_KEY = "ytproxy.started_response"

# Upstream content types too vague to pass on when a better hint exists
GENERIC_CONTENT_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

# Headers copied from the upstream response
FORWARDED_HEADERS = ("Content-Length", "Content-Range", "Accept-Ranges")

# Extensions yt-dlp reports that mimetypes doesn't know
EXTENSION_CONTENT_TYPES = {
    "webm": "audio/webm",
    "weba": "audio/webm",
    "m4a": "audio/mp4",
    "opus": "audio/ogg",
    "ogg": "audio/ogg",
    "mp3": "audio/mpeg",
    "flac": "audio/flac",
    "aac": "audio/aac",
    "webp": "image/webp",
}


class UpstreamStreamFailure(Exception):
    """Connecting to or reading from the upstream media URL failed."""

    def __init__(
        self,
        message: str,
        status: int = 0,
        response: Optional[web.StreamResponse] = None,
    ):
        super().__init__(message)
        self.status = status
        # Set when the client response was already started
        self.response = response


@dataclass
class RelayOutcome:
    """How a relay ended."""

    status: int
    response: web.StreamResponse
    bytes_sent: int = 0
    client_disconnected: bool = False


def content_type_for_extension(ext: Optional[str]) -> Optional[str]:
    """Guess a MIME type from a file extension like "m4a"."""
    if not ext:
        return None
    ext = ext.lower().lstrip(".")
    if ext in EXTENSION_CONTENT_TYPES:
        return EXTENSION_CONTENT_TYPES[ext]
    guessed, _ = mimetypes.guess_type(f"file.{ext}")
    return guessed


class StreamRelay:
    """
    Relays upstream media to a client.

    A fresh ClientSession is used per relay; long-running streams don't
    share a connection pool.

    Usage:
        relay = StreamRelay(chunk_size=64 * 1024)
        outcome = await relay.relay(request, "https://cdn.example/a.webm")
        return outcome.response
    """

    def __init__(
        self,
        chunk_size: int = STREAM_CHUNK_SIZE,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
    ):
        """
        Initialize stream relay.

        Args:
            chunk_size: Bytes read from upstream per write to the client
            connect_timeout: Seconds allowed to connect to upstream
        """
        self._chunk_size = chunk_size
        # No total timeout for streaming
        self._timeout = ClientTimeout(total=None, connect=connect_timeout)

    async def relay(
        self,
        request: web.Request,
        upstream_url: str,
        content_type: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> RelayOutcome:
        """
        Relay an upstream URL to the client of a request.

        Args:
            request: Client request; its response is written by the relay
            upstream_url: Resolved media URL
            content_type: Fallback content type when upstream sends none
            headers: Extra headers for the upstream request

        Returns:
            RelayOutcome with the prepared response

        Raises:
            UpstreamStreamFailure: If upstream can't be reached, answers with
                an error status or breaks off mid-stream
        """
        upstream_headers = dict(headers or {})
        # Body is passed through as-is, so Content-Length must match it
        upstream_headers["Accept-Encoding"] = "identity"

        # Forward Range header for seeking support
        range_header = request.headers.get("Range")
        if range_header:
            upstream_headers["Range"] = range_header
            logger.debug(f"Proxying with Range: {range_header}")

        try:
            logger.debug(f"Connecting to upstream URL: {upstream_url[:100]}...")
            async with ClientSession(timeout=self._timeout) as session:
                async with session.request(
                    request.method,
                    upstream_url,
                    headers=upstream_headers,
                ) as upstream_response:
                    if upstream_response.status not in (200, 206):
                        raise UpstreamStreamFailure(
                            f"Upstream error: {upstream_response.status}",
                            status=upstream_response.status,
                        )

                    response = web.StreamResponse(
                        status=upstream_response.status,
                        headers=self._response_headers(upstream_response, content_type),
                    )
                    if "Content-Length" not in response.headers:
                        response.enable_chunked_encoding()

                    logger.debug(f"Streaming upstream response, headers: {dict(response.headers)}")
                    return await self._pipe(request, response, upstream_response)

        except (ClientError, asyncio.TimeoutError) as e:
            raise UpstreamStreamFailure(f"Upstream connection failed: {type(e).__name__}: {e}") from e

    def _response_headers(
        self, upstream_response: ClientResponse, content_type: Optional[str]
    ) -> dict[str, str]:
        """Build client response headers from the upstream response."""
        upstream_headers = upstream_response.headers
        response_headers: dict[str, str] = {}

        upstream_type = upstream_headers.get("Content-Type", "")
        if upstream_type.split(";")[0].strip().lower() in GENERIC_CONTENT_TYPES and content_type:
            response_headers["Content-Type"] = content_type
        elif upstream_type:
            response_headers["Content-Type"] = upstream_type
        else:
            response_headers["Content-Type"] = "application/octet-stream"

        for name in FORWARDED_HEADERS:
            if name in upstream_headers:
                response_headers[name] = upstream_headers[name]

        return response_headers

    async def _start(self, request: web.Request, response: web.StreamResponse) -> None:
        """Send the response headers; later failures can only drop the connection."""
        await response.prepare(request)
        request[STARTED_RESPONSE_KEY] = response

    async def _pipe(
        self,
        request: web.Request,
        response: web.StreamResponse,
        upstream_response: ClientResponse,
    ) -> RelayOutcome:
        """Copy the upstream body to the client until either side ends."""
        bytes_sent = 0
        try:
            await self._start(request, response)

            if request.method == "HEAD":
                await response.write_eof()
                return RelayOutcome(status=response.status, response=response)

            content = upstream_response.content
            while True:
                try:
                    chunk = await content.read(self._chunk_size)
                except (ClientError, asyncio.TimeoutError) as e:
                    raise UpstreamStreamFailure(
                        f"Upstream broke off after {bytes_sent} bytes: {type(e).__name__}",
                        status=response.status,
                        response=response,
                    ) from e
                if not chunk:
                    break
                await response.write(chunk)
                bytes_sent += len(chunk)

            await response.write_eof()
            logger.debug(f"Finished streaming, sent {bytes_sent} bytes")
            return RelayOutcome(status=response.status, bytes_sent=bytes_sent, response=response)

        except (ConnectionResetError, ConnectionError):
            # Client stopped playback; leaving the context closes upstream
            logger.info(f"Client disconnected after {bytes_sent} bytes")
            return RelayOutcome(
                status=response.status,
                bytes_sent=bytes_sent,
                client_disconnected=True,
                response=response,
            )
        except asyncio.CancelledError:
            logger.info(f"Stream cancelled after {bytes_sent} bytes")
            raise
