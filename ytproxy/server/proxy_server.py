"""
Link Proxy Server.

HTTP server that resolves links requested by a player and streams the
resulting audio or cover art, handling URL expiration transparently.
"""

import asyncio
import logging
from typing import Optional

from aiohttp import web

from ytproxy.resolver import (
    LinkUnresolvable,
    Resolution,
    ResolutionCache,
    ResolutionError,
)

from .link_codec import USAGE, ParsedRequest, ResourceKind, parse_request_path
from .relay import (
    STARTED_RESPONSE_KEY,
    StreamRelay,
    UpstreamStreamFailure,
    content_type_for_extension,
)

logger = logging.getLogger(__name__)


class ProxyServer:
    """
    HTTP front end of the proxy.

    Every request is handled independently:
    - Parse the path into a link and a resource kind
    - Get a resolution from the cache (resolving once per link on a miss)
    - Relay the audio or image URL to the client

    Usage:
        cache = ResolutionCache(YtDlpResolver())
        server = ProxyServer(cache, StreamRelay(), host="127.0.0.1", port=4000)
        await server.start()

        # Player plays http://127.0.0.1:4000/https%3A%2F%2Fyoutu.be%2F.../
    """

    def __init__(
        self,
        cache: ResolutionCache,
        relay: Optional[StreamRelay] = None,
        host: str = "127.0.0.1",
        port: int = 4000,
    ):
        """
        Initialize proxy server.

        Args:
            cache: Resolution cache consulted for every link
            relay: Stream relay used to serve media
            host: Host to bind to
            port: Port to listen on
        """
        self._cache = cache
        self._relay = relay or StreamRelay()
        self._host = host
        self._port = port

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @property
    def base_url(self) -> str:
        """Get the base URL for this proxy server."""
        return f"http://{self._host}:{self._port}"

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._site is not None

    def make_app(self) -> web.Application:
        """Create the aiohttp application serving every path."""
        app = web.Application()
        app.router.add_get("/{tail:.*}", self._handle_request)
        return app

    async def start(self) -> None:
        """Start the proxy server."""
        self._app = self.make_app()

        # Cancel handlers when the player hangs up so upstream closes promptly
        self._runner = web.AppRunner(self._app, handler_cancellation=True)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

        logger.info(f"Proxy server started on {self._host}:{self._port}")

    async def stop(self) -> None:
        """Stop the proxy server."""
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._app = None
        logger.info("Proxy server stopped")

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        """Handle a media request from the player."""
        # raw_path keeps percent-encoded separators inside the link
        parsed = parse_request_path(request.raw_path)

        if parsed.is_malformed or parsed.link is None:
            logger.warning(f"Malformed request {request.raw_path!r}: {parsed.reason}")
            return web.Response(status=400, text=f"{parsed.reason}\n{USAGE}\n")

        link = parsed.link
        logger.info(f"Received {parsed.kind.value} request for {link}")

        try:
            return await self._serve(request, parsed, link)
        except asyncio.CancelledError:
            logger.info(f"Client disconnected from {parsed.kind.value} {link}")
            raise
        except Exception as e:
            logger.exception(f"Request error for {link}: {e}")
            started = request.get(STARTED_RESPONSE_KEY)
            if started is not None:
                return self._abort(request, started)
            return web.Response(status=500, text="Internal proxy error")

    async def _serve(
        self, request: web.Request, parsed: ParsedRequest, link: str
    ) -> web.StreamResponse:
        """Resolve the link and relay the requested resource."""
        try:
            resolution = await self._cache.get_or_resolve(link)
        except LinkUnresolvable as e:
            logger.warning(f"Link not resolvable: {link}: {e}")
            return web.Response(status=404, text="Link cannot be resolved")
        except ResolutionError as e:
            logger.error(f"Resolution failed for {link}: {type(e).__name__}: {e}")
            return web.Response(status=502, text=f"Failed to resolve link: {type(e).__name__}")

        if parsed.kind is ResourceKind.IMAGE:
            if not resolution.image_url:
                logger.info(f"No thumbnail for {link}")
                return web.Response(status=404, text="No cover art for this link")
            upstream_url = resolution.image_url
            requested_ext = (parsed.variant or "").rsplit(".", 1)[-1]
            content_type = content_type_for_extension(requested_ext)
        else:
            upstream_url = resolution.audio_url
            content_type = content_type_for_extension(resolution.audio_ext)

        return await self._relay_resolution(
            request, parsed.kind, link, resolution, upstream_url, content_type
        )

    async def _relay_resolution(
        self,
        request: web.Request,
        kind: ResourceKind,
        link: str,
        resolution: Resolution,
        upstream_url: str,
        content_type: Optional[str],
    ) -> web.StreamResponse:
        """Relay an upstream URL; on failure age the resolution out."""
        try:
            outcome = await self._relay.relay(
                request,
                upstream_url,
                content_type=content_type,
                headers=resolution.http_headers,
            )
        except UpstreamStreamFailure as e:
            # Signed URLs expire; the next request should resolve again
            await self._cache.mark_stale(link, resolution)
            logger.warning(f"Upstream failure for {link}: {e}")
            if e.response is not None:
                return self._abort(request, e.response)
            return web.Response(status=502, text=f"Upstream error: {e.status or 'connection failed'}")

        if outcome.client_disconnected:
            logger.info(
                f"Done {kind.value} {link}: client disconnected after "
                f"{outcome.bytes_sent} bytes"
            )
        else:
            logger.info(f"Done {kind.value} {link}: {outcome.status}, {outcome.bytes_sent} bytes")
        return outcome.response

    @staticmethod
    def _abort(request: web.Request, response: web.StreamResponse) -> web.StreamResponse:
        """
        Drop the connection under a response that can't be completed.

        The status line is already out, so a truncated body is the only way
        left to tell the player. Closing the transport keeps aiohttp from
        writing the final chunk that would make the body look complete.
        """
        response.force_close()
        if request.transport is not None:
            request.transport.close()
        return response
