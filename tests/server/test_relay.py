"""Tests for the stream relay."""

import asyncio

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer, unused_port

from ytproxy.server.relay import (
    RelayOutcome,
    StreamRelay,
    UpstreamStreamFailure,
    content_type_for_extension,
)

BODY = bytes(range(256)) * 4  # 1024 bytes


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _upstream_app(seen_headers: list) -> web.Application:
    """Fake media host."""

    async def fixed(request: web.Request) -> web.StreamResponse:
        seen_headers.append(dict(request.headers))
        return web.Response(body=BODY, content_type="audio/mpeg")

    async def generic(request: web.Request) -> web.StreamResponse:
        return web.Response(body=BODY, content_type="application/octet-stream")

    async def ranged(request: web.Request) -> web.StreamResponse:
        seen_headers.append(dict(request.headers))
        return web.Response(
            status=206,
            body=BODY[100:200],
            content_type="audio/mpeg",
            headers={"Content-Range": f"bytes 100-199/{len(BODY)}", "Accept-Ranges": "bytes"},
        )

    async def chunked(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "audio/webm"})
        response.enable_chunked_encoding()
        await response.prepare(request)
        for _ in range(3):
            await response.write(b"x" * 500)
        await response.write_eof()
        return response

    async def forbidden(request: web.Request) -> web.StreamResponse:
        return web.Response(status=403, text="expired signature")

    app = web.Application()
    app.router.add_get("/a.mp3", fixed)
    app.router.add_get("/generic", generic)
    app.router.add_get("/ranged", ranged)
    app.router.add_get("/chunked", chunked)
    app.router.add_get("/forbidden", forbidden)
    return app


def _relay_app(relay: StreamRelay, upstream_url: str, outcomes: list, **kwargs) -> web.Application:
    """Client-facing app that relays one upstream URL and records the outcome."""

    async def handler(request: web.Request) -> web.StreamResponse:
        try:
            outcome = await relay.relay(request, upstream_url, **kwargs)
        except UpstreamStreamFailure as e:
            outcomes.append(e)
            return web.Response(status=502)
        outcomes.append(outcome)
        return outcome.response

    app = web.Application()
    app.router.add_get("/", handler)
    return app


async def _fetch(server: TestServer, headers: dict = None) -> tuple:
    async with aiohttp.ClientSession() as session:
        async with session.get(server.make_url("/"), headers=headers) as response:
            return response.status, dict(response.headers), await response.read()


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestRelayBody:
    """Tests for forwarding bodies and headers."""

    @pytest.mark.asyncio
    async def test_known_length_forwarded_intact(self) -> None:
        """Test a body of known length arrives without truncation."""
        seen: list = []
        outcomes: list = []
        async with TestServer(_upstream_app(seen)) as upstream:
            app = _relay_app(StreamRelay(chunk_size=100), str(upstream.make_url("/a.mp3")), outcomes)
            async with TestServer(app) as proxy:
                status, headers, body = await _fetch(proxy)

        assert status == 200
        assert body == BODY
        assert headers["Content-Length"] == str(len(BODY))
        assert headers["Content-Type"].startswith("audio/mpeg")
        assert isinstance(outcomes[0], RelayOutcome)
        assert outcomes[0].bytes_sent == len(BODY)
        assert outcomes[0].client_disconnected is False

    @pytest.mark.asyncio
    async def test_unknown_length_uses_chunked_framing(self) -> None:
        outcomes: list = []
        async with TestServer(_upstream_app([])) as upstream:
            app = _relay_app(StreamRelay(), str(upstream.make_url("/chunked")), outcomes)
            async with TestServer(app) as proxy:
                status, headers, body = await _fetch(proxy)

        assert status == 200
        assert body == b"x" * 1500
        assert "Content-Length" not in headers
        assert headers.get("Transfer-Encoding") == "chunked"
        assert headers["Content-Type"] == "audio/webm"

    @pytest.mark.asyncio
    async def test_generic_content_type_replaced_by_hint(self) -> None:
        outcomes: list = []
        async with TestServer(_upstream_app([])) as upstream:
            app = _relay_app(
                StreamRelay(),
                str(upstream.make_url("/generic")),
                outcomes,
                content_type="audio/webm",
            )
            async with TestServer(app) as proxy:
                _, headers, body = await _fetch(proxy)

        assert headers["Content-Type"] == "audio/webm"
        assert body == BODY

    @pytest.mark.asyncio
    async def test_range_and_extra_headers_forwarded(self) -> None:
        """Test Range and extractor headers reach upstream; 206 is mirrored."""
        seen: list = []
        outcomes: list = []
        async with TestServer(_upstream_app(seen)) as upstream:
            app = _relay_app(
                StreamRelay(),
                str(upstream.make_url("/ranged")),
                outcomes,
                headers={"User-Agent": "TestAgent/1.0"},
            )
            async with TestServer(app) as proxy:
                status, headers, body = await _fetch(proxy, headers={"Range": "bytes=100-199"})

        assert seen[0]["Range"] == "bytes=100-199"
        assert seen[0]["User-Agent"] == "TestAgent/1.0"
        assert status == 206
        assert headers["Content-Range"] == "bytes 100-199/1024"
        assert headers["Accept-Ranges"] == "bytes"
        assert body == BODY[100:200]


class TestRelayFailures:
    """Tests for upstream failures."""

    @pytest.mark.asyncio
    async def test_upstream_error_status(self) -> None:
        outcomes: list = []
        async with TestServer(_upstream_app([])) as upstream:
            app = _relay_app(StreamRelay(), str(upstream.make_url("/forbidden")), outcomes)
            async with TestServer(app) as proxy:
                status, _, _ = await _fetch(proxy)

        assert status == 502
        assert isinstance(outcomes[0], UpstreamStreamFailure)
        assert outcomes[0].status == 403
        assert outcomes[0].response is None

    @pytest.mark.asyncio
    async def test_upstream_refused(self) -> None:
        """Test a refused connection is reported, not retried."""
        outcomes: list = []
        url = f"http://127.0.0.1:{unused_port()}/a.mp3"
        async with TestServer(_relay_app(StreamRelay(connect_timeout=2), url, outcomes)) as proxy:
            status, _, _ = await _fetch(proxy)

        assert status == 502
        assert len(outcomes) == 1
        assert isinstance(outcomes[0], UpstreamStreamFailure)
        assert outcomes[0].status == 0


class TestClientDisconnect:
    """Tests for the player hanging up mid-stream."""

    @pytest.mark.asyncio
    async def test_disconnect_ends_relay_and_upstream(self) -> None:
        """Test a client closing after a partial body ends the relay and closes upstream."""
        upstream_closed = asyncio.Event()
        relay_ended = asyncio.Event()
        endings: list = []

        async def endless(request: web.Request) -> web.StreamResponse:
            response = web.StreamResponse(headers={"Content-Type": "audio/webm"})
            response.enable_chunked_encoding()
            await response.prepare(request)
            try:
                while True:
                    await response.write(b"a" * 65536)
                    await asyncio.sleep(0.001)
            except (ConnectionError, asyncio.CancelledError):
                upstream_closed.set()
                raise

        upstream_app = web.Application()
        upstream_app.router.add_get("/live", endless)

        async with TestServer(upstream_app) as upstream:
            relay = StreamRelay(chunk_size=4096)
            url = str(upstream.make_url("/live"))

            async def handler(request: web.Request) -> web.StreamResponse:
                # The hang-up shows up either as a write error or as the
                # handler being cancelled, depending on the aiohttp version
                try:
                    outcome = await relay.relay(request, url)
                except asyncio.CancelledError:
                    endings.append("cancelled")
                    relay_ended.set()
                    raise
                endings.append(outcome)
                relay_ended.set()
                return outcome.response

            app = web.Application()
            app.router.add_get("/", handler)

            async with TestServer(app) as proxy:
                async with aiohttp.ClientSession() as session:
                    response = await session.get(proxy.make_url("/"))
                    partial = await response.content.readexactly(10000)
                    response.close()

                await asyncio.wait_for(relay_ended.wait(), timeout=10)
                await asyncio.wait_for(upstream_closed.wait(), timeout=10)

        assert len(partial) == 10000
        assert len(endings) == 1
        if endings[0] != "cancelled":
            assert isinstance(endings[0], RelayOutcome)
            assert endings[0].client_disconnected is True
            assert endings[0].bytes_sent >= 10000


class TestContentTypeForExtension:
    """Tests for MIME type hints."""

    def test_known_extensions(self) -> None:
        assert content_type_for_extension("webm") == "audio/webm"
        assert content_type_for_extension("m4a") == "audio/mp4"
        assert content_type_for_extension(".MP3") == "audio/mpeg"
        assert content_type_for_extension("jpg") == "image/jpeg"

    def test_missing_extension(self) -> None:
        assert content_type_for_extension(None) is None
        assert content_type_for_extension("") is None
