"""Tests for the yt-dlp metadata resolver."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ytproxy.resolver import (
    ExtractionFailed,
    LinkUnresolvable,
    MetadataResolver,
    ToolUnavailable,
    YtDlpResolver,
)
from ytproxy.resolver.extractor import (
    parse_info_lines,
    resolution_from_info,
    select_info,
)

LINK = "https://www.youtube.com/watch?v=abc123"

_SPAWN_PATCH = "ytproxy.resolver.extractor.asyncio.create_subprocess_exec"


def _info(**overrides) -> dict:
    info = {
        "original_url": LINK,
        "webpage_url": LINK,
        "title": "Test Track",
        "duration": 215,
        "ext": "webm",
        "audio_ext": "webm",
        "url": "https://rr1.googlevideo.com/videoplayback?sig=xyz",
        "thumbnail": "https://i.ytimg.com/vi/abc123/maxresdefault.jpg",
        "http_headers": {"User-Agent": "Mozilla/5.0"},
    }
    info.update(overrides)
    return info


def _mock_process(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0) -> MagicMock:
    """Create a mock asyncio subprocess."""
    proc = MagicMock()
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.returncode = returncode
    proc.kill = MagicMock()
    return proc


class TestBuildCommand:
    """Tests for the extractor argument vector."""

    def test_default_command(self) -> None:
        resolver = YtDlpResolver()
        assert resolver.build_command(LINK) == ["yt-dlp", "-f", "bestaudio", "-j", "--", LINK]

    def test_custom_command(self) -> None:
        resolver = YtDlpResolver(
            command="/opt/yt-dlp",
            audio_format="140",
            extra_args=["--no-playlist"],
        )
        assert resolver.build_command(LINK) == [
            "/opt/yt-dlp",
            "-f",
            "140",
            "-j",
            "--no-playlist",
            "--",
            LINK,
        ]

    def test_implements_protocol(self) -> None:
        assert isinstance(YtDlpResolver(), MetadataResolver)


class TestResolve:
    """Tests for running the extractor."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        """Test a successful extraction becomes a Resolution."""
        proc = _mock_process(stdout=json.dumps(_info()).encode() + b"\n")

        with patch(_SPAWN_PATCH, new_callable=AsyncMock, return_value=proc) as spawn:
            resolution = await YtDlpResolver().resolve(LINK)

        spawn.assert_awaited_once()
        assert spawn.await_args.args == ("yt-dlp", "-f", "bestaudio", "-j", "--", LINK)
        assert resolution.audio_url == "https://rr1.googlevideo.com/videoplayback?sig=xyz"
        assert resolution.image_url == "https://i.ytimg.com/vi/abc123/maxresdefault.jpg"
        assert resolution.title == "Test Track"
        assert resolution.duration == 215.0
        assert resolution.audio_ext == "webm"
        assert resolution.http_headers == {"User-Agent": "Mozilla/5.0"}

    @pytest.mark.asyncio
    async def test_missing_thumbnail_is_none(self) -> None:
        """Test a record without thumbnail resolves with image_url None."""
        info = _info()
        del info["thumbnail"]
        proc = _mock_process(stdout=json.dumps(info).encode())

        with patch(_SPAWN_PATCH, new_callable=AsyncMock, return_value=proc):
            resolution = await YtDlpResolver().resolve(LINK)

        assert resolution.image_url is None

    @pytest.mark.asyncio
    async def test_tool_missing(self) -> None:
        """Test spawn failure raises ToolUnavailable."""
        with patch(_SPAWN_PATCH, new_callable=AsyncMock, side_effect=FileNotFoundError("yt-dlp")):
            with pytest.raises(ToolUnavailable) as exc_info:
                await YtDlpResolver().resolve(LINK)

        assert exc_info.value.link == LINK

    @pytest.mark.asyncio
    async def test_tool_not_executable(self) -> None:
        with patch(_SPAWN_PATCH, new_callable=AsyncMock, side_effect=PermissionError("denied")):
            with pytest.raises(ToolUnavailable):
                await YtDlpResolver().resolve(LINK)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "stderr",
        [
            b"ERROR: Unsupported URL: https://example.com/x",
            b"ERROR: [youtube] abc123: Private video. Sign in if you've been granted access",
            b"ERROR: [youtube] abc123: Video unavailable",
            b"ERROR: [soundcloud] 404: HTTP Error 404: Not Found",
        ],
    )
    async def test_unresolvable_link(self, stderr: bytes) -> None:
        """Test extractor rejections raise LinkUnresolvable."""
        proc = _mock_process(stderr=stderr, returncode=1)

        with patch(_SPAWN_PATCH, new_callable=AsyncMock, return_value=proc):
            with pytest.raises(LinkUnresolvable):
                await YtDlpResolver().resolve(LINK)

    @pytest.mark.asyncio
    async def test_other_failure(self) -> None:
        """Test unexplained non-zero exit raises ExtractionFailed."""
        proc = _mock_process(stderr=b"ERROR: Unable to extract player response", returncode=1)

        with patch(_SPAWN_PATCH, new_callable=AsyncMock, return_value=proc):
            with pytest.raises(ExtractionFailed) as exc_info:
                await YtDlpResolver().resolve(LINK)

        assert "status 1" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unparseable_output(self) -> None:
        """Test output with no JSON raises ExtractionFailed."""
        proc = _mock_process(stdout=b"not json\n")

        with patch(_SPAWN_PATCH, new_callable=AsyncMock, return_value=proc):
            with pytest.raises(ExtractionFailed):
                await YtDlpResolver().resolve(LINK)

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self) -> None:
        """Test a hanging extractor is killed and reported."""
        proc = _mock_process()
        calls = []

        async def communicate():
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(10)
            return b"", b""

        proc.communicate = AsyncMock(side_effect=communicate)

        with patch(_SPAWN_PATCH, new_callable=AsyncMock, return_value=proc):
            with pytest.raises(ExtractionFailed) as exc_info:
                await YtDlpResolver(timeout=0.05).resolve(LINK)

        proc.kill.assert_called_once()
        assert "timed out" in str(exc_info.value)


class TestInfoParsing:
    """Tests for parsing extractor records."""

    def test_parse_skips_bad_lines(self) -> None:
        output = "\n".join([json.dumps({"a": 1}), "garbage", "", json.dumps([1, 2])])
        assert parse_info_lines(output) == [{"a": 1}]

    def test_select_matching_record(self) -> None:
        """Test the record matching the link is preferred in playlists."""
        first = _info(original_url="https://example.com/other", webpage_url="https://example.com/other")
        second = _info(title="Wanted")
        assert select_info([first, second], LINK)["title"] == "Wanted"

    def test_select_falls_back_to_first(self) -> None:
        first = _info(original_url="a", webpage_url="a", title="First")
        assert select_info([first], LINK)["title"] == "First"

    def test_requested_formats_fallback(self) -> None:
        info = _info(requested_formats=[{"url": "https://cdn.example/audio"}])
        del info["url"]
        assert resolution_from_info(info).audio_url == "https://cdn.example/audio"

    def test_thumbnails_list_fallback(self) -> None:
        info = _info(
            thumbnails=[{"url": "https://img/small.jpg"}, {"url": "https://img/large.jpg"}]
        )
        del info["thumbnail"]
        assert resolution_from_info(info).image_url == "https://img/large.jpg"

    def test_no_stream_url(self) -> None:
        info = _info()
        del info["url"]
        with pytest.raises(ExtractionFailed):
            resolution_from_info(info, LINK)

    def test_audio_ext_falls_back_to_ext(self) -> None:
        info = _info(audio_ext="none", ext="m4a")
        assert resolution_from_info(info).audio_ext == "m4a"

    def test_optional_fields_missing(self) -> None:
        resolution = resolution_from_info({"url": "https://cdn.example/a"})
        assert resolution.title is None
        assert resolution.duration is None
        assert resolution.image_url is None
        assert resolution.http_headers == {}
