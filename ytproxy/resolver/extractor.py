"""
yt-dlp metadata resolver.

Runs yt-dlp as a child process and turns its JSON output into a Resolution.
"""

import asyncio
import contextlib
import json
import logging
import re
from typing import Any, Optional, Sequence

from .types import (
    ExtractionFailed,
    LinkUnresolvable,
    Resolution,
    ToolUnavailable,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = "yt-dlp"
DEFAULT_FORMAT = "bestaudio"
DEFAULT_TIMEOUT_SECONDS = 60.0

# yt-dlp error messages meaning the link itself can't be served
UNRESOLVABLE_PATTERNS = re.compile(
    r"unsupported url"
    r"|is not a valid url"
    r"|private video"
    r"|video unavailable"
    r"|this video is unavailable"
    r"|has been removed"
    r"|account associated with this video has been terminated"
    r"|not available in your country"
    r"|members-only content"
    r"|http error 404"
    r"|http error 410"
    r"|does not exist",
    re.IGNORECASE,
)

# Characters of stderr kept in error messages
STDERR_EXCERPT = 300


class YtDlpResolver:
    """
    MetadataResolver backed by the yt-dlp command line tool.

    Usage:
        resolver = YtDlpResolver(command="yt-dlp", audio_format="bestaudio")
        resolution = await resolver.resolve("https://www.youtube.com/watch?v=...")
    """

    def __init__(
        self,
        command: str = DEFAULT_COMMAND,
        audio_format: str = DEFAULT_FORMAT,
        extra_args: Optional[Sequence[str]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        """
        Initialize resolver.

        Args:
            command: yt-dlp executable name or path
            audio_format: yt-dlp format selector
            extra_args: Additional arguments passed before the link
            timeout: Seconds to wait for yt-dlp before killing it
        """
        self._command = command
        self._format = audio_format
        self._extra_args = list(extra_args or [])
        self._timeout = timeout

    def build_command(self, link: str) -> list[str]:
        """Build the argument vector for resolving a link."""
        return [self._command, "-f", self._format, "-j", *self._extra_args, "--", link]

    async def resolve(self, link: str) -> Resolution:
        """
        Resolve a link by running yt-dlp.

        Raises:
            ToolUnavailable: yt-dlp could not be started
            LinkUnresolvable: yt-dlp rejected the link
            ExtractionFailed: yt-dlp failed or returned unusable output
        """
        argv = self.build_command(link)
        logger.debug(f"Running extractor: {argv}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ToolUnavailable(f"Failed to start {self._command}: {e}", link) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(proc.communicate(), timeout=1.0)
            raise ExtractionFailed(
                f"{self._command} timed out after {self._timeout}s", link
            ) from None
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise

        error_text = stderr.decode("utf-8", errors="replace").strip()

        if proc.returncode != 0:
            excerpt = error_text[-STDERR_EXCERPT:]
            if UNRESOLVABLE_PATTERNS.search(error_text):
                raise LinkUnresolvable(f"Link cannot be resolved: {excerpt}", link)
            raise ExtractionFailed(
                f"{self._command} exited with status {proc.returncode}: {excerpt}", link
            )

        infos = parse_info_lines(stdout.decode("utf-8", errors="replace"))
        if not infos:
            raise ExtractionFailed(f"Received no info from {self._command}", link)

        return resolution_from_info(select_info(infos, link), link)


def parse_info_lines(output: str) -> list[dict[str, Any]]:
    """Parse one JSON record per line, skipping lines that don't parse."""
    infos = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            info = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Couldn't parse extractor JSON: {e}")
            continue
        if isinstance(info, dict):
            infos.append(info)
    return infos


def select_info(infos: list[dict[str, Any]], link: str) -> dict[str, Any]:
    """Pick the record describing the link (playlists yield several)."""
    for info in infos:
        if link in (info.get("original_url"), info.get("webpage_url")):
            return info
    return infos[0]


def _stream_url(info: dict[str, Any]) -> Optional[str]:
    url = info.get("url")
    if isinstance(url, str) and url:
        return url
    for fmt in info.get("requested_formats") or []:
        url = fmt.get("url")
        if isinstance(url, str) and url:
            return url
    return None


def _thumbnail_url(info: dict[str, Any]) -> Optional[str]:
    url = info.get("thumbnail")
    if isinstance(url, str) and url:
        return url
    # yt-dlp sorts thumbnails by preference, best last
    for thumb in reversed(info.get("thumbnails") or []):
        url = thumb.get("url") if isinstance(thumb, dict) else None
        if isinstance(url, str) and url:
            return url
    return None


def resolution_from_info(info: dict[str, Any], link: str = "") -> Resolution:
    """
    Build a Resolution from a yt-dlp info record.

    Raises:
        ExtractionFailed: If the record has no stream URL
    """
    audio_url = _stream_url(info)
    if not audio_url:
        raise ExtractionFailed("No stream URL present in extractor info", link)

    headers = info.get("http_headers") or {}
    duration = info.get("duration")
    audio_ext = info.get("audio_ext")
    if not audio_ext or audio_ext == "none":
        audio_ext = info.get("ext")

    return Resolution(
        audio_url=audio_url,
        image_url=_thumbnail_url(info),
        title=info.get("title") or None,
        duration=float(duration) if isinstance(duration, (int, float)) else None,
        audio_ext=audio_ext or None,
        http_headers={str(k): str(v) for k, v in headers.items()},
    )
