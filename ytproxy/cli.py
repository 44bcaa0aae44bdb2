"""
YtProxy CLI entry point.

Provides command-line interface for running YtProxy.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from ytproxy import __version__
from ytproxy.app import YtProxy, create_resolver
from ytproxy.config import Config, ConfigError, load_config
from ytproxy.resolver import LinkUnresolvable, ResolutionError

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_RESOLUTION_ERROR = 2
EXIT_NETWORK_ERROR = 3


def setup_logging(level: str = "info") -> None:
    """Configure logging to stdout."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="ytproxy",
        description="Serve the audio and cover art behind web links over plain HTTP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ytproxy
  ytproxy --port 4000 --cache-max-age 300
  ytproxy --resolve https://www.youtube.com/watch?v=dQw4w9WgXcQ --json

Players then request:
  http://127.0.0.1:4000/<URL>/           audio stream
  http://127.0.0.1:4000/<URL>/cover.jpg  cover art

Environment Variables:
  YTPROXY_BIND, YTPROXY_PORT, YTPROXY_EXTRACTOR, YTPROXY_FORMAT,
  YTPROXY_EXTRACTOR_TIMEOUT, YTPROXY_CACHE_MAX_AGE,
  YTPROXY_CACHE_MAX_ENTRIES, YTPROXY_LOG_LEVEL
""",
    )

    # General
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    # One-shot resolution mode
    parser.add_argument(
        "--resolve",
        metavar="URL",
        help="Resolve a link, print the result and exit",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="json_output",
        help="Output as JSON (used with --resolve)",
    )

    # Configuration
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("./config.yaml"),
        metavar="PATH",
        help="Path to config file (default: ./config.yaml)",
    )

    # Server
    server_group = parser.add_argument_group("Server")
    server_group.add_argument(
        "--bind",
        metavar="TEXT",
        help="Bind address (default: 127.0.0.1)",
    )
    server_group.add_argument(
        "--port",
        type=int,
        metavar="INT",
        help="HTTP port (default: 4000)",
    )

    # Extractor
    extractor_group = parser.add_argument_group("Extractor")
    extractor_group.add_argument(
        "--extractor",
        metavar="PATH",
        help="yt-dlp executable (default: yt-dlp)",
    )
    extractor_group.add_argument(
        "--format",
        metavar="TEXT",
        help="yt-dlp format selector (default: bestaudio)",
    )
    extractor_group.add_argument(
        "--extractor-timeout",
        type=float,
        metavar="SECONDS",
        help="Seconds to wait for yt-dlp (default: 60)",
    )

    # Cache
    cache_group = parser.add_argument_group("Cache")
    cache_group.add_argument(
        "--cache-max-age",
        type=float,
        metavar="SECONDS",
        help="Seconds before a cached resolution is refreshed (default: 600)",
    )
    cache_group.add_argument(
        "--cache-max-entries",
        type=int,
        metavar="INT",
        help="Maximum number of cached links (default: 256)",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        metavar="LEVEL",
        help="Log level: debug, info, warning, error",
    )

    return parser


def parse_args(argv: Any = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    return build_parser().parse_args(argv)


def _set_nested(d: dict, path: tuple, value: Any) -> None:
    """Set a nested dictionary value."""
    for key in path[:-1]:
        d = d.setdefault(key, {})
    d[path[-1]] = value


def args_to_dict(args: argparse.Namespace) -> dict:
    """Convert argparse namespace to nested config dict."""
    result: dict = {}

    # Map CLI args to config paths
    mappings = {
        "bind": ("server", "bind_address"),
        "port": ("server", "port"),
        "extractor": ("extractor", "command"),
        "format": ("extractor", "format"),
        "extractor_timeout": ("extractor", "timeout"),
        "cache_max_age": ("cache", "max_age"),
        "cache_max_entries": ("cache", "max_entries"),
        "log_level": ("logging", "level"),
    }

    for arg_name, path in mappings.items():
        value = getattr(args, arg_name, None)
        if value is None:
            continue
        _set_nested(result, path, value)

    return result


def log_config(config: Config) -> None:
    """Log configuration summary."""
    logger.info(f"HTTP server: {config.server.bind_address}:{config.server.port}")
    logger.info(f"Extractor: {config.extractor.command} -f {config.extractor.format}")
    logger.info(
        f"Cache: max age {config.cache.max_age:g}s, max {config.cache.max_entries} entries"
    )


async def run_resolve(config: Config, link: str, json_output: bool) -> int:
    """
    Resolve a single link and print the result.

    Args:
        config: Loaded configuration
        link: Link to resolve
        json_output: Output as JSON if True

    Returns:
        Exit code
    """
    resolver = create_resolver(config)
    try:
        resolution = await resolver.resolve(link)
    except LinkUnresolvable as e:
        logger.error(f"Link cannot be resolved: {e}")
        return EXIT_RESOLUTION_ERROR
    except ResolutionError as e:
        logger.error(f"Resolution failed ({type(e).__name__}): {e}")
        return EXIT_RESOLUTION_ERROR

    if json_output:
        print(json.dumps(resolution.to_dict(), indent=2))
    else:
        print(f"Title: {resolution.title or '(unknown)'}")
        if resolution.duration is not None:
            print(f"Duration: {resolution.duration:g}s")
        print(f"Audio ({resolution.audio_ext or '?'}): {resolution.audio_url}")
        print(f"Cover: {resolution.image_url or '(none)'}")

    return EXIT_SUCCESS


def run_serve(config: Config) -> int:
    """
    Run the proxy server.

    Args:
        config: Loaded configuration

    Returns:
        Exit code
    """
    try:
        app = YtProxy(config)
        asyncio.run(app.run())
        return EXIT_SUCCESS

    except (ConnectionError, OSError) as e:
        logger.error(f"Network error: {e}")
        return EXIT_NETWORK_ERROR

    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_SUCCESS

    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return EXIT_NETWORK_ERROR


def main(argv: Any = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code: 0=success, 1=config error, 2=resolution error, 3=network error
    """
    args = parse_args(argv)

    # Setup basic logging first (will be reconfigured after config load)
    setup_logging("info")

    try:
        cli_config = args_to_dict(args)
        config = load_config(args.config, cli_config)

        # Reconfigure logging with loaded level
        setup_logging(config.logging.level)

    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    if args.resolve:
        return asyncio.run(run_resolve(config, args.resolve, args.json_output))

    logger.info(f"YtProxy v{__version__}")
    log_config(config)
    return run_serve(config)


if __name__ == "__main__":
    sys.exit(main())
