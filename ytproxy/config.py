"""
YtProxy Configuration System.

Priority order (highest to lowest):
1. Command-line arguments
2. Environment variables
3. Configuration file (YAML)
4. Default values
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


# Valid log levels
VALID_LOG_LEVELS = {"debug", "info", "warning", "error"}

# Environment variable mappings
ENV_MAPPINGS = {
    # Server
    "YTPROXY_BIND": ("server", "bind_address"),
    "YTPROXY_PORT": ("server", "port"),
    # Extractor
    "YTPROXY_EXTRACTOR": ("extractor", "command"),
    "YTPROXY_FORMAT": ("extractor", "format"),
    "YTPROXY_EXTRACTOR_TIMEOUT": ("extractor", "timeout"),
    # Cache
    "YTPROXY_CACHE_MAX_AGE": ("cache", "max_age"),
    "YTPROXY_CACHE_MAX_ENTRIES": ("cache", "max_entries"),
    # Logging
    "YTPROXY_LOG_LEVEL": ("logging", "level"),
}

INT_ENV_VARS = {"YTPROXY_PORT", "YTPROXY_CACHE_MAX_ENTRIES"}
FLOAT_ENV_VARS = {"YTPROXY_EXTRACTOR_TIMEOUT", "YTPROXY_CACHE_MAX_AGE"}


class ConfigError(Exception):
    """Configuration error."""

    pass


@dataclass
class ServerConfig:
    """HTTP server configuration."""

    bind_address: str = "127.0.0.1"
    port: int = 4000


@dataclass
class ExtractorConfig:
    """yt-dlp invocation configuration."""

    command: str = "yt-dlp"
    format: str = "bestaudio"
    extra_args: list[str] = field(default_factory=list)
    timeout: float = 60.0


@dataclass
class CacheConfig:
    """Resolution cache configuration."""

    max_age: float = 600.0  # Seconds before a resolution is refreshed
    max_entries: int = 256


@dataclass
class RelayConfig:
    """Stream relay configuration."""

    chunk_size: int = 64 * 1024
    connect_timeout: float = 30.0


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class Config:
    """Complete YtProxy configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def validate_port(port: int) -> bool:
    """Validate port number."""
    return 1 <= port <= 65535


def validate_config(config: Config) -> None:
    """
    Validate configuration.

    Raises:
        ConfigError: If configuration is invalid
    """
    errors = []

    # Server
    if not config.server.bind_address:
        errors.append("Bind address is required")
    if not validate_port(config.server.port):
        errors.append(f"Invalid port: {config.server.port}")

    # Extractor
    if not config.extractor.command:
        errors.append("Extractor command is required")
    if not config.extractor.format:
        errors.append("Extractor format is required")
    if config.extractor.timeout <= 0:
        errors.append(f"Invalid extractor timeout: {config.extractor.timeout}")

    # Cache
    if config.cache.max_age <= 0:
        errors.append(f"Invalid cache max_age: {config.cache.max_age}")
    if config.cache.max_entries < 1:
        errors.append(f"Invalid cache max_entries: {config.cache.max_entries}")

    # Relay
    if config.relay.chunk_size < 1:
        errors.append(f"Invalid relay chunk_size: {config.relay.chunk_size}")
    if config.relay.connect_timeout <= 0:
        errors.append(f"Invalid relay connect_timeout: {config.relay.connect_timeout}")

    # Logging
    if config.logging.level.lower() not in VALID_LOG_LEVELS:
        errors.append(
            f"Invalid log level: {config.logging.level}. "
            f"Valid values: {sorted(VALID_LOG_LEVELS)}"
        )

    if errors:
        raise ConfigError("Configuration validation failed:\n  - " + "\n  - ".join(errors))


def load_yaml_config(path: Path) -> dict:
    """
    Load configuration from YAML file.

    Args:
        path: Path to YAML file

    Returns:
        Configuration dictionary

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    if not path.exists():
        logger.debug(f"Config file not found: {path}")
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
            return data if data else {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML config: {e}")
    except IOError as e:
        raise ConfigError(f"Error reading config file: {e}")


def _set_nested(d: dict, path: tuple, value: Any) -> None:
    """Set a nested dictionary value using a path tuple."""
    for key in path[:-1]:
        d = d.setdefault(key, {})
    d[path[-1]] = value


def load_env_config() -> dict:
    """
    Load configuration from environment variables.

    Returns:
        Configuration dictionary with values from environment
    """
    result: dict = {}

    for env_var, path in ENV_MAPPINGS.items():
        value: Any = os.environ.get(env_var)
        if value is None:
            continue

        if env_var in INT_ENV_VARS:
            try:
                value = int(value)
            except ValueError:
                logger.warning(f"Invalid integer for {env_var}: {value}")
                continue
        elif env_var in FLOAT_ENV_VARS:
            try:
                value = float(value)
            except ValueError:
                logger.warning(f"Invalid number for {env_var}: {value}")
                continue

        _set_nested(result, path, value)

    return result


def _deep_merge(base: dict, override: dict) -> None:
    """Recursively merge override into base."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def merge_configs(*configs: dict) -> dict:
    """
    Deep merge multiple configuration dictionaries.
    Later configs override earlier ones.
    """
    result: dict = {}
    for config in configs:
        _deep_merge(result, config)
    return result


def dict_to_config(d: dict) -> Config:
    """
    Convert a dictionary to Config dataclass.

    Raises:
        ConfigError: If a value has the wrong type
    """
    config = Config()

    try:
        # Server
        if "server" in d:
            s = d["server"]
            config.server.bind_address = str(s.get("bind_address", config.server.bind_address))
            config.server.port = int(s.get("port", config.server.port))

        # Extractor
        if "extractor" in d:
            e = d["extractor"]
            config.extractor.command = str(e.get("command", config.extractor.command))
            config.extractor.format = str(e.get("format", config.extractor.format))
            extra_args = e.get("extra_args", config.extractor.extra_args)
            if isinstance(extra_args, str):
                extra_args = extra_args.split()
            config.extractor.extra_args = [str(arg) for arg in extra_args]
            config.extractor.timeout = float(e.get("timeout", config.extractor.timeout))

        # Cache
        if "cache" in d:
            c = d["cache"]
            config.cache.max_age = float(c.get("max_age", config.cache.max_age))
            config.cache.max_entries = int(c.get("max_entries", config.cache.max_entries))

        # Relay
        if "relay" in d:
            r = d["relay"]
            config.relay.chunk_size = int(r.get("chunk_size", config.relay.chunk_size))
            config.relay.connect_timeout = float(
                r.get("connect_timeout", config.relay.connect_timeout)
            )

        # Logging
        if "logging" in d:
            config.logging.level = str(d["logging"].get("level", config.logging.level))

    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")

    return config


def load_config(
    config_path: Optional[Path] = None,
    cli_args: Optional[dict] = None,
) -> Config:
    """
    Load configuration from all sources.

    Priority (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Config file
    4. Defaults

    Args:
        config_path: Path to YAML config file
        cli_args: Dictionary of CLI arguments

    Returns:
        Merged Config object

    Raises:
        ConfigError: If configuration is invalid
    """
    configs = []

    # 1. Load from file (lowest priority of explicit configs)
    if config_path:
        file_config = load_yaml_config(config_path)
        if file_config:
            configs.append(file_config)
            logger.debug(f"Loaded config from {config_path}")

    # 2. Load from environment
    env_config = load_env_config()
    if env_config:
        configs.append(env_config)
        logger.debug("Loaded config from environment variables")

    # 3. Load from CLI (highest priority)
    if cli_args:
        configs.append(cli_args)
        logger.debug("Loaded config from CLI arguments")

    merged = merge_configs(*configs) if configs else {}

    # Convert to Config object (fills in defaults)
    config = dict_to_config(merged)

    validate_config(config)

    return config
