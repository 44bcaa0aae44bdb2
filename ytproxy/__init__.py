"""
YtProxy - Link resolving media proxy.

Serves the audio and cover art behind a web link over plain HTTP, so any
player can stream it.
"""

__version__ = "0.1.0"

from .app import YtProxy
from .config import Config, load_config, ConfigError

__all__ = [
    "__version__",
    "YtProxy",
    "Config",
    "load_config",
    "ConfigError",
]
