"""Autonomous task mill: schedule tracker work onto parallel workers and see it through review."""

from .config import MillConfig, load_config
from .errors import ConfigError, MillError
from .logging_setup import configure_logging

__version__ = "0.1.0"

__all__ = ["ConfigError", "MillConfig", "MillError", "configure_logging", "load_config", "__version__"]
