"""Signed upload and fetch-to-disk file server."""

from .app import create_app
from .config import ConfigurationError, StorehouseConfig, load_config

__version__ = "1.0.0"

__all__ = ["ConfigurationError", "StorehouseConfig", "create_app", "load_config"]
