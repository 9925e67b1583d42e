"""Core module initialization."""

from .config_manager import (
    AccountConfig,
    AuthConfig,
    AuthMode,
    ConfigManager,
    EmulatorConfig,
    StorageConfig,
)
from .logging_config import setup_logging, get_logger

__all__ = [
    "AccountConfig",
    "AuthConfig",
    "AuthMode",
    "ConfigManager",
    "EmulatorConfig",
    "StorageConfig",
    "setup_logging",
    "get_logger",
]
