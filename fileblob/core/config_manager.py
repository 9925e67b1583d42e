"""
Configuration management for FileBlob.

Handles loading, validation, and access to configuration settings. The
resulting configuration is immutable and is passed explicitly to the
authenticator and the blob store.
"""

import base64
import binascii
import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, List
from enum import Enum

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuthMode(str, Enum):
    """How requests without a SharedKey signature are treated."""
    REQUIRED = "required"  # Reject anything not correctly signed
    OPTIONAL = "optional"  # Validate SharedKey requests, let unsigned ones through


class AccountConfig(BaseModel):
    """The single storage account served by this instance."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Storage account name")
    key: str = Field(min_length=1, description="Base64-encoded account key")

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        """Ensure the key is valid base64."""
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Account key must be base64-encoded")
        return v

    @property
    def key_bytes(self) -> bytes:
        return base64.b64decode(self.key)


class StorageConfig(BaseModel):
    """Blob storage configuration."""
    model_config = ConfigDict(frozen=True)

    root: str = Field(default="blob-data", description="Storage root directory")


class AuthConfig(BaseModel):
    """Request authentication configuration."""
    model_config = ConfigDict(frozen=True)

    mode: AuthMode = AuthMode.REQUIRED
    exempt_paths: List[str] = Field(
        default_factory=lambda: [
            "/health", "/docs", "/docs/oauth2-redirect", "/openapi.json", "/redoc"
        ],
        description="Exact paths served without authentication"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""
    model_config = ConfigDict(frozen=True)

    level: LogLevel = LogLevel.INFO
    format: str = "json"
    file: Optional[str] = None
    rotation_size: str = "10MB"
    rotation_count: int = 5
    module_levels: Optional[Dict[str, str]] = Field(
        default=None,
        description="Per-module log levels, e.g., {'fileblob.services.blob': 'DEBUG'}"
    )

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v


class ServerConfig(BaseModel):
    """HTTP server configuration."""
    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int = Field(default=10000, ge=1, le=65535)


class EmulatorConfig(BaseModel):
    """Main FileBlob configuration schema."""
    model_config = ConfigDict(frozen=True)

    version: str = Field(default="0.1.0", description="Configuration version")

    account: AccountConfig

    storage: StorageConfig = Field(default_factory=StorageConfig)

    auth: AuthConfig = Field(default_factory=AuthConfig)

    server: ServerConfig = Field(default_factory=ServerConfig)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version format."""
        parts = v.split(".")
        if len(parts) != 3:
            raise ValueError("Version must be in format x.y.z")
        for part in parts:
            if not part.isdigit():
                raise ValueError("Version components must be numeric")
        return v

    def redacted(self) -> Dict[str, Any]:
        """Configuration as a dict with the account key masked."""
        data = self.model_dump(mode="json")
        data["account"]["key"] = "***REDACTED***"
        return data


class ConfigManager:
    """
    Manages FileBlob configuration loading and validation.

    Configuration precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables (BLOB_* and FILEBLOB_*)
    3. Configuration file (YAML/JSON)
    4. Defaults
    """

    def __init__(self):
        self._config: Optional[EmulatorConfig] = None
        self._config_file: Optional[Path] = None

    def load(
        self,
        config_file: Optional[str] = None,
        cli_overrides: Optional[Dict[str, Any]] = None
    ) -> EmulatorConfig:
        """
        Load and validate configuration from multiple sources.

        Args:
            config_file: Path to configuration file (YAML or JSON)
            cli_overrides: Dictionary of CLI argument overrides

        Returns:
            Validated EmulatorConfig instance

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        logger.info("Loading FileBlob configuration")

        # Start with defaults
        config_dict: Dict[str, Any] = {}

        # Load from file if specified
        if config_file:
            config_dict = self._load_from_file(config_file)
            self._config_file = Path(config_file)
            logger.info(f"Loaded configuration from file: {config_file}")

        # Apply environment variables
        env_config = self._load_from_env()
        config_dict = self._merge_configs(config_dict, env_config)
        if env_config:
            logger.info(f"Applied {len(env_config)} environment variable overrides")

        # Apply CLI overrides
        if cli_overrides:
            config_dict = self._merge_configs(config_dict, cli_overrides)
            logger.info(f"Applied {len(cli_overrides)} CLI argument overrides")

        # Validate and create config object
        try:
            self._config = EmulatorConfig(**config_dict)
            logger.info("Configuration validated successfully")
            self._log_configuration()
            return self._config
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e.error_count()} error(s)")
            raise

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file."""
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, 'r') as f:
            if path.suffix in ['.yaml', '.yml']:
                return yaml.safe_load(f) or {}
            elif path.suffix == '.json':
                return json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {path.suffix}")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        # Account configuration
        if account_name := os.getenv("BLOB_ACCOUNT_NAME"):
            config.setdefault("account", {})["name"] = account_name
        if account_key := os.getenv("BLOB_ACCOUNT_KEY"):
            config.setdefault("account", {})["key"] = account_key

        # Storage configuration
        if root := os.getenv("BLOB_ROOT"):
            config.setdefault("storage", {})["root"] = root

        # Auth configuration
        if auth_mode := os.getenv("FILEBLOB_AUTH_MODE"):
            config.setdefault("auth", {})["mode"] = auth_mode.lower()

        # Server configuration
        if host := os.getenv("FILEBLOB_HOST"):
            config.setdefault("server", {})["host"] = host
        if port := os.getenv("FILEBLOB_PORT"):
            config.setdefault("server", {})["port"] = int(port)

        # Logging configuration
        if log_level := os.getenv("FILEBLOB_LOG_LEVEL"):
            config.setdefault("logging", {})["level"] = log_level.upper()
        if log_file := os.getenv("FILEBLOB_LOG_FILE"):
            config.setdefault("logging", {})["file"] = log_file

        return config

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _log_configuration(self) -> None:
        """Log the loaded configuration (with the account key redacted)."""
        if not self._config:
            return

        logger.info(f"Active configuration: {json.dumps(self._config.redacted(), indent=2)}")

    def get_config(self) -> EmulatorConfig:
        """
        Get the loaded configuration.

        Returns:
            EmulatorConfig instance

        Raises:
            RuntimeError: If configuration hasn't been loaded
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config

    def reload(self) -> EmulatorConfig:
        """
        Reload configuration from the same sources.

        Returns:
            Reloaded EmulatorConfig instance
        """
        config_file = str(self._config_file) if self._config_file else None
        return self.load(config_file=config_file)
