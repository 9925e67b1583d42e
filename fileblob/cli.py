"""
FileBlob Command-Line Interface

Provides commands to start the emulator, inspect its configuration and
maintain its storage root.

Author: FileBlob Contributors
Date: 2025
"""

import sys
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import click
import uvicorn
from fastapi import FastAPI
from pydantic import ValidationError

from fileblob import __version__
from fileblob.auth.sharedkey import SharedKeyAuthenticator, SharedKeyCredentials
from fileblob.core.config_manager import AuthMode, ConfigManager, EmulatorConfig
from fileblob.core.logging_config import setup_logging_from_config
from fileblob.gateway.middleware import RequestContextMiddleware, SharedKeyAuthMiddleware
from fileblob.services.blob.api import create_router
from fileblob.services.blob.backend import BlockBlobStore, StorageIOError
from fileblob.services.blob.error_handlers import register_exception_handlers
from fileblob.services.blob.sandbox import SandboxViolation

logger = logging.getLogger("fileblob.cli")


def _load_config(config_file: Optional[Path], overrides: Optional[Dict[str, Any]] = None) -> EmulatorConfig:
    manager = ConfigManager()
    try:
        return manager.load(
            config_file=str(config_file) if config_file else None,
            cli_overrides=overrides,
        )
    except ValidationError as e:
        click.echo(f"[ERROR] Invalid configuration: {e}", err=True)
        sys.exit(1)
    except (FileNotFoundError, ValueError) as e:
        click.echo(f"[ERROR] Error loading configuration: {e}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="fileblob")
@click.pass_context
def cli(ctx):
    """
    FileBlob - Azure Blob Storage emulator backed by the local file system.
    """
    ctx.ensure_object(dict)


@cli.command()
@click.option("--host", help="Host to bind to (default: 127.0.0.1)")
@click.option("--port", type=int, help="Port to bind to (default: 10000)")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    help="Storage root directory",
)
@click.option(
    "--auth-mode",
    type=click.Choice([m.value for m in AuthMode], case_sensitive=False),
    help="Whether unsigned requests are rejected (default: required)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"], case_sensitive=False),
    help="Log output format",
)
def start(
    host: Optional[str],
    port: Optional[int],
    config: Optional[Path],
    root: Optional[Path],
    auth_mode: Optional[str],
    log_level: Optional[str],
    log_format: Optional[str],
):
    """
    Start the FileBlob server.

    Examples:
        fileblob start
        fileblob start --port 10000 --root ./blob-data
        fileblob start --config fileblob.yaml --log-level DEBUG
    """
    overrides: Dict[str, Any] = {}
    if host:
        overrides.setdefault("server", {})["host"] = host
    if port:
        overrides.setdefault("server", {})["port"] = port
    if root:
        overrides.setdefault("storage", {})["root"] = str(root)
    if auth_mode:
        overrides.setdefault("auth", {})["mode"] = auth_mode.lower()
    if log_level:
        overrides.setdefault("logging", {})["level"] = log_level.upper()
    if log_format:
        overrides.setdefault("logging", {})["format"] = log_format.lower()

    emulator_config = _load_config(config, overrides)
    setup_logging_from_config(emulator_config.logging)

    click.echo(f"Starting FileBlob v{__version__}")
    click.echo(f"Host: {emulator_config.server.host}:{emulator_config.server.port}")
    click.echo(f"Account: {emulator_config.account.name}")
    click.echo(f"Storage root: {emulator_config.storage.root}")
    click.echo(f"Auth mode: {emulator_config.auth.mode.value}")
    click.echo()

    if emulator_config.auth.mode is AuthMode.OPTIONAL:
        logger.warning("Authentication is optional: unsigned requests will be served")

    app = create_app(emulator_config)
    try:
        uvicorn.run(
            app,
            host=emulator_config.server.host,
            port=emulator_config.server.port,
            log_level=emulator_config.logging.level.value.lower(),
            access_log=False,
        )
    except KeyboardInterrupt:
        click.echo("\nShutting down FileBlob...")


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
def config(config: Optional[Path]):
    """
    Show the effective configuration.

    The account key is redacted.
    """
    emulator_config = _load_config(config)
    click.echo(json.dumps(emulator_config.redacted(), indent=2))


@cli.command()
def version():
    """Show FileBlob version."""
    click.echo(f"FileBlob version {__version__}")


# ========== Staging Maintenance Commands ==========

@cli.group()
def staging():
    """
    Maintain staged (uncommitted) blocks.
    """
    pass


@staging.command()
@click.option("--account", required=True, help="Account whose staged blocks are removed")
@click.option("--container", help="Limit the purge to one container")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    help="Storage root directory",
)
def purge(account: str, container: Optional[str], config: Optional[Path], root: Optional[Path]):
    """
    Remove orphaned staged blocks.

    Run while the server is idle: blocks staged for an upload in progress
    are removed too.

    Examples:
        fileblob staging purge --account devstoreaccount1
        fileblob staging purge --account devstoreaccount1 --container photos
    """
    overrides = {"storage": {"root": str(root)}} if root else None
    emulator_config = _load_config(config, overrides)

    store = BlockBlobStore.from_config(emulator_config)
    try:
        count = store.purge_staging(account, container)
    except (SandboxViolation, StorageIOError) as e:
        click.echo(f"[ERROR] Purge failed: {e}", err=True)
        sys.exit(1)

    click.echo(f"[OK] Removed staged blocks of {count} blob(s)")


def create_app(config: EmulatorConfig) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Validated emulator configuration

    Returns:
        Configured FastAPI application serving the blob endpoints
    """
    app = FastAPI(
        title="FileBlob",
        description="Azure Blob Storage emulator backed by the local file system",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    store = BlockBlobStore.from_config(config)
    authenticator = SharedKeyAuthenticator(SharedKeyCredentials.from_config(config))
    app.state.store = store

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "account": config.account.name,
        }

    app.include_router(create_router(store), tags=["Blob Storage"])

    register_exception_handlers(app)

    # Last added runs first: request ids are assigned before authentication
    app.add_middleware(
        SharedKeyAuthMiddleware,
        authenticator=authenticator,
        mode=config.auth.mode,
        exempt_paths=config.auth.exempt_paths,
    )
    app.add_middleware(RequestContextMiddleware)

    return app


def main():
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
