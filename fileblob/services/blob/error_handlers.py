"""
FastAPI Exception Handlers for Blob Storage

Maps blob store exceptions to Azure Storage XML error responses.

Author: FileBlob Contributors
Date: 2025
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status

from fileblob.core.logging_config import log_with_context
from fileblob.gateway.error_formatter import create_storage_error

from .backend import BlobPathConflictError, MissingBlockError, StorageIOError
from .sandbox import SandboxViolation

logger = logging.getLogger(__name__)


class BlobApiError(Exception):
    """Request-level error raised by the blob endpoints."""

    def __init__(
        self,
        error_code: str,
        message: str,
        status_code: Optional[int] = None,
        additional_info: Optional[Dict[str, Any]] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.additional_info = additional_info
        super().__init__(message)


async def blob_api_exception_handler(request: Request, exc: BlobApiError):
    return create_storage_error(
        exc.error_code,
        exc.message,
        status_code=exc.status_code,
        additional_info=exc.additional_info,
    ).to_response()


async def sandbox_violation_handler(request: Request, exc: SandboxViolation):
    """
    Reject an unsafe path.

    A violation means either a hostile caller or a defect, so it is logged as
    a security event. The raw name is never echoed back.
    """
    log_with_context(
        logger,
        logging.WARNING,
        f"Rejected unsafe {exc.level.value} name ({type(exc).__name__})",
        security_event=True,
        violation=type(exc).__name__,
        level=exc.level.value,
        method=request.method,
        path=request.url.path,
    )
    return create_storage_error(
        "InvalidResourceName",
        "The specified resource name contains invalid characters.",
    ).to_response()


async def missing_block_handler(request: Request, exc: MissingBlockError):
    return create_storage_error(
        "InvalidBlockList",
        f"The specified block list is invalid. Block '{exc.block_id}' has not been staged.",
    ).to_response()


async def blob_path_conflict_handler(request: Request, exc: BlobPathConflictError):
    return create_storage_error(
        "InvalidBlobOrBlock",
        "The blob name conflicts with an existing blob or virtual directory.",
        status_code=status.HTTP_409_CONFLICT,
    ).to_response()


async def storage_io_error_handler(request: Request, exc: StorageIOError):
    logger.error(f"Storage failure during {exc.operation}", exc_info=exc)
    return create_storage_error(
        "InternalError",
        "The server encountered an internal error. Please retry the request.",
    ).to_response()


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register blob storage exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(BlobApiError, blob_api_exception_handler)
    app.add_exception_handler(SandboxViolation, sandbox_violation_handler)
    app.add_exception_handler(MissingBlockError, missing_block_handler)
    app.add_exception_handler(BlobPathConflictError, blob_path_conflict_handler)
    app.add_exception_handler(StorageIOError, storage_io_error_handler)
