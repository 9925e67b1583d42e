"""FileBlob gateway: authentication middleware and Azure Storage error formatting."""

from .error_formatter import (
    ERROR_CODE_MAPPINGS,
    ErrorContext,
    StorageError,
    authentication_failed,
    create_storage_error,
    format_error_xml,
    generate_request_id,
)
from .middleware import RequestContextMiddleware, SharedKeyAuthMiddleware

__all__ = [
    "ERROR_CODE_MAPPINGS",
    "ErrorContext",
    "StorageError",
    "authentication_failed",
    "create_storage_error",
    "format_error_xml",
    "generate_request_id",
    "RequestContextMiddleware",
    "SharedKeyAuthMiddleware",
]
