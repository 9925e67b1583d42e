"""Azure Storage error response formatting for the FileBlob gateway.

Error bodies follow the Azure Storage XML shape so that Azure SDK clients
surface the error code to their callers.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from xml.etree import ElementTree as ET
import logging

from starlette.responses import Response

from fileblob.core.logging_config import request_id as current_request_id

logger = logging.getLogger(__name__)

STORAGE_API_VERSION = "2021-08-06"

# Azure Storage error codes used by the emulator, with HTTP status mappings
ERROR_CODE_MAPPINGS: Dict[str, int] = {
    # Bad request errors (400)
    "InvalidResourceName": 400,
    "InvalidQueryParameterValue": 400,
    "MissingRequiredQueryParameter": 400,
    "InvalidBlockList": 400,
    "InvalidXmlDocument": 400,
    # Authentication errors (403)
    "AuthenticationFailed": 403,
    # Not found errors (404)
    "ContainerNotFound": 404,
    "BlobNotFound": 404,
    # Conflict errors (409)
    "InvalidBlobOrBlock": 409,
    # Range errors (416)
    "InvalidRange": 416,
    # Server errors (500+)
    "InternalError": 500,
}

AUTHENTICATION_FAILED_MESSAGE = (
    "Server failed to authenticate the request. Authorization failed."
)


@dataclass
class ErrorContext:
    """Context for error response generation."""

    error_code: str
    message: str
    status_code: Optional[int] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        """Generate defaults."""
        if self.status_code is None:
            self.status_code = ERROR_CODE_MAPPINGS.get(self.error_code, 500)
        if self.request_id is None:
            self.request_id = current_request_id.get() or generate_request_id()


@dataclass
class StorageError:
    """Represents an Azure Storage error response."""

    error_code: str
    message: str
    status_code: int
    request_id: str
    headers: Dict[str, str]
    body: bytes

    def to_response(self) -> Response:
        """Convert to a Starlette response."""
        return Response(
            content=self.body,
            status_code=self.status_code,
            headers=self.headers,
            media_type="application/xml",
        )


def generate_request_id() -> str:
    """Generate Azure-style request ID.

    Returns:
        Request ID in UUID format
    """
    return str(uuid.uuid4())


def format_error_xml(context: ErrorContext) -> bytes:
    """Format error as Azure Storage XML.

    Args:
        context: Error context

    Returns:
        UTF-8 encoded XML document
    """
    error = ET.Element("Error")
    ET.SubElement(error, "Code").text = context.error_code
    ET.SubElement(error, "Message").text = context.message

    if context.additional_info:
        for key, value in context.additional_info.items():
            ET.SubElement(error, key).text = str(value)

    xml_str = ET.tostring(error, encoding="unicode", method="xml")
    return ('<?xml version="1.0" encoding="utf-8"?>\n' + xml_str).encode("utf-8")


def create_error_headers(error_code: str, request_id: str) -> Dict[str, str]:
    """Create error response headers.

    Args:
        error_code: Azure error code
        request_id: Request ID

    Returns:
        Dictionary of headers
    """
    return {
        "x-ms-request-id": request_id,
        "x-ms-error-code": error_code,
        "x-ms-version": STORAGE_API_VERSION,
        "Date": datetime.now(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT"),
    }


def create_storage_error(
    error_code: str,
    message: str,
    *,
    status_code: Optional[int] = None,
    request_id: Optional[str] = None,
    additional_info: Optional[Dict[str, Any]] = None,
) -> StorageError:
    """Create Storage service error response.

    Args:
        error_code: Azure Storage error code
        message: Error message
        status_code: Override for the mapped HTTP status
        request_id: Optional request ID (taken from the request context or
            generated if not provided)
        additional_info: Additional error details

    Returns:
        StorageError ready to be sent
    """
    context = ErrorContext(
        error_code=error_code,
        message=message,
        status_code=status_code,
        request_id=request_id,
        additional_info=additional_info,
    )

    logger.debug(f"Created error response: {context.error_code} (status={context.status_code})")

    return StorageError(
        error_code=context.error_code,
        message=context.message,
        status_code=context.status_code,
        request_id=context.request_id,
        headers=create_error_headers(context.error_code, context.request_id),
        body=format_error_xml(context),
    )


def authentication_failed() -> StorageError:
    """The fixed response for any authentication failure."""
    return create_storage_error("AuthenticationFailed", AUTHENTICATION_FAILED_MESSAGE)
