"""FastAPI middleware for the FileBlob gateway.

Assigns request ids, writes the access log and enforces SharedKey
authentication before any request reaches the blob router.
"""

from typing import Callable, Iterable, Optional
import time
import logging
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from fileblob.auth.sharedkey import SCHEME, SharedKeyAuthenticator, SignedRequest
from fileblob.core.config_manager import AuthMode
from fileblob.core.logging_config import (
    clear_request_id,
    log_with_context,
    set_request_id,
)
from .error_formatter import authentication_failed, generate_request_id

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags every request with an id and logs its outcome."""

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        """Process request.

        Args:
            request: FastAPI request
            call_next: Next middleware/handler

        Returns:
            Response
        """
        client_request_id = request.headers.get("x-ms-client-request-id")
        req_id = client_request_id or generate_request_id()
        set_request_id(req_id)
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"{request.method} {request.url.path} failed")
            clear_request_id()
            raise
        duration_ms = (time.time() - start_time) * 1000

        response.headers.setdefault("x-ms-request-id", req_id)
        if client_request_id:
            response.headers["x-ms-client-request-id"] = client_request_id

        log_with_context(
            logger,
            logging.INFO,
            f"{request.method} {request.url.path} -> {response.status_code}",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        clear_request_id()
        return response


class SharedKeyAuthMiddleware(BaseHTTPMiddleware):
    """Rejects requests that are not correctly SharedKey-signed.

    In ``AuthMode.OPTIONAL`` requests without an Authorization header, or
    with a scheme other than SharedKey, pass through unchecked; SharedKey
    requests are always validated.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        authenticator: SharedKeyAuthenticator,
        mode: AuthMode = AuthMode.REQUIRED,
        exempt_paths: Optional[Iterable[str]] = None,
    ):
        """Initialize authentication middleware.

        Args:
            app: ASGI application
            authenticator: Validator for the configured account
            mode: Whether unsigned requests are rejected
            exempt_paths: Exact paths served without authentication
        """
        super().__init__(app)
        self.authenticator = authenticator
        self.mode = AuthMode(mode)
        self.exempt_paths = frozenset(exempt_paths or ())

    def _is_exempt(self, path: str) -> bool:
        return path in self.exempt_paths

    def _is_unsigned(self, request: Request) -> bool:
        auth_header = request.headers.get("authorization")
        if not auth_header:
            return True
        return not auth_header.strip().lower().startswith(SCHEME.lower() + " ")

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        path = request.url.path

        if self._is_exempt(path):
            return await call_next(request)

        if self.mode is AuthMode.OPTIONAL and self._is_unsigned(request):
            return await call_next(request)

        result = self.authenticator.evaluate(SignedRequest.from_starlette(request))
        if not result.ok:
            log_with_context(
                logger,
                logging.WARNING,
                f"SharedKey authentication failed for {request.method} {path}",
                outcome=result.outcome.value,
                method=request.method,
                path=path,
            )
            return authentication_failed().to_response()

        return await call_next(request)
