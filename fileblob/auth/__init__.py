"""
FileBlob Authentication Module.

Provides SharedKey request authentication for the blob endpoint.

Author: FileBlob Contributors
Date: 2025
"""

from fileblob.auth.exceptions import (
    AuthenticationError,
    InvalidAuthorizationHeaderError,
    UnsupportedAuthSchemeError,
)
from fileblob.auth.sharedkey import (
    AuthOutcome,
    AuthResult,
    SharedKeyAuthenticator,
    SharedKeyCredentials,
    SignedRequest,
    build_canonical_string,
    compute_signature,
    parse_authorization_header,
    sign_request,
)

__all__ = [
    # Exceptions
    "AuthenticationError",
    "InvalidAuthorizationHeaderError",
    "UnsupportedAuthSchemeError",
    # SharedKey Auth
    "AuthOutcome",
    "AuthResult",
    "SharedKeyAuthenticator",
    "SharedKeyCredentials",
    "SignedRequest",
    "build_canonical_string",
    "compute_signature",
    "parse_authorization_header",
    "sign_request",
]
