"""
SharedKey Authentication implementation for the blob endpoint.

Rebuilds the canonical string of an inbound request the way Azure Storage
clients sign it and checks the HMAC-SHA256 signature carried in the
Authorization header.

Reference: https://docs.microsoft.com/en-us/rest/api/storageservices/authorize-with-shared-key

Author: FileBlob Contributors
Date: 2025
"""

import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from fileblob.auth.exceptions import (
    InvalidAuthorizationHeaderError,
    UnsupportedAuthSchemeError,
)

logger = logging.getLogger(__name__)

SCHEME = "SharedKey"

# Vendor header prefix folded into the canonicalized headers block
MS_HEADER_PREFIX = "x-ms-"

CONDITIONAL_HEADERS = (
    "If-Modified-Since",
    "If-Match",
    "If-None-Match",
    "If-Unmodified-Since",
    "Range",
)


@dataclass(frozen=True)
class SharedKeyCredentials:
    """Credentials for SharedKey authentication."""

    account_name: str
    account_key: bytes  # Decoded key bytes

    @classmethod
    def from_base64(cls, account_name: str, account_key: str) -> "SharedKeyCredentials":
        """
        Build credentials from a base64-encoded key.

        Raises:
            ValueError: If the key is not valid base64
        """
        try:
            key_bytes = base64.b64decode(account_key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("Account key must be base64-encoded") from e
        return cls(account_name=account_name, account_key=key_bytes)

    @classmethod
    def from_config(cls, config) -> "SharedKeyCredentials":
        """Build credentials from an ``EmulatorConfig``."""
        return cls(account_name=config.account.name, account_key=config.account.key_bytes)


@dataclass(frozen=True)
class SignedRequest:
    """
    The parts of an HTTP request covered by a SharedKey signature.

    ``query`` and ``headers`` are ordered lists of pairs; a name may repeat.
    Header names are matched case-insensitively.
    """

    method: str
    path: str
    query: List[Tuple[str, str]] = field(default_factory=list)
    headers: List[Tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_starlette(cls, request) -> "SignedRequest":
        """Capture a Starlette/FastAPI request."""
        return cls(
            method=request.method,
            path=request.url.path,
            query=list(request.query_params.multi_items()),
            headers=list(request.headers.items()),
        )

    def header_values(self, name: str) -> List[str]:
        wanted = name.lower()
        return [value for key, value in self.headers if key.lower() == wanted]

    def header(self, name: str) -> str:
        """Header value, repeated values comma-joined, or '' if absent."""
        return ",".join(self.header_values(name))


class AuthOutcome(str, Enum):
    """Result of checking a request's SharedKey signature."""
    OK = "ok"
    MISSING_HEADER = "missing_header"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    MALFORMED_HEADER = "malformed_header"
    ACCOUNT_MISMATCH = "account_mismatch"
    SIGNATURE_MISMATCH = "signature_mismatch"


@dataclass(frozen=True)
class AuthResult:
    """Outcome of :meth:`SharedKeyAuthenticator.evaluate`."""

    outcome: AuthOutcome
    account_name: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is AuthOutcome.OK


class SharedKeyAuthenticator:
    """
    Validates SharedKey authentication for requests to the configured account.

    Pure with respect to its inputs: nothing is cached between requests.
    """

    def __init__(self, credentials: SharedKeyCredentials):
        """
        Initialize SharedKey authenticator.

        Args:
            credentials: The single account and key this instance serves
        """
        self.credentials = credentials

    def validate(self, request: SignedRequest) -> bool:
        """Return True only for a well-formed, correctly signed request."""
        return self.evaluate(request).ok

    def evaluate(self, request: SignedRequest) -> AuthResult:
        """
        Check a request's SharedKey signature.

        Args:
            request: Request to check

        Returns:
            AuthResult naming the outcome; never raises for bad input
        """
        auth_header = request.header("Authorization")
        if not auth_header:
            return AuthResult(AuthOutcome.MISSING_HEADER)

        try:
            account_name, provided_signature = parse_authorization_header(auth_header)
        except UnsupportedAuthSchemeError:
            return AuthResult(AuthOutcome.UNSUPPORTED_SCHEME)
        except InvalidAuthorizationHeaderError:
            return AuthResult(AuthOutcome.MALFORMED_HEADER)

        if account_name.lower() != self.credentials.account_name.lower():
            return AuthResult(AuthOutcome.ACCOUNT_MISMATCH, account_name)

        canonical_string = build_canonical_string(request, self.credentials.account_name)
        expected_signature = compute_signature(canonical_string, self.credentials.account_key)

        if not hmac.compare_digest(
            expected_signature.encode("utf-8"), provided_signature.encode("utf-8")
        ):
            logger.debug(f"Signature mismatch, canonical string was: {canonical_string!r}")
            return AuthResult(AuthOutcome.SIGNATURE_MISMATCH, account_name)

        return AuthResult(AuthOutcome.OK, account_name)


def parse_authorization_header(auth_header: str) -> Tuple[str, str]:
    """
    Parse SharedKey Authorization header.

    Expected format: "SharedKey account:signature"

    Args:
        auth_header: Authorization header value

    Returns:
        Tuple of (account_name, signature)

    Raises:
        UnsupportedAuthSchemeError: If the scheme is not SharedKey
        InvalidAuthorizationHeaderError: If header is malformed
    """
    parts = auth_header.strip().split(maxsplit=1)

    if len(parts) != 2:
        raise InvalidAuthorizationHeaderError(
            "Authorization header must be in format: SharedKey account:signature"
        )

    scheme, credentials = parts

    if scheme.lower() != SCHEME.lower():
        raise UnsupportedAuthSchemeError(scheme)

    pieces = credentials.split(":")
    if len(pieces) != 2:
        raise InvalidAuthorizationHeaderError(
            "Credentials must be in format: account:signature"
        )

    account_name, signature = pieces

    if not account_name or not signature:
        raise InvalidAuthorizationHeaderError(
            "Account name and signature cannot be empty"
        )

    return account_name, signature


def build_canonical_string(request: SignedRequest, account_name: str) -> str:
    """
    Build canonical string for SharedKey signature computation.

    Format:
        VERB\\n
        Content-Encoding\\n
        Content-Language\\n
        Content-Length\\n      ("0" is written as an empty line)
        Content-MD5\\n
        Content-Type\\n
        Date\\n                (always empty, x-ms-date is used instead)
        If-Modified-Since\\n
        If-Match\\n
        If-None-Match\\n
        If-Unmodified-Since\\n
        Range\\n
        CanonicalizedHeaders   (one line per x-ms-* header)
        CanonicalizedResource

    Args:
        request: Request to canonicalize
        account_name: Storage account name

    Returns:
        Canonical string for signing
    """
    content_length = request.header("Content-Length")

    lines = [
        request.method,
        request.header("Content-Encoding"),
        request.header("Content-Language"),
        "" if content_length == "0" else content_length,
        request.header("Content-MD5"),
        request.header("Content-Type"),
        "",
    ]
    lines.extend(request.header(name) for name in CONDITIONAL_HEADERS)
    lines.extend(_canonicalized_headers(request.headers))
    lines.append(_canonicalized_resource(request, account_name))

    return "\n".join(lines)


def _canonicalized_headers(headers: List[Tuple[str, str]]) -> List[str]:
    """
    Build CanonicalizedHeaders lines.

    Rules:
    1. Include all headers starting with "x-ms-", any case
    2. Lowercase names, merge repeated names, sort by name
    3. Format: "header-name:value1,value2", trimmed
    """
    grouped: Dict[str, List[str]] = {}
    for name, value in headers:
        lowered = name.lower()
        if lowered.startswith(MS_HEADER_PREFIX):
            grouped.setdefault(lowered, []).append(value)

    return [
        f"{name}:{','.join(values).strip()}"
        for name, values in sorted(grouped.items())
    ]


def _canonicalized_resource(request: SignedRequest, account_name: str) -> str:
    """
    Build CanonicalizedResource string.

    Format:
        /account-name/resource-path
        param1:value1
        param2:value2,value3

    Parameter names are lowercased and merged case-insensitively; values are
    comma-joined in arrival order and not trimmed.
    """
    resource = f"/{account_name}{request.path}"

    params: Dict[str, List[str]] = {}
    for name, value in request.query:
        params.setdefault(name.lower(), []).append(value)

    for name in sorted(params):
        resource += f"\n{name}:{','.join(params[name])}"

    return resource


def compute_signature(canonical_string: str, account_key: bytes) -> str:
    """
    Compute HMAC-SHA256 signature.

    Signature = Base64(HMAC-SHA256(UTF8(StringToSign), AccountKey))

    Args:
        canonical_string: Canonical string to sign
        account_key: Decoded account key bytes

    Returns:
        Base64-encoded signature
    """
    signature_bytes = hmac.new(
        account_key,
        canonical_string.encode("utf-8"),
        hashlib.sha256
    ).digest()

    return base64.b64encode(signature_bytes).decode("utf-8")


def sign_request(request: SignedRequest, credentials: SharedKeyCredentials) -> str:
    """
    Compute the Authorization header value a client would send.

    Returns:
        "SharedKey account:signature"
    """
    canonical_string = build_canonical_string(request, credentials.account_name)
    signature = compute_signature(canonical_string, credentials.account_key)
    return f"{SCHEME} {credentials.account_name}:{signature}"
