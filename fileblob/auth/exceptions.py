"""
Authentication exceptions for FileBlob.

Author: FileBlob Contributors
Date: 2025
"""


class AuthenticationError(Exception):
    """Base exception for authentication errors."""
    
    def __init__(self, message: str, error_code: str = "AuthenticationFailed"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


class InvalidAuthorizationHeaderError(AuthenticationError):
    """Raised when Authorization header is malformed."""
    
    def __init__(self, message: str = "Invalid Authorization header format"):
        super().__init__(message, "InvalidAuthorizationHeader")


class UnsupportedAuthSchemeError(AuthenticationError):
    """Raised when authentication scheme is not supported."""
    
    def __init__(self, scheme: str):
        self.scheme = scheme
        super().__init__(
            f"Unsupported authentication scheme: {scheme}",
            "UnsupportedAuthScheme"
        )
