"""
Error types raised by the Ory MCP auth adapter.

Every error derives from OryProviderError so callers (an OAuth framework or
the example server) can catch the whole family in one place.
"""

from typing import Optional


class OryProviderError(Exception):
    """Base class for all adapter errors."""


class ConfigurationError(OryProviderError):
    """A required backend URL or credential is missing or invalid."""


class BackendError(OryProviderError):
    """The identity provider answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int, status_text: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.status_text = status_text or ""


class ResponseValidationError(OryProviderError):
    """A backend response body did not match the expected schema."""


class TokenVerificationError(OryProviderError):
    """Introspection succeeded but the token cannot be accepted."""


class TokenNotActiveError(TokenVerificationError):
    """The introspected token is not active."""


class ClientMismatchError(TokenVerificationError):
    """The token was issued to a client unknown to the backend."""


class UnsupportedOperationError(OryProviderError):
    """The operation's endpoint was not configured for this provider."""
