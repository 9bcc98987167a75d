"""
Ory authentication and authorization for MCP servers.

OryProvider proxies the OAuth 2.1 authorization-server role to Ory Network or
Ory Hydra; McpAccessControl maps JWT callers onto Ory identities.
"""

from ory_mcp.access_control import AccessControlOptions, McpAccessControl
from ory_mcp.config import create_ory_provider
from ory_mcp.errors import (
    BackendError,
    ClientMismatchError,
    ConfigurationError,
    OryProviderError,
    ResponseValidationError,
    TokenNotActiveError,
    TokenVerificationError,
    UnsupportedOperationError,
)
from ory_mcp.oauth_provider import (
    DEFAULT_SCOPES,
    OryClientsStore,
    OryEndpoints,
    OryOptions,
    OryProvider,
    OryProviderType,
    ProviderCapability,
    RevocationRequest,
)

__version__ = "0.1.0"

__all__ = [
    "AccessControlOptions",
    "BackendError",
    "ClientMismatchError",
    "ConfigurationError",
    "DEFAULT_SCOPES",
    "McpAccessControl",
    "OryClientsStore",
    "OryEndpoints",
    "OryOptions",
    "OryProvider",
    "OryProviderError",
    "OryProviderType",
    "ProviderCapability",
    "ResponseValidationError",
    "RevocationRequest",
    "TokenNotActiveError",
    "TokenVerificationError",
    "UnsupportedOperationError",
    "create_ory_provider",
]
