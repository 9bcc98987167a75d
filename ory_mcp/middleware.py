"""
Starlette glue for the Ory OAuth provider.

- OryBearerAuthMiddleware verifies Bearer tokens through provider introspection
- RedirectResponseSink turns OryProvider.authorize() redirects into a Starlette response
"""

import logging
from typing import Iterable, List, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse

from ory_mcp.errors import BackendError, OryProviderError, TokenVerificationError
from ory_mcp.oauth_provider import OryProvider

# Configure logging
logger = logging.getLogger(__name__)


class RedirectResponseSink:
    """Captures the redirect issued by OryProvider.authorize()."""

    def __init__(self, status_code: int = 302):
        self.status_code = status_code
        self.response: Optional[RedirectResponse] = None

    def redirect(self, url: str) -> RedirectResponse:
        self.response = RedirectResponse(url, status_code=self.status_code)
        return self.response


def _challenge(error: str, description: str, status_code: int) -> JSONResponse:
    # WWW-Authenticate per RFC 6750
    www_authenticate = f'Bearer realm="MCP API", error="{error}", error_description="{description}"'
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "error_description": description},
        headers={"WWW-Authenticate": www_authenticate},
    )


class OryBearerAuthMiddleware(BaseHTTPMiddleware):
    """
    Starlette middleware for Ory bearer authentication.

    Verifies access tokens with OryProvider.verify_access_token on every
    request outside exclude_paths, checks required scopes, and injects the
    resulting AccessToken into request.state.auth.
    """

    def __init__(
        self,
        app,
        provider: OryProvider,
        required_scopes: Optional[Iterable[str]] = None,
        exclude_paths: Optional[List[str]] = None,
    ):
        """
        Initialize the middleware.

        Args:
            app: Starlette application
            provider: OryProvider used for token introspection
            required_scopes: Scopes every token must carry
            exclude_paths: Path prefixes served without authentication
        """
        super().__init__(app)
        self.provider = provider
        self.required_scopes = list(required_scopes or [])
        self.exclude_paths = exclude_paths or ["/healthz", "/readyz", "/.well-known/"]

    async def dispatch(self, request: Request, call_next):
        """Process request with authentication."""

        for excluded in self.exclude_paths:
            if request.url.path.startswith(excluded):
                return await call_next(request)

        auth_header = request.headers.get('Authorization')
        if not auth_header:
            return _challenge("invalid_request", "Missing Authorization header", 401)

        parts = auth_header.split()
        if len(parts) != 2 or parts[0].lower() != 'bearer':
            return _challenge("invalid_request", "Invalid Authorization header format. Expected 'Bearer <token>'", 401)

        try:
            auth = await self.provider.verify_access_token(parts[1])
        except TokenVerificationError as e:
            logger.warning(f"Authentication failed for {request.url.path}: {e}")
            return _challenge("invalid_token", str(e), 401)
        except BackendError as e:
            if 400 <= e.status_code < 500:
                logger.warning(f"Token rejected by introspection for {request.url.path}: {e}")
                return _challenge("invalid_token", "Token verification failed", 401)
            logger.error(f"Introspection backend error: {e}")
            return JSONResponse(
                status_code=500,
                content={"error": "server_error", "error_description": "Token introspection unavailable"},
            )
        except OryProviderError as e:
            logger.error(f"Unexpected authentication error: {e}")
            return JSONResponse(
                status_code=500,
                content={"error": "server_error", "error_description": "Internal authentication error"},
            )

        missing = [scope for scope in self.required_scopes if scope not in auth.scopes]
        if missing:
            logger.warning(f"Token for client {auth.client_id} lacks scopes: {missing}")
            return _challenge("insufficient_scope", f"Missing required scope(s): {' '.join(missing)}", 403)

        request.state.auth = auth
        request.state.client_id = auth.client_id
        return await call_next(request)
