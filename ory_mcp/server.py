#!/usr/bin/env python3
"""
Ory MCP Example Server

Example MCP server whose OAuth 2.1 authorization server role is delegated to
Ory through OryProvider. Clients discover this server's OAuth endpoints, are
redirected to Ory to log in, and use Ory-issued tokens against /mcp.

Endpoints:
- /mcp: FastMCP streamable HTTP endpoint (Bearer token with ory.admin scope)
- /.well-known/oauth-authorization-server, /.well-known/oauth-protected-resource
- /authorize, /token, /revoke, /register (revoke/register only when configured)
- /healthz, /readyz
"""

import argparse
import base64
import binascii
import dataclasses
import json
import logging
import os
import secrets
import sys
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx
import uvicorn
from fastmcp import FastMCP
from mcp.server.auth.provider import AuthorizationParams
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from ory_mcp.access_control import AccessControlOptions, McpAccessControl
from ory_mcp.config import build_provider_options, get_provider_config_summary, load_ory_config_from_file, load_server_settings
from ory_mcp.errors import BackendError, ConfigurationError, OryProviderError
from ory_mcp.middleware import OryBearerAuthMiddleware, RedirectResponseSink
from ory_mcp.oauth_provider import OryProvider, ProviderCapability, RevocationRequest, match_redirect_uri

logger = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format='%(levelname)s:     %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )
    # Set log levels for external libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# ============================================================================
# OAuth Routes
# ============================================================================

def _oauth_error(error: str, description: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(
        {"error": error, "error_description": description},
        status_code=status_code,
        headers={"Cache-Control": "no-store"},
    )


def _provider_failure(e: OryProviderError, grant_error: str = "invalid_grant") -> JSONResponse:
    """Translate provider errors into OAuth error responses."""
    if isinstance(e, BackendError) and 400 <= e.status_code < 500:
        return _oauth_error(grant_error, str(e), 400)
    logger.error(f"Provider error: {e}")
    return _oauth_error("server_error", str(e), 500)


def build_auth_routes(
    provider: OryProvider,
    issuer_url: str,
    base_url: str,
    service_documentation_url: Optional[str] = None,
    scopes_supported: Optional[List[str]] = None,
) -> List[Route]:
    """
    Get the OAuth2 authorization-server routes backed by the provider.

    Args:
        provider: OryProvider handling every OAuth operation
        issuer_url: Issuer advertised in metadata (the Ory project URL)
        base_url: Public URL of this MCP server
        service_documentation_url: Optional documentation link for metadata
        scopes_supported: Scopes advertised in metadata

    Returns:
        List of Starlette Route objects
    """
    base_url = base_url.rstrip('/')
    scopes = scopes_supported or ["ory.admin"]

    async def authenticate_client(request: Request, form) -> Any:
        """Resolve the calling client from client_secret_basic or form credentials."""
        client_id = form.get("client_id")
        client_secret = form.get("client_secret")

        auth_header = request.headers.get("Authorization", "")
        if auth_header.lower().startswith("basic "):
            try:
                decoded = base64.b64decode(auth_header[6:]).decode("utf-8")
                client_id, _, client_secret = decoded.partition(":")
            except (binascii.Error, UnicodeDecodeError):
                return _oauth_error("invalid_client", "Malformed Basic credentials", 401)

        if not client_id:
            return _oauth_error("invalid_request", "client_id is required")

        client = await provider.get_client(client_id)
        if client is None:
            return _oauth_error("invalid_client", f"Unknown client: {client_id}", 401)

        if client.client_secret and not secrets.compare_digest(client.client_secret, client_secret or ""):
            return _oauth_error("invalid_client", "Invalid client credentials", 401)

        return client

    async def authorization_server_metadata(request: Request) -> JSONResponse:
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)"""
        metadata: Dict[str, Any] = {
            "issuer": issuer_url,
            "authorization_endpoint": f"{base_url}/authorize",
            "token_endpoint": f"{base_url}/token",
            "scopes_supported": scopes,
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic", "none"],
        }
        if service_documentation_url:
            metadata["service_documentation"] = service_documentation_url
        if provider.supports(ProviderCapability.REVOCATION):
            metadata["revocation_endpoint"] = f"{base_url}/revoke"
        if provider.supports(ProviderCapability.REGISTRATION):
            metadata["registration_endpoint"] = f"{base_url}/register"
        return JSONResponse(metadata)

    async def protected_resource_metadata(request: Request) -> JSONResponse:
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)"""
        return JSONResponse({
            "resource": f"{base_url}/mcp",
            "authorization_servers": [base_url],
            "bearer_methods_supported": ["header"],
            "scopes_supported": scopes,
        })

    async def authorize(request: Request) -> Response:
        params = request.query_params if request.method == "GET" else await request.form()

        client_id = params.get("client_id")
        if not client_id:
            return _oauth_error("invalid_request", "client_id is required")

        try:
            client = await provider.get_client(client_id)
        except OryProviderError as e:
            return _provider_failure(e)
        if client is None:
            return _oauth_error("invalid_client", f"Unknown client: {client_id}")

        registered = [str(uri) for uri in (client.redirect_uris or [])]
        redirect_uri = params.get("redirect_uri")
        if redirect_uri:
            redirect_uri = match_redirect_uri(client, redirect_uri)
            if redirect_uri is None:
                return _oauth_error("invalid_request", "redirect_uri is not registered for this client")
        else:
            if len(registered) != 1:
                return _oauth_error("invalid_request", "redirect_uri is required")
            redirect_uri = registered[0]

        if params.get("response_type") != "code":
            return _oauth_error("unsupported_response_type", "Only response_type=code is supported")
        if not params.get("code_challenge"):
            return _oauth_error("invalid_request", "code_challenge is required")
        if params.get("code_challenge_method") != "S256":
            return _oauth_error("invalid_request", "code_challenge_method must be S256")

        auth_params = AuthorizationParams(
            state=params.get("state"),
            scopes=params.get("scope", "").split(),
            code_challenge=params["code_challenge"],
            redirect_uri=redirect_uri,
            redirect_uri_provided_explicitly=bool(params.get("redirect_uri")),
        )

        sink = RedirectResponseSink()
        await provider.authorize(client, auth_params, sink)
        return sink.response

    async def token(request: Request) -> Response:
        form = await request.form()
        try:
            client = await authenticate_client(request, form)
        except OryProviderError as e:
            return _provider_failure(e)
        if isinstance(client, Response):
            return client

        grant_type = form.get("grant_type")
        try:
            if grant_type == "authorization_code":
                code = form.get("code")
                if not code:
                    return _oauth_error("invalid_request", "code is required")
                code_verifier = form.get("code_verifier")
                if not provider.skip_local_pkce_validation:
                    challenge = await provider.challenge_for_authorization_code(client, code)
                    if not challenge or not code_verifier:
                        return _oauth_error("invalid_grant", "PKCE verification failed")
                tokens = await provider.exchange_authorization_code(client, code, code_verifier)
            elif grant_type == "refresh_token":
                refresh_token = form.get("refresh_token")
                if not refresh_token:
                    return _oauth_error("invalid_request", "refresh_token is required")
                scopes = form.get("scope", "").split() or None
                tokens = await provider.exchange_refresh_token(client, refresh_token, scopes)
            else:
                return _oauth_error("unsupported_grant_type", f"Unsupported grant_type: {grant_type}")
        except OryProviderError as e:
            return _provider_failure(e)

        return JSONResponse(
            tokens.model_dump(mode="json", exclude_none=True),
            headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
        )

    async def revoke(request: Request) -> Response:
        form = await request.form()
        try:
            client = await authenticate_client(request, form)
            if isinstance(client, Response):
                return client
            if not form.get("token"):
                return _oauth_error("invalid_request", "token is required")
            await provider.revoke_token(
                client,
                RevocationRequest(token=form["token"], token_type_hint=form.get("token_type_hint")),
            )
        except OryProviderError as e:
            return _provider_failure(e, grant_error="invalid_request")
        return JSONResponse({})

    async def register(request: Request) -> Response:
        try:
            metadata = OAuthClientMetadata.model_validate(await request.json())
        except (ValueError, ValidationError) as e:
            return _oauth_error("invalid_client_metadata", str(e))

        issue_secret = metadata.token_endpoint_auth_method != "none"
        client = OAuthClientInformationFull(
            **metadata.model_dump(),
            client_id=str(uuid.uuid4()),
            client_secret=secrets.token_hex(32) if issue_secret else None,
            client_id_issued_at=int(time.time()),
        )
        try:
            registered = await provider.register_client(client)
        except OryProviderError as e:
            return _provider_failure(e, grant_error="invalid_client_metadata")
        return JSONResponse(registered.model_dump(mode="json", exclude_none=True), status_code=201)

    routes = [
        Route("/.well-known/oauth-authorization-server", authorization_server_metadata, methods=["GET"]),
        Route("/.well-known/oauth-protected-resource", protected_resource_metadata, methods=["GET"]),
        Route("/authorize", authorize, methods=["GET", "POST"]),
        Route("/token", token, methods=["POST"]),
    ]

    if provider.supports(ProviderCapability.REVOCATION):
        routes.append(Route("/revoke", revoke, methods=["POST"]))
    if provider.supports(ProviderCapability.REGISTRATION):
        routes.append(Route("/register", register, methods=["POST"]))

    return routes


# ============================================================================
# Health Check Endpoints
# ============================================================================

async def liveness_check(request):
    """Kubernetes liveness probe endpoint."""
    return JSONResponse({"status": "alive"})


async def readiness_check(request):
    """Kubernetes readiness probe endpoint."""
    return JSONResponse({"status": "ready"})


# ============================================================================
# MCP Server
# ============================================================================

async def get_project(project_url: str, api_key: str, project_id: str) -> Dict[str, Any]:
    """Fetch an Ory Network project."""
    async with httpx.AsyncClient(
        base_url=project_url.rstrip('/'),
        headers={"Authorization": f"Bearer {api_key}"},
    ) as client:
        response = await client.get(f"/projects/{project_id}")
    response.raise_for_status()
    return response.json()


def create_mcp_server(settings: Dict[str, Any], access_control: Optional[McpAccessControl] = None) -> FastMCP:
    """Create the FastMCP server and register its tools."""
    mcp = FastMCP("ory-mcp-example")

    @mcp.tool(name="get_project")
    async def get_project_tool(project_id: str) -> str:
        """Get a project by ID for a given Ory Network workspace."""
        try:
            project = await get_project(settings["project_url"], settings["project_api_key"], project_id)
        except httpx.HTTPError as e:
            return f"Error getting project: {e}"
        return json.dumps(project, indent=2)

    if access_control is not None:
        definition = access_control.get_tool_definition()

        @mcp.tool(name=definition.name, description=definition.description)
        async def authenticate_tool(token: str, password: str) -> Dict[str, Any]:
            result = await definition.handler(token=token, password=password)
            return dataclasses.asdict(result)

    return mcp


def create_access_control(settings: Dict[str, Any]) -> Optional[McpAccessControl]:
    """Build the access-control tool when a JWKS URL is configured."""
    if not settings.get("jwks_url"):
        return None
    if not settings.get("jwt_issuer") or not settings.get("jwt_audience"):
        raise ConfigurationError("jwt_issuer and jwt_audience are required when jwks_url is set")
    if not settings.get("project_url") or not settings.get("project_api_key"):
        raise ConfigurationError("project_url and project_api_key are required for access control")

    return McpAccessControl(AccessControlOptions(
        jwks_url=settings["jwks_url"],
        issuer=settings["jwt_issuer"],
        audience=settings["jwt_audience"],
        claim_key=settings["claim_key"],
        ory_project_url=settings["project_url"],
        ory_api_key=settings["project_api_key"],
    ))


def create_app(provider: OryProvider, settings: Dict[str, Any]):
    """Create the Starlette app: MCP endpoint, OAuth routes and health checks."""
    if not settings.get("project_url"):
        raise ConfigurationError("ORY_PROJECT_URL must be set")
    base_url = settings["mcp_base_url"]

    mcp = create_mcp_server(settings, create_access_control(settings))
    app = mcp.http_app(transport="http", path="/mcp")

    app.router.routes.extend(build_auth_routes(
        provider,
        issuer_url=settings["project_url"],
        base_url=base_url,
        service_documentation_url=settings.get("service_documentation_url"),
        scopes_supported=settings["required_scopes"],
    ))

    app.add_middleware(
        OryBearerAuthMiddleware,
        provider=provider,
        required_scopes=settings["required_scopes"],
        exclude_paths=[
            "/healthz", "/readyz", "/.well-known/",
            "/authorize", "/token", "/revoke", "/register",
        ],
    )

    app.add_route("/healthz", liveness_check)
    app.add_route("/readyz", readiness_check)
    return app


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Ory MCP Example Server"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "3000")),
        help="Port to listen on (default: 3000)"
    )
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to Ory config file (default: search /etc/mcp/ory.yaml, /config/ory.yaml, ./ory.yaml)"
    )

    args = parser.parse_args()
    configure_logging()

    config = load_ory_config_from_file(args.config) or {}
    options = build_provider_options(config)
    provider = OryProvider(options)

    settings = load_server_settings(config)
    if not settings["mcp_base_url"]:
        settings["mcp_base_url"] = f"http://localhost:{args.port}"

    app = create_app(provider, settings)

    logger.info("=" * 70)
    logger.info("Ory MCP Example Server")
    logger.info("=" * 70)
    logger.info(f"Listening on: {args.host}:{args.port}")
    logger.info(f"MCP Endpoint: {settings['mcp_base_url']}/mcp")
    logger.info(f"Required scopes: {' '.join(settings['required_scopes'])}")
    for key, value in get_provider_config_summary(options).items():
        logger.info(f"  {key}: {value}")
    logger.info("=" * 70)

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="info"
    )


if __name__ == "__main__":
    main()
