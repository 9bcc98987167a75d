"""
Ory OAuth2 Provider for MCP Servers

This module implements the authorization-server side of an MCP server by
proxying every OAuth 2.1 operation to Ory. Nothing is stored locally: clients,
authorization codes and tokens all live in the identity provider.

Supported backends:
- Ory Network (hosted project, admin API authenticated with the project API key)
- Ory Hydra (self-hosted, admin API authenticated with the Hydra API key)

Features:
- Authorization Code flow with PKCE (S256 only)
- Code and refresh-token exchange against the upstream token endpoint
- Token introspection with client lookup
- Optional token revocation and dynamic client registration
"""

import base64
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, Type, TypeVar, Union
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
from mcp.server.auth.provider import AccessToken, AuthorizationParams
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken
from pydantic import BaseModel, ValidationError

from ory_mcp.errors import (
    BackendError,
    ClientMismatchError,
    ConfigurationError,
    OryProviderError,
    ResponseValidationError,
    TokenNotActiveError,
    UnsupportedOperationError,
)

# Configure logging
logger = logging.getLogger(__name__)

# Scope requested when the client asks for none
DEFAULT_SCOPES = ["ory.admin"]

CODE_CHALLENGE_METHOD = "S256"

ModelT = TypeVar("ModelT", bound=BaseModel)


class OryProviderType(str, Enum):
    """Identity provider deployment flavor."""

    NETWORK = "network"
    HYDRA = "hydra"


class ProviderCapability(str, Enum):
    """Optional operations, enabled by configuring their endpoint."""

    REVOCATION = "revocation"
    REGISTRATION = "registration"


@dataclass(frozen=True)
class OryEndpoints:
    """Public OAuth2 endpoints of the identity provider."""

    authorization_url: str
    token_url: str
    revocation_url: Optional[str] = None
    registration_url: Optional[str] = None


@dataclass(frozen=True)
class OryOptions:
    """
    Provider configuration.

    Only the credential pair matching provider_type is used:
    network_project_url + network_project_api_key for Ory Network,
    hydra_admin_url + hydra_api_key for Ory Hydra.
    """

    endpoints: OryEndpoints
    provider_type: Union[OryProviderType, str] = OryProviderType.NETWORK
    hydra_admin_url: Optional[str] = None
    hydra_api_key: Optional[str] = None
    network_project_url: Optional[str] = None
    network_project_api_key: Optional[str] = None


class IntrospectionResult(BaseModel):
    """RFC 7662 introspection response, reduced to the fields we use."""

    active: bool
    client_id: Optional[str] = None
    scope: Optional[str] = None
    exp: Optional[int] = None


class RevocationRequest(BaseModel):
    """RFC 7009 revocation request."""

    token: str
    token_type_hint: Optional[str] = None


class RedirectSink(Protocol):
    """Anything that can send an HTTP redirect to the user agent."""

    def redirect(self, url: str) -> Any:
        ...


class _BackendTarget:
    """Admin API base URL and auth header conventions for one backend."""

    def __init__(self, base_url: str, api_key: str):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    def admin_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def introspection_authorization(self, token: str) -> str:
        raise NotImplementedError


class _NetworkBackend(_BackendTarget):
    def introspection_authorization(self, token: str) -> str:
        return f"Bearer {self.api_key}"


class _HydraBackend(_BackendTarget):
    def introspection_authorization(self, token: str) -> str:
        # Hydra's admin introspection takes the token itself as Basic credentials
        encoded = base64.b64encode(token.encode("utf-8")).decode("ascii")
        return f"Basic {encoded}"


def _normalize_uri(uri: str) -> str:
    parts = urlsplit(uri)
    return urlunsplit(parts._replace(path=parts.path or "/"))


def match_redirect_uri(client: OAuthClientInformationFull, requested: str) -> Optional[str]:
    """
    Find the client's registered redirect URI equal to requested.

    URL parsing may add a trailing "/" to a bare-host URI, so comparison
    ignores that difference. The registered string is returned because Ory
    compares redirect URIs byte for byte.
    """
    wanted = _normalize_uri(str(requested))
    for uri in client.redirect_uris or []:
        if _normalize_uri(str(uri)) == wanted:
            return str(uri)
    return None


def _backend_error(prefix: str, response: httpx.Response) -> BackendError:
    """Build a BackendError carrying both the status code and reason phrase."""
    status_text = response.reason_phrase or ""
    message = f"{prefix}: {response.status_code} {status_text}".rstrip()
    return BackendError(message, response.status_code, status_text)


def _read_json(response: httpx.Response, what: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise ResponseValidationError(f"{what} response is not valid JSON: {e}") from e


def _validate(model: Type[ModelT], payload: Any, what: str) -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ResponseValidationError(f"Invalid {what} payload: {e}") from e


class OryClientsStore:
    """
    Registered-clients store backed by the provider's admin API.

    register_client is only usable when a registration URL is configured;
    check supports_registration before offering it.
    """

    def __init__(self, provider: "OryProvider"):
        self._provider = provider

    @property
    def supports_registration(self) -> bool:
        return ProviderCapability.REGISTRATION in self._provider.capabilities

    async def get_client(self, client_id: str) -> Optional[OAuthClientInformationFull]:
        return await self._provider.get_client(client_id)

    async def register_client(self, client: OAuthClientInformationFull) -> OAuthClientInformationFull:
        return await self._provider.register_client(client)


class OryProvider:
    """
    OAuth2 authorization-server provider that proxies to Ory.

    The provider is stateless: the only value it generates is the OAuth
    `state` parameter when a client omits it. PKCE verifiers are validated by
    Ory during code exchange, so consuming frameworks must honor
    skip_local_pkce_validation.
    """

    skip_local_password_grant = False
    skip_local_pkce_validation = True

    def __init__(self, options: OryOptions, timeout: Optional[float] = None):
        """
        Initialize the provider.

        Args:
            options: Endpoints, backend type and backend credentials
            timeout: Optional HTTP timeout in seconds (default: httpx default)

        Raises:
            ConfigurationError: If the provider type is unknown or a required
                endpoint is missing
        """
        endpoints = options.endpoints
        if endpoints is None or not endpoints.authorization_url or not endpoints.token_url:
            raise ConfigurationError("Authorization URL and token URL are required")

        try:
            self.provider_type = OryProviderType(options.provider_type)
        except ValueError:
            raise ConfigurationError(f"Invalid provider type: {options.provider_type!r}") from None

        self.options = options
        self.endpoints = endpoints
        self._client_kwargs: Dict[str, Any] = {"timeout": timeout} if timeout is not None else {}

        capabilities = set()
        if endpoints.revocation_url:
            capabilities.add(ProviderCapability.REVOCATION)
        if endpoints.registration_url:
            capabilities.add(ProviderCapability.REGISTRATION)
        self.capabilities: FrozenSet[ProviderCapability] = frozenset(capabilities)

        logger.info(f"Ory OAuth provider initialized ({self.provider_type.value} backend)")
        logger.info(f"  Authorization URL: {endpoints.authorization_url}")
        logger.info(f"  Token URL: {endpoints.token_url}")
        logger.info(f"  Revocation: {'enabled' if endpoints.revocation_url else 'disabled'}")
        logger.info(f"  Dynamic registration: {'enabled' if endpoints.registration_url else 'disabled'}")

    # ========== Backend plumbing ==========

    def supports(self, capability: ProviderCapability) -> bool:
        return capability in self.capabilities

    def _require(self, capability: ProviderCapability, message: str) -> None:
        if capability not in self.capabilities:
            raise UnsupportedOperationError(message)

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(**self._client_kwargs)

    def _resolve_backend(self) -> _BackendTarget:
        """Pick admin base URL and auth conventions for the configured backend."""
        opts = self.options
        if self.provider_type is OryProviderType.HYDRA:
            if not opts.hydra_admin_url:
                raise ConfigurationError("Hydra admin URL is required for hydra provider type")
            if not opts.hydra_api_key:
                raise ConfigurationError("Hydra API key is required for hydra provider type")
            return _HydraBackend(opts.hydra_admin_url, opts.hydra_api_key)

        if not opts.network_project_url:
            raise ConfigurationError("Network project URL is required for network provider type")
        if not opts.network_project_api_key:
            raise ConfigurationError("Network project API key is required for network provider type")
        return _NetworkBackend(opts.network_project_url, opts.network_project_api_key)

    async def _post_form(self, url: str, data: Dict[str, str]) -> httpx.Response:
        async with self._http_client() as client:
            return await client.post(url, data=data)

    # ========== Client Management ==========

    @property
    def clients_store(self) -> OryClientsStore:
        return OryClientsStore(self)

    async def _fetch_clients(self) -> List[OAuthClientInformationFull]:
        backend = self._resolve_backend()
        url = f"{backend.base_url}/admin/clients"
        logger.debug(f"Listing OAuth2 clients from {url}")

        async with self._http_client() as client:
            response = await client.get(url, headers=backend.admin_headers())

        if not response.is_success:
            raise _backend_error("Failed to list OAuth2 clients", response)

        payload = _read_json(response, "Client list")
        if not isinstance(payload, list):
            raise ResponseValidationError("Client list response is not a JSON array")
        return [_validate(OAuthClientInformationFull, item, "client") for item in payload]

    async def list_oauth2_clients(self) -> Dict[str, OAuthClientInformationFull]:
        """
        Fetch every registered client, keyed by client_id.

        The list is re-fetched on each call; cost grows with the number of
        clients registered in the project.
        """
        try:
            clients = await self._fetch_clients()
        except Exception as e:
            logger.error(f"Error listing OAuth2 clients: {e}")
            raise
        return {client.client_id: client for client in clients}

    async def get_client(self, client_id: str) -> Optional[OAuthClientInformationFull]:
        """Return the registered client, or None if the backend does not know it."""
        try:
            clients = await self.list_oauth2_clients()
        except Exception as e:
            logger.error(f"Error getting client {client_id}: {e}")
            raise
        return clients.get(client_id)

    async def register_client(self, client: OAuthClientInformationFull) -> OAuthClientInformationFull:
        """
        Register a client through the provider's dynamic registration endpoint.

        Raises:
            UnsupportedOperationError: If no registration URL is configured
            BackendError: If the provider rejects the registration
        """
        self._require(ProviderCapability.REGISTRATION, "Dynamic client registration is not configured")

        async with self._http_client() as http:
            response = await http.post(
                self.endpoints.registration_url,
                json=client.model_dump(mode="json", exclude_none=True),
            )

        if not response.is_success:
            raise _backend_error("Client registration failed", response)

        registered = _validate(OAuthClientInformationFull, _read_json(response, "Registration"), "client")
        logger.info(f"✅ Registered OAuth2 client {registered.client_id}")
        return registered

    # ========== Authorization Flow ==========

    async def authorize(
        self,
        client: OAuthClientInformationFull,
        params: AuthorizationParams,
        response_sink: RedirectSink,
    ) -> str:
        """
        Redirect the user agent to Ory's authorization endpoint.

        A missing state is generated (32 random bytes, hex) and written back
        to params; empty scopes are replaced with DEFAULT_SCOPES.

        Returns:
            The redirect URL that was sent to response_sink
        """
        if not params.state:
            params.state = secrets.token_hex(32)

        if not params.scopes:
            params.scopes = list(DEFAULT_SCOPES)

        # code exchange sends the registered string; authorize must match it
        redirect_uri = match_redirect_uri(client, str(params.redirect_uri)) or str(params.redirect_uri)

        query = {
            "client_id": client.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "code_challenge": params.code_challenge,
            "code_challenge_method": CODE_CHALLENGE_METHOD,
        }
        if params.state:
            query["state"] = params.state
        if params.scopes:
            query["scope"] = " ".join(params.scopes)

        target = urlsplit(self.endpoints.authorization_url)
        redirect_url = urlunsplit(target._replace(query=urlencode(query)))

        logger.debug(f"Redirecting client {client.client_id} to {target.netloc}{target.path}")
        response_sink.redirect(redirect_url)
        return redirect_url

    async def challenge_for_authorization_code(
        self, client: OAuthClientInformationFull, authorization_code: str
    ) -> str:
        # Ory holds the code challenge and checks the verifier during exchange
        return ""

    # ========== Token Exchange ==========

    async def _exchange(self, data: Dict[str, str], failure: str) -> OAuthToken:
        response = await self._post_form(self.endpoints.token_url, data)
        if not response.is_success:
            raise _backend_error(failure, response)
        return _validate(OAuthToken, _read_json(response, "Token"), "token")

    async def exchange_authorization_code(
        self,
        client: OAuthClientInformationFull,
        authorization_code: str,
        code_verifier: Optional[str] = None,
    ) -> OAuthToken:
        """Exchange an authorization code (and PKCE verifier) for tokens."""
        if not client.redirect_uris:
            raise OryProviderError(f"Client {client.client_id} has no registered redirect URI")

        data = {
            "grant_type": "authorization_code",
            "client_id": client.client_id,
            "code": authorization_code,
            "redirect_uri": str(client.redirect_uris[0]),
        }
        if client.client_secret:
            data["client_secret"] = client.client_secret
        if code_verifier:
            data["code_verifier"] = code_verifier

        tokens = await self._exchange(data, "Token exchange failed")
        logger.info(f"Issued tokens for client: {client.client_id}")
        return tokens

    async def exchange_refresh_token(
        self,
        client: OAuthClientInformationFull,
        refresh_token: str,
        scopes: Optional[List[str]] = None,
    ) -> OAuthToken:
        """Exchange a refresh token, optionally narrowing the scopes."""
        data = {
            "grant_type": "refresh_token",
            "client_id": client.client_id,
            "refresh_token": refresh_token,
        }
        if client.client_secret:
            data["client_secret"] = client.client_secret
        if scopes:
            data["scope"] = " ".join(scopes)

        tokens = await self._exchange(data, "Token refresh failed")
        logger.info(f"Refreshed tokens for client: {client.client_id}")
        return tokens

    # ========== Revocation ==========

    async def revoke_token(self, client: OAuthClientInformationFull, request: RevocationRequest) -> None:
        """
        Revoke an access or refresh token upstream.

        Raises:
            UnsupportedOperationError: If no revocation URL is configured
            BackendError: If the provider rejects the revocation
        """
        self._require(ProviderCapability.REVOCATION, "Token revocation is not configured")

        data = {
            "token": request.token,
            "client_id": client.client_id,
        }
        if client.client_secret:
            data["client_secret"] = client.client_secret
        if request.token_type_hint:
            data["token_type_hint"] = request.token_type_hint

        response = await self._post_form(self.endpoints.revocation_url, data)
        if not response.is_success:
            raise _backend_error("Token revocation failed", response)

        logger.info(f"Revoked token for client: {client.client_id}")

    # ========== Token Validation ==========

    async def _introspect_token(self, token: str) -> IntrospectionResult:
        backend = self._resolve_backend()
        async with self._http_client() as client:
            response = await client.post(
                f"{backend.base_url}/admin/oauth2/introspect",
                data={"token": token, "token_type_hint": "access_token"},
                headers={"Authorization": backend.introspection_authorization(token)},
            )

        if not response.is_success:
            raise _backend_error("Token introspection failed", response)

        return _validate(IntrospectionResult, _read_json(response, "Introspection"), "introspection")

    async def verify_access_token(self, token: str) -> AccessToken:
        """
        Verify an access token by introspection and client lookup.

        Returns:
            AccessToken with client_id, scopes and expiry from introspection

        Raises:
            BackendError: If introspection or the client listing fails
            TokenNotActiveError: If the token is inactive (no client lookup is made)
            ClientMismatchError: If the token's client is not registered
        """
        try:
            introspection = await self._introspect_token(token)

            if not introspection.active:
                raise TokenNotActiveError("Token is not active")

            clients = await self.list_oauth2_clients()
            if introspection.client_id is None or introspection.client_id not in clients:
                raise ClientMismatchError("Token client ID mismatch")

            return AccessToken(
                token=token,
                client_id=introspection.client_id,
                scopes=introspection.scope.split(" ") if introspection.scope else [],
                expires_at=introspection.exp,
            )
        except Exception as e:
            logger.error(f"Token verification failed: {e}")
            raise
