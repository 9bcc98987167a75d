"""
Ory Access Control for MCP Tools

Maps callers of an MCP server onto Ory identities:
- JWT bearer tokens are verified against a remote JWKS (RS256/ES256)
- A configured claim (default: email) identifies the user
- Unknown users get an Ory identity on first sight
- A password login through Ory's native API flow yields a session token
- Session tokens are validated with Ory's whoami endpoint
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
from authlib.jose import jwt, JWTClaims
from authlib.jose.errors import JoseError

# Configure logging
logger = logging.getLogger(__name__)

SESSION_TOKEN_HEADER = "x-session-token"


class JWKSCache:
    """
    Signing keys of the trusted JWT issuer, refreshed every cache_ttl seconds.

    Only a payload with a 'keys' array is cached; anything else raises
    ValueError and leaves the previous key set untouched.
    """

    def __init__(self, jwks_uri: str, cache_ttl: int = 3600, timeout: float = 10.0):
        self.jwks_uri = jwks_uri
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._jwks: Optional[Dict[str, Any]] = None
        self._expires_at: float = 0

    def invalidate(self) -> None:
        """Drop the cached key set so the next lookup refetches it."""
        self._jwks = None
        self._expires_at = 0

    def _is_fresh(self) -> bool:
        return self._jwks is not None and time.monotonic() < self._expires_at

    async def get_jwks(self) -> Dict[str, Any]:
        if self._is_fresh():
            return self._jwks

        logger.info(f"Refreshing signing keys from {self.jwks_uri}")
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(self.jwks_uri)
        response.raise_for_status()

        key_set = response.json()
        if not isinstance(key_set, dict) or not isinstance(key_set.get("keys"), list):
            raise ValueError(f"JWKS at {self.jwks_uri} has no 'keys' array")

        self._jwks = key_set
        self._expires_at = time.monotonic() + self.cache_ttl
        logger.debug(f"Cached {len(key_set['keys'])} signing key(s)")
        return self._jwks


@dataclass(frozen=True)
class AccessControlOptions:
    """Settings for JWT verification and the Ory project holding identities."""

    jwks_url: str
    issuer: str
    audience: str
    claim_key: str
    ory_project_url: str
    ory_api_key: str
    schema_id: str = "preset://email"


@dataclass
class AccessIdentity:
    id: str
    traits: Dict[str, Any] = field(default_factory=dict)

    @property
    def email(self) -> Optional[str]:
        return self.traits.get("email")


@dataclass
class AccessSession:
    id: str
    token: Optional[str] = None


@dataclass
class AuthenticationResult:
    success: bool
    identity: Optional[AccessIdentity] = None
    session: Optional[AccessSession] = None
    error: Optional[str] = None


@dataclass
class SessionValidationResult:
    is_valid: bool
    identity: Optional[AccessIdentity] = None
    error: Optional[str] = None


@dataclass
class ToolDefinition:
    """An MCP tool description plus the coroutine that implements it."""

    name: str
    description: str
    parameters: Dict[str, Any]
    handler: Callable[..., Awaitable[AuthenticationResult]]


def _identity_from(payload: Dict[str, Any]) -> AccessIdentity:
    return AccessIdentity(id=payload["id"], traits=payload.get("traits") or {})


class McpAccessControl:
    """
    Access control for MCP tools backed by Ory identities.

    authenticate() and validate_session() never raise for authentication
    failures; they return a result object with an error message instead, so
    the outcome can be handed straight back to an MCP client.
    """

    def __init__(self, options: AccessControlOptions, jwks_cache: Optional[JWKSCache] = None):
        self.options = options
        self.jwks_cache = jwks_cache or JWKSCache(options.jwks_url)
        self._project_url = options.ory_project_url.rstrip('/')

        logger.info("Ory access control initialized:")
        logger.info(f"  JWKS URI: {options.jwks_url}")
        logger.info(f"  Issuer: {options.issuer}")
        logger.info(f"  Audience: {options.audience}")
        logger.info(f"  Identity claim: {options.claim_key}")

    # ========== JWT verification ==========

    async def verify_jwt(self, token: str) -> JWTClaims:
        """
        Verify a JWT against the JWKS, issuer and audience.

        Raises:
            JoseError: If the signature or a standard claim is invalid
            ValueError: If issuer or audience do not match
        """
        jwks_data = await self.jwks_cache.get_jwks()
        claims = jwt.decode(token, jwks_data)
        claims.validate()

        token_issuer = str(claims.get('iss', '')).rstrip('/')
        expected_issuer = self.options.issuer.rstrip('/')
        if token_issuer != expected_issuer:
            raise ValueError(f"Invalid issuer. Expected '{expected_issuer}', got '{token_issuer}'")

        aud = claims.get('aud')
        audiences = aud if isinstance(aud, list) else [aud]
        if self.options.audience not in audiences:
            raise ValueError(f"Invalid audience. Expected '{self.options.audience}', got '{aud}'")

        return claims

    # ========== Ory identity API ==========

    def _admin_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._project_url,
            headers={"Authorization": f"Bearer {self.options.ory_api_key}"},
        )

    async def find_identity(self, identifier: str) -> Optional[AccessIdentity]:
        """Look up an identity by its credentials identifier."""
        async with self._admin_client() as client:
            response = await client.get(
                "/admin/identities",
                params={"credentials_identifier": identifier},
            )
        response.raise_for_status()

        payload_list = response.json()
        if not isinstance(payload_list, list):
            raise ValueError("Identity search response is not a JSON array")

        for payload in payload_list:
            identity = _identity_from(payload)
            if identity.traits.get(self.options.claim_key) == identifier:
                return identity
        return None

    async def create_identity(self, identifier: str, password: str) -> AccessIdentity:
        """Create an identity with password credentials."""
        body = {
            "schema_id": self.options.schema_id,
            "traits": {self.options.claim_key: identifier},
            "credentials": {"password": {"config": {"password": password}}},
        }
        async with self._admin_client() as client:
            response = await client.post("/admin/identities", json=body)
        response.raise_for_status()

        identity = _identity_from(response.json())
        logger.info(f"✅ Created Ory identity {identity.id}")
        return identity

    async def login(self, identifier: str, password: str) -> AccessSession:
        """Run a native (API) password login flow and return the session."""
        async with httpx.AsyncClient(base_url=self._project_url) as client:
            flow_response = await client.get("/self-service/login/api")
            flow_response.raise_for_status()
            flow_id = flow_response.json()["id"]

            response = await client.post(
                "/self-service/login",
                params={"flow": flow_id},
                json={"method": "password", "identifier": identifier, "password": password},
            )
        response.raise_for_status()

        result = response.json()
        return AccessSession(id=result["session"]["id"], token=result.get("session_token"))

    # ========== MCP tool ==========

    async def authenticate(self, token: str, password: str) -> AuthenticationResult:
        """
        Authenticate a caller from a JWT and a password.

        The identity is looked up by the configured claim and created if it
        does not exist yet; a login flow then issues an Ory session.
        """
        try:
            claims = await self.verify_jwt(token)
        except (JoseError, ValueError) as e:
            logger.warning(f"JWT verification failed: {e}")
            return AuthenticationResult(success=False, error=f"Invalid token: {e}")
        except httpx.HTTPError as e:
            logger.error(f"Could not fetch JWKS: {e}")
            return AuthenticationResult(success=False, error=f"Could not fetch signing keys: {e}")

        identifier = claims.get(self.options.claim_key)
        if not identifier:
            return AuthenticationResult(
                success=False,
                error=f"Token is missing required claim '{self.options.claim_key}'",
            )

        try:
            identity = await self.find_identity(identifier)
            if identity is None:
                logger.info(f"No identity found for {self.options.claim_key}, creating one")
                identity = await self.create_identity(identifier, password)

            session = await self.login(identifier, password)
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Ory authentication failed: {e}")
            return AuthenticationResult(success=False, error=f"Authentication failed: {e}")

        logger.info(f"Authenticated identity {identity.id}")
        return AuthenticationResult(success=True, identity=identity, session=session)

    def get_tool_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="ory_authenticate",
            description=(
                "Authenticate with a JWT and password. Creates the Ory identity on "
                "first use and returns an Ory session token."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "token": {"type": "string", "description": "JWT issued by the trusted issuer"},
                    "password": {"type": "string", "description": "Password for the Ory identity"},
                },
                "required": ["token", "password"],
            },
            handler=self.authenticate,
        )

    # ========== Sessions ==========

    async def validate_session(
        self,
        headers: Mapping[str, str],
        header_name: str = SESSION_TOKEN_HEADER,
    ) -> SessionValidationResult:
        """
        Validate an Ory session token taken from request headers.

        Args:
            headers: Request headers (any mapping; lookup is case-insensitive)
            header_name: Header carrying the session token
        """
        lowered = {key.lower(): value for key, value in headers.items()}
        session_token = lowered.get(header_name.lower())
        if not session_token:
            return SessionValidationResult(is_valid=False, error="No session token provided")

        try:
            async with httpx.AsyncClient(base_url=self._project_url) as client:
                response = await client.get(
                    "/sessions/whoami",
                    headers={"X-Session-Token": session_token},
                )
        except httpx.HTTPError as e:
            logger.error(f"Session validation request failed: {e}")
            return SessionValidationResult(is_valid=False, error=f"Session validation failed: {e}")

        if response.status_code in (401, 403):
            return SessionValidationResult(is_valid=False, error="Invalid session")
        if not response.is_success:
            return SessionValidationResult(
                is_valid=False,
                error=f"Session validation failed: {response.status_code} {response.reason_phrase}",
            )

        try:
            payload = response.json()
        except ValueError as e:
            logger.error(f"Session validation returned a non-JSON body: {e}")
            return SessionValidationResult(is_valid=False, error=f"Session validation failed: {e}")

        identity = payload.get("identity") if isinstance(payload, dict) else None
        if not isinstance(identity, dict) or "id" not in identity:
            return SessionValidationResult(is_valid=False, error="Invalid session")

        return SessionValidationResult(is_valid=True, identity=_identity_from(identity))
