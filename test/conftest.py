import time

import pytest
import respx
from authlib.jose import JsonWebKey, jwt

from ory_mcp.oauth_provider import OryEndpoints, OryOptions, OryProvider, OryProviderType

NETWORK_URL = "https://network.example.com"
HYDRA_ADMIN_URL = "https://hydra.example.com/admin"

ENDPOINTS = OryEndpoints(
    authorization_url="https://auth.example.com/oauth2/auth",
    token_url="https://auth.example.com/oauth2/token",
    revocation_url="https://auth.example.com/oauth2/revoke",
    registration_url="https://auth.example.com/clients",
)

ISSUER = "https://issuer.example.com"
AUDIENCE = "mcp-api"
JWKS_URL = f"{ISSUER}/.well-known/jwks.json"
KEY_ID = "test-key"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def backend():
    """Mocked identity provider; unmatched requests fail the test."""
    with respx.mock(assert_all_called=False) as router:
        yield router


@pytest.fixture
def mock_client():
    return {
        "client_id": "test-client",
        "client_secret": "test-secret",
        "redirect_uris": ["http://localhost:3000/callback"],
        "scope": "openid profile email offline_access",
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
        "token_endpoint_auth_method": "client_secret_basic",
    }


@pytest.fixture
def network_options():
    return OryOptions(
        endpoints=ENDPOINTS,
        provider_type=OryProviderType.NETWORK,
        network_project_url=NETWORK_URL,
        network_project_api_key="network-api-key",
    )


@pytest.fixture
def hydra_options():
    return OryOptions(
        endpoints=ENDPOINTS,
        provider_type=OryProviderType.HYDRA,
        hydra_admin_url=HYDRA_ADMIN_URL,
        hydra_api_key="hydra-api-key",
    )


@pytest.fixture
def provider(network_options):
    return OryProvider(network_options)


@pytest.fixture
def hydra_provider(hydra_options):
    return OryProvider(hydra_options)


@pytest.fixture(scope="session")
def signing_key():
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture(scope="session")
def jwks(signing_key):
    public = signing_key.as_dict(is_private=False)
    public["kid"] = KEY_ID
    return {"keys": [public]}


@pytest.fixture
def make_jwt(signing_key):
    def factory(**overrides):
        claims = {
            "iss": ISSUER,
            "aud": AUDIENCE,
            "sub": "user-1",
            "email": "foo@bar.com",
            "exp": int(time.time()) + 3600,
        }
        claims.update(overrides)
        claims = {key: value for key, value in claims.items() if value is not None}
        token = jwt.encode({"alg": "RS256", "kid": KEY_ID}, claims, signing_key)
        return token.decode("ascii")

    return factory
