import base64
import dataclasses
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
import pytest
from mcp.server.auth.provider import AuthorizationParams
from mcp.shared.auth import OAuthClientInformationFull

from conftest import ENDPOINTS, HYDRA_ADMIN_URL, NETWORK_URL
from ory_mcp.errors import (
    BackendError,
    ClientMismatchError,
    ConfigurationError,
    ResponseValidationError,
    TokenNotActiveError,
    UnsupportedOperationError,
)
from ory_mcp.oauth_provider import (
    DEFAULT_SCOPES,
    OryEndpoints,
    OryOptions,
    OryProvider,
    OryProviderType,
    ProviderCapability,
    RevocationRequest,
    match_redirect_uri,
)

CLIENTS_URL = f"{NETWORK_URL}/admin/clients"
INTROSPECT_URL = f"{NETWORK_URL}/admin/oauth2/introspect"

TOKENS = {"access_token": "acc_token", "token_type": "Bearer", "expires_in": 3600}


class RecordingSink:
    def __init__(self):
        self.urls = []

    def redirect(self, url):
        self.urls.append(url)


def form_of(request: httpx.Request) -> dict:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


@pytest.fixture
def client(mock_client):
    return OAuthClientInformationFull.model_validate(mock_client)


@pytest.fixture
def auth_params():
    return AuthorizationParams(
        state="state123",
        scopes=["openid", "profile"],
        code_challenge="challenge",
        redirect_uri="http://localhost:3000/callback",
        redirect_uri_provided_explicitly=True,
    )


class TestConstruction:
    def test_network_provider_defaults(self, provider):
        assert provider.provider_type is OryProviderType.NETWORK
        assert provider.skip_local_password_grant is False
        assert provider.skip_local_pkce_validation is True
        assert provider.capabilities == {ProviderCapability.REVOCATION, ProviderCapability.REGISTRATION}

    def test_hydra_provider(self, hydra_provider):
        assert hydra_provider.provider_type is OryProviderType.HYDRA
        assert hydra_provider.options.hydra_admin_url == HYDRA_ADMIN_URL

    def test_provider_type_accepts_plain_string(self, network_options):
        provider = OryProvider(dataclasses.replace(network_options, provider_type="hydra"))
        assert provider.provider_type is OryProviderType.HYDRA

    def test_invalid_provider_type(self, network_options):
        with pytest.raises(ConfigurationError, match="Invalid provider type"):
            OryProvider(dataclasses.replace(network_options, provider_type="keycloak"))

    def test_token_url_required(self, network_options):
        endpoints = OryEndpoints(authorization_url="https://auth.example.com/oauth2/auth", token_url="")
        with pytest.raises(ConfigurationError):
            OryProvider(dataclasses.replace(network_options, endpoints=endpoints))


class TestCapabilities:
    @pytest.mark.anyio
    async def test_revocation_absent_without_url(self, backend, network_options, client):
        endpoints = dataclasses.replace(ENDPOINTS, revocation_url=None)
        provider = OryProvider(dataclasses.replace(network_options, endpoints=endpoints))

        assert not provider.supports(ProviderCapability.REVOCATION)
        with pytest.raises(UnsupportedOperationError):
            await provider.revoke_token(client, RevocationRequest(token="test-token"))
        assert backend.calls.call_count == 0

    @pytest.mark.anyio
    async def test_revocation_round_trip(self, backend, network_options, client):
        endpoints = dataclasses.replace(ENDPOINTS, revocation_url=None)
        assert not OryProvider(dataclasses.replace(network_options, endpoints=endpoints)).supports(
            ProviderCapability.REVOCATION
        )

        provider = OryProvider(network_options)
        route = backend.post(ENDPOINTS.revocation_url).mock(return_value=httpx.Response(200))

        await provider.revoke_token(client, RevocationRequest(token="test-token"))

        assert provider.supports(ProviderCapability.REVOCATION)
        assert route.call_count == 1
        assert backend.calls.call_count == 1

    def test_registration_follows_url(self, provider, network_options):
        assert provider.clients_store.supports_registration

        endpoints = dataclasses.replace(ENDPOINTS, registration_url=None)
        without = OryProvider(dataclasses.replace(network_options, endpoints=endpoints))
        assert ProviderCapability.REGISTRATION not in without.capabilities
        assert not without.clients_store.supports_registration


class TestClientsStore:
    @pytest.mark.anyio
    async def test_register_client(self, backend, provider, mock_client):
        new_client = {**mock_client, "client_id": "new-client"}
        route = backend.post(ENDPOINTS.registration_url).mock(return_value=httpx.Response(201, json=new_client))

        registered = await provider.clients_store.register_client(
            OAuthClientInformationFull.model_validate(new_client)
        )

        assert route.call_count == 1
        sent = route.calls.last.request
        assert sent.headers["Content-Type"] == "application/json"
        assert b'"client_id":"new-client"' in sent.content.replace(b" ", b"")
        assert registered.client_id == "new-client"
        assert registered.client_secret == "test-secret"

    @pytest.mark.anyio
    async def test_register_client_failure(self, backend, provider, client):
        backend.post(ENDPOINTS.registration_url).mock(return_value=httpx.Response(500))

        with pytest.raises(BackendError, match="Client registration failed: 500") as exc_info:
            await provider.clients_store.register_client(client)
        assert exc_info.value.status_code == 500

    @pytest.mark.anyio
    async def test_register_client_unsupported(self, backend, network_options, client):
        endpoints = dataclasses.replace(ENDPOINTS, registration_url=None)
        provider = OryProvider(dataclasses.replace(network_options, endpoints=endpoints))

        with pytest.raises(UnsupportedOperationError):
            await provider.clients_store.register_client(client)
        assert backend.calls.call_count == 0


class TestGetClient:
    @pytest.mark.anyio
    async def test_network_lookup(self, backend, provider, mock_client):
        route = backend.get(CLIENTS_URL).mock(return_value=httpx.Response(200, json=[mock_client]))

        result = await provider.clients_store.get_client("test-client")

        assert route.call_count == 1
        assert route.calls.last.request.headers["Authorization"] == "Bearer network-api-key"
        assert result.client_id == "test-client"
        assert [str(uri) for uri in result.redirect_uris] == mock_client["redirect_uris"]

    @pytest.mark.anyio
    async def test_hydra_lookup(self, backend, hydra_provider, mock_client):
        route = backend.get(f"{HYDRA_ADMIN_URL}/admin/clients").mock(
            return_value=httpx.Response(200, json=[mock_client])
        )

        result = await hydra_provider.get_client("test-client")

        assert route.calls.last.request.headers["Authorization"] == "Bearer hydra-api-key"
        assert result.client_id == "test-client"

    @pytest.mark.anyio
    async def test_unknown_client_is_none(self, backend, provider, mock_client):
        backend.get(CLIENTS_URL).mock(return_value=httpx.Response(200, json=[mock_client]))

        assert await provider.get_client("missing-id") is None

    @pytest.mark.anyio
    async def test_every_lookup_refetches(self, backend, provider, mock_client):
        route = backend.get(CLIENTS_URL).mock(return_value=httpx.Response(200, json=[mock_client]))

        await provider.get_client("test-client")
        await provider.get_client("test-client")

        assert route.call_count == 2

    @pytest.mark.anyio
    async def test_missing_network_url(self, backend, network_options):
        provider = OryProvider(dataclasses.replace(network_options, network_project_url=None))

        with pytest.raises(ConfigurationError, match="Network project URL is required for network provider type"):
            await provider.get_client("test-client")
        assert backend.calls.call_count == 0

    @pytest.mark.anyio
    async def test_missing_hydra_url(self, backend, network_options):
        options = dataclasses.replace(network_options, provider_type=OryProviderType.HYDRA)
        provider = OryProvider(options)

        with pytest.raises(ConfigurationError, match="Hydra admin URL is required for hydra provider type"):
            await provider.get_client("test-client")
        assert backend.calls.call_count == 0

    @pytest.mark.anyio
    async def test_missing_network_api_key(self, backend, network_options):
        provider = OryProvider(dataclasses.replace(network_options, network_project_api_key=None))

        with pytest.raises(ConfigurationError, match="Network project API key is required for network provider type"):
            await provider.get_client("test-client")
        assert backend.calls.call_count == 0

    @pytest.mark.anyio
    async def test_missing_hydra_api_key(self, backend, hydra_options):
        provider = OryProvider(dataclasses.replace(hydra_options, hydra_api_key=""))

        with pytest.raises(ConfigurationError, match="Hydra API key is required for hydra provider type"):
            await provider.verify_access_token("test-token")
        assert backend.calls.call_count == 0

    @pytest.mark.anyio
    async def test_listing_failure_includes_status_text(self, backend, provider):
        backend.get(CLIENTS_URL).mock(return_value=httpx.Response(500))

        with pytest.raises(BackendError, match="Failed to list OAuth2 clients: 500 Internal Server Error"):
            await provider.get_client("test-client")

    @pytest.mark.anyio
    async def test_listing_must_be_array(self, backend, provider):
        backend.get(CLIENTS_URL).mock(return_value=httpx.Response(200, json={"clients": []}))

        with pytest.raises(ResponseValidationError):
            await provider.get_client("test-client")

    @pytest.mark.anyio
    async def test_malformed_client_rejected(self, backend, provider, mock_client):
        broken = {**mock_client, "redirect_uris": "not-a-list"}
        backend.get(CLIENTS_URL).mock(return_value=httpx.Response(200, json=[broken]))

        with pytest.raises(ResponseValidationError):
            await provider.get_client("test-client")


class TestVerifyAccessToken:
    @pytest.fixture
    def introspection(self, mock_client):
        return {
            "active": True,
            "client_id": mock_client["client_id"],
            "scope": mock_client["scope"],
            "exp": 1893456000,
        }

    @pytest.mark.anyio
    async def test_network_success(self, backend, provider, mock_client, introspection):
        introspect = backend.post(INTROSPECT_URL).mock(return_value=httpx.Response(200, json=introspection))
        clients = backend.get(CLIENTS_URL).mock(return_value=httpx.Response(200, json=[mock_client]))

        result = await provider.verify_access_token("test-token")

        assert result.token == "test-token"
        assert result.client_id == "test-client"
        assert result.scopes == ["openid", "profile", "email", "offline_access"]
        assert result.expires_at == 1893456000
        assert backend.calls.call_count == 2
        assert introspect.calls.last.request.headers["Authorization"] == "Bearer network-api-key"
        assert form_of(introspect.calls.last.request) == {
            "token": "test-token",
            "token_type_hint": "access_token",
        }
        assert clients.call_count == 1

    @pytest.mark.anyio
    async def test_hydra_uses_basic_token_auth(self, backend, hydra_provider, mock_client, introspection):
        introspect = backend.post(f"{HYDRA_ADMIN_URL}/admin/oauth2/introspect").mock(
            return_value=httpx.Response(200, json=introspection)
        )
        clients = backend.get(f"{HYDRA_ADMIN_URL}/admin/clients").mock(
            return_value=httpx.Response(200, json=[mock_client])
        )

        result = await hydra_provider.verify_access_token("test-token")

        expected = "Basic " + base64.b64encode(b"test-token").decode()
        assert introspect.calls.last.request.headers["Authorization"] == expected
        assert clients.calls.last.request.headers["Authorization"] == "Bearer hydra-api-key"
        assert backend.calls.call_count == 2
        assert result.client_id == "test-client"

    @pytest.mark.anyio
    async def test_inactive_token_short_circuits(self, backend, provider, mock_client, introspection):
        backend.post(INTROSPECT_URL).mock(return_value=httpx.Response(200, json={**introspection, "active": False}))
        clients = backend.get(CLIENTS_URL).mock(return_value=httpx.Response(200, json=[mock_client]))

        with pytest.raises(TokenNotActiveError, match="not active"):
            await provider.verify_access_token("inactive-token")
        assert backend.calls.call_count == 1
        assert not clients.called

    @pytest.mark.anyio
    async def test_inactive_response_without_claims(self, backend, provider):
        backend.post(INTROSPECT_URL).mock(return_value=httpx.Response(200, json={"active": False}))

        with pytest.raises(TokenNotActiveError):
            await provider.verify_access_token("inactive-token")

    @pytest.mark.anyio
    async def test_client_mismatch(self, backend, provider, mock_client, introspection):
        backend.post(INTROSPECT_URL).mock(return_value=httpx.Response(200, json=introspection))
        backend.get(CLIENTS_URL).mock(
            return_value=httpx.Response(200, json=[{**mock_client, "client_id": "another-client-id"}])
        )

        with pytest.raises(ClientMismatchError, match="mismatch"):
            await provider.verify_access_token("test-token")
        assert backend.calls.call_count == 2

    @pytest.mark.anyio
    async def test_introspection_failure(self, backend, provider):
        backend.post(INTROSPECT_URL).mock(
            return_value=httpx.Response(500, extensions={"reason_phrase": b"Introspection Error"})
        )

        with pytest.raises(BackendError, match="Token introspection failed: 500 Introspection Error"):
            await provider.verify_access_token("test-token")
        assert backend.calls.call_count == 1

    @pytest.mark.anyio
    async def test_missing_scope_yields_no_scopes(self, backend, provider, mock_client, introspection):
        del introspection["scope"]
        backend.post(INTROSPECT_URL).mock(return_value=httpx.Response(200, json=introspection))
        backend.get(CLIENTS_URL).mock(return_value=httpx.Response(200, json=[mock_client]))

        result = await provider.verify_access_token("test-token")

        assert result.scopes == []


class TestAuthorize:
    @pytest.mark.anyio
    async def test_redirects_with_all_parameters(self, backend, provider, client, auth_params):
        sink = RecordingSink()

        url = await provider.authorize(client, auth_params, sink)

        expected = ENDPOINTS.authorization_url + "?" + urlencode({
            "client_id": "test-client",
            "response_type": "code",
            "redirect_uri": "http://localhost:3000/callback",
            "code_challenge": "challenge",
            "code_challenge_method": "S256",
            "state": "state123",
            "scope": "openid profile",
        })
        assert sink.urls == [expected]
        assert url == expected
        assert backend.calls.call_count == 0

    @pytest.mark.anyio
    async def test_generates_state(self, provider, client, auth_params):
        auth_params.state = None
        sink = RecordingSink()

        await provider.authorize(client, auth_params, sink)

        state = parse_qs(urlsplit(sink.urls[0]).query)["state"][0]
        assert len(state) == 64
        int(state, 16)
        assert auth_params.state == state

    @pytest.mark.anyio
    async def test_generated_states_differ(self, provider, client, auth_params):
        states = []
        for _ in range(2):
            auth_params.state = None
            await provider.authorize(client, auth_params, RecordingSink())
            states.append(auth_params.state)
        assert states[0] != states[1]

    @pytest.mark.anyio
    async def test_empty_scopes_default_to_admin(self, provider, client, auth_params):
        auth_params.scopes = []
        sink = RecordingSink()

        await provider.authorize(client, auth_params, sink)

        query = parse_qs(urlsplit(sink.urls[0]).query)
        assert query["scope"] == [" ".join(DEFAULT_SCOPES)]
        assert query["code_challenge_method"] == ["S256"]

    @pytest.mark.anyio
    async def test_bare_host_redirect_matches_code_exchange(self, backend, provider, mock_client):
        bare = OAuthClientInformationFull.model_validate({**mock_client, "redirect_uris": ["http://localhost:3000"]})
        params = AuthorizationParams(
            state="state123",
            scopes=["openid"],
            code_challenge="challenge",
            redirect_uri="http://localhost:3000",
            redirect_uri_provided_explicitly=True,
        )
        token_route = backend.post(ENDPOINTS.token_url).mock(return_value=httpx.Response(200, json=TOKENS))
        sink = RecordingSink()

        await provider.authorize(bare, params, sink)
        await provider.exchange_authorization_code(bare, "auth-code", "verifier")

        authorize_uri = parse_qs(urlsplit(sink.urls[0]).query)["redirect_uri"][0]
        exchange_uri = form_of(token_route.calls.last.request)["redirect_uri"]
        assert authorize_uri == exchange_uri == str(bare.redirect_uris[0])

    def test_match_redirect_uri(self, mock_client):
        bare = OAuthClientInformationFull.model_validate({**mock_client, "redirect_uris": ["http://localhost:3000"]})

        assert match_redirect_uri(bare, "http://localhost:3000/") == str(bare.redirect_uris[0])
        assert match_redirect_uri(bare, "http://localhost:3000") == str(bare.redirect_uris[0])
        assert match_redirect_uri(bare, "http://localhost:3000/callback") is None

    @pytest.mark.anyio
    async def test_challenge_is_left_to_backend(self, provider, client):
        assert await provider.challenge_for_authorization_code(client, "auth-code") == ""


class TestTokenExchange:
    @pytest.mark.anyio
    async def test_exchange_authorization_code(self, backend, provider, client):
        route = backend.post(ENDPOINTS.token_url).mock(return_value=httpx.Response(200, json=TOKENS))

        result = await provider.exchange_authorization_code(client, "auth-code", "verifier")

        assert result.access_token == "acc_token"
        assert result.expires_in == 3600
        assert form_of(route.calls.last.request) == {
            "grant_type": "authorization_code",
            "client_id": "test-client",
            "code": "auth-code",
            "redirect_uri": "http://localhost:3000/callback",
            "client_secret": "test-secret",
            "code_verifier": "verifier",
        }

    @pytest.mark.anyio
    async def test_exchange_public_client_without_verifier(self, backend, provider, mock_client):
        public = OAuthClientInformationFull.model_validate({
            **mock_client,
            "client_secret": None,
            "token_endpoint_auth_method": "none",
        })
        route = backend.post(ENDPOINTS.token_url).mock(return_value=httpx.Response(200, json=TOKENS))

        await provider.exchange_authorization_code(public, "auth-code")

        sent = form_of(route.calls.last.request)
        assert "client_secret" not in sent
        assert "code_verifier" not in sent

    @pytest.mark.anyio
    async def test_exchange_failure(self, backend, provider, client):
        backend.post(ENDPOINTS.token_url).mock(return_value=httpx.Response(400))

        with pytest.raises(BackendError) as exc_info:
            await provider.exchange_authorization_code(client, "auth-code")
        assert "Token exchange failed" in str(exc_info.value)
        assert "400" in str(exc_info.value)
        assert exc_info.value.status_code == 400

    @pytest.mark.anyio
    async def test_exchange_rejects_malformed_tokens(self, backend, provider, client):
        backend.post(ENDPOINTS.token_url).mock(return_value=httpx.Response(200, json={"token_type": "Bearer"}))

        with pytest.raises(ResponseValidationError):
            await provider.exchange_authorization_code(client, "auth-code")

    @pytest.mark.anyio
    async def test_exchange_refresh_token(self, backend, provider, client):
        route = backend.post(ENDPOINTS.token_url).mock(
            return_value=httpx.Response(200, json={**TOKENS, "access_token": "new_acc_token"})
        )

        result = await provider.exchange_refresh_token(client, "refresh-token", ["openid", "offline_access"])

        assert result.access_token == "new_acc_token"
        assert form_of(route.calls.last.request) == {
            "grant_type": "refresh_token",
            "client_id": "test-client",
            "refresh_token": "refresh-token",
            "client_secret": "test-secret",
            "scope": "openid offline_access",
        }

    @pytest.mark.anyio
    async def test_refresh_without_scopes(self, backend, provider, client):
        route = backend.post(ENDPOINTS.token_url).mock(return_value=httpx.Response(200, json=TOKENS))

        await provider.exchange_refresh_token(client, "refresh-token")

        assert "scope" not in form_of(route.calls.last.request)

    @pytest.mark.anyio
    async def test_refresh_failure(self, backend, provider, client):
        backend.post(ENDPOINTS.token_url).mock(return_value=httpx.Response(401))

        with pytest.raises(BackendError, match="Token refresh failed: 401"):
            await provider.exchange_refresh_token(client, "refresh-token")


class TestRevokeToken:
    @pytest.mark.anyio
    async def test_revoke(self, backend, provider, client):
        route = backend.post(ENDPOINTS.revocation_url).mock(return_value=httpx.Response(200))

        await provider.revoke_token(
            client, RevocationRequest(token="test-token", token_type_hint="refresh_token")
        )

        assert form_of(route.calls.last.request) == {
            "token": "test-token",
            "client_id": "test-client",
            "client_secret": "test-secret",
            "token_type_hint": "refresh_token",
        }

    @pytest.mark.anyio
    async def test_revoke_failure(self, backend, provider, client):
        backend.post(ENDPOINTS.revocation_url).mock(return_value=httpx.Response(500))

        with pytest.raises(BackendError, match="Token revocation failed: 500"):
            await provider.revoke_token(client, RevocationRequest(token="test-token"))
