from urllib.parse import parse_qs

import httpx
import jwt
import pytest
import respx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ehr_sync.auth.smart import SmartBackendClient, SmartClientConfig, TokenSet, discover_smart_endpoints
from ehr_sync.constants import JWT_BEARER_ASSERTION
from ehr_sync.errors import AuthenticationError

BASE_URL = "https://ehr.example.com/fhir"
TOKEN_URL = "https://ehr.example.com/oauth2/token"


def _rsa_key_pair():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


@pytest.mark.asyncio
@respx.mock
async def test_client_secret_flow_uses_basic_auth_and_caches():
    seen = []

    def token_endpoint(request):
        seen.append(request)
        return httpx.Response(200, json={"access_token": "abc", "expires_in": 3600, "scope": "system/Patient.read"})

    route = respx.post(TOKEN_URL).mock(side_effect=token_endpoint)
    config = SmartClientConfig(
        token_endpoint=TOKEN_URL,
        client_id="client-1",
        client_secret="s3cret",
        scopes="system/Patient.read",
    )
    client = SmartBackendClient(config, httpx.AsyncClient())

    assert await client.get_access_token() == "abc"
    assert await client.get_access_token() == "abc"

    assert route.call_count == 1
    request = seen[0]
    assert request.headers["Authorization"].startswith("Basic ")
    form = _form(request)
    assert form["grant_type"] == "client_credentials"
    assert form["scope"] == "system/Patient.read"
    assert "client_assertion" not in form


@pytest.mark.asyncio
@respx.mock
async def test_token_inside_safety_margin_is_refreshed():
    route = respx.post(TOKEN_URL).mock(
        return_value=httpx.Response(200, json={"access_token": "short", "expires_in": 120})
    )
    config = SmartClientConfig(token_endpoint=TOKEN_URL, client_id="client-1", client_secret="s3cret")
    client = SmartBackendClient(config, httpx.AsyncClient())

    await client.get_access_token()
    await client.get_access_token()

    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_clear_cache_forces_a_new_token_request():
    route = respx.post(TOKEN_URL).mock(
        side_effect=[
            httpx.Response(200, json={"access_token": "first", "expires_in": 3600}),
            httpx.Response(200, json={"access_token": "second", "expires_in": 3600}),
        ]
    )
    config = SmartClientConfig(token_endpoint=TOKEN_URL, client_id="client-1", client_secret="s3cret")
    client = SmartBackendClient(config, httpx.AsyncClient())

    assert await client.get_access_token() == "first"
    client.clear_cache()

    assert await client.get_access_token() == "second"
    assert route.call_count == 2


def test_token_set_expiry_buffer():
    assert TokenSet(access_token="a", expires_in=3600).is_expired is False
    assert TokenSet(access_token="a", expires_in=299).is_expired is True


def test_client_assertion_claims_and_headers():
    private_pem, public_pem = _rsa_key_pair()
    config = SmartClientConfig(
        token_endpoint=TOKEN_URL,
        client_id="client-1",
        private_key_pem=private_pem,
        key_id="key-1",
        jwks_url="https://app.example.com/.well-known/jwks.json",
    )
    client = SmartBackendClient(config, httpx.AsyncClient())

    assertion = client.build_client_assertion()

    header = jwt.get_unverified_header(assertion)
    assert header["alg"] == "RS384"
    assert header["kid"] == "key-1"
    assert header["jku"] == "https://app.example.com/.well-known/jwks.json"

    claims = jwt.decode(assertion, public_pem, algorithms=["RS384"], audience=TOKEN_URL)
    assert claims["iss"] == "client-1"
    assert claims["sub"] == "client-1"
    assert claims["jti"]
    assert 0 < claims["exp"] - claims["iat"] <= 300


def test_client_assertion_jti_is_unique():
    private_pem, _ = _rsa_key_pair()
    config = SmartClientConfig(token_endpoint=TOKEN_URL, client_id="client-1", private_key_pem=private_pem)
    client = SmartBackendClient(config, httpx.AsyncClient())

    first = jwt.decode(client.build_client_assertion(), options={"verify_signature": False})
    second = jwt.decode(client.build_client_assertion(), options={"verify_signature": False})

    assert first["jti"] != second["jti"]


@pytest.mark.asyncio
@respx.mock
async def test_private_key_flow_posts_signed_assertion():
    private_pem, _ = _rsa_key_pair()
    seen = []

    def token_endpoint(request):
        seen.append(request)
        return httpx.Response(200, json={"access_token": "jwt-token", "expires_in": 3600})

    respx.post(TOKEN_URL).mock(side_effect=token_endpoint)
    config = SmartClientConfig(token_endpoint=TOKEN_URL, client_id="client-1", private_key_pem=private_pem)
    client = SmartBackendClient(config, httpx.AsyncClient())

    assert await client.get_access_token() == "jwt-token"

    form = _form(seen[0])
    assert "Authorization" not in seen[0].headers
    assert form["client_assertion_type"] == JWT_BEARER_ASSERTION
    assert form["client_id"] == "client-1"
    assert form["client_assertion"].count(".") == 2


@pytest.mark.asyncio
@respx.mock
async def test_token_rejection_raises_authentication_error():
    respx.post(TOKEN_URL).mock(return_value=httpx.Response(401, json={"error": "invalid_client"}))
    config = SmartClientConfig(token_endpoint=TOKEN_URL, client_id="client-1", client_secret="wrong")
    client = SmartBackendClient(config, httpx.AsyncClient())

    with pytest.raises(AuthenticationError) as exc_info:
        await client.get_access_token()

    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_missing_credentials_raise_authentication_error():
    config = SmartClientConfig(token_endpoint=TOKEN_URL, client_id="client-1")
    client = SmartBackendClient(config, httpx.AsyncClient())

    with pytest.raises(AuthenticationError):
        await client.get_access_token()


@pytest.mark.asyncio
@respx.mock(assert_all_called=False)
async def test_discovery_prefers_smart_configuration(respx_mock):
    respx_mock.get(f"{BASE_URL}/.well-known/smart-configuration").mock(
        return_value=httpx.Response(200, json={"token_endpoint": TOKEN_URL})
    )
    oauth = respx_mock.get(f"{BASE_URL}/.well-known/oauth-authorization-server")

    endpoints = await discover_smart_endpoints(BASE_URL + "/", httpx.AsyncClient())

    assert endpoints.token_endpoint == TOKEN_URL
    assert oauth.call_count == 0


@pytest.mark.asyncio
@respx.mock
async def test_discovery_falls_back_to_oauth_metadata():
    respx.get(f"{BASE_URL}/.well-known/smart-configuration").mock(return_value=httpx.Response(404))
    respx.get(f"{BASE_URL}/.well-known/oauth-authorization-server").mock(
        return_value=httpx.Response(
            200,
            json={"token_endpoint": TOKEN_URL, "authorization_endpoint": "https://ehr.example.com/authorize"},
        )
    )

    endpoints = await discover_smart_endpoints(BASE_URL, httpx.AsyncClient())

    assert endpoints.token_endpoint == TOKEN_URL
    assert endpoints.authorization_endpoint == "https://ehr.example.com/authorize"


@pytest.mark.asyncio
@respx.mock
async def test_discovery_failure_raises_authentication_error():
    respx.get(f"{BASE_URL}/.well-known/smart-configuration").mock(return_value=httpx.Response(404))
    respx.get(f"{BASE_URL}/.well-known/oauth-authorization-server").mock(return_value=httpx.Response(500))

    with pytest.raises(AuthenticationError):
        await discover_smart_endpoints(BASE_URL, httpx.AsyncClient())
