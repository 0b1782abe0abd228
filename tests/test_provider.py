"""Google OpenID Connect client, against a mocked Google."""

import json
import time
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from conftest import query_of
from oauth.errors import UpstreamError, UpstreamUnavailable
from oauth.provider import GOOGLE_JWKS_URL, GOOGLE_TOKEN_URL, GoogleProvider

CLIENT_ID = "google-client-id"


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def jwks_for(key, kid="key-1"):
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(key.public_key()))
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return {"keys": [jwk]}


def id_token(key, kid="key-1", **overrides):
    now = int(time.time())
    claims = {
        "iss": "https://accounts.google.com",
        "aud": CLIENT_ID,
        "sub": "1234567890",
        "email": "ada@example.com",
        "email_verified": True,
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    return jwt.encode(claims, key, algorithm="RS256", headers={"kid": kid})


class FakeGoogle:
    """httpx.MockTransport handler for the token and JWKS endpoints."""

    def __init__(self, signing_key):
        self.key = signing_key
        self.jwks = jwks_for(signing_key)
        self.token_response = httpx.Response(200, json={"access_token": "ya29.x", "id_token": id_token(signing_key)})
        self.jwks_status = 200
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == GOOGLE_TOKEN_URL:
            return self.token_response
        if str(request.url) == GOOGLE_JWKS_URL:
            return httpx.Response(self.jwks_status, json=self.jwks)
        return httpx.Response(404)


@pytest.fixture
def google(signing_key):
    return FakeGoogle(signing_key)


@pytest.fixture
def provider(google):
    return GoogleProvider(CLIENT_ID, "google-secret", transport=httpx.MockTransport(google))


class TestAuthorizationUrl:
    def test_parameters(self, provider):
        url = provider.authorization_url("https://broker.example.com/api/auth/callback", "opaque-state")
        params = query_of(url)
        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert params == {
            "client_id": CLIENT_ID,
            "redirect_uri": "https://broker.example.com/api/auth/callback",
            "response_type": "code",
            "scope": "openid profile email",
            "access_type": "offline",
            "prompt": "consent",
            "state": "opaque-state",
        }

    def test_requires_client_id(self):
        with pytest.raises(RuntimeError):
            GoogleProvider(None, None).authorization_url("https://b/cb", "s")


class TestExchangeCode:
    async def test_success(self, provider, google):
        tokens = await provider.exchange_code("auth-code", "https://broker.example.com/api/auth/callback")

        assert "id_token" in tokens
        sent = parse_qs(google.requests[0].content.decode())
        assert sent["grant_type"] == ["authorization_code"]
        assert sent["code"] == ["auth-code"]
        assert sent["client_secret"] == ["google-secret"]

    async def test_rejected_code(self, provider, google):
        google.token_response = httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad code"})
        with pytest.raises(UpstreamError) as excinfo:
            await provider.exchange_code("bad", "https://b/cb")
        assert excinfo.value.error_code == "invalid_grant"

    async def test_server_error_is_unavailable(self, provider, google):
        google.token_response = httpx.Response(503, text="down")
        with pytest.raises(UpstreamUnavailable):
            await provider.exchange_code("c", "https://b/cb")

    async def test_network_error_is_unavailable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = GoogleProvider(CLIENT_ID, "s", transport=httpx.MockTransport(refuse))
        with pytest.raises(UpstreamUnavailable):
            await provider.exchange_code("c", "https://b/cb")

    async def test_missing_id_token(self, provider, google):
        google.token_response = httpx.Response(200, json={"access_token": "ya29.x"})
        with pytest.raises(UpstreamError):
            await provider.exchange_code("c", "https://b/cb")


class TestVerifyIdToken:
    async def test_valid(self, provider, signing_key):
        claims = await provider.verify_id_token(id_token(signing_key))
        assert claims["sub"] == "1234567890"
        assert claims["email"] == "ada@example.com"

    async def test_keys_cached(self, provider, google, signing_key):
        await provider.verify_id_token(id_token(signing_key))
        await provider.verify_id_token(id_token(signing_key))
        assert len(google.requests) == 1

    async def test_wrong_audience(self, provider, signing_key):
        with pytest.raises(UpstreamError):
            await provider.verify_id_token(id_token(signing_key, aud="someone-else"))

    async def test_wrong_issuer(self, provider, signing_key):
        with pytest.raises(UpstreamError):
            await provider.verify_id_token(id_token(signing_key, iss="https://evil.example.com"))

    async def test_expired(self, provider, signing_key):
        with pytest.raises(UpstreamError):
            await provider.verify_id_token(id_token(signing_key, exp=int(time.time()) - 60))

    async def test_unverified_email(self, provider, signing_key):
        with pytest.raises(UpstreamError) as excinfo:
            await provider.verify_id_token(id_token(signing_key, email_verified=False))
        assert excinfo.value.error_code == "access_denied"

    async def test_unknown_key_refetches_then_fails(self, provider, google, signing_key):
        with pytest.raises(UpstreamError):
            await provider.verify_id_token(id_token(signing_key, kid="rotated"))
        assert len(google.requests) == 2

    async def test_signed_by_other_key(self, provider):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        with pytest.raises(UpstreamError):
            await provider.verify_id_token(id_token(other))

    async def test_jwks_unreachable(self, provider, google, signing_key):
        google.jwks_status = 500
        with pytest.raises(UpstreamUnavailable):
            await provider.verify_id_token(id_token(signing_key))

    async def test_malformed_token(self, provider):
        with pytest.raises(UpstreamError):
            await provider.verify_id_token("garbage")
