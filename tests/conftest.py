"""Shared fixtures for broker tests."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import secrets
import time
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route

from config import Config
from main import create_app
from oauth.jwt_utils import configure_secret, create_access_token
from oauth.middleware import get_auth_info
from oauth.provider import GoogleProvider
from oauth.stores import InMemoryCodeStore
from security.gate import GateProfile, SecurityGate

BASE_URL = "https://broker.example.com"
RESOURCE = f"{BASE_URL}/api/mcp"
CLIENT_ID = "mcp-inspector"
CLIENT_REDIRECT = "http://127.0.0.1:54321/oauth/callback"
TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FakeClock:
    """Controllable clock for TTL and refill tests."""

    def __init__(self, now: float = None) -> None:
        # Start at wall time so grants minted with time.time() line up
        self._now = time.time() if now is None else now

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds


class StubProvider(GoogleProvider):
    """Google provider with canned code exchange and ID token claims."""

    def __init__(self):
        super().__init__("google-client-id", "google-client-secret")
        self.exchanged: list[tuple[str, str]] = []
        self.failure: Exception | None = None
        self.claims = {"sub": "google-user-1", "email": "ada@example.com", "email_verified": True}

    async def exchange_code(self, code: str, redirect_uri: str) -> dict:
        self.exchanged.append((code, redirect_uri))
        if self.failure is not None:
            raise self.failure
        return {"id_token": "stub-id-token", "access_token": "provider-access-token"}

    async def verify_id_token(self, id_token: str) -> dict:
        return dict(self.claims)


def pkce_pair() -> tuple[str, str]:
    verifier = secrets.token_urlsafe(48)
    challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
    return verifier, challenge


def query_of(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def issue_token(
    audience: str = RESOURCE,
    scope: str = "openid email mcp:read mcp:write",
    email: str = "ada@example.com",
    expires_in: int = 3600,
) -> str:
    return create_access_token(
        user_id=f"sub-{email}",
        user_email=email,
        client_id=CLIENT_ID,
        scope=scope,
        issuer=BASE_URL,
        audience=audience,
        expires_in=expires_in,
    )


def start_flow(client, state="client-state-123", redirect_uri=CLIENT_REDIRECT) -> tuple[str, str]:
    """Run /authorize; return the continuation state sent to the provider and the PKCE verifier."""
    verifier, challenge = pkce_pair()
    params = {
        "response_type": "code",
        "client_id": CLIENT_ID,
        "redirect_uri": redirect_uri,
        "scope": "openid email mcp:read",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "resource": RESOURCE,
    }
    if state:
        params["state"] = state
    response = client.get("/authorize", params=params)
    assert response.status_code == 302
    return query_of(response.headers["location"])["state"], verifier


async def whoami(request):
    await asyncio.sleep(0.01)
    auth = get_auth_info()
    return JSONResponse({
        "email": auth.email if auth else None,
        "state_email": request.state.auth_info.email,
        "client_id": auth.client_id if auth else None,
    })


def resource_app() -> Starlette:
    return Starlette(routes=[Route("/", whoami, methods=["GET", "POST"])])


def make_gates(clock=None, mode="LIVE", capacity=1000, detect_bots=True) -> dict:
    kwargs = {"clock": clock} if clock else {}
    return {
        "mcp": SecurityGate(GateProfile("mcp", capacity, 60, capacity, shield=True, detect_bots=detect_bots),
                            mode=mode, **kwargs),
        "oauth": SecurityGate(GateProfile("oauth", capacity, 60, capacity, shield=True), mode=mode, **kwargs),
        "discovery": SecurityGate(GateProfile("discovery", capacity, 60, capacity), mode=mode, **kwargs),
    }


@pytest.fixture(autouse=True)
def signing_secret():
    configure_secret(TEST_SECRET)
    yield
    configure_secret(None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> Config:
    return Config({
        "BASE_URL": BASE_URL,
        "GOOGLE_CLIENT_ID": "google-client-id",
        "GOOGLE_CLIENT_SECRET": "google-client-secret",
        "SECURITY_MODE": "LIVE",
    })


@pytest.fixture
def provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
def store(clock) -> InMemoryCodeStore:
    return InMemoryCodeStore(clock=clock)


@pytest.fixture
def gates() -> dict:
    return make_gates()


@pytest.fixture
def app(config, provider, store, gates):
    return create_app(config, provider=provider, store=store, gates=gates, resource_app=resource_app())


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app, follow_redirects=False)
