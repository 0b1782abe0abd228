"""OAuth 2.1 endpoints for the authorization broker.

This module contains:
- Discovery metadata (/.well-known/*)
- Authorization endpoint (/authorize), which hands off to the upstream provider
- Token endpoint (/token), which redeems codes issued by the callback
"""

import base64
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from config import Config
from oauth import redirects
from oauth.jwt_utils import create_access_token
from oauth.provider import GoogleProvider
from oauth.responses import CORS_HEADERS, error_redirect, json_error, security_denied
from oauth.state import ContinuationState, encode_state
from oauth.stores import CodeStore, get_code_store, new_grant
from security.gate import SecurityGate, client_ip

logger = logging.getLogger(__name__)

# Router for OAuth endpoints
router = APIRouter(tags=["oauth"])

SUPPORTED_SCOPES = frozenset({"openid", "profile", "email", "mcp:read", "mcp:write"})

# These will be set by init_oauth_routes()
_config: Optional[Config] = None
_gates: dict[str, SecurityGate] = {}
_provider: Optional[GoogleProvider] = None
_store: Optional[CodeStore] = None


def init_oauth_routes(config: Config, gates: dict, provider: GoogleProvider, store: CodeStore = None):
    """Initialize OAuth routes with config, security gates and provider.

    Must be called before including the router in the app.
    """
    global _config, _gates, _provider, _store
    _config = config
    _gates = gates
    _provider = provider
    _store = store


def code_store() -> CodeStore:
    return _store if _store is not None else get_code_store()


def gate(name: str) -> SecurityGate:
    return _gates[name]


def upstream_provider() -> GoogleProvider:
    return _provider


@dataclass
class AuthorizationRequest:
    response_type: Optional[str]
    client_id: Optional[str]
    redirect_uri: Optional[str]
    scope: Optional[str]
    state: Optional[str]
    code_challenge: Optional[str]
    code_challenge_method: Optional[str]
    resource: Optional[str]

    @classmethod
    def from_query(cls, params) -> "AuthorizationRequest":
        return cls(**{name: params.get(name) or None for name in cls.__dataclass_fields__})


def validate_params(auth: AuthorizationRequest, config: Config) -> Optional[tuple[str, str]]:
    """Check everything except redirect_uri.

    Returns (error, error_description) or None if the request is valid.
    """
    if not auth.response_type:
        return "invalid_request", "Missing response_type"
    if auth.response_type != "code":
        return "unsupported_response_type", "Only response_type=code is supported"
    if not auth.client_id:
        return "invalid_request", "Missing client_id"

    if auth.scope:
        unknown = set(auth.scope.split()) - SUPPORTED_SCOPES
        if unknown:
            return "invalid_scope", f"Unsupported scope: {' '.join(sorted(unknown))}"

    if auth.code_challenge_method and auth.code_challenge_method != "S256":
        return "invalid_request", "code_challenge_method must be S256"
    if auth.code_challenge and not auth.code_challenge_method:
        return "invalid_request", "code_challenge_method is required (S256)"
    if auth.code_challenge_method and not auth.code_challenge:
        return "invalid_request", "Missing code_challenge"

    if config.require_state and not auth.state:
        return "invalid_request", "Missing state"

    if auth.resource and auth.resource.rstrip("/") != config.resource_url:
        return "invalid_target", "Unknown resource"

    return None


def s256(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


# ============== OAuth 2.1 Discovery Endpoints ==============

@router.get("/.well-known/oauth-protected-resource")
async def oauth_protected_resource(request: Request):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    decision = gate("discovery").protect(request)
    if decision.denied:
        return security_denied(decision, gate("discovery").clock)

    return {
        "resource": _config.resource_url,
        "authorization_servers": [_config.base_url],
        "scopes_supported": ["mcp:read", "mcp:write"],
        "bearer_methods_supported": ["header"],
        "resource_documentation": f"{_config.base_url}/docs",
    }


@router.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server(request: Request):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    decision = gate("discovery").protect(request)
    if decision.denied:
        return security_denied(decision, gate("discovery").clock)

    base = _config.base_url
    return {
        "issuer": base,
        "authorization_endpoint": f"{base}/authorize",
        "token_endpoint": f"{base}/token",
        "scopes_supported": sorted(SUPPORTED_SCOPES),
        "response_types_supported": ["code"],
        "response_modes_supported": ["query"],
        "grant_types_supported": ["authorization_code"],
        "token_endpoint_auth_methods_supported": ["none"],
        "code_challenge_methods_supported": ["S256"],
        "resource_indicators_supported": True,
        "service_documentation": f"{base}/docs",
    }


# ============== Authorization Flow ==============

@router.options("/authorize")
@router.options("/token")
async def oauth_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)


@router.get("/authorize")
async def authorize(request: Request):
    """OAuth 2.1 Authorization Endpoint - hands off to the upstream provider."""
    decision = gate("oauth").protect(request)
    if decision.denied:
        return security_denied(decision, gate("oauth").clock)

    auth = AuthorizationRequest.from_query(request.query_params)
    ip = client_ip(request)
    logger.info(
        f"[AUTHORIZE] Request from {ip}: client_id={auth.client_id} "
        f"redirect_uri={auth.redirect_uri} pkce={bool(auth.code_challenge)}"
    )

    # Never redirect to a URI we have not validated
    if not redirects.is_valid(auth.redirect_uri):
        logger.warning(f"[AUTHORIZE] Rejected redirect_uri from {ip}: {auth.redirect_uri!r}")
        return json_error("invalid_request", "Invalid or missing redirect_uri")

    problem = validate_params(auth, _config)
    if problem:
        error, description = problem
        logger.info(f"[AUTHORIZE] Validation failed: {error} ({description})")
        return error_redirect(auth.redirect_uri, error, description, auth.state)

    if not auth.code_challenge:
        logger.warning(f"[AUTHORIZE] Client {auth.client_id} opted out of PKCE")

    resource = auth.resource.rstrip("/") if auth.resource else _config.resource_url
    auth_code = secrets.token_urlsafe(32)
    grant = new_grant(
        client_id=auth.client_id,
        redirect_uri=auth.redirect_uri,
        scope=auth.scope or _config.default_scope,
        resource=resource,
        state=auth.state or "",
        code_challenge=auth.code_challenge,
        code_challenge_method=auth.code_challenge_method,
    )

    try:
        continuation = encode_state(ContinuationState(
            auth_code=auth_code,
            original_state=auth.state or "",
            original_redirect_uri=auth.redirect_uri,
            provider_redirect_uri=_config.provider_redirect_uri,
            resource=resource,
        ))
        provider_url = _provider.authorization_url(_config.provider_redirect_uri, continuation)
    except Exception:
        logger.exception("[AUTHORIZE] Could not build provider authorization URL")
        return json_error("server_error", "Authorization is temporarily unavailable", 500)

    code_store().put(auth_code, grant)
    logger.info(f"[AUTHORIZE] Redirecting client {auth.client_id} to {_provider.name}")
    return RedirectResponse(url=provider_url, status_code=302)


# ============== Token Endpoint ==============

async def _token_params(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        data = await request.json()
        if not isinstance(data, dict):
            raise ValueError("JSON body must be an object")
        return data
    form = await request.form()
    return dict(form)


@router.post("/token")
async def token(request: Request):
    """OAuth 2.1 Token Endpoint (authorization_code grant only)."""
    decision = gate("oauth").protect(request)
    if decision.denied:
        return security_denied(decision, gate("oauth").clock)

    try:
        params = await _token_params(request)
    except ValueError:
        return json_error("invalid_request", "Malformed request body")

    grant_type = params.get("grant_type")
    code = params.get("code")
    client_id = params.get("client_id")
    logger.debug(f"[TOKEN] grant_type: {grant_type}, client_id: {client_id}")

    if grant_type != "authorization_code":
        return json_error("unsupported_grant_type", "Only authorization_code is supported")
    if not code:
        return json_error("invalid_request", "Missing code")

    # Single use: the code is gone whatever happens next
    grant = code_store().pop(code)
    if grant is None or not grant.authenticated:
        logger.info("[TOKEN] Unknown, expired or unauthenticated code")
        return json_error("invalid_grant", "Invalid or expired authorization code")

    if client_id and client_id != grant.client_id:
        return json_error("invalid_grant", "client_id does not match the authorization request")
    redirect_uri = params.get("redirect_uri")
    if redirect_uri and redirect_uri != grant.redirect_uri:
        return json_error("invalid_grant", "redirect_uri does not match the authorization request")

    if grant.code_challenge:
        verifier = params.get("code_verifier")
        if not verifier:
            return json_error("invalid_request", "Missing code_verifier")
        if not hmac.compare_digest(s256(verifier), grant.code_challenge):
            logger.warning(f"[TOKEN] PKCE verification failed for client {grant.client_id}")
            return json_error("invalid_grant", "PKCE verification failed")
    else:
        logger.info(f"[TOKEN] Redeeming code without PKCE for client {grant.client_id}")

    expires_in = _config.access_token_ttl
    access_token = create_access_token(
        user_id=grant.subject,
        user_email=grant.email,
        client_id=grant.client_id,
        scope=grant.scope,
        issuer=_config.base_url,
        audience=grant.resource,
        provider=grant.provider or _provider.name,
        expires_in=expires_in,
    )
    logger.info(f"[TOKEN] Access token issued for {grant.email} (client {grant.client_id})")

    return JSONResponse(
        {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": expires_in,
            "scope": grant.scope,
        },
        headers={"Cache-Control": "no-store", **CORS_HEADERS},
    )
