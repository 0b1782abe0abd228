"""Callback endpoints for the upstream provider.

/api/auth/callback is the redirect URI registered with the provider.
It validates the continuation state and forwards to the provider
specific handler, which exchanges the provider code, binds the user's
identity to the pending grant and sends the user back to the client.

Nothing here redirects to a destination taken from an undecoded state.
"""

import logging
import secrets
from dataclasses import replace
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse, Response

from oauth import endpoints
from oauth.errors import InvalidContinuationState, UpstreamError, UpstreamUnavailable
from oauth.responses import CORS_HEADERS, error_redirect, json_error, security_denied, with_query
from oauth.state import ContinuationState, decode_state
from security.gate import client_ip

logger = logging.getLogger(__name__)

# Router for provider callbacks
router = APIRouter(tags=["callback"])

CALLBACK_PATH = "/api/auth/callback"
PROVIDER_CALLBACK_PATH = "/api/auth/callback/google"


def invalid_state_response() -> Response:
    return json_error("invalid_request", "Invalid or expired authorization state")


async def _callback_params(request: Request) -> dict:
    """Query parameters, plus form fields for POST callbacks."""
    params = dict(request.query_params)
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            form = await request.form()
            for key, value in form.items():
                params.setdefault(key, value)
    return params


def resolve_state(raw_state: Optional[str]) -> Optional[ContinuationState]:
    """Decode the state and make sure its pending grant still exists."""
    try:
        continuation = decode_state(raw_state)
    except InvalidContinuationState as e:
        logger.warning(f"[CALLBACK] Rejected state: {e}")
        return None

    if endpoints.code_store().get(continuation.auth_code) is None:
        logger.warning("[CALLBACK] Pending authorization is unknown or expired")
        return None
    return continuation


@router.options(CALLBACK_PATH)
@router.options(PROVIDER_CALLBACK_PATH)
async def callback_preflight():
    return Response(status_code=200, headers=CORS_HEADERS)


@router.api_route(CALLBACK_PATH, methods=["GET", "POST"])
async def provider_callback(request: Request):
    """Route the provider's response to the provider specific handler.

    The forwarded request pays for the login, so this hop only checks
    that the caller still has a token left.
    """
    gate = endpoints.gate("oauth")
    decision = gate.protect(request, cost=0)
    if decision.denied:
        return security_denied(decision, gate.clock)

    params = await _callback_params(request)
    if resolve_state(params.get("state")) is None:
        return invalid_state_response()

    target = PROVIDER_CALLBACK_PATH
    if request.url.query:
        target = f"{target}?{request.url.query}"

    if request.method == "POST":
        # 307 keeps the method and body; 302/303 would turn it into a GET
        return RedirectResponse(url=target, status_code=307)
    return RedirectResponse(url=target, status_code=302)


@router.api_route(PROVIDER_CALLBACK_PATH, methods=["GET", "POST"])
async def google_callback(request: Request):
    """Complete the provider login and return the user to the client."""
    gate = endpoints.gate("oauth")
    decision = gate.protect(request)
    if decision.denied:
        return security_denied(decision, gate.clock)

    params = await _callback_params(request)
    continuation = resolve_state(params.get("state"))
    if continuation is None:
        return invalid_state_response()

    store = endpoints.code_store()
    redirect_uri = continuation.original_redirect_uri
    original_state = continuation.original_state

    if params.get("error"):
        store.pop(continuation.auth_code)
        logger.info(f"[CALLBACK] Provider returned error: {params['error']}")
        return error_redirect(
            redirect_uri,
            "access_denied",
            params.get("error_description") or "The user did not authorize the request",
            original_state,
        )

    provider_code = params.get("code")
    if not provider_code:
        store.pop(continuation.auth_code)
        return error_redirect(redirect_uri, "invalid_request", "Provider response had no code", original_state)

    provider = endpoints.upstream_provider()
    try:
        tokens = await provider.exchange_code(provider_code, continuation.provider_redirect_uri)
        claims = await provider.verify_id_token(tokens["id_token"])
    except UpstreamUnavailable as e:
        logger.error(f"[CALLBACK] Provider unavailable: {e}")
        return json_error("server_error", "Identity provider is unavailable, please retry", 502)
    except UpstreamError as e:
        store.pop(continuation.auth_code)
        logger.warning(f"[CALLBACK] Provider rejected login from {client_ip(request)}: {e}")
        return error_redirect(redirect_uri, "access_denied", "Sign-in with the identity provider failed",
                              original_state)

    grant = store.pop(continuation.auth_code)
    if grant is None:
        # Lost a race with another callback for the same flow
        return invalid_state_response()

    client_code = secrets.token_urlsafe(32)
    store.put(client_code, replace(
        grant,
        subject=claims["sub"],
        email=claims.get("email"),
        provider=provider.name,
    ))

    logger.info(f"[CALLBACK] User {claims.get('email')} authenticated for client {grant.client_id}")
    params = {"code": client_code}
    if original_state:
        params["state"] = original_state
    return RedirectResponse(url=with_query(grant.redirect_uri, params), status_code=302)
