"""HTTP responses shared by the OAuth endpoints and the resource gateway."""

import time
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi.responses import JSONResponse, RedirectResponse

from security.gate import DenyReason, SecurityDecision

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "*",
}


def json_error(error: str, description: str, status_code: int = 400, headers: dict = None) -> JSONResponse:
    return JSONResponse(
        {"error": error, "error_description": description},
        status_code=status_code,
        headers=headers,
    )


def with_query(uri: str, params: dict) -> str:
    """Append query parameters to a URI, keeping the ones it already has."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def error_redirect(redirect_uri: str, error: str, description: str, state: Optional[str]) -> RedirectResponse:
    """Report an OAuth error to an already validated redirect URI."""
    params = {"error": error, "error_description": description}
    if state:
        params["state"] = state
    return RedirectResponse(url=with_query(redirect_uri, params), status_code=302)


def security_denied(decision: SecurityDecision, clock=time.monotonic) -> JSONResponse:
    """429 with Retry-After for rate limits, 403 for bot and shield blocks.

    A rate-limit denial that no wait can clear gets no Retry-After.
    """
    if decision.reason == DenyReason.RATE_LIMIT:
        retry_after = decision.retry_after(clock())
        body = {
            "error": "rate_limit_exceeded",
            "error_description": "Too many requests. Please try again later.",
        }
        headers = None
        if retry_after is not None:
            body["retry_after"] = retry_after
            headers = {"Retry-After": str(retry_after)}
        return JSONResponse(body, status_code=429, headers=headers)

    if decision.reason == DenyReason.BOT:
        return json_error("bot_detected", "Automated access is not allowed for this endpoint.", 403)

    return json_error("forbidden", "Request blocked by security policy.", 403)
