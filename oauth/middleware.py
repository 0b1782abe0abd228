"""OAuth middleware for the protected MCP resource.

Every request passes the security gate first, then bearer token
verification. The verified identity is attached to the request and to
a context variable that only lives for the duration of that request,
so concurrent requests never see each other's identity.
"""

import contextvars
import logging
import time
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from oauth.responses import security_denied
from oauth.verifier import INSUFFICIENT_SCOPE, AuthInfo, BearerTokenVerifier, TokenRejection
from oauth.errors import ErrorKind
from security.gate import SecurityGate, client_ip

logger = logging.getLogger(__name__)

current_auth: contextvars.ContextVar[Optional[AuthInfo]] = contextvars.ContextVar("current_auth", default=None)


def get_auth_info() -> Optional[AuthInfo]:
    """Identity of the request being handled, if it was authenticated."""
    return current_auth.get()


class ProtectedResourceMiddleware(BaseHTTPMiddleware):
    """Security gate + Bearer token check in front of the resource."""

    def __init__(self, app, gate: SecurityGate, verifier: BearerTokenVerifier, resource_metadata_url: str,
                 realm: str = "MCP Server"):
        super().__init__(app)
        self.gate = gate
        self.verifier = verifier
        self.resource_metadata_url = resource_metadata_url
        self.realm = realm

    def _challenge(self, error: str = None) -> str:
        # resource= for older MCP clients, resource_metadata= per RFC 9728
        challenge = (
            f'Bearer realm="{self.realm}", resource="{self.resource_metadata_url}", '
            f'resource_metadata="{self.resource_metadata_url}"'
        )
        if error:
            challenge += f', error="{error}"'
        return challenge

    def _unauthorized(self, error: str, description: str, challenge_error: str = None) -> JSONResponse:
        return JSONResponse(
            {"error": error, "error_description": description},
            status_code=401,
            headers={"WWW-Authenticate": self._challenge(challenge_error)},
        )

    def _rejected(self, rejection: TokenRejection) -> JSONResponse:
        if rejection.reason == ErrorKind.UPSTREAM_UNAVAILABLE.value:
            return JSONResponse(
                {"error": "temporarily_unavailable", "error_description": rejection.description},
                status_code=503,
            )
        if rejection.reason == INSUFFICIENT_SCOPE:
            return JSONResponse(
                {"error": INSUFFICIENT_SCOPE, "error_description": rejection.description},
                status_code=403,
                headers={"WWW-Authenticate": self._challenge(INSUFFICIENT_SCOPE)},
            )
        return self._unauthorized("invalid_token", rejection.description, "invalid_token")

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        ip = client_ip(request)

        decision = self.gate.protect(request)
        if decision.denied:
            return security_denied(decision, self.gate.clock)

        auth_header = request.headers.get("Authorization", "")
        scheme, _, token = auth_header.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            logger.info(f"[AUTH] Request rejected: no Bearer token (ip={ip})")
            return self._unauthorized("unauthorized", "Bearer token required")

        result = await self.verifier.verify(request, token)
        if isinstance(result, TokenRejection):
            logger.info(f"[AUTH] Request rejected: {result.reason} ({result.description}) ip={ip}")
            return self._rejected(result)

        logger.info(
            f"[AUTH] Request authorized: {result.email} client={result.client_id} "
            f"provider={result.extra.get('provider')}"
        )
        request.state.auth_info = result
        reset_token = current_auth.set(result)
        try:
            response = await call_next(request)
        finally:
            current_auth.reset(reset_token)

        logger.info(
            f"[AUTH] {request.method} {request.url.path} -> {response.status_code} "
            f"in {(time.monotonic() - start) * 1000:.0f}ms"
        )
        return response
