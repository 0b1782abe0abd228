"""Bearer token verification for the protected resource.

Signature, issuer and expiry are checked by a pluggable primitive
(by default the broker's own JWT check). On top of that the verifier
enforces locally that the token was issued for this resource
(RFC 8707 audience binding) and carries the required scopes.

verify() never raises: every failure becomes a TokenRejection.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional, Union

import jwt

from oauth.errors import ErrorKind, UpstreamError, UpstreamUnavailable
from oauth.jwt_utils import decode_access_token, token_audiences

logger = logging.getLogger(__name__)

INSUFFICIENT_SCOPE = "insufficient_scope"

TokenPrimitive = Callable[[str], Awaitable[dict]]


@dataclass(frozen=True)
class AuthInfo:
    """Verified identity for a single request."""

    token: str = field(repr=False)
    client_id: str
    scopes: frozenset
    expires_at: Optional[int]
    extra: dict = field(default_factory=dict)

    @property
    def email(self) -> Optional[str]:
        return self.extra.get("email")


@dataclass(frozen=True)
class TokenRejection:
    reason: str
    description: str = ""


def broker_token_primitive(issuer: Optional[str]) -> TokenPrimitive:
    """Primitive for access tokens minted by this broker's /token endpoint."""

    async def verify(token: str) -> dict:
        return decode_access_token(token, issuer=issuer)

    return verify


def _scopes(claims: dict) -> frozenset:
    scope = claims.get("scope") or claims.get("scp") or ""
    if isinstance(scope, str):
        return frozenset(scope.split())
    return frozenset(scope)


class BearerTokenVerifier:
    def __init__(
        self,
        resource: str,
        primitive: TokenPrimitive,
        required_scopes: Iterable[str] = (),
        timeout: float = 5.0,
    ):
        self.resource = resource.rstrip("/")
        self.primitive = primitive
        self.required_scopes = frozenset(required_scopes)
        self.timeout = timeout

    async def verify(self, request, token: str) -> Union[AuthInfo, TokenRejection]:
        if not token or token.count(".") != 2:
            return TokenRejection(ErrorKind.INVALID_TOKEN.value, "Malformed token")

        try:
            claims = await asyncio.wait_for(self.primitive(token), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("[AUTH] Token verification timed out")
            return TokenRejection(ErrorKind.UPSTREAM_UNAVAILABLE.value, "Token verification timed out")
        except UpstreamUnavailable as e:
            logger.warning(f"[AUTH] Token verification unavailable: {e}")
            return TokenRejection(e.kind.value, "Token verification unavailable")
        except jwt.ExpiredSignatureError:
            return TokenRejection(ErrorKind.INVALID_TOKEN.value, "Token expired")
        except (jwt.InvalidTokenError, UpstreamError) as e:
            logger.debug(f"[AUTH] Token rejected: {e}")
            return TokenRejection(ErrorKind.INVALID_TOKEN.value, "Token verification failed")
        except Exception:
            logger.exception("[AUTH] Unexpected error verifying token")
            return TokenRejection(ErrorKind.INVALID_TOKEN.value, "Token verification failed")

        if not isinstance(claims, dict):
            return TokenRejection(ErrorKind.INVALID_TOKEN.value, "Token verification failed")
        try:
            return self._check_claims(request, token, claims)
        except (TypeError, ValueError) as e:
            logger.warning(f"[AUTH] Malformed token claims: {e}")
            return TokenRejection(ErrorKind.INVALID_TOKEN.value, "Token verification failed")

    def _check_claims(self, request, token: str, claims: dict) -> Union[AuthInfo, TokenRejection]:
        audiences = [a.rstrip("/") for a in token_audiences(claims) if isinstance(a, str)]
        if self.resource not in audiences:
            logger.warning(f"[AUTH] Token audience {audiences} does not match {self.resource}")
            return TokenRejection(ErrorKind.INVALID_TOKEN.value, "Token was not issued for this resource")

        requested = request.query_params.get("resource") if request is not None else None
        if requested and requested.rstrip("/") != self.resource:
            return TokenRejection(ErrorKind.INVALID_TOKEN.value, "Resource parameter does not match")

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or exp <= time.time():
            return TokenRejection(ErrorKind.INVALID_TOKEN.value, "Token expired")

        scopes = _scopes(claims)
        missing = self.required_scopes - scopes
        if missing:
            return TokenRejection(INSUFFICIENT_SCOPE, f"Missing scope: {' '.join(sorted(missing))}")

        return AuthInfo(
            token=token,
            client_id=claims.get("client_id") or claims.get("azp") or "unknown",
            scopes=scopes,
            expires_at=int(exp),
            extra={
                "sub": claims.get("sub"),
                "email": claims.get("email"),
                "provider": claims.get("provider", "unknown"),
                "resource": self.resource,
            },
        )
