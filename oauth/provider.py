"""Upstream identity provider (Google, OpenID Connect).

Covers the three things the broker needs from the provider:
- building the authorization URL the user is sent to
- exchanging the provider's authorization code for tokens
- verifying the returned ID token against the provider's published keys
"""

import logging
import time
from typing import Optional
from urllib.parse import urlencode

import httpx
import jwt

from oauth.errors import UpstreamError, UpstreamUnavailable

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")

PROVIDER_SCOPE = "openid profile email"
JWKS_CACHE_SECONDS = 60 * 60


class GoogleProvider:
    """OpenID Connect client for Google accounts."""

    name = "google"

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        authorize_url: str = GOOGLE_AUTHORIZE_URL,
        token_url: str = GOOGLE_TOKEN_URL,
        jwks_url: str = GOOGLE_JWKS_URL,
        issuers: tuple = GOOGLE_ISSUERS,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.authorize_endpoint = authorize_url
        self.token_endpoint = token_url
        self.jwks_url = jwks_url
        self.issuers = issuers
        self._transport = transport
        self._jwks: Optional[jwt.PyJWKSet] = None
        self._jwks_fetched_at = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        """URL that starts the provider login for this broker.

        Raises:
            RuntimeError: if the provider client id is not configured
        """
        if not self.client_id:
            raise RuntimeError("GOOGLE_CLIENT_ID is not configured")

        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": PROVIDER_SCOPE,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> dict:
        """Exchange the provider's authorization code for its tokens."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            async with self._client() as client:
                response = await client.post(self.token_endpoint, data=data)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"token endpoint unreachable: {e}") from e

        if response.status_code >= 500:
            raise UpstreamUnavailable(f"token endpoint returned {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamError("token endpoint returned invalid JSON") from e

        if response.status_code != 200:
            raise UpstreamError(
                body.get("error_description") or "code exchange rejected",
                error_code=body.get("error", "invalid_grant"),
            )
        if "id_token" not in body:
            raise UpstreamError("token response has no id_token")
        return body

    async def _signing_keys(self, force: bool = False) -> jwt.PyJWKSet:
        if self._jwks is not None and not force and time.monotonic() - self._jwks_fetched_at < JWKS_CACHE_SECONDS:
            return self._jwks

        try:
            async with self._client() as client:
                response = await client.get(self.jwks_url)
                response.raise_for_status()
                keys = jwt.PyJWKSet.from_dict(response.json())
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"could not fetch provider keys: {e}") from e
        except (ValueError, jwt.PyJWTError) as e:
            raise UpstreamUnavailable(f"provider keys unusable: {e}") from e

        self._jwks = keys
        self._jwks_fetched_at = time.monotonic()
        return keys

    async def _key_for(self, kid: Optional[str]) -> jwt.PyJWK:
        keys = await self._signing_keys()
        for key in keys.keys:
            if key.key_id == kid:
                return key
        # Provider may have rotated keys since the last fetch
        keys = await self._signing_keys(force=True)
        for key in keys.keys:
            if key.key_id == kid:
                return key
        raise UpstreamError("no provider key matches token", error_code="invalid_token")

    async def verify_id_token(self, id_token: str) -> dict:
        """Verify signature, issuer, audience and expiry of an ID token.

        Returns:
            The token claims, with `email_verified` checked.
        """
        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.InvalidTokenError as e:
            raise UpstreamError(f"malformed id_token: {e}", error_code="invalid_token") from e

        key = await self._key_for(header.get("kid"))
        try:
            claims = jwt.decode(
                id_token,
                key.key,
                algorithms=["RS256"],
                audience=self.client_id,
                options={"require": ["exp", "iat", "iss", "sub", "aud"]},
            )
        except jwt.InvalidTokenError as e:
            raise UpstreamError(f"id_token rejected: {e}", error_code="invalid_token") from e

        if claims.get("iss") not in self.issuers:
            raise UpstreamError("id_token issuer mismatch", error_code="invalid_token")
        if claims.get("email") and claims.get("email_verified") is False:
            raise UpstreamError("provider email is not verified", error_code="access_denied")

        logger.debug(f"[PROVIDER] ID token verified for subject {claims['sub']}")
        return claims
