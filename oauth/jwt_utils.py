"""JWT utilities for broker-issued access tokens.

Access tokens are signed with PyJWT and bound to the resource they were
issued for via the `aud` claim (RFC 8707). Validation is stateless, so
tokens survive restarts as long as the signing secret does.
"""

import os
import secrets
import logging
import time
from typing import Optional

import jwt

from config import CONFIG_DIR

logger = logging.getLogger(__name__)

# JWT configuration
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_SECONDS = 60 * 60  # 1 hour

# Secret key storage
_jwt_secret: Optional[str] = None
SECRET_FILE = CONFIG_DIR / "jwt_secret"


def configure_secret(secret: Optional[str]) -> None:
    """Use an explicit signing secret (None goes back to env/file lookup)."""
    global _jwt_secret
    _jwt_secret = secret


def get_secret() -> str:
    """Get the signing secret, creating and persisting one if needed.

    Lookup order: configure_secret(), JWT_SECRET, ~/.mcp-oauth-broker/jwt_secret.
    """
    global _jwt_secret

    if _jwt_secret:
        return _jwt_secret

    env_secret = os.getenv("JWT_SECRET")
    if env_secret:
        _jwt_secret = env_secret
        logger.info("[JWT] Using JWT_SECRET from environment")
        return _jwt_secret

    if SECRET_FILE.exists():
        try:
            _jwt_secret = SECRET_FILE.read_text().strip()
            if _jwt_secret:
                logger.info("[JWT] Loaded JWT secret from file")
                return _jwt_secret
        except IOError as e:
            logger.warning(f"[JWT] Could not read JWT secret file: {e}")

    _jwt_secret = secrets.token_urlsafe(64)

    try:
        SECRET_FILE.parent.mkdir(parents=True, exist_ok=True)
        SECRET_FILE.write_text(_jwt_secret)
        os.chmod(SECRET_FILE, 0o600)  # Owner read/write only
        logger.info("[JWT] Generated and saved new JWT secret")
    except IOError as e:
        logger.warning(f"[JWT] Could not save JWT secret to file: {e}")

    return _jwt_secret


def create_access_token(
    user_id: str,
    user_email: str,
    client_id: str,
    scope: str,
    issuer: str,
    audience: str,
    provider: str = "google",
    expires_in: int = ACCESS_TOKEN_EXPIRE_SECONDS,
) -> str:
    """Create a signed access token.

    Args:
        user_id: Subject identifier from the upstream provider
        user_email: Verified email from the upstream provider
        client_id: The OAuth client the token was issued to
        scope: Granted scope (space separated)
        issuer: This broker's base URL
        audience: Resource identifier the token is bound to
        provider: Name of the upstream identity provider
        expires_in: Token lifetime in seconds

    Returns:
        A signed JWT string
    """
    now = int(time.time())

    payload = {
        "sub": user_id,
        "email": user_email,
        "provider": provider,
        "client_id": client_id,
        "scope": scope,
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        "type": "access",
    }

    return jwt.encode(payload, get_secret(), algorithm=JWT_ALGORITHM)


def decode_access_token(token: str, issuer: Optional[str] = None) -> dict:
    """Check signature, issuer and expiry of an access token.

    Audience is not checked here; the bearer verifier enforces it.

    Raises:
        jwt.InvalidTokenError: on any validation failure
    """
    options = {"require": ["exp", "sub", "aud"], "verify_aud": False}
    payload = jwt.decode(
        token,
        get_secret(),
        algorithms=[JWT_ALGORITHM],
        options=options,
        issuer=issuer,
    )
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError("Token is not an access token")
    return payload


def token_audiences(payload: dict) -> list:
    """The `aud` claim as a list."""
    aud = payload.get("aud")
    if isinstance(aud, str):
        return [aud]
    if isinstance(aud, (list, tuple)):
        return list(aud)
    return []
