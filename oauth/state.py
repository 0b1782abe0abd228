"""Continuation state carried through the upstream provider's `state`.

The provider treats the value as opaque and does not protect it, so it
is a signed, short-lived JWT. Decoding fails closed: a bad signature,
an expired envelope or any missing field raises InvalidContinuationState.
"""

import time
from dataclasses import asdict, dataclass
from typing import Optional

import jwt

from oauth.errors import InvalidContinuationState
from oauth.jwt_utils import JWT_ALGORITHM, get_secret
from oauth.stores import GRANT_TTL_SECONDS

STATE_TYPE = "continuation"

REQUIRED_FIELDS = ("auth_code", "original_redirect_uri", "provider_redirect_uri", "resource")


@dataclass(frozen=True)
class ContinuationState:
    auth_code: str
    original_state: str
    original_redirect_uri: str
    provider_redirect_uri: str
    resource: str


def encode_state(state: ContinuationState, now: Optional[int] = None) -> str:
    now = int(time.time()) if now is None else now
    payload = asdict(state)
    payload.update({"typ": STATE_TYPE, "iat": now, "exp": now + GRANT_TTL_SECONDS})
    return jwt.encode(payload, get_secret(), algorithm=JWT_ALGORITHM)


def decode_state(value: Optional[str]) -> ContinuationState:
    if not value:
        raise InvalidContinuationState("missing state")

    try:
        payload = jwt.decode(
            value,
            get_secret(),
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp", "iat", "typ"]},
        )
    except jwt.InvalidTokenError as e:
        raise InvalidContinuationState(f"undecodable state: {e}") from e

    if payload.get("typ") != STATE_TYPE:
        raise InvalidContinuationState("wrong state type")

    for name in REQUIRED_FIELDS:
        if not isinstance(payload.get(name), str) or not payload[name]:
            raise InvalidContinuationState(f"state field missing: {name}")

    original_state = payload.get("original_state", "")
    if not isinstance(original_state, str):
        raise InvalidContinuationState("state field malformed: original_state")

    return ContinuationState(
        auth_code=payload["auth_code"],
        original_state=original_state,
        original_redirect_uri=payload["original_redirect_uri"],
        provider_redirect_uri=payload["provider_redirect_uri"],
        resource=payload["resource"],
    )
