"""Continuation state envelope."""

import time

import jwt
import pytest

from conftest import TEST_SECRET
from oauth.errors import InvalidContinuationState
from oauth.state import ContinuationState, decode_state, encode_state

STATE = ContinuationState(
    auth_code="local-code",
    original_state="client-state",
    original_redirect_uri="http://127.0.0.1:54321/oauth/callback",
    provider_redirect_uri="https://broker.example.com/api/auth/callback",
    resource="https://broker.example.com/api/mcp",
)


class TestContinuationState:
    def test_decodes_what_was_encoded(self):
        assert decode_state(encode_state(STATE)) == STATE

    def test_empty_original_state_allowed(self):
        state = ContinuationState("c", "", "http://localhost:1234/", "https://b/api/auth/callback", "https://b/api/mcp")
        assert decode_state(encode_state(state)).original_state == ""

    @pytest.mark.parametrize("value", [None, "", "not-a-jwt", "eyJhbGciOiJIUzI1NiJ9.e30.sig"])
    def test_garbage_rejected(self, value):
        with pytest.raises(InvalidContinuationState):
            decode_state(value)

    def test_tampered_payload_rejected(self):
        header, payload, signature = encode_state(STATE).split(".")
        forged = jwt.encode(
            {"auth_code": "x", "original_state": "", "original_redirect_uri": "https://evil.example.com/",
             "provider_redirect_uri": "x", "resource": "x", "typ": "continuation",
             "iat": int(time.time()), "exp": int(time.time()) + 600},
            "some-other-secret-that-is-long-enough",
            algorithm="HS256",
        )
        _, forged_payload, _ = forged.split(".")
        with pytest.raises(InvalidContinuationState):
            decode_state(f"{header}.{forged_payload}.{signature}")

    def test_expired_rejected(self):
        stale = encode_state(STATE, now=int(time.time()) - 3600)
        with pytest.raises(InvalidContinuationState):
            decode_state(stale)

    def test_missing_field_rejected(self):
        now = int(time.time())
        token = jwt.encode(
            {"auth_code": "local-code", "original_state": "", "resource": "r",
             "provider_redirect_uri": "p", "typ": "continuation", "iat": now, "exp": now + 60},
            TEST_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidContinuationState, match="original_redirect_uri"):
            decode_state(token)

    def test_access_token_is_not_a_state(self):
        now = int(time.time())
        token = jwt.encode(
            {"sub": "u", "type": "access", "typ": "access", "iat": now, "exp": now + 60},
            TEST_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidContinuationState, match="type"):
            decode_state(token)

    def test_non_string_original_state_rejected(self):
        now = int(time.time())
        token = jwt.encode(
            {"auth_code": "c", "original_state": 42, "original_redirect_uri": "u",
             "provider_redirect_uri": "p", "resource": "r", "typ": "continuation", "iat": now, "exp": now + 60},
            TEST_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidContinuationState):
            decode_state(token)
