"""Error kinds for the broker and the exceptions that carry them."""

from enum import Enum


class ErrorKind(str, Enum):
    SECURITY_DENIED = "security_denied"
    INVALID_REQUEST = "invalid_request"
    INVALID_REDIRECT = "invalid_redirect"
    INVALID_CONTINUATION_STATE = "invalid_continuation_state"
    INVALID_TOKEN = "invalid_token"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    SERVER_ERROR = "server_error"


class BrokerError(Exception):
    kind = ErrorKind.SERVER_ERROR


class InvalidContinuationState(BrokerError):
    kind = ErrorKind.INVALID_CONTINUATION_STATE


class UpstreamUnavailable(BrokerError):
    """Provider could not be reached or timed out."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class UpstreamError(BrokerError):
    """Provider answered, but rejected the request or sent bad data."""

    kind = ErrorKind.INVALID_TOKEN

    def __init__(self, message: str, error_code: str = "invalid_grant"):
        super().__init__(message)
        self.error_code = error_code
