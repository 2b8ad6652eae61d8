import logging
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from polyfeed.messaging.models.messages import SubscriptionKey

logger = logging.getLogger(__name__)

BODY_PREVIEW_LENGTH = 200


class PolyfeedError(Exception):
    """Base exception for the polyfeed client.

    ``retryable`` tells an external retry policy whether repeating the same
    operation later can succeed.
    """

    retryable: bool = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class InvalidCredential(PolyfeedError):
    """Raised at construction time when the API key is empty or malformed."""

    def __init__(self, context: str = "credential must be a non-empty string"):
        super().__init__(f"Invalid credential: {context}")


class Unauthenticated(PolyfeedError):
    """Raised on 401/403 responses."""

    def __init__(self, status: int, body: str = ""):
        super().__init__("Unauthenticated - Please check your API key", retryable=False)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        return f"{super().__str__()} (Status: {self.status})"


class RateLimited(PolyfeedError):
    """Raised when the local budget or the remote service refuses a call."""

    retryable = True

    def __init__(self, retry_after: Optional[float] = None, status: Optional[int] = None):
        super().__init__("Rate limited - Please retry later")
        self.retry_after = retry_after
        self.status = status

    def __str__(self) -> str:
        base_message = super().__str__()
        if self.retry_after is not None:
            return f"{base_message} (retry after {self.retry_after:g}s)"
        return base_message


class TransportError(PolyfeedError):
    """Raised for non-2xx responses and network failures.

    ``status`` is None when no HTTP response was received.
    """

    def __init__(
        self,
        status: Optional[int],
        body: str = "",
        retryable: bool = False,
        message: Optional[str] = None,
    ):
        super().__init__(message or "Transport error", retryable=retryable)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        base_message = super().__str__()
        preview = self.body[:BODY_PREVIEW_LENGTH]
        if self.status is None:
            return f"{base_message} ({preview})" if preview else base_message
        return f"{base_message} (Status: {self.status}, Body: {preview})"


class DecodeError(PolyfeedError):
    """Raised when a response body or stream frame does not match the protocol."""

    def __init__(self, reason: str, payload: Optional[str] = None):
        super().__init__(f"Failed to decode payload: {reason}", retryable=False)
        self.reason = reason
        self.payload = payload


class InvalidStateTransition(PolyfeedError):
    def __init__(self, current: object, target: object):
        super().__init__(f"Illegal session transition {current} -> {target}")
        self.current = current
        self.target = target


class StreamError(PolyfeedError):
    """Base exception for streaming failures."""

    retryable = True


class ConnectError(StreamError):
    """Raised when the websocket connection cannot be established."""


class StreamClosed(StreamError):
    """Raised when the websocket connection is closed while reading or writing."""


class ProtocolError(StreamError):
    """Raised when the remote service violates or terminates the stream protocol."""


class AuthenticationRejected(ProtocolError):
    def __init__(self, message: str = ""):
        super().__init__(f"Stream authentication rejected: {message}".rstrip(": "))


class HeartbeatTimeout(ProtocolError):
    def __init__(self, timeout: float):
        super().__init__(f"No frame received within {timeout:g}s")
        self.timeout = timeout


class SubscriptionFailed(StreamError):
    """Reported per subscription, never fatal to the session."""

    retryable = False

    def __init__(self, key: "SubscriptionKey", reason: str = ""):
        super().__init__(f"Subscription {key.param} failed: {reason}".rstrip(": "))
        self.key = key
        self.reason = reason


class ReconnectExhausted(StreamError):
    """Terminal: the session gave up reconnecting."""

    retryable = False

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(
            f"Gave up after {attempts} reconnect attempts (last error: {last_error})"
        )
        self.attempts = attempts
        self.last_error = last_error


__all__ = [
    "PolyfeedError",
    "InvalidCredential",
    "Unauthenticated",
    "RateLimited",
    "TransportError",
    "DecodeError",
    "InvalidStateTransition",
    "StreamError",
    "ConnectError",
    "StreamClosed",
    "ProtocolError",
    "AuthenticationRejected",
    "HeartbeatTimeout",
    "SubscriptionFailed",
    "ReconnectExhausted",
]
