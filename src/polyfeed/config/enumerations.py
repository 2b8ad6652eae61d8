import logging
from enum import Enum

logger = logging.getLogger(__name__)


class ChannelKind(Enum):
    """Streaming channels, valued by their wire prefix (``T.MSFT``)."""

    Trades = "T"
    Quotes = "Q"
    SecondAggregates = "A"
    MinuteAggregates = "AM"

    @classmethod
    def from_prefix(cls, prefix: str) -> "ChannelKind":
        try:
            return cls(prefix)
        except ValueError:
            raise ValueError(f"Unknown channel prefix: {prefix!r}") from None


class ConnectionState(Enum):
    """Defines possible states for a streaming session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"


class SubscriptionState(Enum):
    DESIRED = "desired"
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class MessageKind(Enum):
    """Discriminant of a decoded stream message."""

    TRADE = "trade"
    QUOTE = "quote"
    AGGREGATE = "aggregate"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    ERROR = "error"
    HEARTBEAT = "heartbeat"
    CONNECTED = "connected"
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILED = "auth_failed"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"

    @property
    def is_data(self) -> bool:
        return self in DATA_KINDS


DATA_KINDS = frozenset({MessageKind.TRADE, MessageKind.QUOTE, MessageKind.AGGREGATE})


class RateLimitPolicy(Enum):
    BLOCKING = "blocking"
    REJECTING = "rejecting"


class ReconnectReason(Enum):
    """Why the stream session left its connection."""

    CONNECT_FAILED = "connect_failed"
    AUTH_REJECTED = "auth_rejected"
    CONNECTION_DROPPED = "connection_dropped"
    PROTOCOL_ERROR = "protocol_error"
    TIMEOUT = "timeout"
    MANUAL_TRIGGER = "manual_trigger"
