from polyfeed.connections.auth import Authenticator
from polyfeed.connections.backoff import BackoffPolicy
from polyfeed.connections.pagination import PageCursorIterator
from polyfeed.connections.ratelimit import Permit, RateLimiter
from polyfeed.connections.requests import AiohttpTransport, Dispatcher, RequestTransport
from polyfeed.connections.routing import Feed, MessageRouter, RouterMetrics
from polyfeed.connections.sockets import (
    StreamConnection,
    StreamSession,
    StreamTransport,
    WebsocketsTransport,
)
from polyfeed.connections.subscription import SubscriptionEntry, SubscriptionRegistry

__all__ = [
    "AiohttpTransport",
    "Authenticator",
    "BackoffPolicy",
    "Dispatcher",
    "Feed",
    "MessageRouter",
    "PageCursorIterator",
    "Permit",
    "RateLimiter",
    "RequestTransport",
    "RouterMetrics",
    "StreamConnection",
    "StreamSession",
    "StreamTransport",
    "SubscriptionEntry",
    "SubscriptionRegistry",
    "WebsocketsTransport",
]
