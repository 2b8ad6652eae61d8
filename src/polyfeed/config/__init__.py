from polyfeed.config.enumerations import (
    ChannelKind,
    ConnectionState,
    MessageKind,
    RateLimitPolicy,
    ReconnectReason,
    SubscriptionState,
)
from polyfeed.config.settings import (
    BackoffSettings,
    ClientSettings,
    RateLimitSettings,
    load_settings,
)

__all__ = [
    "BackoffSettings",
    "ChannelKind",
    "ClientSettings",
    "ConnectionState",
    "MessageKind",
    "RateLimitPolicy",
    "RateLimitSettings",
    "ReconnectReason",
    "SubscriptionState",
    "load_settings",
]
