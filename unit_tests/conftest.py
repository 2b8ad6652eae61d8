"""Fixtures shared by the unit tests."""

from typing import Any, Callable, Optional

import pytest

from fakes import FakeStreamTransport, ManualClock
from polyfeed.common.exceptions import ConnectError
from polyfeed.config.settings import BackoffSettings, ClientSettings
from polyfeed.connections.auth import Authenticator
from polyfeed.connections.backoff import BackoffPolicy
from polyfeed.connections.ratelimit import RateLimiter
from polyfeed.connections.routing import MessageRouter
from polyfeed.connections.sockets import StreamSession
from polyfeed.connections.subscription import SubscriptionRegistry


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> ClientSettings:
    return ClientSettings(
        api_key="abc123",
        stream_url="wss://stream.test/stocks",
        api_url="https://api.test",
        heartbeat_timeout=None,
        auth_timeout=1.0,
        subscribe_timeout=1.0,
        backoff=BackoffSettings(base_delay=0.0, jitter=0.0),
        _env_file=None,
    )


@pytest.fixture
def make_session() -> Callable[..., StreamSession]:
    def _make(
        transport: Any,
        api_key: str = "abc123",
        max_attempts: Optional[int] = None,
        heartbeat_timeout: Optional[float] = None,
        feed_queue_size: int = 0,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> StreamSession:
        registry = SubscriptionRegistry()
        return StreamSession(
            url="wss://stream.test/stocks",
            authenticator=Authenticator(api_key),
            registry=registry,
            router=MessageRouter(registry, feed_queue_size=feed_queue_size),
            transport=transport,
            rate_limiter=rate_limiter,
            backoff=BackoffPolicy(base_delay=0.0, jitter=0.0, max_attempts=max_attempts),
            auth_timeout=1.0,
            subscribe_timeout=1.0,
            heartbeat_timeout=heartbeat_timeout,
        )

    return _make


@pytest.fixture
def refused_transport() -> FakeStreamTransport:
    return FakeStreamTransport(fail_with=ConnectError("connection refused"))
