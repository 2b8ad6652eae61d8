"""Unit tests for the StreamSession state machine."""

import asyncio
import gc

import pytest

from fakes import FakeStreamTransport, status, trade, wait_until
from polyfeed.common.exceptions import (
    AuthenticationRejected,
    DecodeError,
    HeartbeatTimeout,
    InvalidStateTransition,
    ProtocolError,
    RateLimited,
    ReconnectExhausted,
    StreamClosed,
    SubscriptionFailed,
)
from polyfeed.config.enumerations import (
    ChannelKind,
    ConnectionState,
    RateLimitPolicy,
    ReconnectReason,
    SubscriptionState,
)
from polyfeed.connections.ratelimit import RateLimiter
from polyfeed.connections.sockets import reap_task, reconnect_reason
from polyfeed.messaging.models.events import Trade


@pytest.mark.asyncio
async def test_trade_reaches_feed_after_handshake(make_session) -> None:
    """connect, auth ack and subscribe ack lead to STREAMING; one trade frame yields one event."""
    transport = FakeStreamTransport(auto_ack=False)
    session = make_session(transport, api_key="abc123")
    feed = session.subscribe(ChannelKind.Trades, "XYZ")

    await session.start()
    await wait_until(lambda: transport.connections and transport.connections[0].sent)
    connection = transport.connections[0]
    assert connection.sent[0] == {"action": "auth", "params": "abc123"}
    assert session.state is ConnectionState.AUTHENTICATING

    connection.push(status("connected", "Connected Successfully"))
    connection.push(status("auth_success", "authenticated"))
    await wait_until(lambda: len(connection.sent) == 2)
    assert connection.sent[1] == {"action": "subscribe", "params": "T.XYZ"}
    assert session.state is ConnectionState.SUBSCRIBING

    connection.push(status("success", "subscribed to: T.XYZ"))
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)

    connection.push(trade("XYZ", price=10.5))
    event = await asyncio.wait_for(feed.__anext__(), timeout=1)

    assert isinstance(event, Trade)
    assert event.symbol == "XYZ"
    assert event.price == 10.5
    assert feed.qsize() == 0
    assert session.registry.state(ChannelKind.Trades, "XYZ") is SubscriptionState.CONFIRMED
    assert session.transitions == [
        ConnectionState.CONNECTING,
        ConnectionState.AUTHENTICATING,
        ConnectionState.SUBSCRIBING,
        ConnectionState.STREAMING,
    ]

    await session.stop()


@pytest.mark.asyncio
async def test_empty_registry_streams_without_subscribe_frame(make_session) -> None:
    transport = FakeStreamTransport()
    session = make_session(transport)

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)

    assert transport.connections[0].sent == [{"action": "auth", "params": "abc123"}]
    await session.stop()


@pytest.mark.asyncio
async def test_reconnect_replays_desired_set_in_sorted_batch(make_session) -> None:
    """After a drop the session re-sends exactly the desired set, sorted by channel then symbol."""
    transport = FakeStreamTransport()
    session = make_session(transport)
    session.subscribe(ChannelKind.Trades, "MSFT")
    session.subscribe(ChannelKind.Quotes, "*")
    session.subscribe(ChannelKind.MinuteAggregates, "SPY")
    session.subscribe(ChannelKind.Trades, "AAPL")
    session.unsubscribe(ChannelKind.Trades, "AAPL")

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)
    first = transport.connections[0]
    assert first.sent[1] == {"action": "subscribe", "params": "AM.SPY,Q.*,T.MSFT"}

    first.drop()
    await wait_until(
        lambda: len(transport.connections) == 2 and session.state is ConnectionState.STREAMING
    )

    second = transport.connections[1]
    assert second.sent == [
        {"action": "auth", "params": "abc123"},
        {"action": "subscribe", "params": "AM.SPY,Q.*,T.MSFT"},
    ]
    assert first.closed
    assert ConnectionState.RECONNECTING in session.transitions
    assert session.reconnect_attempt == 0

    await session.stop()


@pytest.mark.asyncio
async def test_subscribe_while_streaming_sends_single_frames_in_order(make_session) -> None:
    transport = FakeStreamTransport()
    session = make_session(transport)
    session.subscribe(ChannelKind.Trades, "MSFT")

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)
    connection = transport.connections[0]

    session.subscribe(ChannelKind.Quotes, "MSFT")
    session.unsubscribe(ChannelKind.Trades, "MSFT")
    await wait_until(lambda: len(connection.sent) == 4)

    assert connection.sent[2:] == [
        {"action": "subscribe", "params": "Q.MSFT"},
        {"action": "unsubscribe", "params": "T.MSFT"},
    ]
    await wait_until(
        lambda: session.registry.state(ChannelKind.Quotes, "MSFT") is SubscriptionState.CONFIRMED
    )

    connection.drop()
    await wait_until(
        lambda: len(transport.connections) == 2 and session.state is ConnectionState.STREAMING
    )
    assert transport.connections[1].sent[1] == {"action": "subscribe", "params": "Q.MSFT"}

    await session.stop()


@pytest.mark.asyncio
async def test_subscribe_then_unsubscribe_before_processing_sends_nothing(make_session) -> None:
    transport = FakeStreamTransport()
    session = make_session(transport)

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)
    connection = transport.connections[0]

    session.subscribe(ChannelKind.Trades, "IBM")
    session.unsubscribe(ChannelKind.Trades, "IBM")
    await asyncio.sleep(0.05)

    assert connection.sent == [{"action": "auth", "params": "abc123"}]
    await session.stop()


@pytest.mark.asyncio
async def test_resubscribe_after_unsubscribe_while_streaming_is_confirmed(make_session) -> None:
    transport = FakeStreamTransport()
    session = make_session(transport)
    session.subscribe(ChannelKind.Trades, "MSFT")

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)
    connection = transport.connections[0]
    assert session.registry.state(ChannelKind.Trades, "MSFT") is SubscriptionState.CONFIRMED

    session.unsubscribe(ChannelKind.Trades, "MSFT")
    feed = session.subscribe(ChannelKind.Trades, "MSFT")
    await wait_until(lambda: len(connection.sent) == 4)

    assert connection.sent[2:] == [
        {"action": "unsubscribe", "params": "T.MSFT"},
        {"action": "subscribe", "params": "T.MSFT"},
    ]
    await wait_until(
        lambda: session.registry.state(ChannelKind.Trades, "MSFT") is SubscriptionState.CONFIRMED
    )

    connection.push(trade("MSFT"))
    event = await asyncio.wait_for(feed.__anext__(), timeout=1)
    assert event.symbol == "MSFT"

    await session.stop()


@pytest.mark.asyncio
async def test_simulated_failure_forces_reconnect(make_session) -> None:
    transport = FakeStreamTransport()
    session = make_session(transport)
    session.subscribe(ChannelKind.Trades, "MSFT")

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)
    session.simulate_failure(ReconnectReason.MANUAL_TRIGGER)

    await wait_until(
        lambda: len(transport.connections) == 2 and session.state is ConnectionState.STREAMING
    )
    assert "manual_trigger" in str(session.last_error)
    await session.stop()


@pytest.mark.asyncio
async def test_missing_heartbeat_forces_reconnect(make_session) -> None:
    transport = FakeStreamTransport()
    session = make_session(transport, heartbeat_timeout=0.05)

    await session.start()
    await wait_until(lambda: len(transport.connections) >= 2)

    assert isinstance(session.last_error, HeartbeatTimeout)
    await session.stop()


@pytest.mark.asyncio
async def test_heartbeats_keep_connection_alive(make_session) -> None:
    transport = FakeStreamTransport()
    session = make_session(transport, heartbeat_timeout=0.3)

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)
    connection = transport.connections[0]

    for _ in range(10):
        connection.push({"ev": "heartbeat"})
        await asyncio.sleep(0.05)

    assert len(transport.connections) == 1
    assert session.state is ConnectionState.STREAMING
    await session.stop()


@pytest.mark.asyncio
async def test_undecodable_frame_forces_reconnect(make_session) -> None:
    transport = FakeStreamTransport()
    session = make_session(transport)

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)
    transport.connections[0].push_raw("this is not json")

    await wait_until(lambda: len(transport.connections) == 2)
    assert isinstance(session.last_error, DecodeError)
    await session.stop()


@pytest.mark.asyncio
async def test_disconnected_status_forces_reconnect(make_session) -> None:
    transport = FakeStreamTransport()
    session = make_session(transport)

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)
    transport.connections[0].push(status("disconnected", "server shutting down"))

    await wait_until(lambda: len(transport.connections) == 2)
    assert isinstance(session.last_error, ProtocolError)
    await session.stop()


@pytest.mark.asyncio
async def test_stop_is_prompt_while_blocked_on_read(make_session) -> None:
    transport = FakeStreamTransport()
    session = make_session(transport)
    feed = session.subscribe(ChannelKind.Trades, "MSFT")

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)

    await asyncio.wait_for(session.stop(), timeout=1)

    assert session.state is ConnectionState.DISCONNECTED
    assert session.transitions[-1] is ConnectionState.DISCONNECTED
    assert not session.running
    assert transport.connections[0].closed
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(feed.__anext__(), timeout=1)


@pytest.mark.asyncio
async def test_stop_during_backoff_is_prompt(make_session, refused_transport) -> None:
    session = make_session(refused_transport)
    session.backoff.base_delay = 30.0
    session.backoff.max_delay = 30.0

    await session.start()
    await session.wait_for_state(ConnectionState.RECONNECTING, timeout=1)
    assert session.backoff_delay == 30.0
    assert session.reconnect_attempt == 1

    await asyncio.wait_for(session.stop(), timeout=1)
    assert session.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_reconnect_exhaustion_is_fatal(make_session, refused_transport) -> None:
    session = make_session(refused_transport, max_attempts=2)
    feed = session.subscribe(ChannelKind.Trades, "MSFT")

    await session.start()
    await wait_until(lambda: not session.running)

    assert refused_transport.attempts == 3
    assert isinstance(session.fatal_error, ReconnectExhausted)
    assert session.fatal_error.attempts == 2
    assert session.state is ConnectionState.DISCONNECTED
    with pytest.raises(ReconnectExhausted):
        await asyncio.wait_for(feed.__anext__(), timeout=1)


@pytest.mark.asyncio
async def test_auth_rejection_drives_reconnect(make_session) -> None:
    transport = FakeStreamTransport(auth_ok=False)
    session = make_session(transport, max_attempts=1)

    await session.start()
    await wait_until(lambda: not session.running)

    assert len(transport.connections) == 2
    assert isinstance(session.last_error, AuthenticationRejected)
    assert isinstance(session.fatal_error, ReconnectExhausted)
    assert ConnectionState.SUBSCRIBING not in session.transitions


@pytest.mark.asyncio
async def test_failed_subscription_is_reported_and_does_not_block(make_session) -> None:
    transport = FakeStreamTransport(reject=frozenset({"T.BAD"}))
    session = make_session(transport)
    failures = []
    session.on_subscription_failed(failures.append)
    good = session.subscribe(ChannelKind.Trades, "GOOD")
    bad = session.subscribe(ChannelKind.Trades, "BAD")

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)

    assert [failure.key.param for failure in failures] == ["T.BAD"]
    assert session.registry.state(ChannelKind.Trades, "BAD") is SubscriptionState.FAILED
    assert session.registry.state(ChannelKind.Trades, "GOOD") is SubscriptionState.CONFIRMED
    with pytest.raises(SubscriptionFailed):
        await asyncio.wait_for(bad.__anext__(), timeout=1)

    transport.connections[0].push(trade("GOOD"))
    event = await asyncio.wait_for(good.__anext__(), timeout=1)
    assert event.symbol == "GOOD"

    await session.stop()


@pytest.mark.asyncio
async def test_subscribe_timeout_forces_reconnect(make_session) -> None:
    transport = FakeStreamTransport(auto_ack=False)
    session = make_session(transport, max_attempts=1)
    session.subscribe_timeout = 0.05
    session.subscribe(ChannelKind.Trades, "MSFT")

    await session.start()
    await wait_until(lambda: transport.connections and transport.connections[0].sent)
    transport.connections[0].push(status("auth_success", "authenticated"))

    await wait_until(lambda: len(transport.connections) == 2)
    assert isinstance(session.last_error, ProtocolError)
    assert "subscription" in str(session.last_error)
    await session.stop()


@pytest.mark.asyncio
async def test_start_twice_keeps_single_task(make_session, caplog) -> None:
    transport = FakeStreamTransport()
    session = make_session(transport)

    await session.start()
    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)

    assert len(transport.connections) == 1
    assert "already running" in caplog.text
    await session.stop()


def test_illegal_transition_raises(make_session) -> None:
    session = make_session(FakeStreamTransport())

    with pytest.raises(InvalidStateTransition):
        session._transition(ConnectionState.STREAMING)

    assert session.state is ConnectionState.DISCONNECTED
    assert session.transitions == []


@pytest.mark.asyncio
async def test_each_connect_consumes_a_rate_limit_permit(make_session, clock) -> None:
    limiter = RateLimiter(ceiling=5, refill_amount=5, refill_interval=60.0, clock=clock)
    transport = FakeStreamTransport()
    session = make_session(transport, rate_limiter=limiter)
    session.subscribe(ChannelKind.Trades, "MSFT")

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)
    assert limiter.remaining == 4

    session.simulate_failure()
    await wait_until(
        lambda: len(transport.connections) == 2 and session.state is ConnectionState.STREAMING
    )
    assert limiter.remaining == 3

    await session.stop()


@pytest.mark.asyncio
async def test_rejected_connect_permit_drives_reconnect(make_session, clock) -> None:
    limiter = RateLimiter(
        ceiling=1,
        refill_amount=1,
        refill_interval=60.0,
        policy=RateLimitPolicy.REJECTING,
        clock=clock,
    )
    transport = FakeStreamTransport()
    session = make_session(transport, max_attempts=2, rate_limiter=limiter)

    await session.start()
    await session.wait_for_state(ConnectionState.STREAMING, timeout=1)
    session.simulate_failure()
    await wait_until(lambda: not session.running)

    assert len(transport.connections) == 1
    assert isinstance(session.last_error, RateLimited)
    assert reconnect_reason(session.last_error) is ReconnectReason.CONNECT_FAILED
    assert isinstance(session.fatal_error, ReconnectExhausted)
    assert session.transitions.count(ConnectionState.RECONNECTING) == 2
    assert session.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_reap_task_retrieves_exception_of_finished_task() -> None:
    async def _fail() -> None:
        raise StreamClosed("connection reset by peer")

    loop = asyncio.get_running_loop()
    unhandled = []
    loop.set_exception_handler(lambda _loop, context: unhandled.append(context))
    try:
        task = asyncio.ensure_future(_fail())
        await asyncio.wait({task})
        reap_task(task)
        del task
        gc.collect()
    finally:
        loop.set_exception_handler(None)

    assert unhandled == []


@pytest.mark.asyncio
async def test_reap_task_cancels_pending_task() -> None:
    task = asyncio.ensure_future(asyncio.sleep(10))

    reap_task(task)

    with pytest.raises(asyncio.CancelledError):
        await task
