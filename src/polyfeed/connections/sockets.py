"""Streaming session: one background task owning one websocket at a time.

The session is an explicit state machine::

    DISCONNECTED -> CONNECTING -> AUTHENTICATING -> SUBSCRIBING -> STREAMING
                        ^                                              |
                        +---------------- RECONNECTING <---------------+

Any failure on the way to or while STREAMING moves to RECONNECTING; ``stop()``
moves any state to DISCONNECTED. Application calls never touch the socket:
they update the registry and post a command to the session task.

Polygon websocket protocol docs: https://polygon.io/docs/stocks/ws_getting-started
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from polyfeed.common.exceptions import (
    AuthenticationRejected,
    ConnectError,
    DecodeError,
    HeartbeatTimeout,
    InvalidStateTransition,
    ProtocolError,
    RateLimited,
    ReconnectExhausted,
    StreamClosed,
    StreamError,
)
from polyfeed.config.enumerations import (
    ChannelKind,
    ConnectionState,
    MessageKind,
    ReconnectReason,
    SubscriptionState,
)
from polyfeed.config.settings import ClientSettings
from polyfeed.connections.auth import Authenticator
from polyfeed.connections.backoff import BackoffPolicy
from polyfeed.connections.ratelimit import RateLimiter
from polyfeed.connections.routing import FailureCallback, Feed, MessageRouter
from polyfeed.connections.subscription import SubscriptionRegistry, make_key
from polyfeed.messaging.models.messages import (
    DecodedMessage,
    StreamRequest,
    SubscriptionKey,
    decode_frame,
    sort_keys,
)

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT = 5.0

LEGAL_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.AUTHENTICATING, ConnectionState.RECONNECTING}
    ),
    ConnectionState.AUTHENTICATING: frozenset(
        {ConnectionState.SUBSCRIBING, ConnectionState.RECONNECTING}
    ),
    ConnectionState.SUBSCRIBING: frozenset(
        {ConnectionState.STREAMING, ConnectionState.RECONNECTING}
    ),
    ConnectionState.STREAMING: frozenset({ConnectionState.RECONNECTING}),
    ConnectionState.RECONNECTING: frozenset({ConnectionState.CONNECTING}),
}


class StreamConnection(Protocol):
    async def send(self, frame: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self) -> None: ...


class StreamTransport(Protocol):
    async def connect(self, url: str) -> StreamConnection: ...


class WebsocketsConnection:
    def __init__(self, websocket: ClientConnection) -> None:
        self.websocket = websocket

    async def send(self, frame: str) -> None:
        try:
            await self.websocket.send(frame)
        except ConnectionClosed as e:
            raise StreamClosed(f"Connection closed while sending: {e}") from e

    async def recv(self) -> str:
        try:
            message = await self.websocket.recv()
        except ConnectionClosed as e:
            raise StreamClosed(f"Connection closed: {e}") from e
        if isinstance(message, bytes):
            return message.decode("utf-8", errors="replace")
        return message

    async def close(self) -> None:
        await self.websocket.close()


class WebsocketsTransport:
    """StreamTransport over ``websockets.asyncio.client.connect``."""

    def __init__(self, connect_timeout: float = 10.0, **connect_kwargs: Any) -> None:
        self.connect_timeout = connect_timeout
        self.connect_kwargs = connect_kwargs

    async def connect(self, url: str) -> WebsocketsConnection:
        try:
            websocket = await connect(
                url, open_timeout=self.connect_timeout, **self.connect_kwargs
            )
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            raise ConnectError(f"Could not connect to {url}: {e}") from e
        logger.info("Websocket connected to %s", url)
        return WebsocketsConnection(websocket)


@dataclass(frozen=True)
class Subscribe:
    key: SubscriptionKey


@dataclass(frozen=True)
class Unsubscribe:
    key: SubscriptionKey


@dataclass(frozen=True)
class ForceReconnect:
    reason: ReconnectReason = ReconnectReason.MANUAL_TRIGGER


Command = Union[Subscribe, Unsubscribe, ForceReconnect]


class ForcedReconnect(StreamError):
    def __init__(self, reason: ReconnectReason):
        super().__init__(f"Reconnect requested ({reason.value})")
        self.reason = reason


class _Stopped(Exception):
    """Internal: the stop event won a race."""


def reap_task(task: asyncio.Future) -> None:
    """Cancel a pending task, or mark a finished task's exception as retrieved."""
    if not task.done():
        task.cancel()
    elif not task.cancelled():
        task.exception()


def reconnect_reason(error: BaseException) -> ReconnectReason:
    if isinstance(error, ForcedReconnect):
        return error.reason
    if isinstance(error, (ConnectError, RateLimited)):
        return ReconnectReason.CONNECT_FAILED
    if isinstance(error, AuthenticationRejected):
        return ReconnectReason.AUTH_REJECTED
    if isinstance(error, HeartbeatTimeout):
        return ReconnectReason.TIMEOUT
    if isinstance(error, StreamClosed):
        return ReconnectReason.CONNECTION_DROPPED
    return ReconnectReason.PROTOCOL_ERROR


class StreamSession:
    """Connection lifecycle, handshake, subscription replay and demultiplexing."""

    def __init__(
        self,
        url: str,
        authenticator: Authenticator,
        registry: SubscriptionRegistry,
        router: MessageRouter,
        transport: StreamTransport,
        rate_limiter: Optional[RateLimiter] = None,
        backoff: Optional[BackoffPolicy] = None,
        auth_timeout: float = 10.0,
        subscribe_timeout: float = 10.0,
        heartbeat_timeout: Optional[float] = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.authenticator = authenticator
        self.registry = registry
        self.router = router
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.backoff = backoff or BackoffPolicy()
        self.auth_timeout = auth_timeout
        self.subscribe_timeout = subscribe_timeout
        self.heartbeat_timeout = heartbeat_timeout

        self._clock = clock
        self._sleep = sleep
        self._state = ConnectionState.DISCONNECTED
        self._state_changed = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._commands: asyncio.Queue[Command] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._wire: set[SubscriptionKey] = set()
        self._last_frame_at = clock()

        self.transitions: list[ConnectionState] = []
        self.reconnect_attempt = 0
        self.backoff_delay: Optional[float] = None
        self.last_error: Optional[BaseException] = None
        self.fatal_error: Optional[BaseException] = None

        self.router.on_heartbeat = self._touch

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        authenticator: Authenticator,
        registry: SubscriptionRegistry,
        router: MessageRouter,
        transport: StreamTransport,
        rate_limiter: Optional[RateLimiter] = None,
        rng: Optional[random.Random] = None,
    ) -> "StreamSession":
        return cls(
            url=settings.stream_url,
            authenticator=authenticator,
            registry=registry,
            router=router,
            transport=transport,
            rate_limiter=rate_limiter,
            backoff=BackoffPolicy.from_settings(settings.backoff, rng=rng),
            auth_timeout=settings.auth_timeout,
            subscribe_timeout=settings.subscribe_timeout,
            heartbeat_timeout=settings.heartbeat_timeout,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Application API
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            logger.warning("Stream session already running")
            return

        self._stop_event.clear()
        self.fatal_error = None
        self.last_error = None
        self._task = asyncio.create_task(self._run(), name="stream_session")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        self.router.close_all()
        logger.info("Stream session stopped")

    def subscribe(self, channel: Union[ChannelKind, str], symbol: str) -> Feed:
        key = make_key(channel, symbol)
        changed = self.registry.subscribe(key.channel, key.symbol)
        feed = self.router.open_feed(key)
        if changed:
            self._commands.put_nowait(Subscribe(key))
        return feed

    def unsubscribe(self, channel: Union[ChannelKind, str], symbol: str) -> bool:
        key = make_key(channel, symbol)
        changed = self.registry.unsubscribe(key.channel, key.symbol)
        self.router.close_feed(key)
        if changed:
            self._commands.put_nowait(Unsubscribe(key))
        return changed

    def simulate_failure(self, reason: ReconnectReason = ReconnectReason.MANUAL_TRIGGER) -> None:
        """Drop the current connection as if it had failed; used for drills and tests."""
        self._commands.put_nowait(ForceReconnect(reason))

    def on_subscription_failed(self, callback: FailureCallback) -> None:
        self.router.add_failure_callback(callback)

    async def wait_for_state(
        self, state: ConnectionState, timeout: Optional[float] = None
    ) -> None:
        async def _wait() -> None:
            while True:
                changed = self._state_changed
                if self._state is state:
                    return
                await changed.wait()

        await asyncio.wait_for(_wait(), timeout)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: ConnectionState) -> None:
        legal = LEGAL_TRANSITIONS[self._state]
        if target is not ConnectionState.DISCONNECTED and target not in legal:
            raise InvalidStateTransition(self._state, target)
        self._set_state(target)

    def _set_state(self, target: ConnectionState) -> None:
        if target is self._state:
            return
        logger.debug("Stream state %s -> %s", self._state.value, target.value)
        self._state = target
        self.transitions.append(target)
        changed, self._state_changed = self._state_changed, asyncio.Event()
        changed.set()

    async def _run(self) -> None:
        attempt = 0
        try:
            while not self._stop_event.is_set():
                try:
                    await self._session_cycle()
                except _Stopped:
                    break
                except (StreamError, DecodeError, RateLimited) as e:
                    self.last_error = e
                    logger.warning(
                        "Stream interrupted (%s): %s", reconnect_reason(e).value, e
                    )

                if self._state is ConnectionState.STREAMING:
                    attempt = 0
                self.registry.connection_lost()
                self._wire = set()

                attempt += 1
                if self.backoff.exhausted(attempt):
                    self._give_up(attempt - 1)
                    break

                self.reconnect_attempt = attempt
                self.backoff_delay = self.backoff.delay(attempt)
                self._transition(ConnectionState.RECONNECTING)
                logger.info(
                    "Reconnecting in %.2fs (attempt %d)", self.backoff_delay, attempt
                )
                try:
                    await self._until_stopped(self._sleep(self.backoff_delay))
                except _Stopped:
                    break

        except Exception as e:
            logger.exception("Stream session crashed")
            self.fatal_error = e
            self.router.fail_all(e)

        finally:
            self._wire = set()
            self.backoff_delay = None
            self._transition(ConnectionState.DISCONNECTED)

    def _give_up(self, attempts: int) -> None:
        self.fatal_error = ReconnectExhausted(attempts, self.last_error)
        logger.error("%s", self.fatal_error)
        self.router.fail_all(self.fatal_error)

    async def _session_cycle(self) -> None:
        """One connection: connect, authenticate, replay, stream until failure."""
        self._transition(ConnectionState.CONNECTING)
        if self.rate_limiter is not None:
            await self._until_stopped(self.rate_limiter.acquire())
        connection = await self._until_stopped(self.transport.connect(self.url))
        try:
            self._touch()
            self._transition(ConnectionState.AUTHENTICATING)
            await self._authenticate(connection)

            self._transition(ConnectionState.SUBSCRIBING)
            await self._replay(connection)

            self._transition(ConnectionState.STREAMING)
            self.reconnect_attempt = 0
            logger.info("Streaming %d subscriptions", len(self._wire))
            await self._stream(connection)
        finally:
            await self._close_connection(connection)

    async def _authenticate(self, connection: StreamConnection) -> None:
        await connection.send(self.authenticator.auth_frame().model_dump_json())
        deadline = self._clock() + self.auth_timeout

        while True:
            authenticated = False
            for message in await self._receive(connection, deadline, "authentication"):
                if message.kind is MessageKind.AUTH_SUCCESS:
                    authenticated = True
                elif message.kind is MessageKind.AUTH_FAILED:
                    raise AuthenticationRejected(message.text)
                elif message.kind is not MessageKind.CONNECTED:
                    self._dispatch(message)
            if authenticated:
                logger.info("Stream authenticated")
                return

    async def _replay(self, connection: StreamConnection) -> None:
        self._drain_commands()
        batch = sort_keys(self.registry.desired_set())
        self._wire = set(batch)
        if not batch:
            return

        await connection.send(StreamRequest.subscribe(batch).model_dump_json())
        self.registry.mark_requested(batch)
        logger.info("Subscribing to %d channels", len(batch))

        deadline = self._clock() + self.subscribe_timeout
        while not self.registry.settled(batch):
            for message in await self._receive(connection, deadline, "subscription"):
                self._dispatch(message)

    async def _stream(self, connection: StreamConnection) -> None:
        recv_task: Optional[asyncio.Task] = None
        command_task: Optional[asyncio.Task] = None
        stop_waiter = asyncio.ensure_future(self._stop_event.wait())

        try:
            while True:
                if recv_task is None:
                    recv_task = asyncio.ensure_future(connection.recv())
                if command_task is None:
                    command_task = asyncio.ensure_future(self._commands.get())

                done, _ = await asyncio.wait(
                    {recv_task, command_task, stop_waiter},
                    timeout=self._inactivity_remaining(),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if stop_waiter in done:
                    raise _Stopped()
                if not done and self.heartbeat_timeout is not None:
                    raise HeartbeatTimeout(self.heartbeat_timeout)

                if command_task in done:
                    command = command_task.result()
                    command_task = None
                    await self._apply(connection, command)

                if recv_task in done:
                    frame = recv_task.result()
                    recv_task = None
                    self._touch()
                    for message in decode_frame(frame):
                        self._dispatch(message)
        finally:
            for task in (recv_task, command_task, stop_waiter):
                if task is not None:
                    reap_task(task)

    async def _apply(self, connection: StreamConnection, command: Command) -> None:
        if isinstance(command, ForceReconnect):
            raise ForcedReconnect(command.reason)

        key = command.key
        if isinstance(command, Subscribe):
            if self.registry.state(key.channel, key.symbol) is not SubscriptionState.DESIRED:
                return
            await connection.send(StreamRequest.subscribe([key]).model_dump_json())
            self.registry.mark_requested([key])
            self._wire.add(key)
            logger.info("Subscribing to %s", key)
        elif key in self._wire:
            await connection.send(StreamRequest.unsubscribe([key]).model_dump_json())
            self._wire.discard(key)
            logger.info("Unsubscribing from %s", key)

    def _drain_commands(self) -> None:
        while True:
            try:
                command = self._commands.get_nowait()
            except asyncio.QueueEmpty:
                return
            if isinstance(command, ForceReconnect):
                logger.debug("Discarding reconnect request; connection is new")

    def _dispatch(self, message: DecodedMessage) -> None:
        if message.kind is MessageKind.DISCONNECTED:
            raise ProtocolError(f"Server ended the stream: {message.text}")
        if message.kind is MessageKind.ERROR:
            self._wire.difference_update(message.keys)
        self.router.route(message)

    async def _receive(
        self, connection: StreamConnection, deadline: float, phase: str
    ) -> list[DecodedMessage]:
        remaining = deadline - self._clock()
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError
            frame = await self._until_stopped(connection.recv(), timeout=remaining)
        except asyncio.TimeoutError:
            raise ProtocolError(f"Timed out waiting for {phase}") from None

        self._touch()
        return decode_frame(frame)

    async def _until_stopped(self, aw: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Await ``aw`` unless ``stop()`` or ``timeout`` comes first."""
        task = asyncio.ensure_future(aw)
        stop_waiter = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, stop_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            stop_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        if self._stop_event.is_set():
            raise _Stopped()
        raise asyncio.TimeoutError

    def _touch(self) -> None:
        self._last_frame_at = self._clock()

    def _inactivity_remaining(self) -> Optional[float]:
        if self.heartbeat_timeout is None:
            return None
        return max(0.0, self.heartbeat_timeout - (self._clock() - self._last_frame_at))

    async def _close_connection(self, connection: StreamConnection) -> None:
        try:
            await asyncio.wait_for(connection.close(), timeout=CLOSE_TIMEOUT)
        except (StreamError, OSError, asyncio.TimeoutError) as e:
            logger.debug("Error closing stream connection: %s", e)
