import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from polyfeed.common.exceptions import SubscriptionFailed
from polyfeed.config.enumerations import MessageKind
from polyfeed.connections.subscription import SubscriptionRegistry
from polyfeed.messaging.models.events import MarketEvent
from polyfeed.messaging.models.messages import WILDCARD, DecodedMessage, SubscriptionKey

logger = logging.getLogger(__name__)

FailureCallback = Callable[[SubscriptionFailed], Any]

_END = object()


@dataclass
class RouterMetrics:
    routed: int = 0
    dropped: int = 0
    ignored: int = 0
    invalid: int = 0
    overflow: int = 0


class Feed:
    """Application-facing async iterator of events for one subscription key.

    Ends when closed; raises the stored error instead if it was failed.
    Buffered events are delivered first in both cases.
    """

    def __init__(self, key: SubscriptionKey, maxsize: int = 0) -> None:
        self.key = key
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def put(self, item: Union[MarketEvent, BaseException]) -> bool:
        """Enqueue without waiting; False when closed or full."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_END)
        except asyncio.QueueFull:
            # No reader is blocked on a full queue; __anext__ sees the flag once drained.
            pass

    def fail(self, error: BaseException) -> None:
        if self._closed:
            return
        self._error = error
        self.close()

    def __aiter__(self) -> "Feed":
        return self

    async def __anext__(self) -> MarketEvent:
        if self._closed and self._queue.empty():
            self._finish()

        item = await self._queue.get()
        if item is _END:
            self._finish()
        if isinstance(item, BaseException):
            raise item
        return item

    def _finish(self) -> None:
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration

    def __repr__(self) -> str:
        return f"Feed(key={self.key}, queued={self.qsize()}, closed={self._closed})"


class MessageRouter:
    """Demultiplex decoded stream messages.

    Data goes to feeds, acknowledgements and errors to the registry,
    heartbeats to the liveness callback. Nothing here raises on bad input;
    it is counted in :attr:`metrics` instead.
    """

    def __init__(self, registry: SubscriptionRegistry, feed_queue_size: int = 0) -> None:
        self.registry = registry
        self.feed_queue_size = feed_queue_size
        self.feeds: dict[SubscriptionKey, Feed] = {}
        self.metrics = RouterMetrics()
        self.on_heartbeat: Optional[Callable[[], None]] = None
        self._failure_callbacks: list[FailureCallback] = []

        self.handlers: dict[MessageKind, Callable[[DecodedMessage], None]] = {
            MessageKind.TRADE: self.route_data,
            MessageKind.QUOTE: self.route_data,
            MessageKind.AGGREGATE: self.route_data,
            MessageKind.SUBSCRIBED: self.handle_subscribed,
            MessageKind.UNSUBSCRIBED: self.handle_unsubscribed,
            MessageKind.ERROR: self.handle_error,
            MessageKind.HEARTBEAT: self.handle_heartbeat,
            MessageKind.CONNECTED: self.handle_control,
            MessageKind.AUTH_SUCCESS: self.handle_control,
            MessageKind.AUTH_FAILED: self.handle_control,
            MessageKind.DISCONNECTED: self.handle_control,
        }

    def add_failure_callback(self, callback: FailureCallback) -> None:
        self._failure_callbacks.append(callback)

    def route(self, message: DecodedMessage) -> None:
        handler = self.handlers.get(message.kind, self.handle_unknown)
        handler(message)

    def open_feed(self, key: SubscriptionKey) -> Feed:
        feed = self.feeds.get(key)
        if feed is None or feed.closed:
            feed = Feed(key, maxsize=self.feed_queue_size)
            self.feeds[key] = feed
        return feed

    def close_feed(self, key: SubscriptionKey) -> None:
        if feed := self.feeds.pop(key, None):
            feed.close()

    def fail_all(self, error: BaseException) -> None:
        for feed in self.feeds.values():
            feed.fail(error)
        self.feeds.clear()

    def close_all(self) -> None:
        for feed in self.feeds.values():
            feed.close()
        self.feeds.clear()

    def route_data(self, message: DecodedMessage) -> None:
        key = message.key
        if message.error is not None or message.event is None or key is None:
            self.metrics.invalid += 1
            logger.warning(
                "Discarding invalid %s event for %s: %s",
                message.kind.value,
                message.symbol,
                message.error,
            )
            return

        targets = [
            feed
            for feed in (
                self.feeds.get(key),
                self.feeds.get(SubscriptionKey(key.channel, WILDCARD)),
            )
            if feed is not None
        ]
        if key.is_wildcard:
            targets = targets[:1]

        if not targets:
            self.metrics.dropped += 1
            logger.debug("No feed for %s, dropping event", key)
            return

        for feed in targets:
            if feed.put(message.event):
                self.metrics.routed += 1
            else:
                self.metrics.overflow += 1
                logger.warning("Feed %s is full - dropping event", feed.key)

    def handle_subscribed(self, message: DecodedMessage) -> None:
        for key in message.keys:
            if self.registry.mark_confirmed(key):
                logger.info("Subscription confirmed: %s", key)
            else:
                self.metrics.dropped += 1
                logger.debug("Stale subscription ack for %s", key)

    def handle_unsubscribed(self, message: DecodedMessage) -> None:
        logger.debug("Unsubscribed: %s", ", ".join(key.param for key in message.keys))

    def handle_error(self, message: DecodedMessage) -> None:
        if not message.keys:
            self.metrics.ignored += 1
            logger.error("Stream error: %s", message.text)
            return

        for key in message.keys:
            if not self.registry.mark_failed(key, message.text):
                self.metrics.dropped += 1
                logger.debug("Stale subscription error for %s", key)
                continue

            error = SubscriptionFailed(key, message.text)
            logger.warning("%s", error)
            if feed := self.feeds.get(key):
                feed.put(error)
            self._notify_failure(error)

    def handle_heartbeat(self, message: DecodedMessage) -> None:
        if self.on_heartbeat is not None:
            self.on_heartbeat()

    def handle_control(self, message: DecodedMessage) -> None:
        logger.debug("Control frame %s: %s", message.kind.value, message.text)

    def handle_unknown(self, message: DecodedMessage) -> None:
        self.metrics.ignored += 1
        logger.debug("Ignoring unrecognized message: %s", message.raw)

    def _notify_failure(self, error: SubscriptionFailed) -> None:
        for callback in self._failure_callbacks:
            try:
                callback(error)
            except Exception:
                logger.exception("Subscription failure callback raised")
