"""Client context: one object owning every piece of shared state.

Nothing here is process-wide. Each :class:`PolygonClient` gets its own
injector, so two clients never share a credential, a rate-limit budget or a
stream session.

Usage:
    async with PolygonClient.create(load_settings()) as client:
        response = await client.call(TickersRequest(limit=10))

        feed = client.subscribe(ChannelKind.Trades, "MSFT")
        await client.start()
        async for trade in feed:
            ...
"""

import logging
from types import TracebackType
from typing import AsyncIterator, Optional, Union

from injector import Injector, Module, inject, provider, singleton
from pydantic import BaseModel

from polyfeed.api.endpoints import ApiRequest, PagedRequest
from polyfeed.config.enumerations import ChannelKind
from polyfeed.config.settings import ClientSettings
from polyfeed.connections.auth import Authenticator
from polyfeed.connections.pagination import PageCursorIterator
from polyfeed.connections.ratelimit import RateLimiter
from polyfeed.connections.requests import AiohttpTransport, Dispatcher, RequestTransport
from polyfeed.connections.routing import Feed, MessageRouter
from polyfeed.connections.sockets import StreamSession, StreamTransport, WebsocketsTransport
from polyfeed.connections.subscription import SubscriptionRegistry

logger = logging.getLogger(__name__)


class ClientModule(Module):
    """Bindings for one client; ``@singleton`` is scoped to its injector."""

    def __init__(
        self,
        settings: ClientSettings,
        request_transport: Optional[RequestTransport] = None,
        stream_transport: Optional[StreamTransport] = None,
    ) -> None:
        self.settings = settings
        self.request_transport = request_transport
        self.stream_transport = stream_transport

    @singleton
    @provider
    def provide_settings(self) -> ClientSettings:
        return self.settings

    @singleton
    @provider
    def provide_authenticator(self, settings: ClientSettings) -> Authenticator:
        return Authenticator(settings.api_key)

    @singleton
    @provider
    def provide_rate_limiter(self, settings: ClientSettings) -> RateLimiter:
        return RateLimiter.from_settings(settings.rate_limit)

    @singleton
    @provider
    def provide_request_transport(self, settings: ClientSettings) -> RequestTransport:
        if self.request_transport is not None:
            return self.request_transport
        return AiohttpTransport(settings.api_url, timeout=settings.request_timeout)

    @singleton
    @provider
    def provide_stream_transport(self, settings: ClientSettings) -> StreamTransport:
        if self.stream_transport is not None:
            return self.stream_transport
        return WebsocketsTransport(connect_timeout=settings.connect_timeout)

    @singleton
    @provider
    def provide_registry(self) -> SubscriptionRegistry:
        return SubscriptionRegistry()

    @singleton
    @provider
    def provide_router(
        self, settings: ClientSettings, registry: SubscriptionRegistry
    ) -> MessageRouter:
        return MessageRouter(registry, feed_queue_size=settings.feed_queue_size)

    @singleton
    @provider
    def provide_dispatcher(
        self,
        authenticator: Authenticator,
        rate_limiter: RateLimiter,
        transport: RequestTransport,
    ) -> Dispatcher:
        return Dispatcher(authenticator, rate_limiter, transport)

    @singleton
    @provider
    def provide_stream_session(
        self,
        settings: ClientSettings,
        authenticator: Authenticator,
        rate_limiter: RateLimiter,
        registry: SubscriptionRegistry,
        router: MessageRouter,
        transport: StreamTransport,
    ) -> StreamSession:
        return StreamSession.from_settings(
            settings, authenticator, registry, router, transport, rate_limiter=rate_limiter
        )


class PolygonClient:
    """Request/response and streaming access sharing one credential and budget."""

    @classmethod
    def create(
        cls,
        settings: ClientSettings,
        request_transport: Optional[RequestTransport] = None,
        stream_transport: Optional[StreamTransport] = None,
    ) -> "PolygonClient":
        injector = Injector([ClientModule(settings, request_transport, stream_transport)])
        return injector.get(PolygonClient)

    @inject
    def __init__(
        self,
        settings: ClientSettings,
        authenticator: Authenticator,
        rate_limiter: RateLimiter,
        dispatcher: Dispatcher,
        session: StreamSession,
        registry: SubscriptionRegistry,
        request_transport: RequestTransport,
    ) -> None:
        self.settings = settings
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self.dispatcher = dispatcher
        self.session = session
        self.registry = registry
        self.request_transport = request_transport

    async def __aenter__(self) -> "PolygonClient":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    @property
    def router(self) -> MessageRouter:
        return self.session.router

    async def call(self, request: ApiRequest) -> BaseModel:
        return await self.dispatcher.call(request)

    def paginate(self, request: PagedRequest) -> PageCursorIterator:
        return PageCursorIterator(self.dispatcher, request)

    async def items(self, request: PagedRequest) -> AsyncIterator:
        async for item in self.paginate(request).items():
            yield item

    def subscribe(self, channel: Union[ChannelKind, str], symbol: str) -> Feed:
        return self.session.subscribe(channel, symbol)

    def unsubscribe(self, channel: Union[ChannelKind, str], symbol: str) -> bool:
        return self.session.unsubscribe(channel, symbol)

    async def start(self) -> None:
        await self.session.start()

    async def stop(self) -> None:
        await self.session.stop()

    async def close(self) -> None:
        await self.session.stop()
        close = getattr(self.request_transport, "close", None)
        if close is not None:
            await close()
        logger.info("Client closed")
