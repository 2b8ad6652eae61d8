"""Fakes for the stream and request transports, shared by the unit tests."""

import asyncio
import json
from typing import Any, Callable, Optional

from polyfeed.common.exceptions import StreamClosed


def status(code: str, message: str = "") -> dict[str, Any]:
    return {"ev": "status", "status": code, "message": message}


def trade(symbol: str, price: float = 156.9799, size: int = 3) -> dict[str, Any]:
    return {"ev": "T", "sym": symbol, "x": 4, "i": "12345", "p": price, "s": size, "t": 1577818283019}


class FakeStreamConnection:
    """Scripted websocket; optionally answers auth and subscribe frames itself."""

    def __init__(
        self,
        auto_ack: bool = True,
        auth_ok: bool = True,
        reject: frozenset[str] = frozenset(),
    ) -> None:
        self.auto_ack = auto_ack
        self.auth_ok = auth_ok
        self.reject = reject
        self.sent: list[dict[str, Any]] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, *messages: dict[str, Any]) -> None:
        self.inbound.put_nowait(json.dumps(list(messages)))

    def push_raw(self, frame: str) -> None:
        self.inbound.put_nowait(frame)

    def drop(self) -> None:
        self.inbound.put_nowait(StreamClosed("connection reset by peer"))

    async def send(self, frame: str) -> None:
        if self.closed:
            raise StreamClosed("connection closed")
        message = json.loads(frame)
        self.sent.append(message)
        if self.auto_ack:
            self._acknowledge(message)

    async def recv(self) -> str:
        item = await self.inbound.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(StreamClosed("connection closed"))

    def _acknowledge(self, message: dict[str, Any]) -> None:
        action = message["action"]
        if action == "auth":
            if self.auth_ok:
                self.push(status("auth_success", "authenticated"))
            else:
                self.push(status("auth_failed", "authentication failed"))
        elif action == "subscribe":
            params = message["params"].split(",")
            accepted = [param for param in params if param not in self.reject]
            if accepted:
                self.push(status("success", f"subscribed to: {','.join(accepted)}"))
            for param in params:
                if param in self.reject:
                    self.push(status("error", f"subscription failed: {param}"))
        elif action == "unsubscribe":
            self.push(status("success", f"unsubscribed to: {message['params']}"))


class FakeStreamTransport:
    def __init__(self, fail_with: Optional[BaseException] = None, **connection_kwargs: Any) -> None:
        self.fail_with = fail_with
        self.connection_kwargs = connection_kwargs
        self.connections: list[FakeStreamConnection] = []
        self.urls: list[str] = []

    @property
    def attempts(self) -> int:
        return len(self.urls)

    async def connect(self, url: str) -> FakeStreamConnection:
        self.urls.append(url)
        if self.fail_with is not None:
            raise self.fail_with
        connection = FakeStreamConnection(**self.connection_kwargs)
        self.connections.append(connection)
        return connection


class ScriptedRequestTransport:
    """Replays ``(status, body)`` pairs; a body that is not a str is JSON encoded."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str, dict[str, Any], dict[str, str]]] = []
        self.closed = False

    async def send(self, method, path, params, headers):  # type: ignore[no-untyped-def]
        self.calls.append((method, path, dict(params or {}), dict(headers)))
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        status_code, body = response
        if not isinstance(body, str):
            body = json.dumps(body)
        return status_code, body

    async def close(self) -> None:
        self.closed = True


class ManualClock:
    """Monotonic clock advanced by hand or by the sleeps it hands out."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
