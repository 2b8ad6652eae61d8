import asyncio
import json
import logging
from typing import Any, Mapping, Optional, Protocol, Union

import aiohttp
from injector import inject
from pydantic import BaseModel, ValidationError

from polyfeed.api.endpoints import ApiRequest, QueryParams
from polyfeed.common.exceptions import (
    DecodeError,
    RateLimited,
    TransportError,
    Unauthenticated,
)
from polyfeed.connections.auth import Authenticator
from polyfeed.connections.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

USER_AGENT = "polyfeed"


class RequestTransport(Protocol):
    """The only network dependency of the request/response path."""

    async def send(
        self,
        method: str,
        path: str,
        params: Optional[QueryParams],
        headers: Mapping[str, str],
    ) -> tuple[int, str]: ...


class AiohttpTransport:
    """RequestTransport over a lazily created ``aiohttp.ClientSession``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                timeout=self.timeout,
            )
            self._owns_session = True
        return self._session

    async def send(
        self,
        method: str,
        path: str,
        params: Optional[QueryParams],
        headers: Mapping[str, str],
    ) -> tuple[int, str]:
        session = self._get_session()
        try:
            async with session.request(
                method, f"{self.base_url}{path}", params=params, headers=dict(headers)
            ) as response:
                body = await response.text()
                return response.status, body
        except asyncio.TimeoutError as e:
            raise TransportError(None, str(e), retryable=True, message="Request timed out") from e
        except aiohttp.ClientError as e:
            raise TransportError(None, str(e), retryable=True, message="Network error") from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
            logger.info("HTTP session closed")


def parse_retry_after(body: str) -> Optional[float]:
    """Read the ``retry_after`` hint of a 429 body; numeric strings are accepted."""
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(payload, dict):
        return None

    value: Union[str, int, float, None] = payload.get("retry_after")
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring non-numeric retry_after %r", value)
        return None


class Dispatcher:
    """Single request/response call: credential, permit, send, classify.

    Never retries; every failure surfaces to the caller of :meth:`call`.
    """

    @inject
    def __init__(
        self,
        authenticator: Authenticator,
        rate_limiter: RateLimiter,
        transport: RequestTransport,
    ) -> None:
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self.transport = transport

    async def call(self, request: ApiRequest) -> BaseModel:
        headers = self.authenticator.auth_headers()
        await self.rate_limiter.acquire()

        path = request.path()
        status, body = await self.transport.send(
            request.method, path, request.params(), headers
        )
        logger.debug("%s %s -> %s", request.method, path, status)
        return self.classify(request, status, body)

    def classify(self, request: ApiRequest, status: int, body: str) -> Any:
        if 200 <= status < 300:
            try:
                payload = json.loads(body) if body else {}
            except json.JSONDecodeError as e:
                logger.error("Failed to parse JSON response: %s", e)
                raise DecodeError(f"malformed JSON: {e}", payload=body) from e
            try:
                return request.parse(payload)
            except ValidationError as e:
                logger.error("Response for %s failed validation: %s", request.path(), e)
                raise DecodeError(f"schema mismatch: {e}", payload=body) from e

        if status in (401, 403):
            logger.error("API error: %s - unauthenticated", status)
            raise Unauthenticated(status, body)

        if status == 429:
            retry_after = parse_retry_after(body)
            logger.warning("Rate limited by remote service (retry_after=%s)", retry_after)
            raise RateLimited(retry_after=retry_after, status=status)

        logger.error("API error: %s - %s", status, body[:200])
        if status >= 500:
            raise TransportError(status, body, retryable=True, message="Server error")
        raise TransportError(status, body, retryable=False, message="Request failed")
