import logging
from typing import Any, AsyncIterator, Optional, Protocol

from pydantic import BaseModel

from polyfeed.api.endpoints import PagedRequest, PagedResponse

logger = logging.getLogger(__name__)


class Caller(Protocol):
    async def call(self, request: Any) -> BaseModel: ...


class PageCursorIterator:
    """Walk a cursor-paginated list one page per ``__anext__``.

    Single consumer, not restartable. A failed fetch leaves the cursor where it
    was, so the next ``__anext__`` re-requests the same page.
    """

    def __init__(self, dispatcher: Caller, request: PagedRequest) -> None:
        self._dispatcher = dispatcher
        self._request = request
        self._cursor: Optional[str] = None
        self._exhausted = False
        self._in_flight = False
        self.pages_fetched = 0

    @property
    def cursor(self) -> Optional[str]:
        return self._cursor

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def __aiter__(self) -> "PageCursorIterator":
        return self

    async def __anext__(self) -> PagedResponse:
        if self._in_flight:
            raise RuntimeError("PageCursorIterator does not support concurrent consumers")
        if self._exhausted:
            raise StopAsyncIteration

        request = self._request
        if self._cursor is not None:
            request = self._request.with_cursor(self._cursor)

        self._in_flight = True
        try:
            page = await self._dispatcher.call(request)
        finally:
            self._in_flight = False

        if not isinstance(page, PagedResponse):
            raise TypeError(f"{type(request).__name__} did not return a paged response")

        self.pages_fetched += 1
        self._cursor = page.next_cursor()
        if self._cursor is None:
            self._exhausted = True
            logger.debug("Pagination finished after %d pages", self.pages_fetched)

        return page

    async def items(self) -> AsyncIterator[Any]:
        async for page in self:
            for item in page.results:
                yield item
