"""Typed request/response definitions for the REST API.

A request knows its HTTP method, path and query parameters and how to parse
the JSON payload of a successful response. The Dispatcher does the rest.
"""

import logging
from typing import Any, ClassVar, Generic, Optional, TypeVar
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")

QueryParams = dict[str, Any]


class ApiRequest(BaseModel):
    method: ClassVar[str] = "GET"
    response_model: ClassVar[type[BaseModel]]

    model_config = ConfigDict(frozen=True, extra="forbid")

    def path(self) -> str:
        raise NotImplementedError

    def params(self) -> QueryParams:
        return {}

    def parse(self, payload: Any) -> BaseModel:
        return self.response_model.model_validate(payload)


class PagedResponse(BaseModel, Generic[ItemT]):
    """A list response that may carry a continuation cursor.

    The service either returns the cursor itself or a ``next_url`` whose
    ``cursor`` query parameter holds it.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    results: list[ItemT] = Field(default_factory=list)
    status: Optional[str] = None
    request_id: Optional[str] = None
    count: Optional[int] = None
    next_url: Optional[str] = None
    cursor: Optional[str] = None

    def next_cursor(self) -> Optional[str]:
        if self.cursor:
            return self.cursor
        if not self.next_url:
            return None

        values = parse_qs(urlparse(self.next_url).query).get("cursor")
        if not values or not values[0]:
            logger.debug("next_url without a cursor parameter: %s", self.next_url)
            return None
        return values[0]


class PagedRequest(ApiRequest):
    cursor: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)

    def with_cursor(self, cursor: str) -> "PagedRequest":
        return self.model_copy(update={"cursor": cursor})

    def params(self) -> QueryParams:
        params: QueryParams = {}
        if self.limit is not None:
            params["limit"] = self.limit
        if self.cursor is not None:
            params["cursor"] = self.cursor
        return params
