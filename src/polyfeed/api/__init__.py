from polyfeed.api.aggregates import (
    AggregateBar,
    AggregatesRequest,
    AggregatesResponse,
    TimeSpan,
)
from polyfeed.api.endpoints import ApiRequest, PagedRequest, PagedResponse
from polyfeed.api.tickers import TickerInfo, TickersRequest, TickersResponse

__all__ = [
    "AggregateBar",
    "AggregatesRequest",
    "AggregatesResponse",
    "ApiRequest",
    "PagedRequest",
    "PagedResponse",
    "TickerInfo",
    "TickersRequest",
    "TickersResponse",
    "TimeSpan",
]
