from datetime import date, datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field

from polyfeed.api.endpoints import PagedRequest, PagedResponse, QueryParams


class TimeSpan(str, Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class AggregateBar(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    timestamp: datetime = Field(alias="t")
    volume: float = Field(alias="v")
    open_price: float = Field(alias="o")
    close_price: float = Field(alias="c")
    high_price: float = Field(alias="h")
    low_price: float = Field(alias="l")
    volume_weighted_average_price: Optional[float] = Field(default=None, alias="vw")
    transactions: Optional[int] = Field(default=None, alias="n")


class AggregatesResponse(PagedResponse[AggregateBar]):
    ticker: Optional[str] = None
    adjusted: Optional[bool] = None
    query_count: Optional[int] = Field(default=None, alias="queryCount")
    results_count: Optional[int] = Field(default=None, alias="resultsCount")


class AggregatesRequest(PagedRequest):
    """Bars for one symbol over ``[start, end]``.

    ``GET /v2/aggs/ticker/{symbol}/range/{multiplier}/{span}/{start}/{end}``
    """

    response_model: ClassVar[type[BaseModel]] = AggregatesResponse

    symbol: str = Field(min_length=1)
    time_span: TimeSpan = TimeSpan.DAY
    multiplier: int = Field(default=1, ge=1)
    start: date
    end: date
    adjusted: Optional[bool] = None
    sort: Optional[str] = Field(default=None, pattern="^(asc|desc)$")

    def path(self) -> str:
        return (
            f"/v2/aggs/ticker/{self.symbol}/range/{self.multiplier}/"
            f"{self.time_span.value}/{self.start:%Y-%m-%d}/{self.end:%Y-%m-%d}"
        )

    def params(self) -> QueryParams:
        params = super().params()
        if self.adjusted is not None:
            params["adjusted"] = "true" if self.adjusted else "false"
        if self.sort is not None:
            params["sort"] = self.sort
        return params
