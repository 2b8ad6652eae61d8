from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field

from polyfeed.api.endpoints import PagedRequest, PagedResponse, QueryParams


class TickerInfo(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    ticker: str
    name: Optional[str] = None
    market: Optional[str] = None
    locale: Optional[str] = None
    primary_exchange: Optional[str] = None
    type: Optional[str] = None
    active: Optional[bool] = None
    currency_name: Optional[str] = None
    cik: Optional[str] = None
    composite_figi: Optional[str] = None
    last_updated_utc: Optional[str] = None


class TickersResponse(PagedResponse[TickerInfo]):
    pass


class TickersRequest(PagedRequest):
    """Reference tickers, ``GET /v3/reference/tickers``."""

    response_model: ClassVar[type[BaseModel]] = TickersResponse

    market: Optional[str] = "stocks"
    active: Optional[bool] = True
    ticker: Optional[str] = None
    search: Optional[str] = None
    limit: Optional[int] = Field(default=100, ge=1, le=1000)

    def path(self) -> str:
        return "/v3/reference/tickers"

    def params(self) -> QueryParams:
        params = super().params()
        if self.market is not None:
            params["market"] = self.market
        if self.active is not None:
            params["active"] = "true" if self.active else "false"
        if self.ticker is not None:
            params["ticker"] = self.ticker
        if self.search is not None:
            params["search"] = self.search
        return params
