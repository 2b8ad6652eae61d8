import logging
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class BaseEvent(BaseModel):
    """A market data event delivered on a stream channel.

    Inbound models ignore unknown fields so new server fields don't break
    parsing. Timestamps arrive as UNIX milliseconds.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )

    symbol: str = Field(alias="sym", description="Ticker symbol")


class Trade(BaseEvent):
    exchange: Optional[int] = Field(default=None, alias="x")
    trade_id: Optional[Union[int, str]] = Field(default=None, alias="i")
    price: float = Field(alias="p", ge=0)
    size: Optional[float] = Field(default=None, alias="s", ge=0)
    conditions: list[int] = Field(default_factory=list, alias="c")
    timestamp: Optional[datetime] = Field(default=None, alias="t")
    tape: Optional[int] = Field(default=None, alias="z")


class Quote(BaseEvent):
    bid_exchange: Optional[int] = Field(default=None, alias="bx")
    bid_price: Optional[float] = Field(default=None, alias="bp", ge=0)
    bid_size: Optional[float] = Field(default=None, alias="bs", ge=0)
    ask_exchange: Optional[int] = Field(default=None, alias="ax")
    ask_price: Optional[float] = Field(default=None, alias="ap", ge=0)
    ask_size: Optional[float] = Field(default=None, alias="as", ge=0)
    condition: Optional[int] = Field(default=None, alias="c")
    timestamp: Optional[datetime] = Field(default=None, alias="t")
    tape: Optional[int] = Field(default=None, alias="z")


class Aggregate(BaseEvent):
    """Per-second (``A``) or per-minute (``AM``) bar."""

    volume: Optional[float] = Field(default=None, alias="v", ge=0)
    accumulated_volume: Optional[float] = Field(default=None, alias="av", ge=0)
    official_open_price: Optional[float] = Field(default=None, alias="op")
    volume_weighted_average_price: Optional[float] = Field(default=None, alias="vw")
    open_price: Optional[float] = Field(default=None, alias="o")
    close_price: Optional[float] = Field(default=None, alias="c")
    high_price: Optional[float] = Field(default=None, alias="h")
    low_price: Optional[float] = Field(default=None, alias="l")
    average_trade_size: Optional[float] = Field(default=None, alias="z")
    start_timestamp: Optional[datetime] = Field(default=None, alias="s")
    end_timestamp: Optional[datetime] = Field(default=None, alias="e")


MarketEvent = Union[Trade, Quote, Aggregate]
