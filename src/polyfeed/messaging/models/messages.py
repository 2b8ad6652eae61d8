"""Pydantic models and decoding for the streaming wire protocol.

Outbound frames::

    {"action":"auth","params":"<api key>"}
    {"action":"subscribe","params":"T.MSFT,Q.*"}

Inbound frames are JSON arrays of objects tagged by ``ev``::

    [{"ev":"status","status":"auth_success","message":"authenticated"}]
    [{"ev":"status","status":"success","message":"subscribed to: T.MSFT"}]
    [{"ev":"T","sym":"MSFT","x":4,"p":156.9799,"s":3,"t":1577818283019}]

Outbound models use ``extra="forbid"``; inbound decoding is permissive: unknown
fields and unknown ``ev`` tags never fail a frame.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from polyfeed.common.exceptions import DecodeError
from polyfeed.config.enumerations import ChannelKind, MessageKind
from polyfeed.messaging.models.events import Aggregate, MarketEvent, Quote, Trade

logger = logging.getLogger(__name__)

WILDCARD = "*"


class SubscriptionKey(NamedTuple):
    channel: ChannelKind
    symbol: str

    @property
    def param(self) -> str:
        return f"{self.channel.value}.{self.symbol}"

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.channel.value, self.symbol)

    @property
    def is_wildcard(self) -> bool:
        return self.symbol == WILDCARD

    @classmethod
    def parse(cls, param: str) -> "SubscriptionKey":
        """Parse a wire parameter such as ``T.MSFT`` or ``AM.BRK.A``."""
        prefix, sep, symbol = param.strip().partition(".")
        if not sep or not symbol:
            raise ValueError(f"Malformed subscription parameter: {param!r}")
        return cls(ChannelKind.from_prefix(prefix), symbol)

    def __str__(self) -> str:
        return self.param


def sort_keys(keys: Iterable[SubscriptionKey]) -> list[SubscriptionKey]:
    """Deterministic wire order: by channel, then symbol."""
    return sorted(keys, key=lambda key: key.sort_key)


class StreamAction(str, Enum):
    AUTH = "auth"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


class StreamRequest(BaseModel):
    action: StreamAction
    params: str
    model_config = ConfigDict(frozen=True, extra="forbid")

    @classmethod
    def auth(cls, api_key: str) -> "StreamRequest":
        return cls(action=StreamAction.AUTH, params=api_key)

    @classmethod
    def subscribe(cls, keys: Iterable[SubscriptionKey]) -> "StreamRequest":
        return cls(action=StreamAction.SUBSCRIBE, params=join_params(keys))

    @classmethod
    def unsubscribe(cls, keys: Iterable[SubscriptionKey]) -> "StreamRequest":
        return cls(action=StreamAction.UNSUBSCRIBE, params=join_params(keys))

    def __repr__(self) -> str:
        if self.action is StreamAction.AUTH:
            return "StreamRequest(action='auth', params='**********')"
        return f"StreamRequest(action={self.action.value!r}, params={self.params!r})"


def join_params(keys: Iterable[SubscriptionKey]) -> str:
    params = ",".join(key.param for key in keys)
    if not params:
        raise ValueError("No subscriptions supplied")
    return params


class StatusFrame(BaseModel):
    """Inbound control frame (``ev == "status"``)."""

    status: str
    message: str = ""
    model_config = ConfigDict(extra="ignore")


@dataclass(frozen=True)
class DecodedMessage:
    """One inbound stream element, tagged by ``kind``.

    ``event`` is set for data kinds that validated; ``error`` carries the
    validation failure otherwise. ``keys`` lists the subscriptions named by
    acknowledgement and error frames.
    """

    kind: MessageKind
    raw: dict[str, Any]
    channel: Optional[ChannelKind] = None
    event: Optional[MarketEvent] = None
    keys: tuple[SubscriptionKey, ...] = ()
    text: str = ""
    error: Optional[str] = None

    @property
    def symbol(self) -> Optional[str]:
        if self.event is not None:
            return self.event.symbol
        return self.raw.get("sym")

    @property
    def key(self) -> Optional[SubscriptionKey]:
        if self.channel is None or self.symbol is None:
            return None
        return SubscriptionKey(self.channel, self.symbol)


DATA_EVENTS: dict[str, tuple[MessageKind, ChannelKind, type[BaseModel]]] = {
    "T": (MessageKind.TRADE, ChannelKind.Trades, Trade),
    "Q": (MessageKind.QUOTE, ChannelKind.Quotes, Quote),
    "A": (MessageKind.AGGREGATE, ChannelKind.SecondAggregates, Aggregate),
    "AM": (MessageKind.AGGREGATE, ChannelKind.MinuteAggregates, Aggregate),
}

STATUS_KINDS: dict[str, MessageKind] = {
    "connected": MessageKind.CONNECTED,
    "auth_success": MessageKind.AUTH_SUCCESS,
    "auth_failed": MessageKind.AUTH_FAILED,
    "disconnected": MessageKind.DISCONNECTED,
    "heartbeat": MessageKind.HEARTBEAT,
    "error": MessageKind.ERROR,
}


def parse_status_params(message: str) -> tuple[str, tuple[SubscriptionKey, ...]]:
    """Split ``"subscribed to: T.MSFT,Q.*"`` into its text and subscription keys.

    Parameters that are not valid subscription keys are skipped.
    """
    text, sep, params = message.partition(":")
    if not sep:
        return message.strip(), ()

    keys = []
    for param in params.split(","):
        if not param.strip():
            continue
        try:
            keys.append(SubscriptionKey.parse(param))
        except ValueError:
            logger.debug("Ignoring non-subscription parameter %r in %r", param, message)
    return text.strip(), tuple(keys)


def decode_status(raw: dict[str, Any]) -> DecodedMessage:
    try:
        frame = StatusFrame.model_validate(raw)
    except ValidationError as e:
        return DecodedMessage(kind=MessageKind.UNKNOWN, raw=raw, error=str(e))

    code = frame.status.lower()
    text, keys = parse_status_params(frame.message)
    lowered = text.lower()

    if code == "success":
        if lowered.startswith("unsubscribed"):
            kind = MessageKind.UNSUBSCRIBED
        elif lowered.startswith("subscribed"):
            kind = MessageKind.SUBSCRIBED
        elif lowered == "authenticated":
            kind = MessageKind.AUTH_SUCCESS
        else:
            kind = MessageKind.UNKNOWN
    else:
        kind = STATUS_KINDS.get(code, MessageKind.UNKNOWN)

    return DecodedMessage(kind=kind, raw=raw, keys=keys, text=frame.message)


def decode_data(ev: str, raw: dict[str, Any]) -> DecodedMessage:
    kind, channel, model = DATA_EVENTS[ev]
    try:
        event = model.model_validate(raw)
    except ValidationError as e:
        return DecodedMessage(kind=kind, raw=raw, channel=channel, error=str(e))
    return DecodedMessage(kind=kind, raw=raw, channel=channel, event=event)  # type: ignore[arg-type]


def decode_element(element: Any) -> DecodedMessage:
    if not isinstance(element, dict):
        return DecodedMessage(kind=MessageKind.UNKNOWN, raw={"value": element})

    ev = element.get("ev")
    if ev == "status":
        return decode_status(element)
    if ev in DATA_EVENTS:
        return decode_data(ev, element)
    if ev == "heartbeat":
        return DecodedMessage(kind=MessageKind.HEARTBEAT, raw=element)

    return DecodedMessage(kind=MessageKind.UNKNOWN, raw=element)


def decode_frame(frame: Union[str, bytes]) -> list[DecodedMessage]:
    """Decode one websocket frame into its messages.

    Raises:
        DecodeError: If the frame is not JSON or not an object/array of objects.
    """
    try:
        payload = json.loads(frame)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeError(str(e), payload=_preview(frame)) from e

    if isinstance(payload, dict):
        return [decode_element(payload)]
    if isinstance(payload, list):
        return [decode_element(element) for element in payload]

    raise DecodeError(
        f"expected a JSON array or object, got {type(payload).__name__}",
        payload=_preview(frame),
    )


def _preview(frame: Union[str, bytes], length: int = 200) -> str:
    text = frame.decode("utf-8", errors="replace") if isinstance(frame, bytes) else frame
    return text[:length]


