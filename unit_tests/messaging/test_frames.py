"""Unit tests for stream frame decoding and outbound frame models."""

import json
from datetime import datetime, timezone

import pytest

from fakes import status, trade
from polyfeed.common.exceptions import DecodeError
from polyfeed.config.enumerations import ChannelKind, MessageKind
from polyfeed.messaging.models.events import Aggregate, Quote, Trade
from polyfeed.messaging.models.messages import (
    StreamRequest,
    SubscriptionKey,
    decode_frame,
    parse_status_params,
    sort_keys,
)


def test_trade_frame_decodes_to_typed_event() -> None:
    [message] = decode_frame(json.dumps([trade("MSFT")]))

    assert message.kind is MessageKind.TRADE
    assert message.channel is ChannelKind.Trades
    assert message.key == SubscriptionKey(ChannelKind.Trades, "MSFT")
    assert isinstance(message.event, Trade)
    assert message.event.price == pytest.approx(156.9799)
    assert message.event.trade_id == "12345"
    assert message.event.timestamp == datetime(2019, 12, 31, 18, 51, 23, 19000, tzinfo=timezone.utc)


def test_quote_and_aggregates_decode() -> None:
    frame = json.dumps(
        [
            {"ev": "Q", "sym": "MSFT", "bx": 4, "bp": 114.125, "bs": 100, "ax": 7, "ap": 114.128, "as": 160, "t": 1536036818784},
            {"ev": "A", "sym": "SPY", "v": 200, "o": 1.0, "c": 2.0, "h": 2.5, "l": 0.5, "s": 1610144868000, "e": 1610144869000},
            {"ev": "AM", "sym": "SPY", "v": 4110, "vw": 0.0131, "o": 0.013, "c": 0.0133},
        ]
    )

    quote, second, minute = decode_frame(frame)

    assert isinstance(quote.event, Quote)
    assert quote.event.ask_size == 160
    assert isinstance(second.event, Aggregate)
    assert second.channel is ChannelKind.SecondAggregates
    assert minute.channel is ChannelKind.MinuteAggregates
    assert minute.event.volume_weighted_average_price == pytest.approx(0.0131)


def test_unknown_fields_are_ignored_and_optionals_default() -> None:
    [message] = decode_frame(json.dumps([{"ev": "T", "sym": "MSFT", "p": 1.0, "new_field": [1, 2]}]))

    assert message.error is None
    assert message.event.size is None
    assert message.event.conditions == []


def test_single_object_frame_is_accepted() -> None:
    [message] = decode_frame(json.dumps(status("auth_success", "authenticated")))

    assert message.kind is MessageKind.AUTH_SUCCESS


@pytest.mark.parametrize(
    "code,text,kind",
    [
        ("connected", "Connected Successfully", MessageKind.CONNECTED),
        ("auth_success", "authenticated", MessageKind.AUTH_SUCCESS),
        ("auth_failed", "authentication failed", MessageKind.AUTH_FAILED),
        ("success", "authenticated", MessageKind.AUTH_SUCCESS),
        ("success", "subscribed to: T.MSFT", MessageKind.SUBSCRIBED),
        ("success", "unsubscribed to: T.MSFT", MessageKind.UNSUBSCRIBED),
        ("error", "subscription failed: T.XYZ", MessageKind.ERROR),
        ("disconnected", "bye", MessageKind.DISCONNECTED),
        ("max_connections", "too many", MessageKind.UNKNOWN),
    ],
)
def test_status_codes(code, text, kind) -> None:
    [message] = decode_frame(json.dumps([status(code, text)]))

    assert message.kind is kind
    assert message.text == text


def test_status_keys_are_parsed_from_message() -> None:
    [message] = decode_frame(json.dumps([status("success", "subscribed to: T.MSFT,Q.*,AM.BRK.A")]))

    assert [key.param for key in message.keys] == ["T.MSFT", "Q.*", "AM.BRK.A"]


def test_status_params_skip_garbage() -> None:
    text, keys = parse_status_params("subscribed to: T.MSFT, nonsense ,ZZ.TOP")

    assert text == "subscribed to"
    assert keys == (SubscriptionKey(ChannelKind.Trades, "MSFT"),)


def test_invalid_data_element_does_not_fail_frame() -> None:
    messages = decode_frame(json.dumps([{"ev": "T", "sym": "MSFT"}, trade("IBM")]))

    assert messages[0].event is None
    assert messages[0].error is not None
    assert messages[1].event.symbol == "IBM"


@pytest.mark.parametrize("frame", ["not json", "42", '"text"', b"\xff\xfe"])
def test_undecodable_frames_raise(frame) -> None:
    with pytest.raises(DecodeError):
        decode_frame(frame)


def test_subscribe_request_serializes_to_wire_format() -> None:
    keys = sort_keys(
        [SubscriptionKey(ChannelKind.Trades, "MSFT"), SubscriptionKey(ChannelKind.Quotes, "*")]
    )

    request = StreamRequest.subscribe(keys)

    assert json.loads(request.model_dump_json()) == {"action": "subscribe", "params": "Q.*,T.MSFT"}


def test_empty_subscribe_is_rejected() -> None:
    with pytest.raises(ValueError):
        StreamRequest.unsubscribe([])


def test_auth_request_repr_masks_key() -> None:
    assert "abc123" not in repr(StreamRequest.auth("abc123"))


@pytest.mark.parametrize(
    "param,expected",
    [
        ("T.MSFT", SubscriptionKey(ChannelKind.Trades, "MSFT")),
        ("AM.BRK.A", SubscriptionKey(ChannelKind.MinuteAggregates, "BRK.A")),
        (" Q.* ", SubscriptionKey(ChannelKind.Quotes, "*")),
    ],
)
def test_subscription_key_parse(param, expected) -> None:
    key = SubscriptionKey.parse(param)

    assert key == expected
    assert str(key) == param.strip()


@pytest.mark.parametrize("param", ["MSFT", "T.", "X.MSFT"])
def test_subscription_key_parse_rejects_malformed(param) -> None:
    with pytest.raises(ValueError):
        SubscriptionKey.parse(param)
