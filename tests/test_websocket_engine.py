import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from arbgate.config import StreamConfig
from arbgate.errors import StreamParseError
from arbgate.websocket_engine import (BackpackStream, BinanceStream, BybitStream, OkxStream, WebSocketEngine,
                                      backoff_delay, parse_book_message)


# --- PARSERS ---

def test_binance_partial_depth_is_snapshot():
    raw = json.dumps({"lastUpdateId": 160, "bids": [["2000.10", "1.5"]], "asks": [["2000.20", "2.0"]]})
    update = parse_book_message("binance", "ETH/USDC", raw)
    assert update.is_snapshot
    assert update.bids == [(2000.10, 1.5)]
    assert update.asks == [(2000.20, 2.0)]


def test_binance_diff_depth_is_delta():
    raw = {"e": "depthUpdate", "E": 1, "s": "ETHUSDC", "b": [["2000.10", "0"]], "a": []}
    update = parse_book_message("binance", "ETH/USDC", raw)
    assert not update.is_snapshot
    assert update.bids == [(2000.10, 0.0)]


def test_okx_books5():
    raw = {"arg": {"channel": "books5", "instId": "ETH-USDC"},
           "data": [{"bids": [["2000", "1", "0", "2"]], "asks": [["2001", "3", "0", "1"]], "ts": "1"}]}
    update = parse_book_message("okx", "ETH/USDC", raw)
    assert update.is_snapshot
    assert update.asks == [(2001.0, 3.0)]


def test_okx_subscription_ack_is_ignored():
    assert parse_book_message("okx", "ETH/USDC", {"event": "subscribe", "arg": {}}) is None


def test_bybit_snapshot_and_delta():
    snap = {"topic": "orderbook.50.ETHUSDC", "type": "snapshot",
            "data": {"s": "ETHUSDC", "b": [["2000", "1"]], "a": [["2001", "1"]]}}
    delta = {"topic": "orderbook.50.ETHUSDC", "type": "delta",
             "data": {"s": "ETHUSDC", "b": [["2000", "0"]], "a": []}}
    assert parse_book_message("bybit", "ETH/USDC", snap).is_snapshot
    assert not parse_book_message("bybit", "ETH/USDC", delta).is_snapshot
    assert parse_book_message("bybit", "ETH/USDC", {"op": "pong"}) is None


def test_backpack_depth_is_delta():
    raw = {"stream": "depth.ETH_USDC", "data": {"e": "depth", "b": [["2000", "1"]], "a": [["2002", "1"]]}}
    update = parse_book_message("backpack", "ETH/USDC", raw)
    assert not update.is_snapshot
    assert update.bids == [(2000.0, 1.0)]


def test_venue_suffix_uses_base_parser():
    raw = {"lastUpdateId": 1, "bids": [], "asks": [["1", "1"]]}
    assert parse_book_message("binance-us", "ETH/USDC", raw).venue == "binance-us"


@pytest.mark.parametrize("venue,raw", [
    ("kraken", "{}"),
    ("binance", "{not json"),
    ("binance", "[1, 2]"),
    ("binance", {"lastUpdateId": 1, "bids": [["abc", "1"]], "asks": []}),
    ("okx", {"data": []}),
])
def test_malformed_messages_raise(venue, raw):
    with pytest.raises(StreamParseError):
        parse_book_message(venue, "ETH/USDC", raw)


def test_backoff_delay():
    assert backoff_delay(0, 1.0, 30.0) == 1.0
    assert backoff_delay(3, 1.0, 30.0) == 8.0
    assert backoff_delay(10, 1.0, 30.0) == 30.0


# --- STREAMS ---

def test_stream_urls_and_subscriptions():
    cb = AsyncMock()
    assert BinanceStream("binance", "ETH/USDC", cb, 8).url().endswith("/ethusdc@depth20@100ms")
    assert OkxStream("okx", "ETH/USDC", cb, 8).subscribe_message()["args"][0]["instId"] == "ETH-USDC"
    assert BybitStream("bybit", "ETH/USDC", cb, 8).subscribe_message()["args"] == ["orderbook.50.ETHUSDC"]
    assert BackpackStream("backpack", "ETH/USDC", cb, 8).subscribe_message()["params"] == ["depth.ETH_USDC"]


def test_unknown_stream_venue_is_skipped(logger):
    engine = WebSocketEngine([StreamConfig("kraken", "ETH/USDC"), StreamConfig("binance", "ETH/USDC")],
                             MagicMock(), AsyncMock(), AsyncMock(), AsyncMock(), logger)
    assert [s.venue for s in engine.streams] == ["binance"]


@pytest.mark.asyncio
async def test_dropped_connection_marks_venue_down(logger):
    on_up = AsyncMock()
    engine = WebSocketEngine([StreamConfig("binance", "ETH/USDC")], MagicMock(),
                             on_message=AsyncMock(), on_down=AsyncMock(), on_up=on_up,
                             logger=logger, backoff_initial=0.0, backoff_max=0.0)

    async def down(venue):
        engine.running = False
    engine.on_down = AsyncMock(side_effect=down)

    stream = engine.streams[0]
    stream.connect = AsyncMock(side_effect=aiohttp.ClientError("reset by peer"))
    engine.running = True

    await engine._run_stream_forever(stream)

    on_up.assert_awaited_once_with("binance")
    engine.on_down.assert_awaited_once_with("binance")
    assert stream.ws is None


@pytest.mark.parametrize("venue,raw", [
    ("bybit", '{"topic": "orderbook.50.ETHUSDC", "type": "delta", "data": [1, 2]}'),
    ("bybit", {"topic": "orderbook.50.ETHUSDC", "type": "delta", "data": {"b": "2000", "a": []}}),
    ("okx", {"arg": {"channel": "books5"}, "data": ["x"]}),
    ("okx", {"arg": {"channel": "books5"}, "data": "x"}),
    ("binance", {"e": "depthUpdate", "b": [{"p": "1"}], "a": []}),
    ("binance", {"lastUpdateId": 1, "bids": [["2000"]], "asks": []}),
    ("backpack", {"stream": "depth.ETH_USDC", "data": "oops"}),
])
def test_wrong_shapes_raise_parse_error(venue, raw):
    with pytest.raises(StreamParseError):
        parse_book_message(venue, "ETH/USDC", raw)


@pytest.mark.asyncio
async def test_unexpected_listener_fault_marks_venue_down_and_reconnects(logger):
    engine = WebSocketEngine([StreamConfig("bybit", "ETH/USDC")], MagicMock(),
                             on_message=AsyncMock(), on_down=AsyncMock(), on_up=AsyncMock(),
                             logger=logger, backoff_initial=0.0, backoff_max=0.0)
    stream = engine.streams[0]
    attempts = []

    async def connect(session):
        attempts.append(1)
        if len(attempts) == 2:
            engine.running = False
        raise AttributeError("'list' object has no attribute 'get'")

    stream.connect = AsyncMock(side_effect=connect)
    engine.running = True

    await engine._run_stream_forever(stream)

    assert len(attempts) == 2
    engine.on_down.assert_awaited_once_with("bybit")
