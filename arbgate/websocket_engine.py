# arbgate/websocket_engine.py
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from .config import StreamConfig
from .errors import StreamParseError
from .orderbook import BookUpdate

RawMessage = Union[str, bytes, Dict[str, Any]]


# --- MESSAGE PARSERS ---
# Each parser turns one venue payload into a BookUpdate, or None for
# non-book traffic (subscription acks, pongs).

def _levels(venue: str, raw_levels) -> List[tuple]:
    if raw_levels is None:
        return []
    if not isinstance(raw_levels, list):
        raise StreamParseError(venue, f"Price levels are not a list: {type(raw_levels).__name__}")
    levels = []
    for level in raw_levels:
        if not isinstance(level, (list, tuple)) or len(level) < 2:
            raise StreamParseError(venue, f"Bad price level: {level!r}")
        try:
            levels.append((float(level[0]), float(level[1])))
        except (TypeError, ValueError) as e:
            raise StreamParseError(venue, f"Bad price level: {e}") from e
    return levels


def _book(venue: str, raw_book) -> Dict[str, Any]:
    if raw_book is None:
        return {}
    if not isinstance(raw_book, dict):
        raise StreamParseError(venue, f"Book payload is not an object: {type(raw_book).__name__}")
    return raw_book


def parse_binance(venue: str, symbol: str, data: Dict[str, Any]) -> Optional[BookUpdate]:
    # Partial depth stream (<symbol>@depth20) sends full books
    if "lastUpdateId" in data and "bids" in data:
        return BookUpdate(venue, symbol, _levels(venue, data["bids"]),
                          _levels(venue, data.get("asks")), is_snapshot=True)
    # Diff depth stream (<symbol>@depth)
    if data.get("e") == "depthUpdate":
        return BookUpdate(venue, symbol, _levels(venue, data.get("b")),
                          _levels(venue, data.get("a")), is_snapshot=False)
    return None


def parse_okx(venue: str, symbol: str, data: Dict[str, Any]) -> Optional[BookUpdate]:
    if "event" in data or "data" not in data:
        return None
    books = data["data"]
    if not isinstance(books, list) or not books:
        raise StreamParseError(venue, "Empty OKX data array")
    book = _book(venue, books[0])
    # books5 pushes full books; the 400-level channel tags snapshot/update
    is_snapshot = data.get("action", "snapshot") == "snapshot"
    return BookUpdate(venue, symbol, _levels(venue, book.get("bids")),
                      _levels(venue, book.get("asks")), is_snapshot=is_snapshot)


def parse_bybit(venue: str, symbol: str, data: Dict[str, Any]) -> Optional[BookUpdate]:
    if not str(data.get("topic", "")).startswith("orderbook"):
        return None
    book = _book(venue, data.get("data"))
    return BookUpdate(venue, symbol, _levels(venue, book.get("b")),
                      _levels(venue, book.get("a")),
                      is_snapshot=data.get("type") == "snapshot")


def parse_backpack(venue: str, symbol: str, data: Dict[str, Any]) -> Optional[BookUpdate]:
    if not str(data.get("stream", "")).startswith("depth."):
        return None
    book = _book(venue, data.get("data"))
    return BookUpdate(venue, symbol, _levels(venue, book.get("b")),
                      _levels(venue, book.get("a")), is_snapshot=False)


PARSERS: Dict[str, Callable[[str, str, Dict[str, Any]], Optional[BookUpdate]]] = {
    "binance": parse_binance,
    "okx": parse_okx,
    "bybit": parse_bybit,
    "backpack": parse_backpack,
}


def parse_book_message(venue: str, symbol: str, raw: RawMessage) -> Optional[BookUpdate]:
    """Dispatches a raw stream message to the venue's parser."""
    parser = PARSERS.get(venue.split("-")[0].lower())
    if parser is None:
        raise StreamParseError(venue, "No parser registered for venue")

    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise StreamParseError(venue, f"Invalid JSON: {e}") from e
    else:
        data = raw
    if not isinstance(data, dict):
        raise StreamParseError(venue, "Message is not a JSON object")
    return parser(venue, symbol, data)


def backoff_delay(attempt: int, initial: float, maximum: float) -> float:
    """Exponential reconnect delay: initial, 2x, 4x ... capped at maximum."""
    return min(maximum, initial * (2 ** max(0, attempt)))


# --- STREAMS ---

class ExchangeStream:
    def __init__(self, venue: str, symbol: str, callback: Callable[[str, RawMessage], Awaitable[Any]],
                 timeout: float):
        self.venue = venue
        self.symbol = symbol
        self.callback = callback
        self.timeout = timeout
        self.ws = None
        self.messages = 0

    def url(self) -> str:
        raise NotImplementedError

    def subscribe_message(self) -> Optional[Dict[str, Any]]:
        return None

    async def connect(self, session: aiohttp.ClientSession):
        async with session.ws_connect(self.url(), heartbeat=self.timeout / 2) as ws:
            self.ws = ws
            sub = self.subscribe_message()
            if sub:
                await ws.send_json(sub)

            while True:
                # Bounded read: a silent socket counts as a dead one
                msg = await ws.receive(timeout=self.timeout)
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.messages += 1
                    await self.callback(self.venue, msg.data)
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED,
                                  aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.ERROR):
                    break


class BinanceStream(ExchangeStream):
    def url(self) -> str:
        # Format: ethusdc@depth20@100ms
        return f"wss://stream.binance.com:9443/ws/{self.symbol.replace('/', '').lower()}@depth20@100ms"


class OkxStream(ExchangeStream):
    def url(self) -> str:
        return "wss://ws.okx.com:8443/ws/v5/public"

    def subscribe_message(self) -> Optional[Dict[str, Any]]:
        # OKX Format: ETH-USDC
        return {"op": "subscribe", "args": [{"channel": "books5", "instId": self.symbol.replace('/', '-')}]}


class BybitStream(ExchangeStream):
    def url(self) -> str:
        return "wss://stream.bybit.com/v5/public/spot"

    def subscribe_message(self) -> Optional[Dict[str, Any]]:
        # Bybit Format: ETHUSDC
        return {"op": "subscribe", "args": [f"orderbook.50.{self.symbol.replace('/', '')}"], "req_id": "1001"}


class BackpackStream(ExchangeStream):
    def url(self) -> str:
        return "wss://ws.backpack.exchange"

    def subscribe_message(self) -> Optional[Dict[str, Any]]:
        # Backpack Format: ETH_USDC
        return {"method": "SUBSCRIBE", "params": [f"depth.{self.symbol.replace('/', '_')}"]}


STREAM_CLASSES = {
    "binance": BinanceStream,
    "okx": OkxStream,
    "bybit": BybitStream,
    "backpack": BackpackStream,
}


class WebSocketEngine:
    """
    Runs one persistent listener per streaming venue.
    A dropped connection marks the venue down, then reconnects with exponential backoff.
    """
    def __init__(self, streams: List[StreamConfig], session: aiohttp.ClientSession,
                 on_message: Callable[[str, RawMessage], Awaitable[Any]],
                 on_down: Callable[[str], Awaitable[Any]],
                 on_up: Callable[[str], Awaitable[Any]],
                 logger: logging.Logger, timeout: float = 8.0,
                 backoff_initial: float = 1.0, backoff_max: float = 30.0):
        self.session = session
        self.on_down = on_down
        self.on_up = on_up
        self.logger = logger
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.running = False
        self.tasks: List[asyncio.Task] = []

        self.streams: List[ExchangeStream] = []
        for cfg in streams:
            stream_cls = STREAM_CLASSES.get(cfg.venue.split("-")[0].lower())
            if stream_cls is None:
                self.logger.warning(f"No stream implementation for {cfg.venue}, skipping")
                continue
            self.streams.append(stream_cls(cfg.venue, cfg.symbol, on_message, timeout))

    async def start(self):
        self.running = True
        self.logger.info(f"⚡ CONNECTING {len(self.streams)} ORDER BOOK STREAMS...")
        self.tasks = [asyncio.create_task(self._run_stream_forever(s)) for s in self.streams]

    async def _run_stream_forever(self, stream: ExchangeStream):
        attempt = 0
        while self.running:
            received_before = stream.messages
            try:
                await self.on_up(stream.venue)
                await stream.connect(self.session)
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                self.logger.error(f"WS Error on {stream.venue}: {e!r}")
            except Exception:
                self.logger.exception(f"Listener fault on {stream.venue}, reconnecting")
            finally:
                stream.ws = None

            if not self.running:
                break
            # Unknown until reconnected; never keep serving the last book
            await self.on_down(stream.venue)

            attempt = 0 if stream.messages > received_before else attempt + 1
            delay = backoff_delay(attempt, self.backoff_initial, self.backoff_max)
            self.logger.info(f"Reconnecting {stream.venue} in {delay:.1f}s")
            await asyncio.sleep(delay)

    async def shutdown(self):
        self.running = False
        for stream in self.streams:
            if stream.ws is not None:
                await stream.ws.close()
        for t in self.tasks:
            t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []
