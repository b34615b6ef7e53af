# arbgate/market_engine.py
import asyncio
import logging
from typing import Dict, List, Optional

import aiohttp
import ccxt.async_support as ccxt

from .config import PoolConfig, StreamConfig
from .errors import PoolReadError
from .orderbook import BookUpdate

# keccak256("slot0()")[:4]
SLOT0_SELECTOR = "0x3850c7bd"
Q96 = 2 ** 96


def sqrt_price_x96_to_price(sqrt_price_x96: int, token0_decimals: int, token1_decimals: int,
                            invert: bool = False) -> float:
    """
    Converts a Uniswap V3 sqrtPriceX96 into a human price of token0 in token1.

    price = (sqrtPriceX96 / 2^96)^2 * 10^(decimals0 - decimals1)
    """
    if sqrt_price_x96 <= 0:
        raise ValueError("sqrtPriceX96 must be positive")
    raw_price = (sqrt_price_x96 / Q96) ** 2
    price = raw_price * 10 ** (token0_decimals - token1_decimals)
    if invert:
        return 1 / price
    return price


def decode_slot0(venue: str, result: str) -> int:
    """Extracts sqrtPriceX96 (the first 32-byte word) from an eth_call slot0() result."""
    if not isinstance(result, str) or not result.startswith("0x") or len(result) < 66:
        raise PoolReadError(venue, f"Malformed slot0 result: {result!r}")
    try:
        value = int(result[2:66], 16)
    except ValueError as e:
        raise PoolReadError(venue, f"Undecodable slot0 result: {result[:66]}") from e
    if value <= 0:
        raise PoolReadError(venue, "Pool returned zero sqrtPriceX96 (uninitialized pool?)")
    return value


class PoolReader:
    """
    Blockchain read interface: current price-determining state of a liquidity pool.
    Talks plain JSON-RPC over the shared aiohttp session.
    """
    def __init__(self, rpc_url: str, session: aiohttp.ClientSession, timeout: float):
        self.rpc_url = rpc_url
        self.session = session
        self.timeout = timeout
        self._request_id = 0

    async def read_sqrt_price(self, pool: PoolConfig) -> int:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": "eth_call",
            "params": [{"to": pool.address, "data": SLOT0_SELECTOR}, "latest"],
        }
        try:
            async with self.session.post(self.rpc_url, json=payload,
                                         timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise PoolReadError(pool.venue, f"RPC request failed: {e!r}") from e

        if not isinstance(body, dict):
            raise PoolReadError(pool.venue, "RPC response is not a JSON object")
        if body.get("error"):
            raise PoolReadError(pool.venue, f"RPC error: {body['error']}")
        return decode_slot0(pool.venue, body.get("result"))

    async def fetch_price(self, pool: PoolConfig) -> float:
        sqrt_price = await self.read_sqrt_price(pool)
        try:
            return sqrt_price_x96_to_price(sqrt_price, pool.token0_decimals,
                                           pool.token1_decimals, pool.invert)
        except (ValueError, ZeroDivisionError, OverflowError) as e:
            raise PoolReadError(pool.venue, f"Price conversion failed: {e}") from e


class MarketEngine:
    """
    Manages public REST connections to exchanges through ccxt.
    Used to seed a streaming venue's order book after (re)connecting, so the
    venue re-enters snapshots without waiting for a full-book stream message.
    """
    def __init__(self, streams: List[StreamConfig], timeout: float, logger: logging.Logger,
                 environment: str = "live"):
        self.exchanges: Dict[str, ccxt.Exchange] = {}
        self.streams = {s.venue: s for s in streams}
        self.timeout_ms = int(timeout * 1000)
        self.environment = environment
        self.logger = logger

    async def initialize(self) -> bool:
        """
        Creates a client per streaming venue ccxt supports and loads its markets.
        A failing venue is skipped; the stream still works without REST seeding.
        """
        all_connected = True
        self.logger.info("📡 LOADING EXCHANGE MARKETS...")

        for name in self.streams:
            ex_class = getattr(ccxt, name, None)
            if ex_class is None:
                self.logger.info(f"   ➖ {name.upper():<10} | No REST client, stream-only")
                continue

            client = ex_class({
                'timeout': self.timeout_ms,
                'enableRateLimit': True,
                'options': {'defaultType': 'spot'}
            })
            if self.environment == 'testnet':
                client.set_sandbox_mode(True)

            try:
                await client.load_markets()
                self.exchanges[name] = client
                self.logger.info(f"   ✅ {name.upper():<10} | Markets loaded")

            except ccxt.RequestTimeout:
                self.logger.error(f"   ❌ {name.upper():<10} | TIMEOUT: Exchange API is slow or down.")
                all_connected = False
                await client.close()

            except ccxt.ExchangeNotAvailable:
                self.logger.error(f"   ❌ {name.upper():<10} | MAINTENANCE: Exchange is currently offline.")
                all_connected = False
                await client.close()

            except ccxt.BaseError as e:
                self.logger.error(f"   ❌ {name.upper():<10} | REST ERROR: {e}")
                all_connected = False
                await client.close()

        return all_connected

    async def fetch_order_book(self, venue: str, depth: int = 20) -> Optional[BookUpdate]:
        """Full-book snapshot for a venue, or None when unavailable."""
        client = self.exchanges.get(venue)
        stream = self.streams.get(venue)
        if client is None or stream is None:
            return None

        try:
            book = await client.fetch_order_book(stream.symbol, depth)
        except ccxt.NetworkError as e:
            self.logger.warning(f"Order book seed for {venue} failed (network): {e}")
            return None
        except ccxt.ExchangeError as e:
            self.logger.warning(f"Order book seed for {venue} rejected: {e}")
            return None

        return BookUpdate(
            venue=venue,
            symbol=stream.symbol,
            bids=[(float(p), float(q)) for p, q, *_ in book.get('bids', [])],
            asks=[(float(p), float(q)) for p, q, *_ in book.get('asks', [])],
            is_snapshot=True,
        )

    async def shutdown(self):
        """
        Gracefully closes all REST API sessions.
        """
        for ex in self.exchanges.values():
            await ex.close()
        self.exchanges.clear()
