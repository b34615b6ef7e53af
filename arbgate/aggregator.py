# arbgate/aggregator.py
import asyncio
import inspect
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from .config import FeedSettings, PoolConfig
from .errors import FeedError, StreamParseError
from .market_engine import MarketEngine, PoolReader
from .models import OrderBook, PriceSnapshot
from .orderbook import BookUpdate, LocalOrderBook
from .websocket_engine import RawMessage, WebSocketEngine, parse_book_message

SnapshotCallback = Callable[[PriceSnapshot], Union[None, Awaitable[None]]]


class PriceFeedAggregator:
    """
    Maintains the freshest known price per venue and publishes immutable snapshots.

    DEX pools are polled on a fixed interval; exchange order books arrive through
    websocket callbacks. Every change produces a new PriceSnapshot, delivered to
    subscribers in publication order. A venue that fails to read, or whose stream
    is down, is absent from the next snapshot: its previous value is never reused.
    """
    def __init__(self, settings: FeedSettings, logger: logging.Logger,
                 pool_reader: Optional[PoolReader] = None,
                 book_seeder: Optional[MarketEngine] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.logger = logger
        self.pool_reader = pool_reader
        self.book_seeder = book_seeder
        self.clock = clock

        self._symbols = {s.venue: s.symbol for s in settings.streams}
        self._dex_prices: Dict[str, float] = {}
        self._books: Dict[str, LocalOrderBook] = {}
        self._cex_books: Dict[str, OrderBook] = {}

        self._latest: Optional[PriceSnapshot] = None
        self._history: deque = deque(maxlen=settings.history_size)
        self._subscribers: List[SnapshotCallback] = []
        self._sequence = 0
        # Serializes state mutation + publication + delivery
        self._lock = asyncio.Lock()

        self._closed = False
        self._session: Optional[aiohttp.ClientSession] = None
        self._owns_session = False
        self.ws_engine: Optional[WebSocketEngine] = None
        self.tasks: List[asyncio.Task] = []

    # --- SUBSCRIPTION ---

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Registers a consumer for every new snapshot. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def current(self) -> Optional[PriceSnapshot]:
        return self._latest

    def history(self, limit: Optional[int] = None) -> List[PriceSnapshot]:
        snapshots = list(self._history)
        return snapshots[-limit:] if limit else snapshots

    @property
    def closed(self) -> bool:
        return self._closed

    async def _publish_locked(self) -> Optional[PriceSnapshot]:
        """Builds, stores and delivers a snapshot. Caller must hold self._lock."""
        if self._closed:
            return None

        self._sequence += 1
        snapshot = PriceSnapshot.build(self._dex_prices, self._cex_books,
                                       self.clock(), self._sequence)
        self._latest = snapshot
        self._history.append(snapshot)

        for callback in list(self._subscribers):
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # One faulty consumer must not starve the others
                self.logger.exception(f"Snapshot subscriber {callback!r} failed")
        return snapshot

    # --- DEX POLLING ---

    async def _read_pool(self, pool: PoolConfig) -> Optional[float]:
        if self.pool_reader is None:
            raise RuntimeError("No pool reader configured")
        try:
            price = await asyncio.wait_for(self.pool_reader.fetch_price(pool),
                                           timeout=self.settings.timeout_seconds)
        except FeedError as e:
            self.logger.warning(f"DEX read failed: {e}")
            return None
        except asyncio.TimeoutError:
            self.logger.warning(f"DEX read timed out: {pool.venue}")
            return None

        if price <= 0:
            self.logger.warning(f"DEX read returned non-positive price for {pool.venue}")
            return None
        return price

    async def poll_dex_prices(self) -> Dict[str, float]:
        """
        Reads every configured pool once, concurrently, and publishes one snapshot.
        Failed venues are dropped from the DEX price map.
        """
        pools = self.settings.pools
        results = await asyncio.gather(*(self._read_pool(p) for p in pools))
        prices = {pool.venue: price for pool, price in zip(pools, results) if price is not None}

        async with self._lock:
            self._dex_prices = prices
            await self._publish_locked()
        return dict(prices)

    async def poll_pool(self, pool: PoolConfig) -> Optional[float]:
        """Single-venue tick used by the per-pool poll loops."""
        price = await self._read_pool(pool)
        async with self._lock:
            if price is None:
                self._dex_prices.pop(pool.venue, None)
            else:
                self._dex_prices[pool.venue] = price
            await self._publish_locked()
        return price

    async def _poll_pool_forever(self, pool: PoolConfig):
        while not self._closed:
            try:
                await self.poll_pool(pool)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception(f"DEX poll fault on {pool.venue}, dropping its price")
                async with self._lock:
                    if self._dex_prices.pop(pool.venue, None) is not None:
                        await self._publish_locked()
            await asyncio.sleep(self.settings.poll_interval_seconds)

    # --- CEX STREAMING ---

    async def ingest_cex_update(self, venue: str, raw_message: RawMessage) -> Optional[PriceSnapshot]:
        """
        Parses a venue-specific order-book message and republishes immediately.
        Malformed messages are logged and dropped; the venue keeps its current book.
        """
        try:
            update = parse_book_message(venue, self._symbols.get(venue, ""), raw_message)
        except StreamParseError as e:
            self.logger.warning(f"Dropping unparseable book message: {e}")
            return None
        if update is None:
            return None
        return await self.apply_book_update(update)

    async def apply_book_update(self, update: BookUpdate) -> Optional[PriceSnapshot]:
        async with self._lock:
            book = self._books.get(update.venue)
            if book is None:
                book = LocalOrderBook(update.venue, update.symbol, self.settings.book_depth)
                self._books[update.venue] = book
            book.apply(update)

            if book.is_empty:
                self._cex_books.pop(update.venue, None)
            else:
                self._cex_books[update.venue] = book.to_order_book(self.clock())
            return await self._publish_locked()

    async def mark_venue_down(self, venue: str) -> Optional[PriceSnapshot]:
        """Drops a streaming venue until it reconnects."""
        async with self._lock:
            self._books.pop(venue, None)
            had_book = self._cex_books.pop(venue, None) is not None
            if not had_book:
                return None
            self.logger.warning(f"🔌 {venue} disconnected, removed from snapshots")
            return await self._publish_locked()

    async def _seed_book(self, venue: str):
        if self.book_seeder is None:
            return
        update = await self.book_seeder.fetch_order_book(venue, self.settings.book_depth)
        if update is not None:
            await self.apply_book_update(update)

    # --- QUERIES ---

    def best_prices(self) -> Optional[Dict[str, float]]:
        """Cheapest DEX price and richest CEX best bid in the latest snapshot."""
        snapshot = self._latest
        if snapshot is None or not snapshot.dex_prices:
            return None
        best_dex_ask = min((p for p in snapshot.dex_prices.values() if p > 0), default=None)
        if best_dex_ask is None:
            return None
        bids = [b.best_bid.price for b in snapshot.cex_books.values() if b.best_bid]
        return {"best_dex_ask": best_dex_ask, "best_cex_bid": max(bids, default=0.0)}

    # --- LIFECYCLE ---

    async def start(self, session: Optional[aiohttp.ClientSession] = None, environment: str = "live"):
        if session is None:
            session = aiohttp.ClientSession()
            self._owns_session = True
        self._session = session

        if self.pool_reader is None:
            self.pool_reader = PoolReader(self.settings.rpc_url, session, self.settings.timeout_seconds)
        if self.book_seeder is None and self.settings.streams:
            self.book_seeder = MarketEngine(self.settings.streams, self.settings.timeout_seconds,
                                            self.logger, environment)
            await self.book_seeder.initialize()

        self.tasks = [asyncio.create_task(self._poll_pool_forever(p)) for p in self.settings.pools]
        self.logger.info(f"📊 DEX monitoring started for {len(self.settings.pools)} pools")

        self.ws_engine = WebSocketEngine(
            self.settings.streams, session,
            on_message=self.ingest_cex_update,
            on_down=self.mark_venue_down,
            on_up=self._seed_book,
            logger=self.logger,
            timeout=self.settings.timeout_seconds,
            backoff_initial=self.settings.reconnect_initial_seconds,
            backoff_max=self.settings.reconnect_max_seconds,
        )
        await self.ws_engine.start()

    async def stop(self):
        """Stops all poll loops and streams. No snapshot is published afterwards."""
        async with self._lock:
            self._closed = True

        for t in self.tasks:
            t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        if self.ws_engine is not None:
            await self.ws_engine.shutdown()
        if self.book_seeder is not None:
            await self.book_seeder.shutdown()
        if self._session is not None and self._owns_session:
            await self._session.close()
        self.logger.info("🛑 Price feed aggregator stopped")
