# arbgate/orderbook.py
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .models import OrderBook, PriceLevel

Level = Tuple[float, float]


@dataclass(slots=True)
class BookUpdate:
    """
    Venue-neutral order-book message.
    A snapshot replaces the whole book; a delta updates individual levels,
    where a quantity of zero removes the level.
    """
    venue: str
    symbol: str
    bids: List[Level] = field(default_factory=list)
    asks: List[Level] = field(default_factory=list)
    is_snapshot: bool = False


class LocalOrderBook:
    """Per-venue book maintained from snapshots and deltas."""

    def __init__(self, venue: str, symbol: str, depth: int = 20):
        self.venue = venue
        self.symbol = symbol
        self.depth = depth
        self._bids: Dict[float, float] = {}
        self._asks: Dict[float, float] = {}

    @property
    def is_empty(self) -> bool:
        return not self._bids and not self._asks

    def clear(self):
        self._bids.clear()
        self._asks.clear()

    def apply(self, update: BookUpdate):
        if update.is_snapshot:
            self.clear()
        for price, qty in update.bids:
            self._set_level(self._bids, price, qty)
        for price, qty in update.asks:
            self._set_level(self._asks, price, qty)

    @staticmethod
    def _set_level(side: Dict[float, float], price: float, qty: float):
        if price <= 0:
            return
        if qty <= 0:
            side.pop(price, None)
        else:
            side[price] = qty

    def to_order_book(self, timestamp: float) -> OrderBook:
        bids = sorted(self._bids.items(), key=lambda level: level[0], reverse=True)[:self.depth]
        asks = sorted(self._asks.items(), key=lambda level: level[0])[:self.depth]
        return OrderBook(
            venue=self.venue,
            symbol=self.symbol,
            bids=tuple(PriceLevel(p, q) for p, q in bids),
            asks=tuple(PriceLevel(p, q) for p, q in asks),
            timestamp=timestamp,
        )
