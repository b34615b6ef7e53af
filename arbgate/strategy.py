# arbgate/strategy.py
import asyncio
import inspect
import logging
import time
from itertools import combinations
from typing import Awaitable, Callable, Dict, List, Optional, Union

from .config import DetectorSettings, FilterSettings
from .models import (CostBreakdown, Opportunity, OpportunityType, PriceSnapshot,
                     VenueKind, VenueProfile)
from .scoring import SCORING_VERSION, confidence_score, rank_score, risk_flags

OpportunitiesCallback = Callable[[List[Opportunity]], Union[None, Awaitable[None]]]

MAX_QUERY_LIMIT = 100


def resolve_venue(name: str, kind: VenueKind, venues: Dict[str, VenueProfile],
                  settings: DetectorSettings) -> VenueProfile:
    """Configured profile for a venue, or the default one for an unconfigured venue."""
    profile = venues.get(name)
    if profile is not None:
        return profile
    return VenueProfile(
        name=name,
        kind=kind,
        fee_pct=settings.default_fee_pct,
        slippage_pct=settings.default_slippage_pct,
        liquidity_usd=settings.default_liquidity_usd,
    )


def evaluate_pair(snapshot: PriceSnapshot, opp_type: OpportunityType,
                  buy: VenueProfile, sell: VenueProfile,
                  buy_price: float, sell_price: float,
                  buy_liquidity: float, sell_liquidity: float,
                  settings: DetectorSettings) -> Optional[Opportunity]:
    """
    Prices one directed venue pair. Returns None when the pair is discarded:
    non-positive spread, no viable trade size, or unprofitable after costs.
    """
    if buy_price <= 0 or sell_price <= 0:
        return None

    spread = sell_price - buy_price
    if spread <= 0:
        return None
    spread_pct = spread / buy_price * 100

    gas_cost = settings.gas_cost_usd.get(opp_type, max(settings.gas_cost_usd.values()))

    # Trade size envelope
    min_liquidity = min(buy_liquidity, sell_liquidity)
    max_size = settings.liquidity_fraction * min_liquidity
    min_size = max(2 * gas_cost, settings.min_trade_size_usd)
    if max_size < min_size:
        return None
    optimal_size = settings.sizing_fraction * max_size

    trading_fees = optimal_size * (buy.fee_pct + sell.fee_pct) / 100
    slippage_costs = optimal_size * (buy.slippage_pct + sell.slippage_pct) / 100
    costs = CostBreakdown(trading=trading_fees, slippage=slippage_costs, gas=gas_cost)

    gross_profit = optimal_size * (spread / buy_price)
    net_profit = gross_profit - costs.total
    if net_profit <= 0:
        return None

    confidence = confidence_score(spread_pct, min_liquidity, gas_cost, (buy, sell), settings.scoring)
    flags = risk_flags(opp_type, buy, sell, spread_pct, min_liquidity, settings.scoring)

    return Opportunity(
        id=f"{buy.name}-{sell.name}-{snapshot.sequence}-{int(snapshot.timestamp * 1000)}",
        timestamp=snapshot.timestamp,
        type=opp_type,
        buy_venue=buy.name,
        sell_venue=sell.name,
        buy_price=buy_price,
        sell_price=sell_price,
        spread=spread,
        spread_pct=spread_pct,
        gross_profit=gross_profit,
        costs=costs,
        net_profit=net_profit,
        optimal_trade_size=optimal_size,
        min_trade_size=min_size,
        max_trade_size=max_size,
        buy_liquidity=buy_liquidity,
        sell_liquidity=sell_liquidity,
        confidence=confidence,
        rank_score=rank_score(confidence),
        risk_flags=tuple(flags),
        execution_window=settings.execution_window_seconds.get(opp_type, 180.0),
        scoring_version=SCORING_VERSION,
    )


def detect_opportunities(snapshot: PriceSnapshot, venues: Dict[str, VenueProfile],
                         settings: DetectorSettings) -> List[Opportunity]:
    """
    Pure evaluation of one snapshot: DEX->CEX, CEX->DEX and cross-DEX candidates.
    Liquidity is the venue profile's estimate for pools and the notional depth
    of the traded book side for exchanges.
    """
    found: List[Opportunity] = []
    dex = {name: resolve_venue(name, VenueKind.DEX, venues, settings) for name in snapshot.dex_prices}

    for cex_name, book in snapshot.cex_books.items():
        cex = resolve_venue(cex_name, VenueKind.CEX, venues, settings)

        for dex_name, dex_price in snapshot.dex_prices.items():
            # Buy on-chain, sell into the exchange bids
            if book.best_bid is not None:
                opp = evaluate_pair(snapshot, OpportunityType.DEX_TO_CEX, dex[dex_name], cex,
                                    dex_price, book.best_bid.price,
                                    dex[dex_name].liquidity_usd, book.bid_depth_usd, settings)
                if opp:
                    found.append(opp)

            # Lift the exchange asks, sell on-chain
            if book.best_ask is not None:
                opp = evaluate_pair(snapshot, OpportunityType.CEX_TO_DEX, cex, dex[dex_name],
                                    book.best_ask.price, dex_price,
                                    book.ask_depth_usd, dex[dex_name].liquidity_usd, settings)
                if opp:
                    found.append(opp)

    for name_a, name_b in combinations(snapshot.dex_prices.keys(), 2):
        price_a, price_b = snapshot.dex_prices[name_a], snapshot.dex_prices[name_b]
        if price_a == price_b:
            continue
        if price_a < price_b:
            buy, sell, buy_price, sell_price = dex[name_a], dex[name_b], price_a, price_b
        else:
            buy, sell, buy_price, sell_price = dex[name_b], dex[name_a], price_b, price_a
        opp = evaluate_pair(snapshot, OpportunityType.DEX_TO_DEX, buy, sell, buy_price, sell_price,
                            buy.liquidity_usd, sell.liquidity_usd, settings)
        if opp:
            found.append(opp)

    return found


def passes_filter(opp: Opportunity, filters: FilterSettings) -> bool:
    if filters.min_spread_pct is not None and opp.spread_pct < filters.min_spread_pct:
        return False
    if filters.min_net_profit is not None and opp.net_profit < filters.min_net_profit:
        return False
    if filters.max_gas_cost is not None and opp.costs.gas > filters.max_gas_cost:
        return False
    if filters.min_confidence is not None and opp.confidence < filters.min_confidence:
        return False
    if filters.venues and opp.buy_venue not in filters.venues and opp.sell_venue not in filters.venues:
        return False
    return True


def summarize(opportunities: List[Opportunity]) -> Dict[str, float]:
    if not opportunities:
        return {
            "total": 0,
            "average_spread_pct": 0.0,
            "average_profit": 0.0,
            "total_potential_profit": 0.0,
            "high_confidence_count": 0,
        }

    count = len(opportunities)
    total_profit = sum(o.net_profit for o in opportunities)
    return {
        "total": count,
        "average_spread_pct": sum(o.spread_pct for o in opportunities) / count,
        "average_profit": total_profit / count,
        "total_potential_profit": total_profit,
        "high_confidence_count": sum(1 for o in opportunities if o.confidence > 0.8),
    }


class OpportunityDetector:
    """
    Turns price snapshots into a ranked, size- and age-bounded set of opportunities.

    Evaluation is pure; the merge into the retained set is the single mutation
    point and runs under one lock. Subscribers always receive the full ranking.
    """
    def __init__(self, settings: DetectorSettings, venues: Dict[str, VenueProfile],
                 logger: logging.Logger, clock: Callable[[], float] = time.time):
        self.settings = settings
        self.venues = dict(venues)
        self.logger = logger
        self.clock = clock

        self._opportunities: List[Opportunity] = []
        self._subscribers: List[OpportunitiesCallback] = []
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def filters(self) -> FilterSettings:
        return self.settings.filters

    def subscribe(self, callback: OpportunitiesCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    async def on_snapshot(self, snapshot: PriceSnapshot):
        """Snapshot subscriber: evaluate, then merge."""
        if self._closed:
            return
        candidates = detect_opportunities(snapshot, self.venues, self.settings)
        await self.merge(candidates)

    async def merge(self, candidates: List[Opportunity]):
        async with self._lock:
            # Computations already in flight at shutdown are dropped here
            if self._closed:
                return
            accepted = [o for o in candidates if passes_filter(o, self.settings.filters)]
            if accepted:
                self.logger.debug(f"✨ {len(accepted)}/{len(candidates)} opportunities passed filters")
            self._opportunities = self._rank(self._opportunities, accepted)
            await self._notify(list(self._opportunities))

    def _rank(self, retained: List[Opportunity], fresh: List[Opportunity]) -> List[Opportunity]:
        now = self.clock()
        # A fresh record for the same directed pair supersedes the older one
        fresh_keys = {(o.type, o.buy_venue, o.sell_venue) for o in fresh}
        merged = [o for o in retained
                  if (o.type, o.buy_venue, o.sell_venue) not in fresh_keys]
        merged.extend(fresh)
        merged = [o for o in merged if o.age(now) < self.settings.expiry_seconds]
        merged.sort(key=lambda o: (o.net_profit, o.rank_score), reverse=True)
        return merged[:self.settings.max_opportunities]

    async def _notify(self, ranked: List[Opportunity]):
        for callback in list(self._subscribers):
            try:
                result = callback(ranked)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception(f"Opportunity subscriber {callback!r} failed")

    async def update_filters(self, filters: Optional[FilterSettings] = None, **changes):
        """
        Replaces (or patches) the live filter, re-filters the retained set and
        re-notifies subscribers without waiting for the next snapshot.
        """
        async with self._lock:
            new_filters = filters if filters is not None else self.settings.filters
            if changes:
                new_filters = new_filters.merged(**changes)
            self.settings.filters = new_filters
            self._opportunities = [o for o in self._rank(self._opportunities, [])
                                   if passes_filter(o, new_filters)]
            self.logger.info(f"🔎 Filters updated: {new_filters}")
            if not self._closed:
                await self._notify(list(self._opportunities))

    def update_config(self, settings: DetectorSettings, venues: Dict[str, VenueProfile]):
        """Hot reload. Applies to the next snapshot; retained records are never rescored."""
        self.settings = settings
        self.venues = dict(venues)

    def current(self) -> List[Opportunity]:
        """Retained ranking with anything past the expiry window excluded."""
        now = self.clock()
        return [o for o in self._opportunities if o.age(now) < self.settings.expiry_seconds]

    def get_opportunities(self, limit: Optional[int] = None,
                          filters: Optional[FilterSettings] = None) -> List[Opportunity]:
        """Ranked view narrowed by query-time filters. Does not change the live filter."""
        view = self.current()
        if filters is not None:
            view = [o for o in view if passes_filter(o, filters)]
        if limit is not None:
            view = view[:max(1, min(limit, MAX_QUERY_LIMIT))]
        return view

    def get_best(self) -> Optional[Opportunity]:
        view = self.current()
        return view[0] if view else None

    def by_type(self, opp_type: OpportunityType) -> List[Opportunity]:
        return [o for o in self.current() if o.type is opp_type]

    def statistics(self) -> Dict[str, float]:
        return summarize(self.current())

    async def stop(self):
        async with self._lock:
            self._closed = True
