"""
Shared fixtures. Everything here is pure: no network, injectable clocks.
"""
import logging

import pytest

from arbgate.config import DetectorSettings, FeedSettings, PoolConfig, RiskLimits, StreamConfig
from arbgate.models import CostBreakdown, Opportunity, OpportunityType, VenueKind, VenueProfile

# Monday 2024-01-01 12:00:00 UTC
T0 = 1_704_110_400.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def logger():
    return logging.getLogger("arbgate.tests")


@pytest.fixture
def limits():
    return RiskLimits(
        max_trade_size_usd=10_000,
        max_daily_volume_usd=100_000,
        circuit_breaker_loss_usd=1_000,
    )


@pytest.fixture
def detector_settings():
    return DetectorSettings()


@pytest.fixture
def venues():
    return {
        "uni": VenueProfile("uni", VenueKind.DEX, fee_pct=0.05, slippage_pct=0.05,
                            liquidity_usd=50_000, reliable=True, mev_exposed=True),
        "sushi": VenueProfile("sushi", VenueKind.DEX, fee_pct=0.25, slippage_pct=0.12,
                              liquidity_usd=15_000),
        "binance": VenueProfile("binance", VenueKind.CEX, fee_pct=0.10, slippage_pct=0.02,
                                liquidity_usd=0, reliable=True),
    }


@pytest.fixture
def feed_settings():
    return FeedSettings(
        timeout_seconds=0.5,
        history_size=1000,
        pools=[PoolConfig("uni", "0x4C36388bE6F416A29C8d8Eee81C771cE6bE14B18"),
               PoolConfig("sushi", "0x02a84c0b3d8e17F6D3f62261b8b7d3B6D08e6a6c")],
        streams=[StreamConfig("binance", "ETH/USDC")],
    )


@pytest.fixture
def make_opportunity():
    """Factory for a clean, low-risk opportunity; override any field."""
    def _make(**overrides) -> Opportunity:
        fields = dict(
            id="uni-binance-1-1704110400000",
            timestamp=T0,
            type=OpportunityType.DEX_TO_CEX,
            buy_venue="uni",
            sell_venue="binance",
            buy_price=2000.0,
            sell_price=2030.0,
            spread=30.0,
            spread_pct=1.5,
            gross_profit=7.5,
            costs=CostBreakdown(trading=0.75, slippage=0.5, gas=4.5),
            net_profit=1.75,
            optimal_trade_size=500.0,
            min_trade_size=100.0,
            max_trade_size=1000.0,
            buy_liquidity=50_000.0,
            sell_liquidity=50_000.0,
            confidence=0.9,
            rank_score=90,
            risk_flags=(),
            execution_window=120.0,
            scoring_version="1",
        )
        fields.update(overrides)
        return Opportunity(**fields)
    return _make
