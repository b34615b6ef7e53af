# arbgate/models.py
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple
import time


class VenueKind(Enum):
    DEX = "dex"
    CEX = "cex"


class OpportunityType(Enum):
    """Direction of a cross-venue trade: where we buy -> where we sell."""
    DEX_TO_CEX = "dex-to-cex"
    CEX_TO_DEX = "cex-to-dex"
    DEX_TO_DEX = "dex-to-dex"

    @property
    def involves_cex(self) -> bool:
        return self is not OpportunityType.DEX_TO_DEX


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskEvent(Enum):
    LARGE_TRADE = "LARGE_TRADE"
    HIGH_SLIPPAGE = "HIGH_SLIPPAGE"
    LOW_LIQUIDITY = "LOW_LIQUIDITY"
    HIGH_GAS = "HIGH_GAS"
    HIGH_RISK = "HIGH_RISK"
    CONSECUTIVE_FAILURES = "CONSECUTIVE_FAILURES"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    WEEKLY_LIMIT_EXCEEDED = "WEEKLY_LIMIT_EXCEEDED"
    CIRCUIT_BREAKER = "CIRCUIT_BREAKER"
    ANOMALY = "ANOMALY"


class ActivityResult(Enum):
    """
    Outcome of a logged trading activity.
    Mirrors the lifecycle states an execution layer reports back.
    """
    SUCCESS = "success"
    FAILED = "failed"


# --- MARKET DATA ---

@dataclass(frozen=True, slots=True)
class PriceLevel:
    price: float
    quantity: float

    @property
    def notional(self) -> float:
        return self.price * self.quantity


@dataclass(frozen=True, slots=True)
class OrderBook:
    """
    Canonical order book for one exchange venue.
    Bids are sorted highest-first, asks lowest-first.
    """
    venue: str
    symbol: str
    bids: Tuple[PriceLevel, ...]
    asks: Tuple[PriceLevel, ...]
    timestamp: float

    @property
    def best_bid(self) -> Optional[PriceLevel]:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[PriceLevel]:
        return self.asks[0] if self.asks else None

    @property
    def bid_depth_usd(self) -> float:
        return sum(level.notional for level in self.bids)

    @property
    def ask_depth_usd(self) -> float:
        return sum(level.notional for level in self.asks)


@dataclass(frozen=True, slots=True)
class PriceSnapshot:
    """
    Immutable view of the market at one instant.
    Built only through `PriceSnapshot.build`, which copies the inputs into
    read-only mappings so a published snapshot can be shared without locks.
    """
    dex_prices: Mapping[str, float]
    cex_books: Mapping[str, OrderBook]
    timestamp: float
    sequence: int

    @classmethod
    def build(cls, dex_prices: Dict[str, float], cex_books: Dict[str, OrderBook],
              timestamp: float, sequence: int) -> "PriceSnapshot":
        return cls(
            dex_prices=MappingProxyType(dict(dex_prices)),
            cex_books=MappingProxyType(dict(cex_books)),
            timestamp=timestamp,
            sequence=sequence,
        )


# --- CONFIGURATION-OWNED ---

@dataclass(frozen=True, slots=True)
class VenueProfile:
    name: str
    kind: VenueKind
    fee_pct: float
    slippage_pct: float
    liquidity_usd: float
    reliable: bool = False
    mev_exposed: bool = False


# --- OPPORTUNITIES ---

@dataclass(frozen=True, slots=True)
class CostBreakdown:
    trading: float
    slippage: float
    gas: float

    @property
    def total(self) -> float:
        return self.trading + self.slippage + self.gas


@dataclass(frozen=True, slots=True)
class Opportunity:
    """
    A profitable cross-venue trade candidate.
    Every figure is computed once from the snapshot that produced it and never
    recomputed; a later snapshot yields a fresh record with a new id.
    """
    id: str
    timestamp: float
    type: OpportunityType
    buy_venue: str
    sell_venue: str
    buy_price: float
    sell_price: float
    spread: float
    spread_pct: float
    gross_profit: float
    costs: CostBreakdown
    net_profit: float
    optimal_trade_size: float
    min_trade_size: float
    max_trade_size: float
    buy_liquidity: float
    sell_liquidity: float
    confidence: float
    rank_score: int
    risk_flags: Tuple[str, ...]
    execution_window: float
    scoring_version: str

    @property
    def expires_at(self) -> float:
        return self.timestamp + self.execution_window

    @property
    def min_liquidity(self) -> float:
        return min(self.buy_liquidity, self.sell_liquidity)

    def time_to_expiry(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, self.expires_at - now)

    def age(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return now - self.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "buy_venue": self.buy_venue,
            "sell_venue": self.sell_venue,
            "buy_price": self.buy_price,
            "sell_price": self.sell_price,
            "spread": self.spread,
            "spread_pct": self.spread_pct,
            "gross_profit": self.gross_profit,
            "costs": {
                "trading": self.costs.trading,
                "slippage": self.costs.slippage,
                "gas": self.costs.gas,
                "total": self.costs.total,
            },
            "net_profit": self.net_profit,
            "optimal_trade_size": self.optimal_trade_size,
            "min_trade_size": self.min_trade_size,
            "max_trade_size": self.max_trade_size,
            "liquidity": {"buy": self.buy_liquidity, "sell": self.sell_liquidity},
            "confidence": self.confidence,
            "rank_score": self.rank_score,
            "risk_flags": list(self.risk_flags),
            "time_to_expiry": self.time_to_expiry(),
            "scoring_version": self.scoring_version,
        }


# --- RISK ---

@dataclass(frozen=True, slots=True)
class TradeResult:
    """Outcome reported back by the execution layer. `profit` is negative for a loss."""
    opportunity_id: str
    success: bool
    trade_size: float
    profit: float
    buy_venue: str = ""
    sell_venue: str = ""
    user: str = "system"
    gas_used: float = 0.0
    timestamp: Optional[float] = None


@dataclass(frozen=True, slots=True)
class RiskRestrictions:
    max_trade_size: Optional[float] = None
    requires_approval: bool = False
    delay_seconds: float = 0.0


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    approved: bool
    risk_score: int
    severity: Severity
    reason: str
    warnings: Tuple[str, ...] = ()
    restrictions: RiskRestrictions = field(default_factory=RiskRestrictions)
    circuit_breaker_triggered: bool = False
    anomalies: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RiskAlert:
    event: RiskEvent
    severity: Severity
    message: str
    timestamp: float
    detail: Optional[Mapping[str, Any]] = None

    def to_row(self) -> list:
        return [self.timestamp, self.event.value, self.severity.value, self.message,
                dict(self.detail) if self.detail else ""]


@dataclass(slots=True)
class RiskState:
    """Mutable risk counters. Owned by the RiskGate and changed only under its lock."""
    daily_volume: float = 0.0
    weekly_volume: float = 0.0
    consecutive_failures: int = 0
    recent_losses: float = 0.0
    current_drawdown: float = 0.0
    gas_used_today: float = 0.0
    last_failure_time: float = 0.0
    circuit_breaker_active: bool = False
    circuit_breaker_since: Optional[float] = None
    day_key: str = ""
    week_key: str = ""


@dataclass(frozen=True, slots=True)
class ActivityEntry:
    timestamp: float
    action: str
    user: str
    buy_venue: str
    sell_venue: str
    amount: float
    result: ActivityResult

    @property
    def pair(self) -> Tuple[str, str]:
        return (self.buy_venue, self.sell_venue)
