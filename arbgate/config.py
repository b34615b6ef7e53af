# arbgate/config.py
import asyncio
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from .errors import ConfigError
from .models import OpportunityType, VenueKind, VenueProfile

REQUIRED_RISK_LIMITS = ("max_trade_size_usd", "max_daily_volume_usd", "circuit_breaker_loss_usd")


@dataclass
class PoolConfig:
    venue: str
    address: str
    token0_decimals: int = 18
    token1_decimals: int = 6
    invert: bool = False


@dataclass
class StreamConfig:
    venue: str
    symbol: str


@dataclass
class FeedSettings:
    rpc_url: str = "https://mainnet.base.org"
    poll_interval_seconds: float = 5.0
    timeout_seconds: float = 8.0
    history_size: int = 1000
    book_depth: int = 20
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    pools: List[PoolConfig] = field(default_factory=list)
    streams: List[StreamConfig] = field(default_factory=list)


@dataclass(frozen=True)
class FilterSettings:
    """Live filter applied to detected opportunities. `None` disables a criterion."""
    min_spread_pct: Optional[float] = None
    min_net_profit: Optional[float] = None
    max_gas_cost: Optional[float] = None
    min_confidence: Optional[float] = None
    venues: Optional[Tuple[str, ...]] = None

    def merged(self, **overrides) -> "FilterSettings":
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "venues" in changes:
            changes["venues"] = tuple(changes["venues"])
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "FilterSettings":
        venues = payload.get("venues")
        return cls(
            min_spread_pct=payload.get("min_spread_pct"),
            min_net_profit=payload.get("min_net_profit"),
            max_gas_cost=payload.get("max_gas_cost"),
            min_confidence=payload.get("min_confidence"),
            venues=tuple(venues) if venues else None,
        )


@dataclass(frozen=True)
class ScoringSettings:
    base_confidence: float = 0.5
    spread_steps: Tuple[Tuple[float, float], ...] = ((0.5, 0.2), (1.0, 0.1), (2.0, 0.1))
    liquidity_steps: Tuple[Tuple[float, float], ...] = ((10_000, 0.1), (25_000, 0.1), (50_000, 0.1))
    reliable_venue_bonus: float = 0.1
    low_gas_usd: float = 10.0
    low_gas_bonus: float = 0.1
    anomalous_spread_pct: float = 5.0
    low_liquidity_usd: float = 5_000.0


def _default_gas_costs() -> Dict[OpportunityType, float]:
    # DEX<->CEX pays for the extra settlement hop
    return {
        OpportunityType.DEX_TO_CEX: 6.25,
        OpportunityType.CEX_TO_DEX: 5.0,
        OpportunityType.DEX_TO_DEX: 4.5,
    }


def _default_windows() -> Dict[OpportunityType, float]:
    return {
        OpportunityType.DEX_TO_CEX: 120.0,
        OpportunityType.CEX_TO_DEX: 300.0,
        OpportunityType.DEX_TO_DEX: 60.0,
    }


@dataclass
class DetectorSettings:
    max_opportunities: int = 50
    expiry_seconds: float = 30.0
    default_fee_pct: float = 0.25
    default_slippage_pct: float = 0.1
    default_liquidity_usd: float = 5_000.0
    min_trade_size_usd: float = 100.0
    liquidity_fraction: float = 0.5
    sizing_fraction: float = 0.5
    gas_cost_usd: Dict[OpportunityType, float] = field(default_factory=_default_gas_costs)
    execution_window_seconds: Dict[OpportunityType, float] = field(default_factory=_default_windows)
    scoring: ScoringSettings = field(default_factory=ScoringSettings)
    filters: FilterSettings = field(default_factory=FilterSettings)


@dataclass
class RiskLimits:
    max_trade_size_usd: float
    max_daily_volume_usd: float
    circuit_breaker_loss_usd: float
    max_weekly_volume_usd: Optional[float] = None
    max_slippage_pct: float = 2.0
    min_liquidity_ratio: float = 0.1
    min_liquidity_usd: float = 5_000.0
    max_gas_price_gwei: float = 100.0
    max_drawdown_pct: float = 10.0
    cooldown_seconds: float = 3600.0
    max_consecutive_failures: int = 10
    blacklisted_venues: Tuple[str, ...] = ()
    alert_history: int = 1000
    activity_history: int = 1000

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RiskLimits":
        missing = [key for key in REQUIRED_RISK_LIMITS if payload.get(key) is None]
        if missing:
            raise ConfigError(f"risk_compliance is missing required limits: {', '.join(missing)}")

        values = dict(payload)
        values["blacklisted_venues"] = tuple(v.lower() for v in values.get("blacklisted_venues") or ())
        unknown = set(values) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigError(f"Unknown risk_compliance keys: {', '.join(sorted(unknown))}")

        limits = cls(**values)
        for key in REQUIRED_RISK_LIMITS + ("cooldown_seconds", "max_consecutive_failures"):
            if getattr(limits, key) <= 0:
                raise ConfigError(f"risk_compliance.{key} must be positive")
        return limits


@dataclass
class AppConfig:
    risk: RiskLimits
    environment: str = "live"
    log_level: str = "INFO"
    trade_log: str = "logs/trades.csv"
    alert_log: str = "logs/risk_alerts.csv"
    feeds: FeedSettings = field(default_factory=FeedSettings)
    venues: Dict[str, VenueProfile] = field(default_factory=dict)
    detector: DetectorSettings = field(default_factory=DetectorSettings)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        if not isinstance(payload, dict):
            raise ConfigError("Configuration root must be a mapping")
        if "risk_compliance" not in payload:
            raise ConfigError("Configuration is missing the risk_compliance section")

        system = payload.get("system") or {}
        audit = payload.get("audit") or {}
        performance = payload.get("performance") or {}
        try:
            return cls(
                risk=RiskLimits.from_dict(payload["risk_compliance"] or {}),
                environment=system.get("environment", "live"),
                log_level=system.get("log_level", "INFO"),
                trade_log=audit.get("trade_log", "logs/trades.csv"),
                alert_log=audit.get("alert_log", "logs/risk_alerts.csv"),
                feeds=_parse_feeds(payload.get("feeds") or {}, performance),
                venues=_parse_venues(payload.get("venues") or {}),
                detector=_parse_detector(payload.get("detector") or {}),
            )
        except (TypeError, ValueError, KeyError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e


def _parse_feeds(raw: Dict[str, Any], performance: Dict[str, Any]) -> FeedSettings:
    reconnect = raw.get("reconnect") or {}
    pools = [
        PoolConfig(
            venue=venue,
            address=spec["address"],
            token0_decimals=int(spec.get("token0_decimals", 18)),
            token1_decimals=int(spec.get("token1_decimals", 6)),
            invert=bool(spec.get("invert", False)),
        )
        for venue, spec in (raw.get("pools") or {}).items()
    ]
    streams = [StreamConfig(venue=venue, symbol=spec["symbol"])
               for venue, spec in (raw.get("streams") or {}).items()]
    return FeedSettings(
        rpc_url=raw.get("rpc_url", FeedSettings.rpc_url),
        poll_interval_seconds=float(raw.get("poll_interval_seconds", 5.0)),
        timeout_seconds=float(performance.get("network_timeout_ms", 8000)) / 1000.0,
        history_size=int(raw.get("history_size", 1000)),
        book_depth=int(raw.get("book_depth", 20)),
        reconnect_initial_seconds=float(reconnect.get("initial_seconds", 1.0)),
        reconnect_max_seconds=float(reconnect.get("max_seconds", 30.0)),
        pools=pools,
        streams=streams,
    )


def _parse_venues(raw: Dict[str, Any]) -> Dict[str, VenueProfile]:
    venues = {}
    for name, spec in raw.items():
        venues[name] = VenueProfile(
            name=name,
            kind=VenueKind(spec.get("kind", "dex")),
            fee_pct=float(spec["fee_pct"]),
            slippage_pct=float(spec["slippage_pct"]),
            liquidity_usd=float(spec.get("liquidity_usd", 0.0)),
            reliable=bool(spec.get("reliable", False)),
            mev_exposed=bool(spec.get("mev_exposed", False)),
        )
    return venues


def _by_type(raw: Dict[str, Any], defaults: Dict[OpportunityType, float]) -> Dict[OpportunityType, float]:
    merged = dict(defaults)
    for key, value in (raw or {}).items():
        merged[OpportunityType(key.replace("_", "-"))] = float(value)
    return merged


def _parse_detector(raw: Dict[str, Any]) -> DetectorSettings:
    scoring_raw = raw.get("scoring") or {}
    scoring = ScoringSettings(**{
        k: tuple(tuple(step) for step in v) if k.endswith("_steps") else v
        for k, v in scoring_raw.items()
    })
    return DetectorSettings(
        max_opportunities=int(raw.get("max_opportunities", 50)),
        expiry_seconds=float(raw.get("expiry_seconds", 30.0)),
        default_fee_pct=float(raw.get("default_fee_pct", 0.25)),
        default_slippage_pct=float(raw.get("default_slippage_pct", 0.1)),
        default_liquidity_usd=float(raw.get("default_liquidity_usd", 5_000.0)),
        min_trade_size_usd=float(raw.get("min_trade_size_usd", 100.0)),
        liquidity_fraction=float(raw.get("liquidity_fraction", 0.5)),
        sizing_fraction=float(raw.get("sizing_fraction", 0.5)),
        gas_cost_usd=_by_type(raw.get("gas_cost_usd"), _default_gas_costs()),
        execution_window_seconds=_by_type(raw.get("execution_window_seconds"), _default_windows()),
        scoring=scoring,
        filters=FilterSettings.from_dict(raw.get("filters") or {}),
    )


def load_config(path: str) -> AppConfig:
    """Reads and validates the YAML configuration. Raises ConfigError on any problem."""
    try:
        with open(path, "r") as f:
            payload = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e
    return AppConfig.from_dict(payload)


class ConfigStore:
    """
    Holds the active configuration and hot-reloads it from disk.
    Listeners are called with the new AppConfig after every successful reload.
    A reload that fails validation keeps the previous configuration active.
    """
    def __init__(self, path: str, logger: logging.Logger, config: Optional[AppConfig] = None):
        self.path = path
        self.logger = logger
        self.config = config or load_config(path)
        self._listeners: List[Callable[[AppConfig], None]] = []
        self._mtime = self._stat()

    def _stat(self) -> Optional[float]:
        try:
            return os.stat(self.path).st_mtime
        except OSError:
            return None

    def add_listener(self, listener: Callable[[AppConfig], None]):
        self._listeners.append(listener)

    def reload(self) -> bool:
        try:
            new_config = load_config(self.path)
        except ConfigError as e:
            self.logger.error(f"⚙️ Config reload rejected, keeping previous config: {e}")
            return False

        self.config = new_config
        for listener in list(self._listeners):
            try:
                listener(new_config)
            except Exception:
                self.logger.exception(f"⚙️ Config listener {listener!r} failed")
        self.logger.info("⚙️ Configuration reloaded")
        return True

    async def watch(self, interval: float = 2.0):
        """Polls the file's modification time and reloads on change. Runs until cancelled."""
        while True:
            await asyncio.sleep(interval)
            mtime = self._stat()
            if mtime is not None and mtime != self._mtime:
                self._mtime = mtime
                self.reload()
