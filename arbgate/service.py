# arbgate/service.py
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Set, Union

import aiohttp

from .aggregator import PriceFeedAggregator
from .config import AppConfig, ConfigStore, FilterSettings
from .logger import AsyncAuditLogger
from .market_engine import MarketEngine, PoolReader
from .models import Opportunity, RiskAlert, RiskAssessment, RiskState, TradeResult
from .risk_engine import AlertCallback, RiskGate
from .strategy import OpportunityDetector

ALERT_HEADER = ["timestamp", "event", "severity", "message", "detail"]
TRADE_HEADER = ["time", "opportunity_id", "success", "trade_size", "profit", "buy_venue", "sell_venue", "user"]


class ArbitragePipeline:
    """
    Application root: owns one Aggregator -> Detector -> Gate pipeline.

    Components are constructed here and handed to each other explicitly;
    several pipelines (e.g. one per market) can live in the same process.
    """
    def __init__(self, config: AppConfig, logger: logging.Logger,
                 pool_reader: Optional[PoolReader] = None,
                 book_seeder: Optional[MarketEngine] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.logger = logger
        self.clock = clock

        self.aggregator = PriceFeedAggregator(config.feeds, logger, pool_reader, book_seeder, clock)
        self.detector = OpportunityDetector(config.detector, config.venues, logger, clock)
        self.gate = RiskGate(config.risk, logger, clock)
        self.aggregator.subscribe(self.detector.on_snapshot)

        self.alert_log = AsyncAuditLogger(config.alert_log, ALERT_HEADER)
        self.trade_log = AsyncAuditLogger(config.trade_log, TRADE_HEADER)
        self.gate.on_alert(self._audit_alert)

        self._config_store: Optional[ConfigStore] = None
        self._tasks: Set[asyncio.Task] = set()

    def _audit_alert(self, alert: RiskAlert):
        if self.alert_log.running:
            self.alert_log.log_row(alert.to_row())

    # --- PRESENTATION ---

    def get_opportunities(self, limit: int = 10,
                          filters: Union[FilterSettings, Mapping[str, Any], None] = None) -> Dict[str, Any]:
        """
        Ranked opportunities, statistics over the whole retained set, and a
        market summary. Always well-formed, even before the first snapshot.
        """
        if filters is not None and not isinstance(filters, FilterSettings):
            filters = FilterSettings.from_dict(dict(filters))

        snapshot = self.aggregator.current()
        return {
            "opportunities": self.detector.get_opportunities(limit, filters),
            "stats": self.detector.statistics(),
            "market": {
                "dex_venues": len(snapshot.dex_prices) if snapshot else 0,
                "cex_venues": len(snapshot.cex_books) if snapshot else 0,
                "last_update": snapshot.timestamp if snapshot else None,
                "best_prices": self.aggregator.best_prices(),
            },
        }

    # --- EXECUTION LAYER ---

    def assess_trade(self, opportunity: Opportunity, gas_price_gwei: Optional[float] = None,
                     trade_size: Optional[float] = None, user: Optional[str] = None) -> RiskAssessment:
        return self.gate.assess(opportunity, gas_price_gwei, trade_size, user)

    def record_outcome(self, result: TradeResult) -> RiskState:
        state = self.gate.record_outcome(result)
        if self.trade_log.running:
            ts = result.timestamp if result.timestamp is not None else self.clock()
            self.trade_log.log_row([
                datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(),
                result.opportunity_id, result.success, result.trade_size, result.profit,
                result.buy_venue, result.sell_venue, result.user,
            ])
        return state

    def on_alert(self, callback: AlertCallback) -> Callable[[], None]:
        return self.gate.on_alert(callback)

    # --- CONFIGURATION ---

    def apply_config(self, config: AppConfig):
        """ConfigStore listener: pushes reloaded venue profiles, detector settings and limits."""
        old_filters = self.detector.filters
        self.config = config
        self.detector.update_config(config.detector, config.venues)
        self.gate.update_limits(config.risk)

        if config.detector.filters != old_filters:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            # Retained opportunities are re-filtered now, not at the next snapshot
            task = loop.create_task(self.detector.update_filters(config.detector.filters))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    # --- LIFECYCLE ---

    async def start(self, session: Optional[aiohttp.ClientSession] = None,
                    config_store: Optional[ConfigStore] = None, watch_interval: float = 2.0):
        await self.alert_log.start()
        await self.trade_log.start()

        if config_store is not None:
            self._config_store = config_store
            config_store.add_listener(self.apply_config)
            task = asyncio.create_task(config_store.watch(watch_interval))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        await self.aggregator.start(session, self.config.environment)
        self.logger.info("🚀 Arbitrage pipeline running")

    async def stop(self):
        await self.aggregator.stop()
        await self.detector.stop()

        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.alert_log.stop()
        await self.trade_log.stop()
        self.logger.info("🛑 Arbitrage pipeline stopped")
