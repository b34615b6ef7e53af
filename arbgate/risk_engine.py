# arbgate/risk_engine.py
import logging
import threading
import time
from collections import deque
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import RiskLimits
from .models import (ActivityEntry, ActivityResult, Opportunity, RiskAlert, RiskAssessment,
                     RiskEvent, RiskRestrictions, RiskState, Severity, TradeResult)

AlertCallback = Callable[[RiskAlert], None]

REJECT_SCORE = 80
APPROVAL_SCORE = 60
DELAY_SCORE = 40
ALERT_SCORE = 70

# Activity heuristics
SANDWICH_WINDOW = 60.0
SANDWICH_RECENT = 30.0
FRONT_RUN_WINDOW = 5.0
FRONT_RUN_TOLERANCE = 0.10
WASH_WINDOW = 3600.0
WASH_MAX_ROUND_TRIPS = 3
RATE_WINDOW = 60.0
RATE_MAX_TRADES = 10

CheckResult = Tuple[int, List[str]]


def _period_keys(ts: float) -> Tuple[str, str]:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    year, week, _ = dt.isocalendar()
    return dt.date().isoformat(), f"{year}-W{week:02d}"


def _severity_for(score: int) -> Severity:
    if score >= REJECT_SCORE:
        return Severity.HIGH
    if score >= DELAY_SCORE:
        return Severity.MEDIUM
    return Severity.LOW


class RiskGate:
    """
    The only component allowed to approve execution.

    Owns RiskState and the circuit breaker. `assess` and `record_outcome` may be
    called from different trade flows at once, so every read-modify-write of the
    state happens under one lock. Alert callbacks run after the lock is released.
    """
    def __init__(self, limits: RiskLimits, logger: logging.Logger,
                 clock: Callable[[], float] = time.time):
        self.limits = limits
        self.logger = logger
        self.clock = clock

        self._state = RiskState()
        self._lock = threading.RLock()
        self._blacklist = {v.lower() for v in limits.blacklisted_venues}
        self._alerts: deque = deque(maxlen=limits.alert_history)
        self._activity: deque = deque(maxlen=limits.activity_history)
        self._alert_callbacks: List[AlertCallback] = []

    # --- ALERT STREAM ---

    def on_alert(self, callback: AlertCallback) -> Callable[[], None]:
        self._alert_callbacks.append(callback)

        def unsubscribe():
            if callback in self._alert_callbacks:
                self._alert_callbacks.remove(callback)
        return unsubscribe

    def recent_alerts(self, limit: int = 50) -> List[RiskAlert]:
        with self._lock:
            alerts = list(self._alerts)
        return alerts[-limit:] if limit else alerts

    def _alert(self, pending: List[RiskAlert], event: RiskEvent, severity: Severity,
               message: str, detail: Optional[Dict[str, Any]] = None):
        alert = RiskAlert(event, severity, message, self.clock(), detail)
        self._alerts.append(alert)
        pending.append(alert)

    def _dispatch(self, pending: List[RiskAlert]):
        for alert in pending:
            for callback in list(self._alert_callbacks):
                try:
                    callback(alert)
                except Exception:
                    self.logger.exception(f"Alert subscriber {callback!r} failed")

    # --- STATE MAINTENANCE ---

    def _roll_periods(self, now: float):
        day_key, week_key = _period_keys(now)
        s = self._state
        if s.day_key != day_key:
            s.day_key = day_key
            s.daily_volume = 0.0
            s.gas_used_today = 0.0
        if s.week_key != week_key:
            s.week_key = week_key
            s.weekly_volume = 0.0

    def _breaker_active(self, now: float) -> bool:
        s = self._state
        if not s.circuit_breaker_active:
            return False
        if s.circuit_breaker_since is not None and now - s.circuit_breaker_since >= self.limits.cooldown_seconds:
            self._reset_breaker()
            self.logger.warning("🟢 Circuit breaker cooldown elapsed, trading resumed")
            return False
        return True

    def _reset_breaker(self):
        s = self._state
        s.circuit_breaker_active = False
        s.circuit_breaker_since = None
        s.recent_losses = 0.0
        s.consecutive_failures = 0

    def _trigger_breaker(self, pending: List[RiskAlert], reason: str):
        s = self._state
        s.circuit_breaker_active = True
        s.circuit_breaker_since = self.clock()
        self.logger.critical(f"⛔ CIRCUIT BREAKER ACTIVATED: {reason}")
        self._alert(pending, RiskEvent.CIRCUIT_BREAKER, Severity.CRITICAL,
                    f"Circuit breaker activated: {reason}",
                    {"recent_losses": s.recent_losses, "consecutive_failures": s.consecutive_failures})

    # --- ASSESSMENT ---

    def assess(self, opportunity: Opportunity, current_gas_price_gwei: Optional[float] = None,
               trade_size: Optional[float] = None, user: Optional[str] = None) -> RiskAssessment:
        """
        Scores a proposed trade 0-100 and classifies it.

        `trade_size` defaults to the opportunity's maximum viable size. The gas
        check only runs when the caller supplies a current gas price.
        """
        size = opportunity.max_trade_size if trade_size is None else trade_size
        pending: List[RiskAlert] = []
        try:
            with self._lock:
                return self._assess_locked(opportunity, size, current_gas_price_gwei, user, pending)
        finally:
            self._dispatch(pending)

    def _assess_locked(self, opp: Opportunity, size: float, gas_price: Optional[float],
                       user: Optional[str], pending: List[RiskAlert]) -> RiskAssessment:
        now = self.clock()
        self._roll_periods(now)

        if self._breaker_active(now):
            return RiskAssessment(
                approved=False,
                risk_score=100,
                severity=Severity.CRITICAL,
                reason="Circuit breaker active - trading suspended",
                warnings=("Circuit breaker active - trading suspended",),
                restrictions=RiskRestrictions(requires_approval=True),
                circuit_breaker_triggered=True,
            )

        blocked = [v for v in (opp.buy_venue, opp.sell_venue) if v.lower() in self._blacklist]
        if blocked:
            return RiskAssessment(
                approved=False,
                risk_score=100,
                severity=Severity.HIGH,
                reason=f"Venue blacklisted: {', '.join(blocked)}",
                restrictions=RiskRestrictions(requires_approval=True),
            )

        score = 0
        warnings: List[str] = []
        max_size_cap: Optional[float] = None

        checks = [
            self._check_trade_size(size, pending),
            self._check_liquidity(opp, size, pending),
            self._check_slippage(opp, pending),
            self._check_gas_price(gas_price, pending),
            self._check_confidence(opp),
            self._check_volume(size, pending),
            self._check_history(pending),
        ]
        for partial, messages in checks:
            score += partial
            warnings.extend(messages)
        if size > self.limits.max_trade_size_usd:
            max_size_cap = self.limits.max_trade_size_usd

        score = min(score, 100)
        approved = score < REJECT_SCORE
        if score >= REJECT_SCORE:
            restrictions = RiskRestrictions(max_trade_size=max_size_cap, requires_approval=True)
            reason = f"Risk score {score}/100 exceeds the rejection threshold"
        elif score >= APPROVAL_SCORE:
            restrictions = RiskRestrictions(max_trade_size=max_size_cap, requires_approval=True,
                                            delay_seconds=5.0)
            reason = f"Risk score {score}/100: manual confirmation required"
        elif score >= DELAY_SCORE:
            restrictions = RiskRestrictions(max_trade_size=max_size_cap, delay_seconds=2.0)
            reason = f"Risk score {score}/100: approved with delay"
        else:
            restrictions = RiskRestrictions(max_trade_size=max_size_cap)
            reason = f"Risk score {score}/100: approved"

        if score >= ALERT_SCORE:
            self._alert(pending, RiskEvent.HIGH_RISK, Severity.HIGH,
                        f"High risk trade detected: {score}/100",
                        {"opportunity_id": opp.id})

        anomalies = self._detect_anomalies(opp, size, user, now)
        if anomalies:
            restrictions = replace(restrictions, requires_approval=True)
            self._alert(pending, RiskEvent.ANOMALY, Severity.HIGH,
                        f"Suspicious activity on {opp.buy_venue}->{opp.sell_venue}: {'; '.join(anomalies)}",
                        {"opportunity_id": opp.id, "user": user})

        return RiskAssessment(
            approved=approved,
            risk_score=score,
            severity=_severity_for(score),
            reason=reason,
            warnings=tuple(w for w in warnings if w),
            restrictions=restrictions,
            anomalies=tuple(anomalies),
        )

    def _check_trade_size(self, size: float, pending: List[RiskAlert]) -> CheckResult:
        cap = self.limits.max_trade_size_usd
        if size > cap:
            self._alert(pending, RiskEvent.LARGE_TRADE, Severity.HIGH,
                        f"Large trade size: ${size:.2f} (max: ${cap:.2f})")
            return 30, [f"Trade size ${size:.2f} exceeds maximum ${cap:.2f}"]
        if size > cap * 0.8:
            return 15, ["Trade size approaching maximum limit"]
        if size > cap * 0.5:
            return 5, []
        return 0, []

    def _check_liquidity(self, opp: Opportunity, size: float, pending: List[RiskAlert]) -> CheckResult:
        score, warnings = 0, []
        liquidity = opp.min_liquidity
        utilization = size / liquidity if liquidity > 0 else float("inf")

        if utilization > 0.5:
            score += 25
            warnings.append(f"High liquidity utilization: {utilization * 100:.1f}%")
            self._alert(pending, RiskEvent.LOW_LIQUIDITY, Severity.MEDIUM,
                        f"Trade would use {utilization * 100:.1f}% of available liquidity")
        elif utilization > 0.3:
            score += 10
            warnings.append(f"Moderate liquidity utilization: {utilization * 100:.1f}%")
        elif utilization > self.limits.min_liquidity_ratio:
            score += 5

        floor = self.limits.min_liquidity_usd
        if opp.buy_liquidity < floor or opp.sell_liquidity < floor:
            score += 15
            warnings.append(f"Venue liquidity below ${floor:,.0f}")
        return score, warnings

    def _check_slippage(self, opp: Opportunity, pending: List[RiskAlert]) -> CheckResult:
        if opp.optimal_trade_size <= 0:
            return 0, []
        # Modeled slippage as a percentage of the sized trade
        slippage_pct = opp.costs.slippage / opp.optimal_trade_size * 100
        tolerance = self.limits.max_slippage_pct
        if slippage_pct > tolerance:
            self._alert(pending, RiskEvent.HIGH_SLIPPAGE, Severity.MEDIUM,
                        f"High slippage expected: {slippage_pct:.2f}%")
            return 20, [f"High expected slippage: {slippage_pct:.2f}%"]
        if slippage_pct > tolerance * 0.7:
            return 10, [f"Moderate expected slippage: {slippage_pct:.2f}%"]
        return 0, []

    def _check_gas_price(self, gas_price: Optional[float], pending: List[RiskAlert]) -> CheckResult:
        if gas_price is None:
            return 0, []
        ceiling = self.limits.max_gas_price_gwei
        if gas_price > ceiling:
            self._alert(pending, RiskEvent.HIGH_GAS, Severity.MEDIUM,
                        f"Gas price {gas_price:.1f} gwei above ceiling {ceiling:.1f}")
            return 25, [f"Gas price too high: {gas_price:.1f} gwei"]
        if gas_price > ceiling * 0.8:
            return 10, [f"Elevated gas price: {gas_price:.1f} gwei"]
        return 0, []

    def _check_confidence(self, opp: Opportunity) -> CheckResult:
        score, warnings = 0, []
        if opp.confidence < 0.5:
            score += 30
            warnings.append(f"Low confidence: {opp.confidence * 100:.1f}%")
        elif opp.confidence < 0.7:
            score += 15
            warnings.append(f"Moderate confidence: {opp.confidence * 100:.1f}%")
        elif opp.confidence < 0.8:
            score += 5

        if opp.rank_score < 60:
            score += 15
            warnings.append(f"Low rank score: {opp.rank_score}/100")
        elif opp.rank_score < 75:
            score += 5

        if len(opp.risk_flags) > 3:
            score += 10
            warnings.append(f"Multiple risks identified: {len(opp.risk_flags)}")
        elif len(opp.risk_flags) > 1:
            score += 5
        return score, warnings

    def _check_volume(self, size: float, pending: List[RiskAlert]) -> CheckResult:
        score, warnings = 0, []
        daily_cap = self.limits.max_daily_volume_usd
        projected = self._state.daily_volume + size
        if projected > daily_cap:
            score += 20
            warnings.append(f"Daily volume limit exceeded: ${projected:,.2f}")
            self._alert(pending, RiskEvent.DAILY_LIMIT_EXCEEDED, Severity.HIGH,
                        f"Daily volume limit exceeded: ${projected:,.2f}")
        elif projected > daily_cap * 0.9:
            score += 10
            warnings.append("Approaching daily volume limit")

        weekly_cap = self.limits.max_weekly_volume_usd
        if weekly_cap:
            projected_week = self._state.weekly_volume + size
            if projected_week > weekly_cap:
                score += 20
                warnings.append(f"Weekly volume limit exceeded: ${projected_week:,.2f}")
                self._alert(pending, RiskEvent.WEEKLY_LIMIT_EXCEEDED, Severity.HIGH,
                            f"Weekly volume limit exceeded: ${projected_week:,.2f}")
            elif projected_week > weekly_cap * 0.9:
                score += 10
                warnings.append("Approaching weekly volume limit")
        return score, warnings

    def _check_history(self, pending: List[RiskAlert]) -> CheckResult:
        score, warnings = 0, []
        s = self._state
        if s.consecutive_failures >= 5:
            score += 25
            warnings.append(f"High consecutive failures: {s.consecutive_failures}")
            self._alert(pending, RiskEvent.CONSECUTIVE_FAILURES, Severity.HIGH,
                        f"{s.consecutive_failures} consecutive failures")
        elif s.consecutive_failures >= 3:
            score += 10
            warnings.append("Multiple consecutive failures")

        max_dd = self.limits.max_drawdown_pct
        if s.current_drawdown > max_dd * 0.8:
            score += 20
            warnings.append(f"High drawdown: {s.current_drawdown:.2f}%")
        elif s.current_drawdown > max_dd * 0.6:
            score += 10
            warnings.append(f"Moderate drawdown: {s.current_drawdown:.2f}%")
        return score, warnings

    # --- ANOMALY HEURISTICS ---

    def _detect_anomalies(self, opp: Opportunity, size: float, user: Optional[str],
                          now: float) -> List[str]:
        anomalies = []
        pair = (opp.buy_venue, opp.sell_venue)
        same_pair = [e for e in self._activity if e.pair == pair and now - e.timestamp <= SANDWICH_WINDOW]

        if len(same_pair) >= 2 and now - max(e.timestamp for e in same_pair) <= SANDWICH_RECENT:
            anomalies.append(f"SANDWICH: {len(same_pair)} trades on this pair within {SANDWICH_WINDOW:.0f}s")

        for e in same_pair:
            if now - e.timestamp <= FRONT_RUN_WINDOW and size > 0 and abs(e.amount - size) / size <= FRONT_RUN_TOLERANCE:
                anomalies.append(f"FRONT_RUN: similar-sized trade by {e.user} {now - e.timestamp:.1f}s ago")
                break

        if user is not None:
            mine = [e for e in self._activity if e.user == user]

            hour = [e for e in mine if now - e.timestamp <= WASH_WINDOW]
            forward = sum(1 for e in hour if e.pair == pair)
            reverse = sum(1 for e in hour if e.pair == (pair[1], pair[0]))
            round_trips = min(forward, reverse)
            if round_trips > WASH_MAX_ROUND_TRIPS:
                anomalies.append(f"WASH_TRADE: {round_trips} round trips by {user} within the hour")

            last_minute = sum(1 for e in mine if now - e.timestamp <= RATE_WINDOW)
            if last_minute > RATE_MAX_TRADES:
                anomalies.append(f"RATE_LIMIT: {last_minute} trades by {user} within {RATE_WINDOW:.0f}s")
        return anomalies

    def log_activity(self, entry: ActivityEntry):
        with self._lock:
            self._activity.append(entry)

    def recent_activity(self, limit: int = 100) -> List[ActivityEntry]:
        with self._lock:
            entries = list(self._activity)
        return entries[-limit:] if limit else entries

    # --- FEEDBACK ---

    def record_outcome(self, result: TradeResult) -> RiskState:
        """
        Applies an execution outcome to RiskState. The only mutation path for
        volume, failure, loss and drawdown accounting.
        """
        pending: List[RiskAlert] = []
        try:
            with self._lock:
                now = self.clock()
                ts = result.timestamp if result.timestamp is not None else now
                self._roll_periods(now)
                self._breaker_active(now)
                s = self._state

                s.daily_volume += result.trade_size
                s.weekly_volume += result.trade_size
                s.gas_used_today += result.gas_used

                if result.profit < 0:
                    loss = abs(result.profit)
                    s.recent_losses += loss
                    if result.trade_size > 0:
                        s.current_drawdown += loss / result.trade_size * 100

                if result.success:
                    s.consecutive_failures = 0
                    if result.profit > 0 and result.trade_size > 0:
                        s.current_drawdown = max(0.0, s.current_drawdown - result.profit / result.trade_size * 100)
                else:
                    s.consecutive_failures += 1
                    s.last_failure_time = ts
                    self.logger.warning(
                        f"❌ Trade {result.opportunity_id} failed "
                        f"({s.consecutive_failures} in a row, recent losses ${s.recent_losses:.2f})")

                if not s.circuit_breaker_active:
                    if s.recent_losses > self.limits.circuit_breaker_loss_usd:
                        self._trigger_breaker(pending, f"${s.recent_losses:.2f} recent losses")
                    elif s.consecutive_failures >= self.limits.max_consecutive_failures:
                        self._trigger_breaker(pending, f"{s.consecutive_failures} consecutive execution failures")

                self._activity.append(ActivityEntry(
                    timestamp=ts,
                    action="trade",
                    user=result.user,
                    buy_venue=result.buy_venue,
                    sell_venue=result.sell_venue,
                    amount=result.trade_size,
                    result=ActivityResult.SUCCESS if result.success else ActivityResult.FAILED,
                ))
                return replace(s)
        finally:
            self._dispatch(pending)

    # --- OPERATOR CONTROLS ---

    def activate_circuit_breaker(self, reason: str = "manual override"):
        pending: List[RiskAlert] = []
        try:
            with self._lock:
                if not self._state.circuit_breaker_active:
                    self._trigger_breaker(pending, reason)
        finally:
            self._dispatch(pending)

    def deactivate_circuit_breaker(self):
        with self._lock:
            if self._state.circuit_breaker_active:
                self._reset_breaker()
                self.logger.warning("🟢 Circuit breaker manually deactivated")

    def blacklist_venue(self, venue: str):
        with self._lock:
            self._blacklist.add(venue.lower())
        self.logger.warning(f"🚫 Venue blacklisted: {venue}")

    def whitelist_venue(self, venue: str):
        with self._lock:
            self._blacklist.discard(venue.lower())
        self.logger.info(f"Venue removed from blacklist: {venue}")

    @property
    def blacklist(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._blacklist))

    def update_limits(self, limits: RiskLimits):
        """Hot reload. The blacklist is reset to the configured one."""
        with self._lock:
            self.limits = limits
            self._blacklist = {v.lower() for v in limits.blacklisted_venues}
            if self._alerts.maxlen != limits.alert_history:
                self._alerts = deque(self._alerts, maxlen=limits.alert_history)
            if self._activity.maxlen != limits.activity_history:
                self._activity = deque(self._activity, maxlen=limits.activity_history)
        self.logger.info("⚙️ Risk limits updated")

    # --- REPORTING ---

    @property
    def state(self) -> RiskState:
        """Copy of the current counters. Applies pending period and cooldown resets first."""
        with self._lock:
            now = self.clock()
            self._roll_periods(now)
            self._breaker_active(now)
            return replace(self._state)

    def risk_summary(self) -> Dict[str, Any]:
        with self._lock:
            now = self.clock()
            self._roll_periods(now)
            active = self._breaker_active(now)
            s = self._state
            lim = self.limits

            drawdown_part = min(s.current_drawdown / lim.max_drawdown_pct, 1.0) * 30
            failure_part = min(s.consecutive_failures / 5, 1.0) * 25
            volume_part = min(s.daily_volume / lim.max_daily_volume_usd, 1.0) * 20
            loss_part = min(s.recent_losses / lim.circuit_breaker_loss_usd, 1.0) * 25

            remaining = None
            if active and s.circuit_breaker_since is not None:
                remaining = max(0.0, lim.cooldown_seconds - (now - s.circuit_breaker_since))

            return {
                "risk_score": int(round(drawdown_part + failure_part + volume_part + loss_part)),
                "circuit_breaker": {"active": active, "since": s.circuit_breaker_since,
                                    "remaining_seconds": remaining},
                "daily_volume_used_pct": s.daily_volume / lim.max_daily_volume_usd * 100,
                "current_drawdown_pct": s.current_drawdown,
                "consecutive_failures": s.consecutive_failures,
                "recent_losses": s.recent_losses,
                "recent_alerts": list(self._alerts)[-5:],
            }
