import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from arbgate.models import (ActivityEntry, ActivityResult, CostBreakdown, RiskEvent, Severity,
                            TradeResult)
from arbgate.risk_engine import RiskGate


@pytest.fixture
def gate(limits, logger, clock):
    return RiskGate(limits, logger, clock)


def failure(loss, size=1_000.0, user="system"):
    return TradeResult("opp", success=False, trade_size=size, profit=-loss,
                       buy_venue="uni", sell_venue="binance", user=user)


def activity(ts, user="system", pair=("uni", "binance"), amount=1_000.0):
    return ActivityEntry(ts, "trade", user, pair[0], pair[1], amount, ActivityResult.SUCCESS)


# --- SCORING & THRESHOLDS ---

def test_clean_trade_is_approved_immediately(gate, make_opportunity):
    result = gate.assess(make_opportunity())

    assert result.approved
    assert result.risk_score == 0
    assert result.severity is Severity.LOW
    assert result.restrictions.delay_seconds == 0
    assert not result.restrictions.requires_approval
    assert result.anomalies == ()


def test_moderate_risk_gets_short_delay(gate, make_opportunity):
    # low confidence (+30) and low rank (+15)
    result = gate.assess(make_opportunity(confidence=0.4, rank_score=40))

    assert result.approved
    assert result.risk_score == 45
    assert result.severity is Severity.MEDIUM
    assert result.restrictions.delay_seconds == 2.0
    assert not result.restrictions.requires_approval


def test_elevated_risk_needs_confirmation_and_alerts(gate, make_opportunity):
    opp = make_opportunity(confidence=0.4, rank_score=40, risk_flags=("a", "b", "c", "d"))
    # +30 confidence, +15 rank, +10 flags, +15 size near cap, +5 utilization
    result = gate.assess(opp, trade_size=9_000)

    assert result.risk_score == 75
    assert result.approved
    assert result.restrictions.requires_approval
    assert result.restrictions.delay_seconds == 5.0
    assert RiskEvent.HIGH_RISK in [a.event for a in gate.recent_alerts()]


def test_high_risk_is_rejected(gate, make_opportunity):
    opp = make_opportunity(confidence=0.4, rank_score=40, risk_flags=("a", "b", "c", "d"),
                           buy_liquidity=15_000.0, sell_liquidity=15_000.0)
    result = gate.assess(opp, trade_size=9_000)

    assert result.risk_score == 95
    assert not result.approved
    assert result.severity is Severity.HIGH
    events = [a.event for a in gate.recent_alerts()]
    assert RiskEvent.LOW_LIQUIDITY in events
    assert RiskEvent.HIGH_RISK in events


def test_oversized_trade_is_capped_not_rejected(gate, make_opportunity):
    result = gate.assess(make_opportunity(), trade_size=12_000)

    assert result.approved
    assert result.restrictions.max_trade_size == 10_000
    assert any("exceeds maximum" in w for w in result.warnings)
    assert gate.recent_alerts()[0].event is RiskEvent.LARGE_TRADE


def test_default_size_is_opportunity_max(gate, make_opportunity):
    result = gate.assess(make_opportunity(max_trade_size=12_000.0))
    assert result.restrictions.max_trade_size == 10_000


def test_gas_price_check_only_with_price(gate, make_opportunity):
    opp = make_opportunity()
    assert gate.assess(opp).risk_score == 0
    assert gate.assess(opp, current_gas_price_gwei=90).risk_score == 10
    assert gate.assess(opp, current_gas_price_gwei=150).risk_score == 25


def test_thin_venue_liquidity_is_flagged(gate, make_opportunity):
    result = gate.assess(make_opportunity(sell_liquidity=4_000.0), trade_size=100)
    assert result.risk_score == 15
    assert any("liquidity below" in w for w in result.warnings)


def test_high_modeled_slippage(gate, make_opportunity):
    opp = make_opportunity(costs=CostBreakdown(trading=1.0, slippage=15.0, gas=4.5))
    result = gate.assess(opp)
    assert result.risk_score == 20
    assert RiskEvent.HIGH_SLIPPAGE in [a.event for a in gate.recent_alerts()]


def test_daily_volume_cap(gate, make_opportunity):
    gate.record_outcome(TradeResult("prev", success=True, trade_size=99_500, profit=0.0))

    result = gate.assess(make_opportunity())

    assert result.risk_score == 20
    assert any("Daily volume" in w for w in result.warnings)
    assert RiskEvent.DAILY_LIMIT_EXCEEDED in [a.event for a in gate.recent_alerts()]


def test_weekly_volume_cap(limits, logger, clock, make_opportunity):
    gate = RiskGate(replace(limits, max_weekly_volume_usd=50_000), logger, clock)
    gate.record_outcome(TradeResult("prev", success=True, trade_size=49_500, profit=0.0))

    result = gate.assess(make_opportunity())

    assert any("Weekly volume" in w for w in result.warnings)


def test_assessment_is_idempotent(gate, make_opportunity):
    opp = make_opportunity(confidence=0.6, rank_score=60, risk_flags=("a", "b"))
    gate.record_outcome(failure(100))
    gate.record_outcome(failure(100))
    gate.record_outcome(failure(100))

    first = gate.assess(opp, current_gas_price_gwei=85)
    second = gate.assess(opp, current_gas_price_gwei=85)

    assert first == second


# --- FEEDBACK ---

def test_record_outcome_updates_state(gate):
    gate.record_outcome(failure(50))
    state = gate.state
    assert state.consecutive_failures == 1
    assert state.recent_losses == 50
    assert state.current_drawdown == pytest.approx(5.0)
    assert state.daily_volume == 1_000

    gate.record_outcome(TradeResult("ok", success=True, trade_size=1_000, profit=20))
    state = gate.state
    assert state.consecutive_failures == 0
    assert state.current_drawdown == pytest.approx(3.0)
    assert state.daily_volume == 2_000


def test_failure_streak_scores(gate, make_opportunity):
    for _ in range(3):
        gate.record_outcome(failure(0))
    assert gate.assess(make_opportunity()).risk_score == 10

    for _ in range(2):
        gate.record_outcome(failure(0))
    result = gate.assess(make_opportunity())
    assert result.risk_score == 25
    assert RiskEvent.CONSECUTIVE_FAILURES in [a.event for a in gate.recent_alerts()]


def test_daily_counters_reset_on_utc_day(gate, clock):
    gate.record_outcome(TradeResult("a", success=True, trade_size=5_000, profit=0.0))

    clock.advance(24 * 3600)
    state = gate.state
    assert state.daily_volume == 0
    assert state.weekly_volume == 5_000

    clock.advance(7 * 24 * 3600)
    assert gate.state.weekly_volume == 0


# --- CIRCUIT BREAKER ---

def test_losses_trip_circuit_breaker(gate, clock, make_opportunity):
    alerts = []
    gate.on_alert(alerts.append)

    for _ in range(5):
        gate.record_outcome(failure(250))

    result = gate.assess(make_opportunity())
    assert not result.approved
    assert result.risk_score == 100
    assert result.severity is Severity.CRITICAL
    assert result.circuit_breaker_triggered
    assert "circuit breaker" in result.reason.lower()
    assert [a.event for a in alerts].count(RiskEvent.CIRCUIT_BREAKER) == 1

    # Stays closed for the whole cooldown
    clock.advance(3599)
    assert gate.assess(make_opportunity()).risk_score == 100

    clock.advance(1)
    result = gate.assess(make_opportunity())
    assert result.approved
    assert result.risk_score < 100
    assert gate.state.recent_losses == 0


def test_loss_threshold_must_be_exceeded(gate, make_opportunity):
    for _ in range(4):
        gate.record_outcome(failure(250))
    # Exactly at the threshold
    assert not gate.state.circuit_breaker_active
    assert gate.assess(make_opportunity()).risk_score < 100


def test_consecutive_failures_kill_switch(limits, logger, clock, make_opportunity):
    gate = RiskGate(replace(limits, max_consecutive_failures=3), logger, clock)
    for _ in range(3):
        gate.record_outcome(failure(0))

    assert gate.state.circuit_breaker_active
    assert gate.assess(make_opportunity()).circuit_breaker_triggered


def test_manual_override(gate, make_opportunity):
    gate.activate_circuit_breaker("operator halt")
    assert gate.assess(make_opportunity()).risk_score == 100
    assert gate.recent_alerts()[-1].severity is Severity.CRITICAL

    gate.deactivate_circuit_breaker()
    assert gate.assess(make_opportunity()).approved


# --- BLACKLIST ---

def test_blacklisted_venue_rejected(gate, make_opportunity):
    gate.blacklist_venue("Uni")
    result = gate.assess(make_opportunity())
    assert not result.approved
    assert result.severity is Severity.HIGH
    assert "uni" in result.reason

    gate.whitelist_venue("uni")
    assert gate.assess(make_opportunity()).approved


def test_breaker_outranks_blacklist(gate, make_opportunity):
    gate.blacklist_venue("uni")
    gate.activate_circuit_breaker("drill")

    result = gate.assess(make_opportunity())

    assert result.severity is Severity.CRITICAL
    assert result.circuit_breaker_triggered
    assert result.reason == "Circuit breaker active - trading suspended"


def test_update_limits_resets_blacklist(gate, limits):
    gate.blacklist_venue("sushi")
    gate.update_limits(replace(limits, blacklisted_venues=("okx",)))
    assert gate.blacklist == ("okx",)


# --- ANOMALIES ---

def test_sandwich_pattern(gate, clock, make_opportunity):
    gate.log_activity(activity(clock() - 20, amount=300))
    gate.log_activity(activity(clock() - 10, amount=300))

    result = gate.assess(make_opportunity())

    assert any(a.startswith("SANDWICH") for a in result.anomalies)
    assert result.restrictions.requires_approval
    # Flag only: the numeric score is untouched
    assert result.risk_score == 0
    assert result.approved


def test_front_run_pattern(gate, clock, make_opportunity):
    gate.log_activity(activity(clock() - 2, user="mallory", amount=1_050))
    result = gate.assess(make_opportunity())
    assert [a.split(":")[0] for a in result.anomalies] == ["FRONT_RUN"]


def test_wash_trading_pattern(gate, clock, make_opportunity):
    for i in range(4):
        gate.log_activity(activity(clock() - 1_000 - i, user="bob"))
        gate.log_activity(activity(clock() - 1_500 - i, user="bob", pair=("binance", "uni")))

    assert gate.assess(make_opportunity()).anomalies == ()
    result = gate.assess(make_opportunity(), user="bob")
    assert any(a.startswith("WASH_TRADE") for a in result.anomalies)


def test_rate_limit_pattern(gate, clock, make_opportunity):
    for i in range(11):
        gate.log_activity(activity(clock() - i, user="alice", pair=("x", "y")))

    result = gate.assess(make_opportunity(), user="alice")
    assert any(a.startswith("RATE_LIMIT") for a in result.anomalies)
    assert RiskEvent.ANOMALY in [a.event for a in gate.recent_alerts()]


def test_activity_log_is_bounded(limits, logger, clock):
    gate = RiskGate(replace(limits, activity_history=5), logger, clock)
    for i in range(8):
        gate.log_activity(activity(clock() - i))
    assert len(gate.recent_activity(limit=0)) == 5


# --- REPORTING ---

def test_risk_summary(gate):
    gate.record_outcome(failure(400, size=5_000))
    summary = gate.risk_summary()

    # drawdown 8% of 10 -> 24, failures 1/5 -> 5, volume 5% -> 1, losses 40% -> 10
    assert summary["risk_score"] == 40
    assert summary["circuit_breaker"]["active"] is False
    assert summary["daily_volume_used_pct"] == pytest.approx(5.0)
    assert summary["consecutive_failures"] == 1


def test_alert_unsubscribe(gate):
    alerts = []
    unsubscribe = gate.on_alert(alerts.append)
    gate.activate_circuit_breaker()
    unsubscribe()
    gate.deactivate_circuit_breaker()
    gate.activate_circuit_breaker()
    assert len(alerts) == 1


# --- CONCURRENCY ---

def test_concurrent_outcomes_and_assessments(gate, make_opportunity):
    breaker_alerts = []
    tripped = threading.Event()

    def on_alert(alert):
        if alert.event is RiskEvent.CIRCUIT_BREAKER:
            breaker_alerts.append(alert)
            tripped.set()
    gate.on_alert(on_alert)

    opp = make_opportunity()
    # Losses are counted on successful fills too, so only the loss threshold can trip
    loss = TradeResult("opp", success=True, trade_size=100.0, profit=-10.0,
                       buy_venue="uni", sell_venue="binance")

    def assess_after_check():
        already_tripped = tripped.is_set()
        return already_tripped, gate.assess(opp, trade_size=100.0)

    with ThreadPoolExecutor(max_workers=16) as pool:
        futures = []
        for _ in range(200):
            futures.append(pool.submit(gate.record_outcome, loss))
            futures.append(pool.submit(assess_after_check))
        results = [f.result() for f in futures]

    assessments = [r for r in results if isinstance(r, tuple)]
    assert gate.state.daily_volume == pytest.approx(200 * 100.0)
    assert gate.state.recent_losses == pytest.approx(200 * 10.0)
    assert len(breaker_alerts) == 1
    assert all(not a.approved for was_tripped, a in assessments if was_tripped)
    assert not gate.assess(opp).approved
