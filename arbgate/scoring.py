# arbgate/scoring.py
"""
Deterministic opportunity scoring.

Confidence is an explainable weighted sum, not a learned model. Any change to
the step tables or the weights must bump SCORING_VERSION so recorded
opportunities can be traced back to the formula that scored them.
"""
from typing import Iterable, List

from .config import ScoringSettings
from .models import OpportunityType, VenueProfile

SCORING_VERSION = "1"

HIGH_SPREAD_FLAG = "HIGH_SPREAD_RISK: spread anomalously high, possible stale price data"
LOW_LIQUIDITY_FLAG = "LOW_LIQUIDITY_RISK: limited liquidity may cause high slippage"
SETTLEMENT_FLAG = "SETTLEMENT_RISK: requires moving funds between an exchange and a chain"
TIMING_FLAG = "TIMING_RISK: exchange deposits and withdrawals may be delayed"
VENUE_FLAG = "VENUE_RISK: trading on a less established venue"
MEV_FLAG = "MEV_RISK: on-chain leg may be front-run"


def confidence_score(spread_pct: float, liquidity_usd: float, gas_cost_usd: float,
                     venues: Iterable[VenueProfile], settings: ScoringSettings) -> float:
    """Base confidence plus fixed steps for spread, liquidity, venue reliability and cheap gas. Capped at 1.0."""
    confidence = settings.base_confidence

    for threshold, step in settings.spread_steps:
        if spread_pct > threshold:
            confidence += step

    for threshold, step in settings.liquidity_steps:
        if liquidity_usd > threshold:
            confidence += step

    if any(v.reliable for v in venues):
        confidence += settings.reliable_venue_bonus

    if gas_cost_usd < settings.low_gas_usd:
        confidence += settings.low_gas_bonus

    return round(min(confidence, 1.0), 6)


def rank_score(confidence: float) -> int:
    return int(round(confidence * 100))


def risk_flags(opp_type: OpportunityType, buy: VenueProfile, sell: VenueProfile,
               spread_pct: float, liquidity_usd: float, settings: ScoringSettings) -> List[str]:
    flags = []

    if spread_pct > settings.anomalous_spread_pct:
        flags.append(HIGH_SPREAD_FLAG)

    if liquidity_usd < settings.low_liquidity_usd:
        flags.append(LOW_LIQUIDITY_FLAG)

    if opp_type.involves_cex:
        flags.append(SETTLEMENT_FLAG)
        flags.append(TIMING_FLAG)

    if not (buy.reliable and sell.reliable):
        flags.append(VENUE_FLAG)

    if buy.mev_exposed or sell.mev_exposed:
        flags.append(MEV_FLAG)

    return flags
