"""
Ecological metrics: dashboard aggregates and the system-health class.

Everything here is a pure function of the contribution and payout
collections plus the current instant. Nothing is cached or stored.
"""
from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from arqtrack.clock import prior_week, trailing_week, utc_now
from arqtrack.models import (
    SUPPORTED_CHAINS,
    Contribution,
    ContributionStatus,
    DashboardMetrics,
    EcologicalSystem,
    GrowthSignals,
    NutrientFlows,
    Payout,
    PayoutStatus,
    SystemHealth,
)
from arqtrack.payouts import ZERO, format_amount, format_usd, parse_amount, total_paid

ETH_TO_USD_RATE = Decimal("2500")
TARGET_WEEKLY_TVF = Decimal("150")

THRIVING_GROWTH = 20
THRIVING_ENGAGEMENT = 80
GROWING_GROWTH = 0
GROWING_ENGAGEMENT = 60
DECLINING_GROWTH = -20
DECLINING_ENGAGEMENT = 40

HEALTH_DESCRIPTIONS = {
    SystemHealth.THRIVING: "Excellent growth and engagement",
    SystemHealth.GROWING: "Positive growth trajectory",
    SystemHealth.STABLE: "Steady state operation",
    SystemHealth.DECLINING: "Needs attention and optimization",
}


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves toward positive infinity."""
    return int(math.floor(value + 0.5))


def contribution_growth(current: int, prior: int) -> float:
    """Week-over-week change in percent."""
    if prior > 0:
        return (current - prior) / prior * 100
    return 100.0 if current > 0 else 0.0


def engagement_rate(attested: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return attested / total * 100


def classify_health(growth: float, engagement: float) -> SystemHealth:
    # Order matters: the first matching class wins
    if growth > THRIVING_GROWTH and engagement > THRIVING_ENGAGEMENT:
        return SystemHealth.THRIVING
    if growth > GROWING_GROWTH and engagement > GROWING_ENGAGEMENT:
        return SystemHealth.GROWING
    if growth < DECLINING_GROWTH or engagement < DECLINING_ENGAGEMENT:
        return SystemHealth.DECLINING
    return SystemHealth.STABLE


def describe_health(health: SystemHealth) -> str:
    return HEALTH_DESCRIPTIONS.get(SystemHealth(health), "System status unknown")


def _weekly(contributions: Iterable[Contribution], now: datetime) -> List[Contribution]:
    window = trailing_week(now)
    return [c for c in contributions if window.contains(c.timestamp)]


def compute_ecological_system(
    contributions: Iterable[Contribution],
    payouts: Iterable[Payout],
    now: Optional[datetime] = None,
) -> EcologicalSystem:
    now = now or utc_now()
    contributions = list(contributions)
    week = trailing_week(now)
    previous = prior_week(now)

    weekly = _weekly(contributions, now)
    weekly_attested = [c for c in weekly if c.attestation_id]
    weekly_payouts = [
        p for p in payouts
        if p.status == PayoutStatus.COMPLETED and week.contains(p.timestamp)
    ]
    prior_count = sum(1 for c in contributions if previous.contains(c.timestamp))

    growth = contribution_growth(len(weekly), prior_count)
    engagement = engagement_rate(len(weekly_attested), len(weekly))

    return EcologicalSystem(
        nutrient_flows=NutrientFlows(
            contributions=len(weekly),
            attestations=len(weekly_attested),
            payouts=len(weekly_payouts),
        ),
        growth_signals=GrowthSignals(
            new_researchers=len({c.researcher_fid for c in weekly}),
            contribution_growth=round_half_up(growth),
            engagement_rate=round_half_up(engagement),
        ),
        system_health=classify_health(growth, engagement),
    )


def chain_distribution(payouts: Iterable[Payout]) -> Dict[str, int]:
    dist = {chain: 0 for chain in SUPPORTED_CHAINS}
    for p in payouts:
        if p.status == PayoutStatus.COMPLETED and p.chain in dist:
            dist[p.chain] += 1
    return dist


def pending_attestations(contributions: Iterable[Contribution]) -> int:
    return sum(
        1 for c in contributions
        if c.status == ContributionStatus.PENDING or not c.attestation_id
    )


def compute_dashboard(
    contributions: Iterable[Contribution],
    payouts: Iterable[Payout],
    now: Optional[datetime] = None,
    eth_to_usd: Decimal = ETH_TO_USD_RATE,
) -> DashboardMetrics:
    now = now or utc_now()
    contributions = list(contributions)
    payouts = list(payouts)
    week = trailing_week(now)

    weekly = _weekly(contributions, now)
    weekly_paid = sum(
        (
            parse_amount(p.amount) for p in payouts
            if p.status == PayoutStatus.COMPLETED and week.contains(p.timestamp)
        ),
        ZERO,
    )
    paid = total_paid(payouts)

    return DashboardMetrics(
        total_contributions=len(contributions),
        total_payouts=paid,
        total_value_flow=format_usd(parse_amount(paid) * parse_amount(eth_to_usd)),
        active_researchers=len({c.researcher_fid for c in weekly}),
        weekly_contributions=len(weekly),
        weekly_payouts=format_amount(weekly_paid),
        pending_attestations=pending_attestations(contributions),
        chain_distribution=chain_distribution(payouts),
    )


def weekly_tvf(dashboard: DashboardMetrics, eth_to_usd: Decimal = ETH_TO_USD_RATE) -> str:
    """This week's completed payout volume in USD."""
    return format_usd(parse_amount(dashboard.weekly_payouts) * parse_amount(eth_to_usd))


def tvf_progress(
    dashboard: DashboardMetrics,
    eth_to_usd: Decimal = ETH_TO_USD_RATE,
    target: Decimal = TARGET_WEEKLY_TVF,
) -> float:
    """Percent of the weekly TVF target reached, capped at 100."""
    target = parse_amount(target)
    if target <= 0:
        return 100.0
    tvf = parse_amount(dashboard.weekly_payouts) * parse_amount(eth_to_usd)
    return float(min(tvf / target * 100, Decimal(100)))
