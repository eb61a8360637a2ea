from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from arqtrack.clock import trailing_week, utc_now
from arqtrack.models import Contribution, Payout, Researcher, ResearcherProfile
from arqtrack.payouts import total_paid


def build_researcher(
    profile: ResearcherProfile,
    contributions: Iterable[Contribution],
    payouts: Iterable[Payout],
    now: Optional[datetime] = None,
) -> Researcher:
    """
    Recompute a researcher's stats from the stores.
    The result is a view; nothing here is written back.
    """
    now = now or utc_now()
    week = trailing_week(now)
    own_contributions = [c for c in contributions if c.researcher_fid == profile.fid]
    own_payouts = [p for p in payouts if p.researcher_fid == profile.fid]

    join_date = profile.join_date
    if own_contributions:
        first = min(c.timestamp for c in own_contributions)
        if join_date is None or first < join_date:
            join_date = first

    active = any(week.contains(c.timestamp) for c in own_contributions)

    return Researcher(
        fid=profile.fid,
        address=profile.address,
        username=profile.username,
        display_name=profile.display_name,
        total_contributions=len(own_contributions),
        total_earned=total_paid(own_payouts),
        weekly_earnings=total_paid(p for p in own_payouts if week.contains(p.timestamp)),
        join_date=join_date,
        status="active" if active else "inactive",
    )
