from __future__ import annotations

import json
import os
from dataclasses import asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List

from arqtrack.metrics import describe_health, tvf_progress, weekly_tvf
from arqtrack.models import DashboardMetrics, EcologicalSystem, Payout


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def write_report(public_dir: str, week_id: str, report: Dict[str, Any]) -> str:
    ensure_dir(public_dir)
    ensure_dir(os.path.join(public_dir, "history"))

    latest_path = os.path.join(public_dir, "latest.json")
    hist_path = os.path.join(public_dir, "history", f"{week_id}.json")

    payload = json.dumps(report, indent=2, sort_keys=True)
    with open(latest_path, "w", encoding="utf-8") as f:
        f.write(payload)
    with open(hist_path, "w", encoding="utf-8") as f:
        f.write(payload)

    return latest_path


def ecology_to_dict(eco: EcologicalSystem) -> Dict[str, Any]:
    return {
        "nutrient_flows": asdict(eco.nutrient_flows),
        "growth_signals": asdict(eco.growth_signals),
        "system_health": eco.system_health.value,
        "system_health_description": describe_health(eco.system_health),
    }


def build_report(
    week_id: str,
    dashboard: DashboardMetrics,
    ecology: EcologicalSystem,
    weekly_payouts: List[Payout],
    eth_to_usd: Decimal,
    target_weekly_tvf: Decimal,
    notes: List[str],
) -> Dict[str, Any]:
    return {
        "week_id": week_id,
        "generated_at_utc": utc_now_iso(),
        "dashboard": asdict(dashboard),
        "ecology": ecology_to_dict(ecology),
        "weekly_tvf_usd": weekly_tvf(dashboard, eth_to_usd),
        "tvf_progress_pct": round(tvf_progress(dashboard, eth_to_usd, target_weekly_tvf), 2),
        "target_weekly_tvf_usd": str(target_weekly_tvf),
        "eth_to_usd_rate": str(eth_to_usd),
        "payouts": [p.to_dict() for p in weekly_payouts],
        "notes": notes,
    }
