from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from arqtrack.attestation import EASService
from arqtrack.chain_rpc import ChainRPC
from arqtrack.clock import utc_now, week_id
from arqtrack.config import Settings, load_settings
from arqtrack.contributions import ContributionStore
from arqtrack.db import DB, connect, init_db, load_profile, save_profile
from arqtrack.errors import ArqTrackError, AttestationError, NoEligiblePayout, PaymentError
from arqtrack.metrics import compute_dashboard, compute_ecological_system, describe_health, tvf_progress, weekly_tvf
from arqtrack.models import (
    SUPPORTED_CHAINS,
    ContributionData,
    ContributionStatus,
    PayoutStatus,
    ResearcherProfile,
)
from arqtrack.payer import SimulatedPayer
from arqtrack.payouts import PayoutEngine, format_amount, wei_to_eth
from arqtrack.reporting import build_report, ecology_to_dict, write_report
from arqtrack.repository import SQLiteContributionRepository, SQLitePayoutRepository
from arqtrack.researchers import build_researcher


def _session_profile(s: Settings) -> ResearcherProfile:
    return ResearcherProfile(
        fid=s.researcher_fid,
        address=s.researcher_address,
        username=s.researcher_username,
        display_name=s.researcher_display_name,
        join_date=utc_now(),
    )


def _resolve_profile(s: Settings, db: DB, fid: Optional[int]) -> ResearcherProfile:
    """
    The session identity, or a cached profile when another fid is requested.
    The session identity is cached on every call, keeping its first join date.
    """
    session = _session_profile(s)
    with connect(db) as conn:
        cached = load_profile(conn, session.fid)
        if cached is not None and cached.join_date is not None:
            session = ResearcherProfile(
                fid=session.fid,
                address=session.address,
                username=session.username,
                display_name=session.display_name,
                join_date=cached.join_date,
            )
        save_profile(conn, session, utc_now().isoformat())
        if fid is None or fid == session.fid:
            return session
        other = load_profile(conn, fid)
    if other is None:
        raise SystemExit(f"ERROR: no cached profile for fid {fid}")
    return other


def _build(s: Settings, fail_next: int = 0) -> Tuple[DB, ContributionStore, PayoutEngine]:
    if not s.dry_run:
        raise RuntimeError("FATAL: ARQ_DRY_RUN=false but no live payer is available. Refusing to run.")

    db = DB(s.db_path)
    init_db(db)
    store = ContributionStore(
        repo=SQLiteContributionRepository(db),
        gateway=EASService(chain=s.default_chain, remote_verify=s.eas_remote_verify),
        attester_address=s.attester_address,
    )
    engine = PayoutEngine(
        repo=SQLitePayoutRepository(db),
        payer=SimulatedPayer(fail_next=fail_next),
        weekly_amount=s.weekly_payout,
    )
    engine.subscribe(store.handle_payout_completed)
    return db, store, engine


def cmd_init_db() -> None:
    s = load_settings()
    init_db(DB(s.db_path))
    print(f"OK: initialized DB at {s.db_path}")


def cmd_submit(
    title: str,
    description: str,
    tags: List[str],
    impact_score: int,
    post_url: Optional[str],
) -> int:
    s = load_settings()
    db, store, _ = _build(s)
    researcher = _resolve_profile(s, db, None)

    contribution, attestation_error = store.submit_with_warning(
        ContributionData(
            title=title,
            description=description,
            tags=tuple(tags),
            impact_score=impact_score,
            post_url=post_url,
        ),
        researcher,
    )
    print(f"OK: submitted contribution {contribution.id}")
    if attestation_error is not None:
        print(f"WARNING: contribution saved but attestation failed: {attestation_error}")
        print(f"  Run 'python -m arqtrack retry-attestation {contribution.id}' to try again")
        return 0
    print(f"  Status: {contribution.status.value}")
    print(f"  Attestation: {contribution.attestation_id}")
    return 0


def cmd_retry_attestation(contribution_id: str) -> int:
    s = load_settings()
    _, store, _ = _build(s)
    before = store.get(contribution_id)
    try:
        after = store.retry_attestation(contribution_id)
    except AttestationError as e:
        print(f"ERROR: attestation failed again for {contribution_id}: {e}")
        return 1
    if before.status != ContributionStatus.PENDING:
        print(f"SKIP: contribution {contribution_id} is already {before.status.value}")
    else:
        print(f"OK: contribution {contribution_id} verified with attestation {after.attestation_id}")
    return 0


def cmd_verify_attestation(contribution_id: str) -> int:
    s = load_settings()
    _, store, _ = _build(s)
    valid = store.verify_attestation(contribution_id)
    print(f"{'OK' if valid else 'INVALID'}: attestation for {contribution_id}")
    return 0 if valid else 1


def cmd_list_contributions(fid: Optional[int], status: Optional[str]) -> int:
    s = load_settings()
    _, store, _ = _build(s)
    rows = store.by_status(ContributionStatus(status)) if status else store.all()
    if fid is not None:
        rows = [c for c in rows if c.researcher_fid == fid]

    if not rows:
        print("No contributions found")
        return 0

    print(f"{'ID':<42} {'FID':<8} {'Status':<10} {'Impact':<7} {'Submitted (UTC)':<27} Title")
    print("-" * 120)
    for c in rows:
        title = c.title[:40] + "..." if len(c.title) > 40 else c.title
        print(f"{c.id:<42} {c.researcher_fid:<8} {c.status.value:<10} {c.impact_score:<7} {c.timestamp.isoformat():<27} {title}")
    print(f"\nTotal: {len(rows)}")
    return 0


def cmd_create_payout(fid: Optional[int], chain: Optional[str]) -> int:
    s = load_settings()
    db, store, engine = _build(s)
    researcher = _resolve_profile(s, db, fid)
    chain = chain or s.default_chain

    # Paid status may lag a completed payout if its event handler failed
    store.reconcile(engine.repo.get_all())
    contributions = store.by_researcher(researcher.fid)
    try:
        payout = engine.create_payout(researcher, contributions, chain)
    except NoEligiblePayout as e:
        print(f"No payout due: {e}")
        return 0
    print(f"OK: created payout {payout.id}")
    print(f"  Amount: {payout.amount} on {payout.chain} to {payout.researcher_address}")
    print(f"  Covers {len(payout.contribution_ids)} contributions")
    print(f"  Run 'python -m arqtrack process-payout {payout.id}' to send")
    return 0


def cmd_process_payout(payout_id: str, simulate_failure: bool) -> int:
    s = load_settings()
    _, _, engine = _build(s, fail_next=1 if simulate_failure else 0)
    try:
        payout = engine.process_payout(payout_id)
    except PaymentError as e:
        print(f"ERROR: payout {payout_id} failed: {e}")
        print(f"  Run 'python -m arqtrack retry-payout {payout_id}' to try again")
        return 1
    print(f"OK: sent {payout.amount} on {payout.chain} to {payout.researcher_address} - tx: {payout.tx_hash}")
    return 0


def cmd_retry_payout(payout_id: str) -> int:
    s = load_settings()
    _, _, engine = _build(s)
    try:
        payout = engine.retry_failed_payout(payout_id)
    except PaymentError as e:
        print(f"ERROR: retry of payout {payout_id} failed: {e}")
        return 1
    if payout is None:
        print(f"SKIP: payout {payout_id} is {engine.get(payout_id).status.value}, only failed payouts can be retried")
        return 0
    print(f"OK: sent {payout.amount} on {payout.chain} to {payout.researcher_address} - tx: {payout.tx_hash}")
    return 0


def cmd_reconcile() -> int:
    s = load_settings()
    _, store, engine = _build(s)
    paid = store.reconcile(engine.repo.get_all())
    if not paid:
        print("OK: contributions already match completed payouts")
        return 0
    print(f"OK: marked {len(paid)} contributions paid")
    for c in paid:
        print(f"  {c.id}")
    return 0


def cmd_list_payouts(fid: Optional[int], status: Optional[str], week: bool) -> int:
    s = load_settings()
    _, _, engine = _build(s)
    rows = engine.weekly() if week else engine.all()
    if status:
        rows = [p for p in rows if p.status == PayoutStatus(status)]
    if fid is not None:
        rows = [p for p in rows if p.researcher_fid == fid]

    if not rows:
        print("No payouts found")
        return 0

    print(f"{'ID':<40} {'FID':<8} {'Status':<11} {'Chain':<9} {'Amount':<10} Tx")
    print("-" * 120)
    for p in rows:
        tx = p.tx_hash[:10] + "..." + p.tx_hash[-8:] if p.tx_hash else "-"
        print(f"{p.id:<40} {p.researcher_fid:<8} {p.status.value:<11} {p.chain:<9} {p.amount:<10} {tx}")
    print("-" * 120)
    print(f"Total paid (all time): {engine.total_paid()}")
    return 0


def cmd_metrics(as_json: bool) -> int:
    s = load_settings()
    _, store, engine = _build(s)
    now = utc_now()
    contributions = store.repo.get_all()
    payouts = engine.repo.get_all()
    dashboard = compute_dashboard(contributions, payouts, now, s.eth_to_usd_rate)
    ecology = compute_ecological_system(contributions, payouts, now)

    if as_json:
        print(json.dumps({"dashboard": asdict(dashboard), "ecology": ecology_to_dict(ecology)}, indent=2, sort_keys=True))
        return 0

    print("=" * 60)
    print("DASHBOARD")
    print("=" * 60)
    print(f"Total contributions:   {dashboard.total_contributions}")
    print(f"Weekly contributions:  {dashboard.weekly_contributions}")
    print(f"Active researchers:    {dashboard.active_researchers}")
    print(f"Pending attestations:  {dashboard.pending_attestations}")
    print(f"Total paid:            {dashboard.total_payouts}")
    print(f"Weekly paid:           {dashboard.weekly_payouts}")
    print(f"Total value flow:      ${dashboard.total_value_flow}")
    print(f"Weekly TVF:            ${weekly_tvf(dashboard, s.eth_to_usd_rate)} "
          f"({tvf_progress(dashboard, s.eth_to_usd_rate, s.target_weekly_tvf):.1f}% of ${s.target_weekly_tvf})")
    dist = ", ".join(f"{chain}={dashboard.chain_distribution.get(chain, 0)}" for chain in SUPPORTED_CHAINS)
    print(f"Chain distribution:    {dist}")
    print("=" * 60)
    print("ECOLOGY")
    print("=" * 60)
    flows = ecology.nutrient_flows
    growth = ecology.growth_signals
    print(f"Nutrient flows:        contributions={flows.contributions} attestations={flows.attestations} payouts={flows.payouts}")
    print(f"New researchers:       {growth.new_researchers}")
    print(f"Contribution growth:   {growth.contribution_growth}%")
    print(f"Engagement rate:       {growth.engagement_rate}%")
    print(f"System health:         {ecology.system_health.value} ({describe_health(ecology.system_health)})")
    return 0


def cmd_researcher(fid: Optional[int]) -> int:
    s = load_settings()
    db, store, engine = _build(s)
    profile = _resolve_profile(s, db, fid)
    r = build_researcher(profile, store.repo.get_all(), engine.repo.get_all())
    print(f"@{r.username} ({r.display_name}) fid={r.fid}")
    print(f"  Address:        {r.address}")
    print(f"  Status:         {r.status}")
    print(f"  Joined:         {r.join_date.isoformat() if r.join_date else '-'}")
    print(f"  Contributions:  {r.total_contributions}")
    print(f"  Total earned:   {r.total_earned}")
    print(f"  This week:      {r.weekly_earnings}")
    return 0


def cmd_report() -> int:
    s = load_settings()
    _, store, engine = _build(s)
    now = utc_now()
    contributions = store.repo.get_all()
    payouts = engine.repo.get_all()
    dashboard = compute_dashboard(contributions, payouts, now, s.eth_to_usd_rate)
    ecology = compute_ecological_system(contributions, payouts, now)

    wid = week_id(now)
    report = build_report(
        week_id=wid,
        dashboard=dashboard,
        ecology=ecology,
        weekly_payouts=engine.weekly(now),
        eth_to_usd=s.eth_to_usd_rate,
        target_weekly_tvf=s.target_weekly_tvf,
        notes=[
            f"weekly_payout={format_amount(s.weekly_payout)}",
            f"dry_run={s.dry_run}",
        ],
    )
    latest_path = write_report(s.public_dir, wid, report)
    print(f"OK: wrote report for {wid}")
    print(f"Report: {latest_path}")
    return 0


def cmd_treasury_balance(chain: Optional[str]) -> int:
    s = load_settings()
    chain = chain or s.default_chain
    if not s.treasury_address:
        print("WARNING: ARQ_TREASURY_ADDRESS not set, skipping balance check")
        return 0
    rpc = ChainRPC(url=s.rpc_urls[chain], timeout_s=20)
    try:
        wei = rpc.get_balance_wei(s.treasury_address)
    except RuntimeError as e:
        print(f"ERROR: {e}")
        return 1
    print(f"Treasury {s.treasury_address} on {chain}: {wei_to_eth(wei):.6f} ({wei} wei)")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="arqtrack")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db")

    p_submit = sub.add_parser("submit", help="Submit a contribution as the session researcher")
    p_submit.add_argument("--title", required=True)
    p_submit.add_argument("--description", required=True)
    p_submit.add_argument("--tag", action="append", default=[], help="Repeat for up to 5 tags")
    p_submit.add_argument("--impact", type=int, default=5, help="Impact score 1-10 (default: 5)")
    p_submit.add_argument("--post-url", type=str, default=None)

    p_retry_att = sub.add_parser("retry-attestation", help="Retry attestation for a pending contribution")
    p_retry_att.add_argument("contribution_id")

    p_verify = sub.add_parser("verify-attestation", help="Check a contribution's attestation is still valid")
    p_verify.add_argument("contribution_id")

    p_list_c = sub.add_parser("list-contributions")
    p_list_c.add_argument("--fid", type=int, default=None)
    p_list_c.add_argument("--status", choices=[x.value for x in ContributionStatus], default=None)

    p_create = sub.add_parser("create-payout", help="Create this week's payout for a researcher")
    p_create.add_argument("--fid", type=int, default=None, help="Defaults to the session researcher")
    p_create.add_argument("--chain", choices=list(SUPPORTED_CHAINS), default=None)

    p_process = sub.add_parser("process-payout", help="Send a pending payout")
    p_process.add_argument("payout_id")
    p_process.add_argument("--simulate-failure", action="store_true", help="Force the dry-run transfer to fail")

    p_retry = sub.add_parser("retry-payout", help="Retry a failed payout")
    p_retry.add_argument("payout_id")

    sub.add_parser("reconcile", help="Mark contributions of completed payouts as paid")

    p_list_p = sub.add_parser("list-payouts")
    p_list_p.add_argument("--fid", type=int, default=None)
    p_list_p.add_argument("--status", choices=[x.value for x in PayoutStatus], default=None)
    p_list_p.add_argument("--week", action="store_true", help="Only payouts from the trailing 7 days")

    p_metrics = sub.add_parser("metrics", help="Show dashboard and ecological health")
    p_metrics.add_argument("--json", action="store_true")

    p_researcher = sub.add_parser("researcher", help="Show a researcher's profile and earnings")
    p_researcher.add_argument("--fid", type=int, default=None)

    sub.add_parser("report", help="Write public/latest.json and the weekly history file")

    p_balance = sub.add_parser("treasury-balance")
    p_balance.add_argument("--chain", choices=list(SUPPORTED_CHAINS), default=None)

    args = parser.parse_args(argv)

    load_dotenv()
    logging.basicConfig(
        level=os.getenv("ARQ_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.cmd == "init-db":
            cmd_init_db()
            return
        if args.cmd == "submit":
            code = cmd_submit(args.title, args.description, args.tag, args.impact, args.post_url)
        elif args.cmd == "retry-attestation":
            code = cmd_retry_attestation(args.contribution_id)
        elif args.cmd == "verify-attestation":
            code = cmd_verify_attestation(args.contribution_id)
        elif args.cmd == "list-contributions":
            code = cmd_list_contributions(args.fid, args.status)
        elif args.cmd == "create-payout":
            code = cmd_create_payout(args.fid, args.chain)
        elif args.cmd == "process-payout":
            code = cmd_process_payout(args.payout_id, bool(args.simulate_failure))
        elif args.cmd == "retry-payout":
            code = cmd_retry_payout(args.payout_id)
        elif args.cmd == "reconcile":
            code = cmd_reconcile()
        elif args.cmd == "list-payouts":
            code = cmd_list_payouts(args.fid, args.status, bool(args.week))
        elif args.cmd == "metrics":
            code = cmd_metrics(bool(args.json))
        elif args.cmd == "researcher":
            code = cmd_researcher(args.fid)
        elif args.cmd == "report":
            code = cmd_report()
        elif args.cmd == "treasury-balance":
            code = cmd_treasury_balance(args.chain)
        else:
            raise SystemExit("Unknown command")
    except ArqTrackError as e:
        print(f"ERROR: {type(e).__name__}: {e}")
        sys.exit(1)

    if code:
        sys.exit(code)
