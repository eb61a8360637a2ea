"""
Tests for settings loading and an end-to-end run through the CLI.
"""

from __future__ import annotations

import json
import os
from dataclasses import replace
from decimal import Decimal

import pytest

from arqtrack.cli import main
from arqtrack.config import ZERO_ADDRESS, load_settings, validate_rpc_url
from arqtrack.db import DB
from arqtrack.models import ContributionStatus, PayoutStatus
from arqtrack.repository import SQLiteContributionRepository, SQLitePayoutRepository

RESEARCHER = "0x" + "c3" * 20


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("ARQ_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("ARQ_DB_PATH", str(tmp_path / "arq.sqlite3"))
    monkeypatch.setenv("ARQ_PUBLIC_DIR", str(tmp_path / "public"))
    monkeypatch.setenv("ARQ_ATTESTER_ADDRESS", "0x" + "ee" * 20)
    monkeypatch.setenv("ARQ_RESEARCHER_ADDRESS", RESEARCHER)
    monkeypatch.setenv("ARQ_RESEARCHER_FID", "4242")
    monkeypatch.setenv("ARQ_RESEARCHER_USERNAME", "@carol")
    return tmp_path


def test_settings_defaults(env, monkeypatch):
    monkeypatch.delenv("ARQ_RESEARCHER_ADDRESS")
    s = load_settings()
    assert s.default_chain == "base"
    assert s.weekly_payout == Decimal("0.08")
    assert s.eth_to_usd_rate == Decimal("2500")
    assert s.target_weekly_tvf == Decimal("150")
    assert s.dry_run is True
    assert s.eas_remote_verify is False
    assert s.researcher_address == ZERO_ADDRESS
    assert s.researcher_username == "carol"
    assert set(s.rpc_urls) == {"base", "celo", "arbitrum"}


@pytest.mark.parametrize(
    "key,value",
    [
        ("ARQ_DEFAULT_CHAIN", "solana"),
        ("ARQ_WEEKLY_PAYOUT", "0"),
        ("ARQ_WEEKLY_PAYOUT", "lots"),
        ("ARQ_ETH_USD_RATE", "-1"),
        ("ARQ_RESEARCHER_FID", "-5"),
        ("ARQ_WEEKLY_PAYOUT", "NaN"),
        ("ARQ_ETH_USD_RATE", "Infinity"),
        ("ARQ_TARGET_WEEKLY_TVF", "sNaN"),
    ],
)
def test_settings_rejects_bad_values(env, monkeypatch, key, value):
    monkeypatch.setenv(key, value)
    with pytest.raises(ValueError):
        load_settings()


def test_settings_refuses_testnet_rpc(env, monkeypatch):
    monkeypatch.setenv("ARQ_RPC_URL_BASE", "https://sepolia.base.org")
    with pytest.raises(RuntimeError):
        load_settings()
    validate_rpc_url("https://mainnet.base.org")


def test_cli_lifecycle(env, capsys):
    main(["init-db"])
    main(["submit", "--title", "Friction map", "--description", "Notes", "--tag", "ops", "--impact", "8"])
    out = capsys.readouterr().out
    assert "OK: submitted contribution" in out

    db = DB(str(env / "arq.sqlite3"))
    contributions = SQLiteContributionRepository(db).get_all()
    assert len(contributions) == 1
    assert contributions[0].status == ContributionStatus.VERIFIED
    assert contributions[0].researcher_fid == 4242

    main(["create-payout", "--chain", "celo"])
    payout = SQLitePayoutRepository(db).get_all()[0]
    assert payout.status == PayoutStatus.PENDING
    assert payout.chain == "celo"

    with pytest.raises(SystemExit) as exc:
        main(["process-payout", payout.id, "--simulate-failure"])
    assert exc.value.code == 1
    assert SQLitePayoutRepository(db).get(payout.id).status == PayoutStatus.FAILED

    main(["retry-payout", payout.id])
    assert SQLitePayoutRepository(db).get(payout.id).status == PayoutStatus.COMPLETED
    assert SQLiteContributionRepository(db).get(contributions[0].id).status == ContributionStatus.PAID

    capsys.readouterr()
    main(["metrics", "--json"])
    metrics = json.loads(capsys.readouterr().out)
    assert metrics["dashboard"]["total_payouts"] == "0.0800"
    assert metrics["dashboard"]["chain_distribution"]["celo"] == 1
    assert metrics["ecology"]["nutrient_flows"]["payouts"] == 1

    main(["report"])
    assert os.path.exists(env / "public" / "latest.json")

    main(["researcher"])
    out = capsys.readouterr().out
    assert "@carol" in out
    assert "0.0800" in out


def test_cli_create_payout_without_contributions(env, capsys):
    main(["create-payout"])
    assert "No payout due" in capsys.readouterr().out


def test_cli_validation_error_exits_nonzero(env, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["submit", "--title", " ", "--description", "x"])
    assert exc.value.code == 1
    assert "ValidationError" in capsys.readouterr().out


def test_cli_reconcile_marks_contributions_of_completed_payouts(env, capsys):
    main(["submit", "--title", "Friction map", "--description", "Notes"])
    main(["create-payout"])

    db = DB(str(env / "arq.sqlite3"))
    contributions = SQLiteContributionRepository(db)
    payouts = SQLitePayoutRepository(db)
    contribution = contributions.get_all()[0]
    payout = payouts.get_all()[0]
    # settle the payout without delivering its completion event
    payouts.put(replace(payout, status=PayoutStatus.COMPLETED, tx_hash="0x" + "ab" * 32))

    capsys.readouterr()
    main(["reconcile"])
    assert "marked 1 contributions paid" in capsys.readouterr().out
    assert contributions.get(contribution.id).status == ContributionStatus.PAID

    main(["reconcile"])
    assert "already match" in capsys.readouterr().out
