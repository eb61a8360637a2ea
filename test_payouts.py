"""
Tests for payout eligibility and the payout state machine.
"""

from __future__ import annotations

import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import ALICE, BOB, NOW, make_contribution
from arqtrack.errors import NoEligiblePayout, PaymentError, PayoutNotFound, PayoutStateError, ValidationError
from arqtrack.models import ContributionStatus, PayoutStatus
from arqtrack.payer import SimulatedPayer
from arqtrack.payouts import (
    PayoutEngine,
    compute_eligibility,
    eth_to_wei,
    format_amount,
    total_paid,
    wei_to_eth,
)


def test_eligibility_zero_without_recent_verified():
    assert compute_eligibility([], now=NOW) == Decimal("0")
    old = make_contribution("old", age=timedelta(days=8))
    pending = make_contribution("p", status=ContributionStatus.PENDING)
    paid = make_contribution("x", status=ContributionStatus.PAID)
    assert compute_eligibility([old, pending, paid], now=NOW) == Decimal("0")


def test_eligibility_flat_rate_regardless_of_count():
    one = [make_contribution("a")]
    two = one + [make_contribution("b", age=timedelta(hours=2))]
    assert compute_eligibility(one, now=NOW) == Decimal("0.08")
    assert compute_eligibility(two, now=NOW) == compute_eligibility(one, now=NOW)


def test_eligibility_window_edge():
    edge = make_contribution("edge", age=timedelta(days=7))
    just_out = make_contribution("out", age=timedelta(days=7, seconds=1))
    assert compute_eligibility([edge], now=NOW) == Decimal("0.08")
    assert compute_eligibility([just_out], now=NOW) == Decimal("0")


def test_amount_formatting():
    assert format_amount("0.08") == "0.0800"
    assert format_amount(Decimal("1.23456")) == "1.2346"
    assert eth_to_wei("0.08") == 80_000_000_000_000_000
    assert wei_to_eth(10 ** 18) == Decimal(1)


def test_create_payout_covers_qualifying_contributions(engine, store, contribution_repo):
    for c in (
        make_contribution("a"),
        make_contribution("b", age=timedelta(days=3)),
        make_contribution("old", age=timedelta(days=10)),
        make_contribution("p", status=ContributionStatus.PENDING),
    ):
        contribution_repo.put(c)

    payout = engine.create_payout(ALICE, store.by_researcher(ALICE.fid), "celo")
    assert payout.status == PayoutStatus.PENDING
    assert payout.amount == "0.0800"
    assert payout.chain == "celo"
    assert set(payout.contribution_ids) == {"a", "b"}
    assert payout.tx_hash is None
    assert payout.timestamp == NOW
    assert engine.get(payout.id) == payout
    for cid in payout.contribution_ids:
        assert store.get(cid).status == ContributionStatus.VERIFIED


def test_create_payout_refuses_when_nothing_eligible(engine, payout_repo):
    with pytest.raises(NoEligiblePayout):
        engine.create_payout(ALICE, [make_contribution("old", age=timedelta(days=9))])
    assert payout_repo.get_all() == []


def test_create_payout_ignores_other_researchers(engine):
    with pytest.raises(NoEligiblePayout):
        engine.create_payout(ALICE, [make_contribution("b", fid=BOB.fid)])


def test_create_payout_rejects_unknown_chain(engine):
    with pytest.raises(ValidationError):
        engine.create_payout(ALICE, [make_contribution("a")], "solana")


def test_process_payout_completes_and_marks_contributions_paid(engine, store, contribution_repo, payer):
    contribution_repo.put(make_contribution("a"))
    payout = engine.create_payout(ALICE, store.all())

    done = engine.process_payout(payout.id)

    assert done.status == PayoutStatus.COMPLETED
    assert done.tx_hash and done.tx_hash.startswith("0x") and len(done.tx_hash) == 66
    assert store.get("a").status == ContributionStatus.PAID
    assert payer.sent[0][:3] == (ALICE.address, "0.0800", "base")
    assert engine.total_paid() == "0.0800"


def test_completed_is_terminal(engine, store, contribution_repo):
    contribution_repo.put(make_contribution("a"))
    payout = engine.create_payout(ALICE, store.all())
    engine.process_payout(payout.id)

    with pytest.raises(PayoutStateError):
        engine.process_payout(payout.id)
    assert engine.retry_failed_payout(payout.id) is None
    assert engine.get(payout.id).status == PayoutStatus.COMPLETED


def test_failed_payout_leaves_contributions_and_retries(payout_repo, store, contribution_repo, clock):
    payer = SimulatedPayer(fail_next=1)
    engine = PayoutEngine(payout_repo, payer, clock=clock)
    engine.subscribe(store.handle_payout_completed)
    contribution_repo.put(make_contribution("a"))
    payout = engine.create_payout(ALICE, store.all())

    with pytest.raises(PaymentError):
        engine.process_payout(payout.id)
    failed = engine.get(payout.id)
    assert failed.status == PayoutStatus.FAILED
    assert failed.tx_hash is None
    assert store.get("a").status == ContributionStatus.VERIFIED
    assert engine.total_paid() == "0.0000"

    # failed cannot be processed directly, only retried
    with pytest.raises(PayoutStateError):
        engine.process_payout(payout.id)

    retried = engine.retry_failed_payout(payout.id)
    assert retried is not None
    assert retried.status == PayoutStatus.COMPLETED
    assert store.get("a").status == ContributionStatus.PAID


def test_retry_is_noop_unless_failed(engine, store, contribution_repo):
    contribution_repo.put(make_contribution("a"))
    payout = engine.create_payout(ALICE, store.all())
    assert engine.retry_failed_payout(payout.id) is None
    assert engine.get(payout.id).status == PayoutStatus.PENDING


def test_disconnected_payer_changes_nothing(payout_repo, store, contribution_repo, clock):
    engine = PayoutEngine(payout_repo, SimulatedPayer(connected=False), clock=clock)
    contribution_repo.put(make_contribution("a"))
    payout = engine.create_payout(ALICE, store.all())
    with pytest.raises(PaymentError):
        engine.process_payout(payout.id)
    assert engine.get(payout.id).status == PayoutStatus.PENDING


def test_unknown_payout(engine):
    with pytest.raises(PayoutNotFound):
        engine.process_payout("payout_missing")
    with pytest.raises(PayoutNotFound):
        engine.retry_failed_payout("payout_missing")


class BlockingPayer:
    """Payer that holds the first transfer until released."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def is_connected(self) -> bool:
        return True

    def send(self, to_address: str, amount: str, chain: str) -> str:
        self.calls += 1
        self.entered.set()
        assert self.release.wait(timeout=5)
        return "0x" + "ab" * 32


def test_concurrent_process_on_same_id_sends_once(payout_repo, store, contribution_repo, clock):
    payer = BlockingPayer()
    engine = PayoutEngine(payout_repo, payer, clock=clock)
    contribution_repo.put(make_contribution("a"))
    payout = engine.create_payout(ALICE, store.all())

    results = []
    worker = threading.Thread(target=lambda: results.append(engine.process_payout(payout.id)))
    worker.start()
    assert payer.entered.wait(timeout=5)

    assert engine.get(payout.id).status == PayoutStatus.PROCESSING
    with pytest.raises(PayoutStateError):
        engine.process_payout(payout.id)
    assert engine.retry_failed_payout(payout.id) is None

    payer.release.set()
    worker.join(timeout=5)
    assert payer.calls == 1
    assert results[0].status == PayoutStatus.COMPLETED


def test_queries(engine, store, contribution_repo, payout_repo):
    contribution_repo.put(make_contribution("a"))
    contribution_repo.put(make_contribution("b", fid=BOB.fid))
    pa = engine.create_payout(ALICE, store.all())
    pb = engine.create_payout(BOB, store.all(), "arbitrum")
    engine.process_payout(pa.id)

    assert [p.id for p in engine.by_researcher(BOB.fid)] == [pb.id]
    assert [p.id for p in engine.by_status(PayoutStatus.COMPLETED)] == [pa.id]
    assert [p.id for p in engine.pending_payouts()] == [pb.id]
    assert {p.id for p in engine.weekly(NOW)} == {pa.id, pb.id}
    assert engine.weekly(NOW + timedelta(days=8)) == []
    assert total_paid(payout_repo.get_all()) == "0.0800"


class BrokenTransportPayer(SimulatedPayer):
    """Payer whose transport raises something other than PaymentError."""

    def __init__(self, exc: Exception) -> None:
        super().__init__()
        self.exc = exc

    def send(self, to_address: str, amount: str, chain: str) -> str:
        if self.exc is not None:
            exc, self.exc = self.exc, None
            raise exc
        return super().send(to_address, amount, chain)


@pytest.mark.parametrize("exc", [TimeoutError("rpc timed out"), RuntimeError("nonce too low"), ConnectionError("reset")])
def test_transport_error_marks_payout_failed_and_retryable(payout_repo, store, contribution_repo, clock, exc):
    engine = PayoutEngine(payout_repo, BrokenTransportPayer(exc), clock=clock)
    engine.subscribe(store.handle_payout_completed)
    contribution_repo.put(make_contribution("a"))
    payout = engine.create_payout(ALICE, store.all())

    with pytest.raises(PaymentError) as info:
        engine.process_payout(payout.id)
    assert info.value.__cause__ is exc
    assert engine.get(payout.id).status == PayoutStatus.FAILED
    assert store.get("a").status == ContributionStatus.VERIFIED

    retried = engine.retry_failed_payout(payout.id)
    assert retried.status == PayoutStatus.COMPLETED
    assert store.get("a").status == ContributionStatus.PAID


def test_failing_subscriber_does_not_undo_settled_payout(payout_repo, store, contribution_repo, payer, clock):
    engine = PayoutEngine(payout_repo, payer, clock=clock)
    delivered = []

    def flaky_handler(event):
        raise RuntimeError("database is locked")

    engine.subscribe(flaky_handler)
    engine.subscribe(delivered.append)
    contribution_repo.put(make_contribution("a"))
    payout = engine.create_payout(ALICE, store.all())

    done = engine.process_payout(payout.id)
    assert done.status == PayoutStatus.COMPLETED
    assert [e.payout_id for e in delivered] == [payout.id]
    assert store.get("a").status == ContributionStatus.VERIFIED

    # reconcile catches up on the missed event, and only once
    assert [c.id for c in store.reconcile(engine.all())] == ["a"]
    assert store.get("a").status == ContributionStatus.PAID
    assert store.reconcile(engine.all()) == []
    with pytest.raises(NoEligiblePayout):
        engine.create_payout(ALICE, store.all())


def test_reconcile_ignores_unsettled_payouts(engine, store, contribution_repo):
    contribution_repo.put(make_contribution("a"))
    engine.create_payout(ALICE, store.all())
    assert store.reconcile(engine.all()) == []
    assert store.get("a").status == ContributionStatus.VERIFIED
