from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from arqtrack.attestation import EASService
from arqtrack.contributions import ContributionStore
from arqtrack.errors import AttestationError
from arqtrack.models import Contribution, ContributionData, ContributionStatus, ResearcherProfile
from arqtrack.payer import SimulatedPayer
from arqtrack.payouts import PayoutEngine
from arqtrack.repository import InMemoryRepository

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
ATTESTER = "0x1234567890123456789012345678901234567890"
ALICE = ResearcherProfile(fid=1001, address="0x" + "a1" * 20, username="alice", display_name="Alice")
BOB = ResearcherProfile(fid=1002, address="0x" + "b2" * 20, username="bob", display_name="Bob")


class FlakyGateway:
    """Attestation gateway that fails until told otherwise."""

    def __init__(self, failures: int = 1) -> None:
        self.failures = failures
        self.calls: List[str] = []
        self.inner = EASService()

    def attest(self, contribution: Contribution, attester_address: str) -> str:
        self.calls.append(contribution.id)
        if self.failures > 0:
            self.failures -= 1
            raise AttestationError("attestation endpoint unavailable")
        return self.inner.attest(contribution, attester_address)

    def verify(self, attestation_id: str) -> bool:
        return self.inner.verify(attestation_id)


def make_contribution(
    cid: str,
    fid: int = ALICE.fid,
    status: ContributionStatus = ContributionStatus.VERIFIED,
    age: timedelta = timedelta(days=1),
    attested: Optional[bool] = None,
    now: datetime = NOW,
) -> Contribution:
    if attested is None:
        attested = status != ContributionStatus.PENDING
    return Contribution(
        id=cid,
        researcher_address="0x" + f"{fid:040x}"[-40:],
        researcher_fid=fid,
        title=f"Contribution {cid}",
        description="Literature review",
        tags=("research",),
        impact_score=5,
        status=status,
        timestamp=now - age,
        attestation_id=f"0xatt{cid}" if attested else None,
    )


def sample_data(**overrides) -> ContributionData:
    fields = dict(
        title="Mapping coordination friction",
        description="Survey of payout delays across three DAOs",
        tags=("coordination", "payouts"),
        impact_score=7,
        post_url="https://warpcast.com/alice/0xabc123",
    )
    fields.update(overrides)
    return ContributionData(**fields)


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def contribution_repo():
    return InMemoryRepository()


@pytest.fixture
def payout_repo():
    return InMemoryRepository()


@pytest.fixture
def store(contribution_repo, clock):
    return ContributionStore(contribution_repo, EASService(), ATTESTER, clock=clock)


@pytest.fixture
def payer():
    return SimulatedPayer()


@pytest.fixture
def engine(payout_repo, payer, store, clock):
    eng = PayoutEngine(payout_repo, payer, clock=clock)
    eng.subscribe(store.handle_payout_completed)
    return eng
