from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from arqtrack.attestation import AttestationGateway
from arqtrack.clock import utc_now
from arqtrack.errors import AttestationError, ContributionNotFound, ValidationError
from arqtrack.models import (
    Contribution,
    ContributionData,
    ContributionStatus,
    Payout,
    PayoutCompleted,
    PayoutStatus,
    ResearcherProfile,
)
from arqtrack.repository import Repository
from arqtrack.validation import is_valid_evm_address, validate_contribution

logger = logging.getLogger(__name__)


def new_contribution_id() -> str:
    return f"contrib_{uuid.uuid4().hex}"


class ContributionStore:
    """
    Owns contribution records and their pending -> verified -> paid lifecycle.

    The attestation call is the only point where submit() and
    retry_attestation() block. A contribution is persisted as pending before
    the call, and only recorded as verified after the gateway has returned.
    """

    def __init__(
        self,
        repo: Repository[Contribution],
        gateway: AttestationGateway,
        attester_address: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repo = repo
        self.gateway = gateway
        self.attester_address = attester_address
        self.clock = clock

    def submit(self, data: ContributionData, researcher: ResearcherProfile) -> Contribution:
        """
        Validate and record a new contribution, then request its attestation.

        Returns the verified record when attestation succeeds, or the pending
        record when it fails. Callers that need to report the failure use
        submit_with_warning().
        """
        contribution, _ = self.submit_with_warning(data, researcher)
        return contribution

    def submit_with_warning(
        self,
        data: ContributionData,
        researcher: ResearcherProfile,
    ) -> Tuple[Contribution, Optional[AttestationError]]:
        """
        Same as submit(), but also returns the attestation failure, if any.
        A failed attestation is logged and the record stays pending for
        retry_attestation().
        """
        clean = validate_contribution(data)
        if not is_valid_evm_address(researcher.address):
            raise ValidationError(f"Invalid researcher address: {researcher.address!r}")
        if isinstance(researcher.fid, bool) or not isinstance(researcher.fid, int) or researcher.fid < 0:
            raise ValidationError(f"Invalid researcher id: {researcher.fid!r}")

        contribution = Contribution(
            id=new_contribution_id(),
            researcher_address=researcher.address,
            researcher_fid=researcher.fid,
            title=clean.title,
            description=clean.description,
            tags=clean.tags,
            impact_score=clean.impact_score,
            status=ContributionStatus.PENDING,
            timestamp=self.clock(),
            post_url=clean.post_url,
        )
        self.repo.put(contribution)
        logger.info("Contribution %s submitted by fid %s", contribution.id, contribution.researcher_fid)

        try:
            return self._attest(contribution), None
        except AttestationError as e:
            logger.warning(
                "Contribution %s saved but attestation failed, retry later: %s", contribution.id, e
            )
            return contribution, e

    def retry_attestation(self, contribution_id: str) -> Contribution:
        """
        Request attestation again for a pending contribution.
        Already verified or paid contributions are returned unchanged.
        Raises AttestationError if the gateway fails again.
        """
        contribution = self.get(contribution_id)
        if contribution.status != ContributionStatus.PENDING:
            return contribution
        return self._attest(contribution)

    def _attest(self, contribution: Contribution) -> Contribution:
        try:
            attestation_id = self.gateway.attest(contribution, self.attester_address)
        except AttestationError:
            raise
        except Exception as e:
            raise AttestationError(f"Attestation gateway failed for {contribution.id}: {e}") from e

        def _verify(current: Contribution) -> Optional[Contribution]:
            if current.status != ContributionStatus.PENDING:
                return None
            return replace(current, status=ContributionStatus.VERIFIED, attestation_id=attestation_id)

        updated = self.repo.update(contribution.id, _verify)
        if updated is None:
            # A concurrent retry got there first
            return self.get(contribution.id)
        logger.info("Contribution %s verified with attestation %s", updated.id, attestation_id)
        return updated

    def verify_attestation(self, contribution_id: str) -> bool:
        contribution = self.get(contribution_id)
        if not contribution.attestation_id:
            return False
        return self.gateway.verify(contribution.attestation_id)

    def mark_paid(self, contribution_ids: Iterable[str]) -> List[Contribution]:
        """
        Move verified contributions to paid.
        Unknown ids and contributions in any other state are skipped.
        """

        def _pay(current: Contribution) -> Optional[Contribution]:
            if current.status != ContributionStatus.VERIFIED:
                return None
            return replace(current, status=ContributionStatus.PAID)

        paid: List[Contribution] = []
        for cid in contribution_ids:
            updated = self.repo.update(cid, _pay)
            if updated is not None:
                paid.append(updated)
        if paid:
            logger.info("Marked %d contributions paid", len(paid))
        return paid

    def handle_payout_completed(self, event: PayoutCompleted) -> None:
        self.mark_paid(event.contribution_ids)

    def reconcile(self, payouts: Iterable[Payout]) -> List[Contribution]:
        """
        Mark paid every verified contribution referenced by a completed
        payout. Catches up on PayoutCompleted events a handler failed on.
        """
        ids = [
            cid
            for p in payouts
            if p.status == PayoutStatus.COMPLETED
            for cid in p.contribution_ids
        ]
        return self.mark_paid(ids)

    def get(self, contribution_id: str) -> Contribution:
        contribution = self.repo.get(contribution_id)
        if contribution is None:
            raise ContributionNotFound(contribution_id)
        return contribution

    def all(self) -> List[Contribution]:
        return sorted(self.repo.get_all(), key=lambda c: c.timestamp, reverse=True)

    def by_researcher(self, fid: int) -> List[Contribution]:
        return [c for c in self.all() if c.researcher_fid == fid]

    def by_address(self, address: str) -> List[Contribution]:
        address = address.lower()
        return [c for c in self.all() if c.researcher_address.lower() == address]

    def by_status(self, status: ContributionStatus) -> List[Contribution]:
        status = ContributionStatus(status)
        return [c for c in self.all() if c.status == status]
