from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Callable, Iterable, List, Optional, Union

from arqtrack.clock import TimeWindow, trailing_week, utc_now
from arqtrack.errors import NoEligiblePayout, PaymentError, PayoutNotFound, PayoutStateError
from arqtrack.models import (
    Contribution,
    ContributionStatus,
    Payout,
    PayoutCompleted,
    PayoutStatus,
    ResearcherProfile,
)
from arqtrack.payer import ChainPaymentService
from arqtrack.repository import Repository
from arqtrack.validation import validate_chain

logger = logging.getLogger(__name__)

WEI_PER_ETH = 10 ** 18

# Flat reward per researcher per week, independent of how many contributions
# qualify or their impact scores.
WEEKLY_PAYOUT_AMOUNT = Decimal("0.08")

AMOUNT_QUANT = Decimal("0.0001")
USD_QUANT = Decimal("0.01")
ZERO = Decimal("0")


def parse_amount(value: Union[str, Decimal, int, float]) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def format_amount(value: Union[str, Decimal, int, float]) -> str:
    """Native-currency amounts are always rendered with 4 decimal places."""
    return str(parse_amount(value).quantize(AMOUNT_QUANT))


def format_usd(value: Union[str, Decimal, int, float]) -> str:
    return str(parse_amount(value).quantize(USD_QUANT))


def eth_to_wei(value: Union[str, Decimal]) -> int:
    return int((parse_amount(value) * WEI_PER_ETH).to_integral_value(rounding=ROUND_DOWN))


def wei_to_eth(wei: int) -> Decimal:
    return Decimal(wei) / WEI_PER_ETH


def qualifying_contributions(
    contributions: Iterable[Contribution],
    now: Optional[datetime] = None,
) -> List[Contribution]:
    """Verified contributions timestamped within the trailing 7 days."""
    window = trailing_week(now)
    return [
        c for c in contributions
        if c.status == ContributionStatus.VERIFIED and window.contains(c.timestamp)
    ]


def compute_eligibility(
    contributions: Iterable[Contribution],
    now: Optional[datetime] = None,
    weekly_amount: Decimal = WEEKLY_PAYOUT_AMOUNT,
) -> Decimal:
    """
    Weekly amount owed to a researcher.

    Any qualifying contribution earns the full flat amount; a second one in
    the same week earns nothing extra. Returns zero when none qualify.
    """
    if qualifying_contributions(contributions, now):
        return parse_amount(weekly_amount).quantize(AMOUNT_QUANT)
    return ZERO.quantize(AMOUNT_QUANT)


def new_payout_id() -> str:
    return f"payout_{uuid.uuid4().hex}"


class PayoutEngine:
    """
    Creates payouts and drives them through
    pending -> processing -> completed | failed, with failed -> pending on retry.

    The pending -> processing step is a compare-and-swap on the repository,
    so a second process_payout() on the same id while one is in flight is
    rejected instead of sending twice.
    """

    def __init__(
        self,
        repo: Repository[Payout],
        payer: ChainPaymentService,
        weekly_amount: Decimal = WEEKLY_PAYOUT_AMOUNT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repo = repo
        self.payer = payer
        self.weekly_amount = parse_amount(weekly_amount)
        self.clock = clock
        self._subscribers: List[Callable[[PayoutCompleted], None]] = []

    def subscribe(self, handler: Callable[[PayoutCompleted], None]) -> None:
        self._subscribers.append(handler)

    def _publish(self, event: PayoutCompleted) -> None:
        """
        Deliver an event to every subscriber. A failing subscriber is logged
        and skipped; the payout has already settled, and
        ContributionStore.reconcile() repairs anything the handler missed.
        """
        for handler in self._subscribers:
            try:
                handler(event)
            except Exception:
                logger.exception("PayoutCompleted handler failed for payout %s", event.payout_id)

    def compute_eligibility(self, contributions: Iterable[Contribution]) -> Decimal:
        return compute_eligibility(contributions, now=self.clock(), weekly_amount=self.weekly_amount)

    def create_payout(
        self,
        researcher: ResearcherProfile,
        contributions: Iterable[Contribution],
        chain: str = "base",
    ) -> Payout:
        """
        Record a pending payout for this week's qualifying contributions.

        The engine does not own contributions: callers pass records read from
        the ContributionStore (the CLI uses store.by_researcher), so every id
        on the payout refers to a stored contribution.
        """
        validate_chain(chain)
        now = self.clock()
        # Only this researcher's own contributions can back their payout
        own = [c for c in contributions if c.researcher_fid == researcher.fid]
        qualifying = qualifying_contributions(own, now)
        if not qualifying:
            raise NoEligiblePayout(f"No verified contributions found this week for fid {researcher.fid}")

        payout = Payout(
            id=new_payout_id(),
            researcher_address=researcher.address,
            researcher_fid=researcher.fid,
            amount=format_amount(self.weekly_amount),
            contribution_ids=tuple(c.id for c in qualifying),
            status=PayoutStatus.PENDING,
            timestamp=now,
            chain=chain,
        )
        self.repo.put(payout)
        logger.info(
            "Payout %s created: %s on %s to fid %s covering %d contributions",
            payout.id, payout.amount, chain, researcher.fid, len(payout.contribution_ids),
        )
        return payout

    def process_payout(self, payout_id: str) -> Payout:
        """
        Send a pending payout.

        Raises PayoutStateError if it is not pending (including when another
        call already moved it to processing), and PaymentError if the transfer
        fails for any reason, after recording the payout as failed.
        """
        self.get(payout_id)
        if not self.payer.is_connected():
            raise PaymentError("Payer wallet is not connected; connect it before processing payouts")

        def _start(current: Payout) -> Optional[Payout]:
            if current.status != PayoutStatus.PENDING:
                return None
            return replace(current, status=PayoutStatus.PROCESSING)

        processing = self.repo.update(payout_id, _start)
        if processing is None:
            current = self.get(payout_id)
            raise PayoutStateError(f"Payout {payout_id} is {current.status.value}, expected pending")
        logger.info("Payout %s processing", payout_id)

        try:
            tx_hash = self.payer.send(processing.researcher_address, processing.amount, processing.chain)
        except Exception as e:
            self._finish(payout_id, PayoutStatus.FAILED, None)
            logger.warning("Payout %s failed: %s", payout_id, e)
            if isinstance(e, PaymentError):
                raise
            raise PaymentError(f"Transfer for payout {payout_id} failed: {e}") from e

        completed = self._finish(payout_id, PayoutStatus.COMPLETED, tx_hash)
        logger.info("Payout %s completed: %s", payout_id, tx_hash)
        self._publish(PayoutCompleted(payout_id=completed.id, contribution_ids=completed.contribution_ids))
        return completed

    def _finish(self, payout_id: str, status: PayoutStatus, tx_hash: Optional[str]) -> Payout:
        def _settle(current: Payout) -> Optional[Payout]:
            if current.status != PayoutStatus.PROCESSING:
                return None
            return replace(current, status=status, tx_hash=tx_hash)

        settled = self.repo.update(payout_id, _settle)
        if settled is None:
            raise PayoutStateError(f"Payout {payout_id} left processing while a transfer was in flight")
        return settled

    def retry_failed_payout(self, payout_id: str) -> Optional[Payout]:
        """
        Reset a failed payout to pending and process it again.
        Returns None without doing anything if the payout is not failed.
        """

        def _reset(current: Payout) -> Optional[Payout]:
            if current.status != PayoutStatus.FAILED:
                return None
            return replace(current, status=PayoutStatus.PENDING, tx_hash=None)

        self.get(payout_id)
        if self.repo.update(payout_id, _reset) is None:
            return None
        logger.info("Payout %s reset to pending for retry", payout_id)
        return self.process_payout(payout_id)

    def get(self, payout_id: str) -> Payout:
        payout = self.repo.get(payout_id)
        if payout is None:
            raise PayoutNotFound(payout_id)
        return payout

    def all(self) -> List[Payout]:
        return sorted(self.repo.get_all(), key=lambda p: p.timestamp, reverse=True)

    def by_researcher(self, fid: int) -> List[Payout]:
        return [p for p in self.all() if p.researcher_fid == fid]

    def by_status(self, status: PayoutStatus) -> List[Payout]:
        status = PayoutStatus(status)
        return [p for p in self.all() if p.status == status]

    def pending_payouts(self) -> List[Payout]:
        return self.by_status(PayoutStatus.PENDING)

    def in_window(self, window: TimeWindow) -> List[Payout]:
        return [p for p in self.all() if window.contains(p.timestamp)]

    def weekly(self, now: Optional[datetime] = None) -> List[Payout]:
        return self.in_window(trailing_week(now or self.clock()))

    def total_paid(self) -> str:
        return total_paid(self.repo.get_all())


def total_paid(payouts: Iterable[Payout]) -> str:
    """Sum of completed payout amounts, 4 decimal places."""
    total = sum(
        (parse_amount(p.amount) for p in payouts if p.status == PayoutStatus.COMPLETED),
        ZERO,
    )
    return format_amount(total)
