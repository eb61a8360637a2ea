from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import List, Protocol, Tuple

from arqtrack.errors import PaymentError
from arqtrack.models import SUPPORTED_CHAINS
from arqtrack.validation import is_valid_evm_address

logger = logging.getLogger(__name__)


class ChainPaymentService(Protocol):
    def is_connected(self) -> bool: ...

    def send(self, to_address: str, amount: str, chain: str) -> str: ...


@dataclass
class SimulatedPayer:
    """
    Dry-run payer. Validates the transfer and returns a random 32-byte
    transaction hash without broadcasting anything.

    fail_next forces the next N sends to raise PaymentError, for exercising
    the failed/retry path from the CLI.
    """

    connected: bool = True
    fail_next: int = 0
    sent: List[Tuple[str, str, str, str]] = field(default_factory=list)

    def is_connected(self) -> bool:
        return self.connected

    def send(self, to_address: str, amount: str, chain: str) -> str:
        if not self.connected:
            raise PaymentError("Payer wallet is not connected")
        if chain not in SUPPORTED_CHAINS:
            raise PaymentError(f"Unsupported chain: {chain}")
        if not is_valid_evm_address(to_address):
            raise PaymentError(f"Invalid recipient address: {to_address!r}")
        if self.fail_next > 0:
            self.fail_next -= 1
            raise PaymentError(f"Simulated transfer failure sending {amount} on {chain} to {to_address}")

        tx_hash = "0x" + secrets.token_hex(32)
        self.sent.append((to_address, amount, chain, tx_hash))
        logger.info("DRY_RUN transfer of %s on %s to %s: %s", amount, chain, to_address, tx_hash)
        return tx_hash
