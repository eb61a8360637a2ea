from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from dotenv import load_dotenv
import os
from typing import Dict, Optional

from arqtrack.models import CHAINS, SUPPORTED_CHAINS


def _getenv(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None:
        raise ValueError(f"Missing required env var: {name}")
    return val


def _getenv_bool(name: str, default: str = "false") -> bool:
    return _getenv(name, default).strip().lower() in {"1", "true", "yes", "y"}


def _getenv_int(name: str, default: str) -> int:
    return int(_getenv(name, default))


def _getenv_decimal(name: str, default: str) -> Decimal:
    raw = _getenv(name, default)
    try:
        value = Decimal(raw.strip())
    except InvalidOperation as e:
        raise ValueError(f"{name} must be a decimal number (got {raw!r})") from e
    if not value.is_finite():
        raise ValueError(f"{name} must be a finite number (got {raw!r})")
    return value


# Zero address stands in for a researcher with no verified wallet
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

TESTNET_MARKERS = ("sepolia", "goerli", "alfajores", "testnet")


def validate_rpc_url(rpc_url: str) -> None:
    """Hard fail if a testnet is detected in an RPC URL."""
    lowered = rpc_url.lower()
    for marker in TESTNET_MARKERS:
        if marker in lowered:
            raise RuntimeError(f"FATAL: Testnet RPC configured ({rpc_url}). Refusing to run.")


@dataclass(frozen=True)
class Settings:
    db_path: str
    public_dir: str

    default_chain: str
    weekly_payout: Decimal
    eth_to_usd_rate: Decimal
    target_weekly_tvf: Decimal

    attester_address: str
    treasury_address: str
    rpc_urls: Dict[str, str]

    researcher_address: str
    researcher_fid: int
    researcher_username: str
    researcher_display_name: str

    dry_run: bool
    eas_remote_verify: bool


def load_settings() -> Settings:
    load_dotenv()

    db_path = _getenv("ARQ_DB_PATH", "arqtrack.sqlite3")
    public_dir = _getenv("ARQ_PUBLIC_DIR", "public")

    default_chain = _getenv("ARQ_DEFAULT_CHAIN", "base").strip().lower()
    weekly_payout = _getenv_decimal("ARQ_WEEKLY_PAYOUT", "0.08")
    eth_to_usd_rate = _getenv_decimal("ARQ_ETH_USD_RATE", "2500")
    target_weekly_tvf = _getenv_decimal("ARQ_TARGET_WEEKLY_TVF", "150")

    attester_address = _getenv("ARQ_ATTESTER_ADDRESS", ZERO_ADDRESS).strip()
    treasury_address = _getenv("ARQ_TREASURY_ADDRESS", "").strip()

    rpc_urls: Dict[str, str] = {}
    for chain in SUPPORTED_CHAINS:
        url = _getenv(f"ARQ_RPC_URL_{chain.upper()}", CHAINS[chain].rpc_url).strip()
        # Hard fail if a testnet is detected
        validate_rpc_url(url)
        rpc_urls[chain] = url

    researcher_address = _getenv("ARQ_RESEARCHER_ADDRESS", ZERO_ADDRESS).strip()
    researcher_fid = _getenv_int("ARQ_RESEARCHER_FID", "0")
    researcher_username = _getenv("ARQ_RESEARCHER_USERNAME", "unknown").lstrip("@")
    researcher_display_name = _getenv("ARQ_RESEARCHER_DISPLAY_NAME", "Unknown User")

    # Default to True: this build never broadcasts real transfers
    dry_run = _getenv_bool("ARQ_DRY_RUN", "true")
    eas_remote_verify = _getenv_bool("ARQ_EAS_REMOTE_VERIFY", "false")

    if default_chain not in SUPPORTED_CHAINS:
        raise ValueError(f"ARQ_DEFAULT_CHAIN must be one of {', '.join(SUPPORTED_CHAINS)} (got {default_chain})")

    if weekly_payout <= 0:
        raise ValueError("ARQ_WEEKLY_PAYOUT must be positive")

    if eth_to_usd_rate <= 0:
        raise ValueError("ARQ_ETH_USD_RATE must be positive")

    if target_weekly_tvf <= 0:
        raise ValueError("ARQ_TARGET_WEEKLY_TVF must be positive")

    if researcher_fid < 0:
        raise ValueError("ARQ_RESEARCHER_FID must not be negative")

    return Settings(
        db_path=db_path,
        public_dir=public_dir,
        default_chain=default_chain,
        weekly_payout=weekly_payout,
        eth_to_usd_rate=eth_to_usd_rate,
        target_weekly_tvf=target_weekly_tvf,
        attester_address=attester_address,
        treasury_address=treasury_address,
        rpc_urls=rpc_urls,
        researcher_address=researcher_address,
        researcher_fid=researcher_fid,
        researcher_username=researcher_username,
        researcher_display_name=researcher_display_name,
        dry_run=dry_run,
        eas_remote_verify=eas_remote_verify,
    )
